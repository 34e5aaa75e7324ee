import pytest

from noteindex.models import SearchResult
from noteindex.search.fusion import (RankedSource, blend_scores, deduplicate_results,
                                     get_position_weight, normalize_bm25_scores,
                                     normalize_vector_scores, weighted_rrf)


def _r(path, line=1, score=1.0, preview=None, distance=None, kind="content"):
    return SearchResult(
        type=kind,
        file_path=path,
        line_number=line,
        preview=preview or f"{path}:{line}",
        score=score,
        distance=distance,
    )


def test_rrf_k0_scores_by_rank():
    fused = weighted_rrf([RankedSource([_r("a"), _r("b"), _r("c")])])
    assert [r.file_path for r in fused] == ["a", "b", "c"]
    assert [r.score for r in fused] == pytest.approx([1.0, 0.5, 1 / 3])


def test_rrf_agreement_outranks_single_source():
    lexical = RankedSource([_r("a"), _r("b")], weight=1.0, kind="fts")
    vector = RankedSource([_r("c"), _r("b")], weight=1.0, kind="vector")
    fused = weighted_rrf([lexical, vector])
    assert fused[0].file_path == "b"
    assert fused[0].score == pytest.approx(1.0)


def test_rrf_first_occurrence_supplies_metadata():
    lexical = RankedSource([_r("a", preview="from fts")], kind="fts")
    vector = RankedSource([_r("a", preview="from vector", kind="semantic")], kind="vector")
    fused = weighted_rrf([lexical, vector])
    assert len(fused) == 1
    assert fused[0].preview == "from fts"
    assert fused[0].retrieval_method == "fts"
    assert fused[0].query_source == "original"


def test_rrf_ties_keep_first_seen_order():
    fused = weighted_rrf([RankedSource([_r("x")]), RankedSource([_r("y")])])
    assert [r.file_path for r in fused] == ["x", "y"]


def test_rrf_weights_and_original_query_multiplier():
    original = RankedSource([_r("a")], weight=1.0)
    expanded = RankedSource([_r("b")], weight=1.5, query_source="prf")
    assert weighted_rrf([original, expanded])[0].file_path == "b"
    boosted = weighted_rrf([original, expanded], original_query_multiplier=2.0)
    assert boosted[0].file_path == "a"
    assert boosted[0].score == pytest.approx(2.0)


def test_rrf_top_bonus_and_k():
    fused = weighted_rrf([RankedSource([_r("a"), _r("b"), _r("c"), _r("d")])], k=60,
                         apply_top_bonus=True)
    scores = [r.score for r in fused]
    assert scores[0] == pytest.approx(1.15 / 61)
    assert scores[3] == pytest.approx(1 / 64)


def test_normalization():
    bm25 = normalize_bm25_scores([_r("a", score=-8.0), _r("b", score=-4.0), _r("c", score=-2.0)])
    assert [r.score for r in bm25] == pytest.approx([1.0, 1 / 3, 0.0])
    assert [r.score for r in normalize_bm25_scores([_r("a", score=3), _r("b", score=3)])] == [1.0, 1.0]

    vec = normalize_vector_scores([_r("a", distance=0.0), _r("b", distance=1.0), _r("c", score=1.7)])
    assert [r.score for r in vec] == pytest.approx([1.0, 0.5, 1.0])


def test_position_weights():
    assert get_position_weight(1) == (0.75, 0.25)
    assert get_position_weight(3) == (0.75, 0.25)
    assert get_position_weight(4) == (0.60, 0.40)
    assert get_position_weight(10) == (0.60, 0.40)
    assert get_position_weight(11) == (0.40, 0.60)
    assert blend_scores(1.0, 0.0, 1) == pytest.approx(0.75)


def test_deduplicate_keeps_first():
    results = deduplicate_results([_r("a", preview="one"), _r("b"), _r("a", preview="two")])
    assert [(r.file_path, r.preview) for r in results] == [("a", "one"), ("b", "b:1")]
