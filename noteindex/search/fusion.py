"""Score normalization and weighted reciprocal rank fusion.

Lexical BM25 magnitudes and cosine similarities live on different scales.
Fusion is rank based, so raw scores only matter once results have been
normalized into 0..1 for reranker blending.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from ..models import SearchResult

TOP_RANK_BONUS = (1.15, 1.10, 1.05)


@dataclass
class RankedSource:
    """One ranked result list feeding fusion."""

    results: list[SearchResult]
    weight: float = 1.0
    kind: str = "fts"  # "fts" | "vector"
    query_source: str = "original"  # "original" | "prf" | "llm"

    @property
    def is_original_query(self) -> bool:
        return self.query_source == "original"


def normalize_bm25_scores(results: Sequence[SearchResult]) -> list[SearchResult]:
    """Min-max normalize absolute BM25 scores; identical scores all map to 1.0."""
    if not results:
        return []
    scores = [abs(r.score) for r in results]
    low, high = min(scores), max(scores)
    spread = high - low
    if spread == 0:
        return [r.with_updates(score=1.0) for r in results]
    return [r.with_updates(score=(abs(r.score) - low) / spread) for r in results]


def normalize_vector_scores(results: Sequence[SearchResult]) -> list[SearchResult]:
    """Cosine distance (0..2) to similarity in 0..1; falls back to clamping ``score``."""
    out = []
    for r in results:
        if r.distance is not None:
            similarity = 1.0 - r.distance / 2.0
        else:
            similarity = r.score
        out.append(r.with_updates(score=max(0.0, min(1.0, similarity))))
    return out


def get_position_weight(rank: int) -> tuple[float, float]:
    """(retrieval_weight, reranker_weight) for a 1-based fused rank."""
    if rank <= 3:
        return 0.75, 0.25
    if rank <= 10:
        return 0.60, 0.40
    return 0.40, 0.60


def blend_scores(retrieval_score: float, reranker_score: float, rank: int) -> float:
    retrieval_weight, reranker_weight = get_position_weight(rank)
    return retrieval_weight * retrieval_score + reranker_weight * reranker_score


def apply_top_rank_bonus(score: float, rank: int) -> float:
    """Boost the first three positions (0-based rank) of a source."""
    if 0 <= rank < len(TOP_RANK_BONUS):
        return score * TOP_RANK_BONUS[rank]
    return score


def weighted_rrf(
    sources: Iterable[RankedSource],
    k: int = 0,
    apply_top_bonus: bool = False,
    normalize_first: bool = False,
    original_query_multiplier: float = 1.0,
) -> list[SearchResult]:
    """Fuse ranked lists keyed by (file_path, line_number).

    Each source adds ``weight / (k + rank + 1)`` for every result it ranks.
    The first occurrence of a key supplies the preview and metadata; the
    returned ``score`` is the fused total.
    """
    fused: dict[tuple[str, int], list] = {}
    order: list[tuple[str, int]] = []

    for source in sources:
        results = source.results
        if normalize_first:
            if source.kind == "fts":
                results = normalize_bm25_scores(results)
            else:
                results = normalize_vector_scores(results)

        weight = source.weight
        if source.is_original_query:
            weight *= original_query_multiplier

        for rank, result in enumerate(results):
            contribution = weight / (k + rank + 1)
            if apply_top_bonus:
                contribution = apply_top_rank_bonus(contribution, rank)

            entry = fused.get(result.key)
            if entry is None:
                tagged = result.with_updates(
                    query_source=result.query_source or source.query_source,
                    retrieval_method=result.retrieval_method or source.kind,
                )
                fused[result.key] = [contribution, tagged]
                order.append(result.key)
            else:
                entry[0] += contribution

    # sorted() is stable, so ties keep first-seen order
    ranked = sorted(order, key=lambda key: fused[key][0], reverse=True)
    return [fused[key][1].with_updates(score=fused[key][0]) for key in ranked]


def deduplicate_results(results: Iterable[SearchResult]) -> list[SearchResult]:
    seen: set[tuple[str, int]] = set()
    out = []
    for r in results:
        if r.key in seen:
            continue
        seen.add(r.key)
        out.append(r)
    return out
