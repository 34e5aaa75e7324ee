import httpx
import pytest

from noteindex.models import SearchResult
from noteindex.ollama import OllamaClient
from noteindex.search.reranker import RerankerService


def _service(scores, models=("qwen3:0.6b",)):
    """Reranker whose model answers with ``scores[preview]``."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": m} for m in models]})
        prompt = request.read().decode()
        for preview, answer in scores.items():
            if preview in prompt:
                return httpx.Response(200, json={"response": answer})
        return httpx.Response(500)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://o")
    return RerankerService(ollama=OllamaClient("http://o", client=client), batch_size=2)


def _results(*previews):
    return [
        SearchResult(type="content", file_path=f"/{p}.org", line_number=1, preview=p,
                     score=1.0 / (i + 1))
        for i, p in enumerate(previews)
    ]


async def test_score_document_parses_and_clamps():
    service = _service({"alpha": "8", "beta": "Score: 14", "gamma": "no clue"})
    assert await service.score_document("q", "alpha") == pytest.approx(0.8)
    assert await service.score_document("q", "beta") == 1.0
    assert await service.score_document("q", "gamma") == 0.5
    assert await service.score_document("q", "delta") == 0.5


async def test_rerank_blends_and_keeps_remainder():
    service = _service({"first": "0", "second": "10", "third": "10"})
    results = _results("first", "second", "third")
    reranked = await service.rerank("q", results, top_k=2)

    assert [r.preview for r in reranked] == ["first", "second", "third"]
    first, second, third = reranked
    assert first.score == pytest.approx(0.75 * 1.0 + 0.25 * 0.0)
    assert second.score == pytest.approx(0.75 * 0.5 + 0.25 * 1.0)
    assert second.reranker_score == 1.0
    assert (first.retrieval_rank, second.retrieval_rank) == (0, 1)
    assert third.retrieval_rank == 2
    assert third.reranker_score is None


async def test_rerank_can_reorder():
    service = _service({"first": "0", "second": "10"})
    reranked = await service.rerank("q", _results("first", "second"),
                                    use_position_blending=False)
    assert [r.preview for r in reranked] == ["second", "first"]


async def test_rerank_passthrough_without_model():
    service = _service({}, models=("llama3:8b",))
    assert not await service.is_available()
    results = _results("a", "b")
    reranked = await service.rerank("q", results)
    assert [r.preview for r in reranked] == ["a", "b"]
    assert [r.retrieval_rank for r in reranked] == [0, 1]
