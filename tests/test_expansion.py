import json

import httpx

from noteindex.ollama import OllamaClient
from noteindex.search.cache import SearchCache
from noteindex.search.expansion import QueryExpansionService, extract_key_terms


def _ollama(handler):
    transport = httpx.MockTransport(handler)
    client = httpx.AsyncClient(transport=transport, base_url="http://ollama.test")
    return OllamaClient("http://ollama.test", client=client)


def _llm_handler(answer, calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": "qwen3:1.7b"}]})
        body = json.loads(request.content)
        assert body["stream"] is False
        return httpx.Response(200, json={"response": answer})
    return handler


def test_extract_key_terms_skips_query_and_stopwords():
    texts = [
        "Deadline for the quarterly budget review",
        "budget review meeting with finance",
        "The budget spreadsheet",
    ]
    terms = extract_key_terms(texts, "quarterly deadline", max_terms=3)
    assert terms == ["budget", "review", "meeting"]


def test_prf_expansion():
    service = QueryExpansionService(ollama=_ollama(_llm_handler("", [])))
    expanded = service.expand_prf("sink", ["kitchen sink leaks", "plumber kitchen visit"])
    assert [(e.source, e.weight) for e in expanded] == [("original", 2.0), ("prf", 1.0)]
    assert expanded[1].query == "sink kitchen leaks plumber visit"

    only = service.expand_prf("sink", [])
    assert [e.source for e in only] == ["original"]


async def test_llm_expansion_parses_json_array_and_caches():
    calls = []
    answer = 'Sure! ["fix leaking sink", "plumbing repair", "sink"] hope that helps'
    cache = SearchCache()
    service = QueryExpansionService(ollama=_ollama(_llm_handler(answer, calls)), cache=cache)

    expanded = await service.expand_llm("sink", max_variants=3)
    assert [e.query for e in expanded] == ["sink", "fix leaking sink", "plumbing repair"]
    assert [e.source for e in expanded] == ["original", "llm", "llm"]

    again = await service.expand_llm("sink", max_variants=3)
    assert again == expanded
    assert calls.count("/api/generate") == 1
    assert calls.count("/api/tags") == 1


async def test_llm_expansion_falls_back_on_garbage():
    service = QueryExpansionService(ollama=_ollama(_llm_handler("no idea", [])))
    expanded = await service.expand_llm("sink")
    assert [e.source for e in expanded] == ["original"]


async def test_llm_expansion_when_ollama_is_down():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    service = QueryExpansionService(ollama=_ollama(handler))
    assert not await service.check_ollama_available()
    expanded = await service.expand("sink", ["kitchen sink"], method="both")
    assert [e.source for e in expanded] == ["original", "prf"]
