import json

import httpx
import numpy as np
import pytest

from noteindex.embeddings import (EmbeddingError, OllamaEmbeddingProvider,
                                  OpenAIEmbeddingProvider, create_embedding_provider,
                                  probe_provider)


def _client(handler, base_url):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=base_url)


async def test_ollama_provider_embeds_one_prompt_per_call():
    prompts = []

    def handler(request):
        body = json.loads(request.content)
        prompts.append(body["prompt"])
        return httpx.Response(200, json={"embedding": [float(len(body["prompt"]))] * 4})

    provider = OllamaEmbeddingProvider(
        "all-minilm", dimensions=4, client=_client(handler, "http://ollama.test")
    )
    matrix = await provider.embed_batch(["a", "bbb"])
    assert matrix.shape == (2, 4)
    assert matrix.dtype == np.float32
    assert prompts == ["a", "bbb"]
    assert await probe_provider(provider)


async def test_ollama_provider_retries_transport_errors():
    attempts = []

    def handler(request):
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"embedding": [0.0, 1.0]})

    provider = OllamaEmbeddingProvider(dimensions=2, client=_client(handler, "http://o"))
    vector = await provider.embed("retry me")
    assert list(vector) == [0.0, 1.0]
    assert len(attempts) == 2


async def test_wrong_width_is_rejected():
    def handler(request):
        return httpx.Response(200, json={"embedding": [1.0, 2.0, 3.0]})

    provider = OllamaEmbeddingProvider(dimensions=4, client=_client(handler, "http://o"))
    with pytest.raises(EmbeddingError):
        await provider.embed("x")
    assert not await probe_provider(provider)


async def test_openai_provider_sorts_by_index():
    def handler(request):
        assert request.headers["authorization"] == "Bearer sk-test"
        return httpx.Response(200, json={"data": [
            {"index": 1, "embedding": [0.0, 1.0]},
            {"index": 0, "embedding": [1.0, 0.0]},
        ]})

    provider = OpenAIEmbeddingProvider(
        "sk-test", dimensions=2, client=_client(handler, "https://api.test")
    )
    matrix = await provider.embed_batch(["first", "second"])
    assert matrix.tolist() == [[1.0, 0.0], [0.0, 1.0]]


def test_dimension_defaults_from_model_name():
    assert OllamaEmbeddingProvider("nomic-embed-text:latest").dimensions == 768
    assert OllamaEmbeddingProvider("mystery-model").dimensions == 768
    assert OpenAIEmbeddingProvider("k", "text-embedding-3-large").dimensions == 3072


def test_create_provider_from_config(test_config, monkeypatch):
    assert create_embedding_provider(test_config) is None

    test_config.set("embeddings.enabled", True)
    test_config.set("embeddings.provider", "ollama")
    test_config.set("embeddings.model", "all-minilm")
    provider = create_embedding_provider(test_config)
    assert isinstance(provider, OllamaEmbeddingProvider)
    assert provider.dimensions == 384
    assert provider.base_url == "http://127.0.0.1:9"

    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    test_config.set("embeddings.provider", "openai")
    assert create_embedding_provider(test_config) is None

    test_config.set("embeddings.provider", "carrier-pigeon")
    assert create_embedding_provider(test_config) is None
