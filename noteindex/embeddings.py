# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Embedding providers for semantic search.

Every provider exposes ``dimensions`` plus async ``embed`` and
``embed_batch``. Network providers talk HTTP through ``httpx.AsyncClient``
with a per-request timeout and retry transport failures with ``tenacity``.
The sentence-transformers provider is imported lazily and runs in a worker
thread so model inference never blocks the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

import httpx
import numpy as np
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import DEFAULT_OLLAMA_URL, Config

logger = logging.getLogger(__name__)

OLLAMA_DIMENSIONS = {
    "nomic-embed-text": 768,
    "all-minilm": 384,
    "mxbai-embed-large": 1024,
    "snowflake-arctic-embed": 1024,
}
OPENAI_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}
LOCAL_DIMENSIONS = {
    "all-MiniLM-L6-v2": 384,
    "BAAI/bge-small-en-v1.5": 384,
    "all-mpnet-base-v2": 768,
    "BAAI/bge-base-en-v1.5": 768,
}

DEFAULT_OPENAI_URL = "https://api.openai.com"
PROBE_TEXT = "noteindex embedding probe"

_transport_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)


class EmbeddingError(RuntimeError):
    """The provider rejected a request or returned an unusable payload."""


@runtime_checkable
class EmbeddingProvider(Protocol):
    name: str
    dimensions: int

    async def embed(self, text: str) -> np.ndarray: ...

    async def embed_batch(self, texts: Sequence[str]) -> np.ndarray: ...


def provider_identity(provider: EmbeddingProvider) -> str:
    """Stable ``name:model:dimensions`` key; vectors from different identities never mix."""
    model = getattr(provider, "model", None) or getattr(provider, "model_name", None) or ""
    return f"{provider.name}:{model}:{int(provider.dimensions)}"


def _lookup_dimension(table: dict[str, int], model: str, default: int) -> int:
    base = model.split(":", 1)[0]
    for name, dim in table.items():
        if base == name or base.endswith("/" + name) or name.endswith("/" + base):
            return dim
    return default


def _as_matrix(vectors: Sequence[Sequence[float]], dimensions: int) -> np.ndarray:
    if not vectors:
        return np.zeros((0, dimensions), dtype="float32")
    arr = np.asarray(vectors, dtype="float32")
    if arr.ndim != 2 or arr.shape[1] != dimensions:
        raise EmbeddingError(
            f"Expected embeddings of width {dimensions}, got shape {arr.shape}"
        )
    return arr


class OllamaEmbeddingProvider:
    """Embeddings from a local Ollama server (``/api/embeddings``)."""

    name = "ollama"

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str = DEFAULT_OLLAMA_URL,
        dimensions: Optional[int] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.dimensions = dimensions or _lookup_dimension(OLLAMA_DIMENSIONS, model, 768)
        self.timeout = timeout
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    @_transport_retry
    async def _post(self, text: str) -> list[float]:
        resp = await self._http().post(
            "/api/embeddings", json={"model": self.model, "prompt": text}
        )
        resp.raise_for_status()
        embedding = resp.json().get("embedding")
        if not isinstance(embedding, list):
            raise EmbeddingError("Ollama response has no 'embedding' field")
        return embedding

    async def embed(self, text: str) -> np.ndarray:
        return _as_matrix([await self._post(text)], self.dimensions)[0]

    async def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        # Ollama's embeddings endpoint takes one prompt per call
        vectors = [await self._post(text) for text in texts]
        return _as_matrix(vectors, self.dimensions)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class OpenAIEmbeddingProvider:
    """Embeddings from the OpenAI ``/v1/embeddings`` endpoint, batched."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = DEFAULT_OPENAI_URL,
        dimensions: Optional[int] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ValueError("OpenAI embeddings require an API key")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.dimensions = dimensions or _lookup_dimension(OPENAI_DIMENSIONS, model, 1536)
        self.timeout = timeout
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    @_transport_retry
    async def _post(self, texts: list[str]) -> list[list[float]]:
        resp = await self._http().post(
            "/v1/embeddings", json={"model": self.model, "input": texts}
        )
        resp.raise_for_status()
        data = resp.json().get("data")
        if not isinstance(data, list):
            raise EmbeddingError("OpenAI response has no 'data' field")
        data = sorted(data, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in data]

    async def embed(self, text: str) -> np.ndarray:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimensions), dtype="float32")
        return _as_matrix(await self._post(list(texts)), self.dimensions)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class SentenceTransformerProvider:
    """In-process sentence-transformers model (``pip install noteindex[local]``)."""

    name = "sentence-transformers"

    def __init__(
        self,
        model: str = "all-MiniLM-L6-v2",
        dimensions: Optional[int] = None,
        **model_kwargs: Any,
    ):
        # Heavy import; only paid when a local provider is configured
        from sentence_transformers import SentenceTransformer

        self.model_name = model
        self._model = SentenceTransformer(model, **model_kwargs)
        detected = self._model.get_sentence_embedding_dimension()
        self.dimensions = int(
            dimensions or detected or _lookup_dimension(LOCAL_DIMENSIONS, model, 384)
        )

    def _encode(self, texts: list[str]) -> np.ndarray:
        vectors = self._model.encode(texts, convert_to_numpy=True, show_progress_bar=False)
        return np.asarray(vectors, dtype="float32").reshape(len(texts), -1)

    async def embed(self, text: str) -> np.ndarray:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self.dimensions), dtype="float32")
        return await asyncio.to_thread(self._encode, list(texts))


def create_embedding_provider(config: Config) -> Optional[EmbeddingProvider]:
    """Build the configured provider, or None when embeddings are off or misconfigured."""
    if not config.embeddings_enabled:
        return None

    provider = (config.embeddings_provider or "").lower()
    model = config.embeddings_model
    dimension = config.embeddings_dimension
    timeout = config.embeddings_timeout_seconds

    try:
        if provider == "ollama":
            return OllamaEmbeddingProvider(
                model=model or "nomic-embed-text",
                base_url=config.embeddings_base_url or config.ollama_url,
                dimensions=dimension,
                timeout=timeout,
            )
        if provider == "openai":
            api_key = config.embeddings_api_key
            if not api_key:
                logger.warning(
                    "embeddings.provider is 'openai' but no API key is configured; "
                    "semantic search disabled"
                )
                return None
            return OpenAIEmbeddingProvider(
                api_key=api_key,
                model=model or "text-embedding-3-small",
                base_url=config.embeddings_base_url or DEFAULT_OPENAI_URL,
                dimensions=dimension,
                timeout=timeout,
            )
        if provider in {"local", "sentence-transformers", "sentence_transformers"}:
            return SentenceTransformerProvider(
                model=model or "all-MiniLM-L6-v2",
                dimensions=dimension,
                **config.embeddings_kwargs,
            )
    except ImportError:
        logger.warning(
            "sentence-transformers is not installed; install with "
            "`pip install noteindex[local]` or pick another provider"
        )
        return None
    except (ValueError, OSError):
        logger.exception(
            "Failed to initialize embedding provider (provider=%s, model=%s)",
            provider,
            model,
        )
        return None

    logger.info(
        "Embeddings enabled but provider %r is not recognised; "
        "semantic search will remain disabled until configured.",
        provider or None,
    )
    return None


async def probe_provider(provider: EmbeddingProvider) -> bool:
    """True when a test embedding comes back with the declared width."""
    try:
        vector = await provider.embed(PROBE_TEXT)
    except (httpx.HTTPError, EmbeddingError, ValueError, RuntimeError) as exc:
        logger.warning("Embedding provider %s failed probe: %s", provider.name, exc)
        return False
    ok = len(vector) == provider.dimensions
    if not ok:
        logger.warning(
            "Embedding provider %s returned %d dimensions, expected %d",
            provider.name,
            len(vector),
            provider.dimensions,
        )
    return ok
