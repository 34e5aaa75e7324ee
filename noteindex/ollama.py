"""Minimal async Ollama client used by query expansion and reranking."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .config import DEFAULT_OLLAMA_URL

logger = logging.getLogger(__name__)


class OllamaClient:
    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def list_models(self) -> list[str]:
        """Model names from ``/api/tags``; raises ``httpx.HTTPError`` when unreachable."""
        resp = await self._http().get("/api/tags", timeout=5.0)
        resp.raise_for_status()
        return [m.get("name", "") for m in resp.json().get("models", [])]

    async def has_model(self, model: str) -> bool:
        try:
            names = await self.list_models()
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Ollama not reachable at %s: %s", self.base_url, exc)
            return False
        return any(n == model or n.startswith(model + ":") for n in names)

    async def generate(
        self, model: str, prompt: str, options: Optional[dict[str, Any]] = None
    ) -> str:
        """Non-streaming completion; returns the ``response`` text."""
        payload: dict[str, Any] = {"model": model, "prompt": prompt, "stream": False}
        if options:
            payload["options"] = options
        resp = await self._http().post("/api/generate", json=payload)
        resp.raise_for_status()
        return str(resp.json().get("response", ""))

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
