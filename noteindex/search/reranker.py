"""LLM relevance reranking over Ollama with position-aware score blending."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional, Sequence

import httpx

from ..models import SearchResult
from ..ollama import OllamaClient
from .fusion import blend_scores

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
DOCUMENT_CHARS = 1000
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")

SCORE_PROMPT = """Rate the relevance of this document to the search query on a scale of 0-10.
0 = completely irrelevant
5 = somewhat relevant
10 = highly relevant

Query: "{query}"

Document:
{document}

Return ONLY a single number from 0 to 10, nothing else."""


class RerankerService:
    def __init__(
        self,
        ollama: Optional[OllamaClient] = None,
        model: str = "qwen3:0.6b",
        batch_size: int = 5,
    ):
        self.ollama = ollama or OllamaClient()
        self.model = model
        self.batch_size = max(1, batch_size)
        self._available: Optional[bool] = None

    async def is_available(self) -> bool:
        """True when the scoring model is pulled in Ollama; probed once."""
        if self._available is None:
            self._available = await self.ollama.has_model(self.model)
            if not self._available:
                logger.debug("Reranker model %r not available in Ollama", self.model)
        return self._available

    def reset_availability(self) -> None:
        self._available = None

    async def score_document(self, query: str, document: str) -> float:
        """Relevance in 0..1; neutral 0.5 when the model fails or answers nonsense."""
        prompt = SCORE_PROMPT.format(query=query, document=document[:DOCUMENT_CHARS])
        try:
            text = await self.ollama.generate(
                self.model, prompt, options={"temperature": 0.1, "num_predict": 16}
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Reranker scoring failed: %s", exc)
            return NEUTRAL_SCORE
        match = _NUMBER.search(text.strip())
        if not match:
            logger.debug("Reranker returned non-numeric score: %r", text)
            return NEUTRAL_SCORE
        return max(0.0, min(1.0, float(match.group(0)) / 10.0))

    async def score_documents(self, query: str, documents: Sequence[str]) -> list[float]:
        scores: list[float] = []
        for start in range(0, len(documents), self.batch_size):
            batch = documents[start:start + self.batch_size]
            scores.extend(
                await asyncio.gather(*(self.score_document(query, doc) for doc in batch))
            )
        return scores

    async def rerank(
        self,
        query: str,
        results: Sequence[SearchResult],
        top_k: int = 30,
        use_position_blending: bool = True,
    ) -> list[SearchResult]:
        """Rescore the first ``top_k`` results; the rest keep their order after them."""
        if not await self.is_available():
            return [r.with_updates(retrieval_rank=i) for i, r in enumerate(results)]

        candidates = list(results[:top_k])
        documents = [r.preview or r.title or "" for r in candidates]
        logger.debug("Reranking %d candidates", len(candidates))
        reranker_scores = await self.score_documents(query, documents)

        # fused scores are tiny RRF sums; scale to 0..1 before blending
        top_score = max((r.score for r in candidates), default=0.0)
        reranked = []
        for idx, (result, reranker_score) in enumerate(zip(candidates, reranker_scores)):
            retrieval_score = result.score / top_score if top_score > 0 else 0.0
            if use_position_blending:
                blended = blend_scores(retrieval_score, reranker_score, idx + 1)
            else:
                blended = (retrieval_score + reranker_score) / 2
            reranked.append(
                result.with_updates(
                    score=blended, reranker_score=reranker_score, retrieval_rank=idx
                )
            )
        reranked.sort(key=lambda r: r.score, reverse=True)

        remaining = [
            r.with_updates(retrieval_rank=top_k + i) for i, r in enumerate(results[top_k:])
        ]
        return reranked + remaining
