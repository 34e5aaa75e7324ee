"""Query expansion by pseudo-relevance feedback and LLM paraphrase.

Every expansion result starts with the original query (weight 2.0); PRF and
LLM variants follow at weight 1.0. Any LLM failure leaves just the original.
"""

from __future__ import annotations

import json
import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Optional

import httpx

from ..ollama import OllamaClient
from .cache import SearchCache

logger = logging.getLogger(__name__)

ORIGINAL_WEIGHT = 2.0
VARIANT_WEIGHT = 1.0

STOPWORDS = frozenset(
    """
    the a an and or but in on at to for of with by from as is was are were been
    be have has had do does did will would could should may might must shall can
    need this that these those it its they them their we our you your he she him
    her what which who whom when where why how all each every both few more most
    other some such no nor not only own same so than too very just also now here
    there
    """.split()
)

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")
_JSON_ARRAY = re.compile(r"\[[\s\S]*?\]")

LLM_PROMPT = """Generate {n} alternative search queries for the following query. \
Each alternative should capture the same intent but use different words or \
phrasings. Consider synonyms, related concepts, and different perspectives.

Original query: "{query}"

Return ONLY a JSON array of strings, no explanation. Example format:
["alternative query 1", "alternative query 2", "alternative query 3"]"""


@dataclass(frozen=True)
class ExpandedQuery:
    query: str
    weight: float
    source: str  # "original" | "prf" | "llm"


def _original(query: str) -> ExpandedQuery:
    return ExpandedQuery(query, ORIGINAL_WEIGHT, "original")


def extract_key_terms(texts: Iterable[str], query: str, max_terms: int = 5) -> list[str]:
    """Most frequent non-stopword tokens in ``texts`` that are not already in the query."""
    query_terms = {t for t in query.lower().split() if len(t) > 2}
    freq: Counter[str] = Counter()
    for text in texts:
        for token in _TOKEN_SPLIT.split(text.lower()):
            if len(token) > 2 and token not in STOPWORDS and token not in query_terms:
                freq[token] += 1
    # most_common keeps first-seen order among equal counts
    return [term for term, _ in freq.most_common(max_terms)]


class QueryExpansionService:
    def __init__(
        self,
        ollama: Optional[OllamaClient] = None,
        llm_model: str = "qwen3:1.7b",
        cache: Optional[SearchCache] = None,
    ):
        self.ollama = ollama or OllamaClient()
        self.llm_model = llm_model
        self.cache = cache
        self._ollama_available: Optional[bool] = None

    async def check_ollama_available(self) -> bool:
        """Probe ``/api/tags`` once; the answer is cached for the service lifetime."""
        if self._ollama_available is None:
            try:
                await self.ollama.list_models()
                self._ollama_available = True
            except (httpx.HTTPError, ValueError) as exc:
                logger.debug("LLM query expansion unavailable: %s", exc)
                self._ollama_available = False
        return self._ollama_available

    async def is_llm_model_available(self) -> bool:
        return await self.ollama.has_model(self.llm_model)

    def expand_prf(
        self, query: str, top_contents: list[str], term_count: int = 5
    ) -> list[ExpandedQuery]:
        if not top_contents:
            return [_original(query)]
        terms = extract_key_terms(top_contents, query, term_count)
        if not terms:
            return [_original(query)]
        return [
            _original(query),
            ExpandedQuery(f"{query} {' '.join(terms)}", VARIANT_WEIGHT, "prf"),
        ]

    async def expand_llm(self, query: str, max_variants: int = 3) -> list[ExpandedQuery]:
        results = [_original(query)]
        if not await self.check_ollama_available():
            return results

        key = ("llm-expansion", self.llm_model, max_variants, query)
        variants = self.cache.get(key) if self.cache is not None else None
        if variants is None:
            try:
                variants = await self._generate_variants(query, max_variants)
            except (httpx.HTTPError, ValueError) as exc:
                logger.debug("LLM query expansion failed: %s", exc)
                return results
            if self.cache is not None:
                self.cache.set(key, variants)

        results.extend(ExpandedQuery(v, VARIANT_WEIGHT, "llm") for v in variants)
        return results

    async def _generate_variants(self, query: str, max_variants: int) -> list[str]:
        text = await self.ollama.generate(
            self.llm_model,
            LLM_PROMPT.format(n=max_variants, query=query),
            options={"temperature": 0.7, "num_predict": 256},
        )
        match = _JSON_ARRAY.search(text)
        if not match:
            return []
        parsed = json.loads(match.group(0))
        if not isinstance(parsed, list):
            return []
        return [
            v for v in parsed[:max_variants]
            if isinstance(v, str) and v.strip() and v != query
        ]

    async def expand_both(
        self,
        query: str,
        top_contents: list[str],
        term_count: int = 5,
        max_variants: int = 3,
    ) -> list[ExpandedQuery]:
        results = [_original(query)]
        results.extend(
            e for e in self.expand_prf(query, top_contents, term_count) if e.source != "original"
        )
        results.extend(
            e for e in await self.expand_llm(query, max_variants) if e.source != "original"
        )
        return results

    async def expand(
        self,
        query: str,
        top_contents: list[str],
        method: str = "prf",
        term_count: int = 5,
        max_variants: int = 3,
    ) -> list[ExpandedQuery]:
        if method == "prf":
            return self.expand_prf(query, top_contents, term_count)
        if method == "llm":
            return await self.expand_llm(query, max_variants)
        if method == "both":
            return await self.expand_both(query, top_contents, term_count, max_variants)
        return [_original(query)]
