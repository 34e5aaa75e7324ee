"""Search mode selection and the hybrid and advanced pipelines.

A requested mode is resolved against probed capabilities through a total
demotion table, so every (requested, available) pair maps to exactly one
mode and ``fast`` is always reachable.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..config import Config
from ..models import SearchResult
from .expansion import ExpandedQuery, QueryExpansionService
from .fusion import RankedSource, deduplicate_results, weighted_rrf
from .reranker import RerankerService
from .retrieval import LexicalRetriever, SearchScope, VectorRetriever

logger = logging.getLogger(__name__)

ProgressFn = Callable[[str, int, int], None]

_HIGHLIGHT = re.compile(r"</?mark>")


class SearchMode(str, Enum):
    FAST = "fast"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"
    ADVANCED = "advanced"


@dataclass(frozen=True)
class Capabilities:
    fts: bool = True
    semantic: bool = False
    prf: bool = True
    llm_expansion: bool = False
    reranking: bool = False


def resolve_mode(requested: SearchMode | str, caps: Capabilities) -> SearchMode:
    """Demote ``requested`` to the best mode the capabilities allow."""
    mode = SearchMode(requested)
    if mode is SearchMode.ADVANCED:
        if caps.reranking:
            return SearchMode.ADVANCED
        return SearchMode.HYBRID if caps.semantic else SearchMode.FAST
    if mode in (SearchMode.HYBRID, SearchMode.SEMANTIC):
        return mode if caps.semantic else SearchMode.FAST
    return SearchMode.FAST


@dataclass
class SearchSettings:
    default_mode: str = "hybrid"
    default_limit: int = 20
    fts_weight: float = 0.5
    vector_weight: float = 0.5
    k: int = 60
    use_position_bonus: bool = True
    expansion_enabled: bool = True
    expansion_method: str = "prf"
    prf_top_k: int = 5
    prf_term_count: int = 5
    max_variants: int = 3
    reranking_enabled: bool = False
    rerank_top_k: int = 30
    use_position_blending: bool = True

    @classmethod
    def from_config(cls, config: Config) -> "SearchSettings":
        return cls(
            default_mode=config.search_default_mode,
            default_limit=config.search_default_limit,
            fts_weight=config.hybrid_fts_weight,
            vector_weight=config.hybrid_vector_weight,
            k=config.hybrid_k,
            use_position_bonus=config.hybrid_use_position_bonus,
            expansion_enabled=config.expansion_enabled,
            expansion_method=config.expansion_method,
            prf_top_k=config.expansion_prf_top_k,
            prf_term_count=config.expansion_prf_term_count,
            max_variants=config.expansion_max_variants,
            reranking_enabled=config.reranking_enabled,
            rerank_top_k=config.reranking_top_k,
            use_position_blending=config.reranking_use_position_blending,
        )


class SearchOrchestrator:
    def __init__(
        self,
        lexical: LexicalRetriever,
        vector: VectorRetriever,
        expansion: Optional[QueryExpansionService] = None,
        reranker: Optional[RerankerService] = None,
        settings: Optional[SearchSettings] = None,
    ):
        self.lexical = lexical
        self.vector = vector
        self.expansion = expansion
        self.reranker = reranker
        self.settings = settings or SearchSettings()

    async def probe_capabilities(self) -> Capabilities:
        s = self.settings
        llm = False
        if (
            self.expansion is not None
            and s.expansion_enabled
            and s.expansion_method in ("llm", "both")
        ):
            llm = await self.expansion.check_ollama_available()
        # availability only; whether step 4 runs is decided per search
        reranking = False
        if self.reranker is not None:
            reranking = await self.reranker.is_available()
        return Capabilities(
            fts=True,
            semantic=self.vector.available,
            prf=True,
            llm_expansion=llm,
            reranking=reranking,
        )

    async def effective_mode(self, requested: SearchMode | str | None = None) -> SearchMode:
        caps = await self.probe_capabilities()
        return resolve_mode(requested or self.settings.default_mode, caps)

    async def search(
        self,
        query: str,
        mode: SearchMode | str | None = None,
        limit: Optional[int] = None,
        scope: Optional[SearchScope] = None,
        *,
        expand: Optional[bool] = None,
        rerank: Optional[bool] = None,
        expansion_method: Optional[str] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> list[SearchResult]:
        _, results = await self.search_with_mode(
            query,
            mode,
            limit,
            scope,
            expand=expand,
            rerank=rerank,
            expansion_method=expansion_method,
            on_progress=on_progress,
        )
        return results

    async def search_with_mode(
        self,
        query: str,
        mode: SearchMode | str | None = None,
        limit: Optional[int] = None,
        scope: Optional[SearchScope] = None,
        *,
        expand: Optional[bool] = None,
        rerank: Optional[bool] = None,
        expansion_method: Optional[str] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> tuple[SearchMode, list[SearchResult]]:
        """Resolve the mode once and return it with the results it produced."""
        requested = SearchMode(mode or self.settings.default_mode)
        resolved = await self.effective_mode(requested)
        limit = limit or self.settings.default_limit
        if resolved is not requested:
            logger.debug("Search mode %s demoted to %s", requested.value, resolved.value)

        if resolved is SearchMode.SEMANTIC:
            results = await self.search_semantic(query, limit, scope)
        elif resolved is SearchMode.HYBRID:
            results = await self.search_hybrid(query, limit, scope)
        elif resolved is SearchMode.ADVANCED:
            results = await self.search_advanced(
                query,
                limit,
                scope,
                expand=expand,
                rerank=rerank,
                expansion_method=expansion_method,
                on_progress=on_progress,
            )
        else:
            results = await self.search_fast(query, limit, scope)
        return resolved, results

    async def search_fast(
        self, query: str, limit: int, scope: Optional[SearchScope] = None
    ) -> list[SearchResult]:
        return await self.lexical.search(query, limit, scope)

    async def search_semantic(
        self, query: str, limit: int, scope: Optional[SearchScope] = None
    ) -> list[SearchResult]:
        if not self.vector.available:
            return await self.search_fast(query, limit, scope)
        return await self.vector.search(query, limit, scope)

    async def search_hybrid(
        self, query: str, limit: int, scope: Optional[SearchScope] = None
    ) -> list[SearchResult]:
        """Lexical and vector in parallel at 2x limit, fused by rank."""
        fts_results, vector_results = await asyncio.gather(
            self.lexical.search(query, limit * 2, scope),
            self.vector.search(query, limit * 2, scope),
        )
        if not vector_results:
            return fts_results[:limit]

        fused = weighted_rrf(
            [
                RankedSource(fts_results, self.settings.fts_weight, "fts"),
                RankedSource(vector_results, self.settings.vector_weight, "vector"),
            ],
            k=0,
        )
        return [r.with_updates(query_source="original") for r in fused[:limit]]

    async def _expand(
        self, query: str, method: str, scope: Optional[SearchScope]
    ) -> list[ExpandedQuery]:
        s = self.settings
        if self.expansion is None:
            return [ExpandedQuery(query, 2.0, "original")]
        top_contents: list[str] = []
        if method in ("prf", "both"):
            top = await self.lexical.search(query, s.prf_top_k, scope)
            top_contents = [_HIGHLIGHT.sub("", r.preview) for r in top]
        return await self.expansion.expand(
            query,
            top_contents,
            method=method,
            term_count=s.prf_term_count,
            max_variants=s.max_variants,
        )

    async def search_advanced(
        self,
        query: str,
        limit: int,
        scope: Optional[SearchScope] = None,
        *,
        expand: Optional[bool] = None,
        rerank: Optional[bool] = None,
        expansion_method: Optional[str] = None,
        on_progress: Optional[ProgressFn] = None,
    ) -> list[SearchResult]:
        s = self.settings
        do_expand = s.expansion_enabled if expand is None else expand
        do_rerank = s.reranking_enabled if rerank is None else rerank
        method = expansion_method or s.expansion_method

        def progress(step: str, n: int) -> None:
            if on_progress is not None:
                on_progress(step, n, 4)

        progress("Initializing", 0)
        variants = [ExpandedQuery(query, 2.0, "original")]
        if do_expand:
            progress("Expanding query", 1)
            variants = await self._expand(query, method, scope)
            logger.debug("Query expansion produced %d variants", len(variants))

        progress("Retrieving results", 2)
        retrieved = await asyncio.gather(
            *(
                asyncio.gather(
                    self.lexical.search(v.query, limit * 2, scope),
                    self.vector.search(v.query, limit * 2, scope),
                )
                for v in variants
            )
        )
        sources: list[RankedSource] = []
        for variant, (fts_results, vector_results) in zip(variants, retrieved):
            sources.append(
                RankedSource(
                    [r.with_updates(query_source=variant.source) for r in fts_results],
                    s.fts_weight * variant.weight,
                    "fts",
                    variant.source,
                )
            )
            if vector_results:
                sources.append(
                    RankedSource(
                        [r.with_updates(query_source=variant.source) for r in vector_results],
                        s.vector_weight * variant.weight,
                        "vector",
                        variant.source,
                    )
                )

        progress("Fusing results", 3)
        fused = deduplicate_results(
            weighted_rrf(
                sources,
                k=s.k,
                apply_top_bonus=s.use_position_bonus,
                normalize_first=True,
                original_query_multiplier=2.0,
            )
        )

        if do_rerank and self.reranker is not None:
            progress("Reranking", 4)
            fused = await self.reranker.rerank(
                query,
                fused,
                top_k=s.rerank_top_k,
                use_position_blending=s.use_position_blending,
            )
        return fused[:limit]
