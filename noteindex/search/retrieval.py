"""Lexical and vector retrieval primitives.

Both retrievers share one result shape and one scope filter, and neither
raises to the caller: a broken query or an unavailable backend yields an
empty list.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import numpy as np

from ..models import SearchResult
from .cache import SearchCache

if TYPE_CHECKING:
    from ..embeddings import EmbeddingProvider
    from ..storage import MetadataStore, VectorIndex

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200
SCOPE_TYPES = ("all", "directory", "project")


@dataclass(frozen=True)
class SearchScope:
    """Restricts results to files under ``path`` (directory and project scopes)."""

    type: str = "all"
    path: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type not in SCOPE_TYPES:
            raise ValueError(f"Unknown search scope: {self.type}")

    @property
    def path_prefix(self) -> Optional[str]:
        if self.type == "all" or not self.path:
            return None
        root = os.path.abspath(os.path.expanduser(self.path))
        return root.rstrip(os.sep) + os.sep


def _prefix(scope: Optional[SearchScope]) -> Optional[str]:
    return scope.path_prefix if scope is not None else None


def quote_fts_query(query: str) -> str:
    """Turn free text into FTS5 phrase terms so operators are taken literally."""
    terms = [t.replace('"', '""') for t in query.split()]
    return " ".join(f'"{t}"' for t in terms if t)


class LexicalRetriever:
    """FTS5 search ranked by BM25; one hit per file."""

    def __init__(self, store: "MetadataStore"):
        self.store = store

    async def search(
        self, query: str, limit: int = 100, scope: Optional[SearchScope] = None
    ) -> list[SearchResult]:
        query = query.strip()
        if not query or limit <= 0:
            return []
        prefix = _prefix(scope)
        try:
            rows = self.store.search_fts(query, limit, prefix)
        except sqlite3.OperationalError as exc:
            quoted = quote_fts_query(query)
            logger.debug("FTS query %r rejected (%s); retrying as %r", query, exc, quoted)
            try:
                rows = self.store.search_fts(quoted, limit, prefix)
            except sqlite3.OperationalError:
                logger.warning("Full-text search failed for %r", query, exc_info=True)
                return []
        return [
            SearchResult(
                type="content",
                file_path=row["file_path"],
                line_number=1,
                preview=row["snippet"] or "",
                score=abs(float(row["score"])),
                title=row["title"],
                retrieval_method="fts",
            )
            for row in rows
        ]


class VectorRetriever:
    """Cosine nearest-neighbour search over embedded chunks."""

    def __init__(
        self,
        vectors: "VectorIndex",
        provider: Optional["EmbeddingProvider"] = None,
        cache: Optional[SearchCache] = None,
    ):
        self.vectors = vectors
        self.provider = provider
        self.cache = cache

    @property
    def available(self) -> bool:
        return self.provider is not None and self.vectors.supported

    async def embed_query(self, query: str) -> np.ndarray:
        provider = self.provider
        key = ("embedding", provider.name, provider.dimensions, query)
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached
        vector = await provider.embed(query)
        if self.cache is not None:
            self.cache.set(key, vector)
        return vector

    async def search(
        self, query: str, limit: int = 20, scope: Optional[SearchScope] = None
    ) -> list[SearchResult]:
        query = query.strip()
        if not query or limit <= 0 or not self.available:
            return []
        try:
            vector = await self.embed_query(query)
            rows = self.vectors.search(vector, limit, _prefix(scope))
        except Exception as exc:
            # Provider or LanceDB failure degrades to no semantic results
            logger.warning("Vector search failed for %r: %s", query, exc)
            logger.debug("Vector search failure detail", exc_info=True)
            return []

        results = []
        for row in rows:
            distance = float(row.get("_distance", 1.0))
            content = str(row.get("content") or "")
            results.append(
                SearchResult(
                    type="semantic",
                    file_path=row["file_path"],
                    line_number=int(row.get("line_start") or 1),
                    preview=content[:PREVIEW_CHARS],
                    score=1.0 - distance,
                    distance=distance,
                    retrieval_method="vector",
                )
            )
        results.sort(key=lambda r: r.distance)
        return results
