# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Incremental note indexer.

NoteIndex owns the SQLite store, the LanceDB vector index, the content
extractor, the embedding provider and the embedding queue. Each file is
indexed purge-then-insert; lexical records land immediately while chunk
embeddings are computed inline (foreground) or queued (background passes).
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import AsyncIterator, Callable, Iterable, Optional, Sequence

from .analysis.chunking import chunk_text
from .analysis.extraction import (ContentExtractor, DefaultExtractor,
                                  ParsedDocument, extract_hashtags)
from .analysis.filetypes import (classify_path, is_binary_content,
                                 is_supported, needs_binary_check)
from .cancellation import CancellationContext, OperationCancelled, is_cancelled
from .config import DEFAULT_EMBEDDING_DIMENSION, Config, get_config
from .embedding_queue import EmbeddingQueue
from .embeddings import (EmbeddingProvider, create_embedding_provider,
                         provider_identity)
from .models import (DbStats, FileRecord, HeadingRecord, LinkRecord,
                     RebuildResult, SchemaInfo, SearchResult,
                     SourceBlockRecord, VerifyResult)
from .ollama import OllamaClient
from .search import (LexicalRetriever, QueryExpansionService, RerankerService,
                     SearchCache, SearchMode, SearchOrchestrator, SearchScope,
                     SearchSettings, VectorRetriever)
from .storage import MetadataStore, VectorIndex

logger = logging.getLogger(__name__)

# Rough bytes-per-line used to reject huge files before reading them
BYTES_PER_LINE_ESTIMATE = 80
LINE_ESTIMATE_SLACK = 1.5
DIRS_PER_YIELD = 20
DEFAULT_EXCLUDES = ("node_modules", "__pycache__")
DIMENSION_META_KEY = "embedding_dimensions"
PROVIDER_META_KEY = "embedding_provider"
RULES_META_KEY = "index_rules"

_GLOB_CHARS = re.compile(r"[*?\[]")

ProgressFn = Callable[[int, int, str], None]
PhaseProgressFn = Callable[[str, int, int], None]


def normalize_path(path: str | Path) -> str:
    return os.path.abspath(os.path.expanduser(str(path)))


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def build_heading_records(
    path: str, doc: ParsedDocument, extractor: ContentExtractor
) -> list[HeadingRecord]:
    """Heading rows in document order with tags inherited from shallower ancestors."""
    records: list[HeadingRecord] = []
    stack: list[tuple[int, list[str]]] = []
    for h in extractor.flatten_headings(doc):
        while stack and stack[-1][0] >= h.level:
            stack.pop()
        inherited = _unique(tag for _, tags in stack for tag in tags)
        stack.append((h.level, list(h.tags)))
        records.append(
            HeadingRecord(
                file_path=path,
                level=h.level,
                title=h.title,
                line_number=h.line_number,
                begin_pos=h.begin_pos,
                todo_state=h.todo_state,
                priority=h.priority,
                tags=list(h.tags),
                inherited_tags=inherited,
                properties=dict(h.properties),
                scheduled=h.scheduled,
                deadline=h.deadline,
                closed=h.closed,
                cell_index=h.cell_index,
            )
        )
    return records


class NoteIndex:
    """Index of org, Markdown and notebook files with lexical and vector search."""

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        embedding_provider: Optional[EmbeddingProvider] = None,
        extractor: Optional[ContentExtractor] = None,
    ):
        self.config = config or get_config()
        self.config.index_path.mkdir(parents=True, exist_ok=True)
        self.store = MetadataStore(self.config.db_path)
        self.extractor = extractor or DefaultExtractor()

        # If embeddings are enabled via config but no provider was passed,
        # build one from config.
        if embedding_provider is None and self.config.embeddings_enabled:
            embedding_provider = create_embedding_provider(self.config)
        self.embedding_provider = embedding_provider

        stored_dim = self._stored_dimension()
        if embedding_provider is not None:
            self.dimension = int(embedding_provider.dimensions)
        else:
            self.dimension = (
                stored_dim or self.config.embeddings_dimension or DEFAULT_EMBEDDING_DIMENSION
            )
        self.vectors = VectorIndex(self.config.lance_dir, self.dimension)
        stored_identity = self.store.get_meta(PROVIDER_META_KEY)
        identity = (
            provider_identity(embedding_provider) if embedding_provider is not None else None
        )
        if (stored_dim is not None and stored_dim != self.dimension) or (
            identity is not None and stored_identity is not None and identity != stored_identity
        ):
            logger.warning(
                "Embedding provider changed from %s (dim %s) to %s (dim %s); "
                "stored vectors discarded",
                stored_identity,
                stored_dim,
                identity,
                self.dimension,
            )
            self.vectors.reset(self.dimension)
            self.store.clear_chunks()
        self.store.set_meta(DIMENSION_META_KEY, str(self.dimension))
        if identity is not None:
            self.store.set_meta(PROVIDER_META_KEY, identity)

        self.query_cache: Optional[SearchCache] = None
        if self.config.cache_enabled:
            self.query_cache = SearchCache(
                self.config.cache_max_entries, self.config.cache_ttl_seconds
            )

        self.embedding_queue = EmbeddingQueue(self)
        self.scope = SearchScope()
        self.lexical = LexicalRetriever(self.store)
        self.vector_retriever = VectorRetriever(
            self.vectors, embedding_provider, self.query_cache
        )
        self.ollama = OllamaClient(
            self.config.ollama_url, timeout=self.config.reranking_timeout_seconds
        )
        self.orchestrator = SearchOrchestrator(
            self.lexical,
            self.vector_retriever,
            QueryExpansionService(
                self.ollama, self.config.expansion_llm_model, self.query_cache
            ),
            RerankerService(
                self.ollama, self.config.reranking_model, self.config.reranking_batch_size
            ),
            SearchSettings.from_config(self.config),
        )

        self._log_embedding_startup()

    def _stored_dimension(self) -> Optional[int]:
        raw = self.store.get_meta(DIMENSION_META_KEY)
        try:
            return int(raw) if raw is not None else None
        except ValueError:
            logger.warning("Ignoring malformed stored embedding dimension %r", raw)
            return None

    def _log_embedding_startup(self) -> None:
        if self.embedding_provider is None:
            logger.info("No embedding provider configured; semantic search disabled")
        elif not self.vectors.supported:
            logger.warning(
                "Embedding provider %s configured but vector index unavailable: %s",
                self.embedding_provider.name,
                self.vectors.error,
            )
        else:
            logger.info(
                "Semantic search enabled: provider=%s dim=%s",
                self.embedding_provider.name,
                self.dimension,
            )

    # --- rules ---

    def _rules(self) -> dict:
        rules = self.store.get_meta_json(RULES_META_KEY, {}) or {}
        return rules if isinstance(rules, dict) else {}

    @property
    def exclude_patterns(self) -> list[str]:
        extra = [str(p) for p in self._rules().get("exclude", [])]
        return _unique([*DEFAULT_EXCLUDES, *self.config.exclude_patterns, *extra])

    @property
    def include_directories(self) -> list[str]:
        extra = [str(p) for p in self._rules().get("include", [])]
        return _unique([*self.config.include_directories, *extra])

    def set_rules(self, include: Sequence[str], exclude: Sequence[str]) -> None:
        """Persist extra include directories and exclude patterns."""
        self.store.set_meta_json(
            RULES_META_KEY, {"include": list(include), "exclude": list(exclude)}
        )

    def should_ignore(self, path: str | Path) -> bool:
        """Match ``path`` against exclude globs, bare names and literal paths."""
        path = normalize_path(path)
        name = os.path.basename(path)
        for pattern in self.exclude_patterns:
            expanded = os.path.expanduser(pattern)
            if _GLOB_CHARS.search(expanded):
                if fnmatch(path, expanded) or fnmatch(name, expanded):
                    return True
            elif os.path.isabs(expanded):
                literal = expanded.rstrip(os.sep)
                if path == literal or path.startswith(literal + os.sep):
                    return True
            elif expanded in path.split(os.sep):
                return True
        return False

    # --- capabilities / status ---

    def is_vector_search_available(self) -> bool:
        return self.embedding_provider is not None and self.vectors.supported

    def get_vector_search_status(self) -> dict:
        provider = self.embedding_provider
        return {
            "available": self.is_vector_search_available(),
            "supported": self.vectors.supported,
            "error": self.vectors.error,
            "provider": provider.name if provider is not None else None,
            "dimension": self.dimension,
        }

    def get_schema_info(self) -> SchemaInfo:
        return self.store.schema_info()

    def get_stats(self) -> DbStats:
        counts = self.store.counts()
        return DbStats(
            files=counts["files"],
            headings=counts["headings"],
            blocks=counts["blocks"],
            links=counts["links"],
            chunks=counts["chunks"],
            has_embeddings=counts["chunks"] > 0,
            vector_search_supported=self.vectors.supported,
            vector_search_error=self.vectors.error,
            last_indexed=self.store.last_indexed(),
            by_type=self.store.counts_by_type(),
            embedding_queue=len(self.embedding_queue),
        )

    def set_embedding_provider(self, provider: Optional[EmbeddingProvider]) -> None:
        """Swap providers at runtime; a new model or width invalidates stored vectors."""
        self.embedding_provider = provider
        self.vector_retriever.provider = provider
        if self.query_cache is not None:
            self.query_cache.clear()
        if provider is None:
            return
        identity = provider_identity(provider)
        previous = self.store.get_meta(PROVIDER_META_KEY)
        if identity != previous or int(provider.dimensions) != self.dimension:
            logger.warning(
                "Embedding provider changed from %s to %s; clearing vectors", previous, identity
            )
            self.embedding_queue.cancel()
            self.dimension = int(provider.dimensions)
            self.vectors.reset(self.dimension)
            self.store.clear_chunks()
            self.store.set_meta(DIMENSION_META_KEY, str(self.dimension))
        self.store.set_meta(PROVIDER_META_KEY, identity)

    # --- staleness ---

    def needs_reindex(self, path: str | Path) -> bool:
        """True when the file is unknown or its disk mtime is newer than the stored one."""
        path = normalize_path(path)
        stored = self.store.get_file_mtime(path)
        if stored is None:
            return True
        try:
            return os.stat(path).st_mtime * 1000 > stored
        except OSError:
            return True

    def validate_freshness(self, paths: Sequence[str]) -> list[str]:
        """Paths that are deleted, unindexed or modified since their last index."""
        if not paths:
            return []
        normalized = [normalize_path(p) for p in paths]
        stored = self.store.get_mtimes(normalized)
        stale = []
        for path in normalized:
            try:
                mtime = os.stat(path).st_mtime * 1000
            except OSError:
                stale.append(path)
                continue
            if path not in stored or mtime > stored[path]:
                stale.append(path)
        return stale

    # --- indexing ---

    def _read_text(self, path: str) -> tuple[str, str]:
        raw = Path(path).read_bytes()
        return raw.decode("utf-8", errors="replace"), hashlib.md5(raw).hexdigest()

    async def index_file(self, path: str | Path, *, queue_embeddings: bool = False) -> bool:
        """
        Parse and store one file.

        Args:
            path: File to index
            queue_embeddings: Defer chunk embeddings to the background queue

        Returns:
            True if the file was indexed, False if skipped or on error
        """
        path = normalize_path(path)
        try:
            file_type = classify_path(path)
            if file_type is None:
                logger.debug("Skipping unsupported file %s", path)
                return False

            st = os.stat(path)
            max_bytes = self.config.max_file_size_mb * 1024 * 1024
            if st.st_size > max_bytes:
                logger.info(
                    "Skipping %s: %.1f MB exceeds max_file_size_mb=%s",
                    path,
                    st.st_size / (1024 * 1024),
                    self.config.max_file_size_mb,
                )
                return False
            max_lines = self.config.max_file_lines
            if st.st_size / BYTES_PER_LINE_ESTIMATE > max_lines * LINE_ESTIMATE_SLACK:
                logger.info("Skipping %s: estimated line count over %d", path, max_lines)
                return False

            content, content_hash = self._read_text(path)
            line_count = content.count("\n") + 1
            if line_count > max_lines:
                logger.info("Skipping %s: %d lines exceeds %d", path, line_count, max_lines)
                return False
            if needs_binary_check(path) and file_type != "ipynb" and is_binary_content(content):
                logger.info("Skipping binary file %s", path)
                return False

            doc = self.extractor.parse(content, file_type)
            headings = build_heading_records(path, doc, self.extractor)
            blocks = [
                SourceBlockRecord(
                    file_path=path,
                    language=b.language,
                    content=b.content,
                    line_number=b.line_number,
                    headers=dict(b.headers),
                    cell_index=b.cell_index,
                )
                for b in doc.source_blocks
            ]
            links = [
                LinkRecord(
                    file_path=path,
                    link_type=link.link_type,
                    target=link.target,
                    line_number=link.line_number,
                    description=link.description,
                )
                for link in doc.links
            ]
            project = self.store.get_project_for_file(path)

            file_id = self.store.replace_file(
                path=path,
                file_type=file_type,
                mtime=st.st_mtime * 1000,
                content_hash=content_hash,
                size=st.st_size,
                title=os.path.basename(path),
                content=doc.text,
                headings=headings,
                blocks=blocks,
                links=links,
                hashtags=extract_hashtags(doc.text),
                project_id=project.id if project else None,
            )
            self._delete_vectors(path)

            if self.is_vector_search_available():
                if queue_embeddings:
                    self.embedding_queue.enqueue(path)
                else:
                    await self.create_chunks(file_id, path, doc.text)

            logger.debug(
                "Indexed %s (%d headings, %d blocks, %d links)",
                path,
                len(headings),
                len(blocks),
                len(links),
            )
            return True
        except Exception:
            logger.exception("Error indexing %s", path)
            return False

    async def iter_files(self, directory: str | Path) -> AsyncIterator[str]:
        """Walk ``directory`` iteratively yielding supported, non-ignored files."""
        root = normalize_path(directory)
        stack = [root]
        visited = 0
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except PermissionError:
                logger.debug("Permission denied reading %s", current)
                continue
            except OSError as exc:
                logger.error("Cannot read directory %s: %s", current, exc)
                continue

            subdirs = []
            for entry in entries:
                if self.should_ignore(entry.path):
                    continue
                try:
                    if entry.is_dir(follow_symlinks=False):
                        if not entry.name.startswith("."):
                            subdirs.append(entry.path)
                    elif entry.is_file() and is_supported(entry.name):
                        yield entry.path
                except OSError:
                    logger.debug("Cannot stat %s", entry.path, exc_info=True)
            stack.extend(reversed(subdirs))

            visited += 1
            if visited % DIRS_PER_YIELD == 0:
                await asyncio.sleep(0)

    async def index_directory(
        self,
        directory: str | Path,
        progress: Optional[ProgressFn] = None,
        cancel: Optional[CancellationContext] = None,
    ) -> int:
        """Index every stale file under ``directory``; returns the number indexed."""
        stale: list[str] = []
        async for path in self.iter_files(directory):
            if is_cancelled(cancel):
                return 0
            if self.needs_reindex(path):
                stale.append(path)

        indexed = 0
        total = len(stale)
        logger.info("Indexing %d stale files under %s", total, directory)
        for n, path in enumerate(stale, start=1):
            if is_cancelled(cancel):
                logger.info("Directory indexing cancelled after %d files", indexed)
                break
            if await self.index_file(path):
                indexed += 1
            if progress is not None:
                progress(n, total, path)
            await asyncio.sleep(0)
        return indexed

    # --- embeddings ---

    def _delete_vectors(self, path: str) -> None:
        try:
            self.vectors.delete_file(path)
        except Exception:
            logger.exception("Failed to delete vectors for %s", path)

    async def create_chunks(self, file_id: int, path: str, content: str) -> int:
        """Chunk and embed ``content``; returns chunks written (0 leaves the file lexical-only)."""
        provider = self.embedding_provider
        if provider is None or not self.vectors.supported:
            return 0

        self.store.delete_chunks(path)
        self._delete_vectors(path)
        chunks = chunk_text(content)
        if not chunks:
            return 0

        try:
            embeddings = await provider.embed_batch([c[3] for c in chunks])
        except Exception as exc:
            logger.warning("Embedding failed for %s; file stays lexical-only: %s", path, exc)
            return 0
        if len(embeddings) != len(chunks):
            logger.warning(
                "Provider returned %d embeddings for %d chunks of %s",
                len(embeddings),
                len(chunks),
                path,
            )
            return 0

        chunk_ids = self.store.insert_chunks(
            file_id, path, [(ls, le, text) for _, ls, le, text in chunks]
        )
        now = datetime.now(timezone.utc)
        records = [
            {
                "vector": [float(x) for x in vector],
                "chunk_id": chunk_id,
                "file_id": file_id,
                "file_path": path,
                "line_start": ls,
                "line_end": le,
                "content": text,
                "last_updated": now,
            }
            for chunk_id, (_, ls, le, text), vector in zip(chunk_ids, chunks, embeddings)
        ]
        try:
            self.vectors.add(records)
        except Exception:
            logger.exception("Failed to write vectors for %s", path)
            self.store.delete_chunks(path)
            return 0
        return len(records)

    async def embed_file(self, record: FileRecord) -> int:
        """Recompute chunks and vectors for an already-indexed file."""
        content, _ = self._read_text(record.path)
        if record.file_type == "ipynb":
            content = self.extractor.parse(content, "ipynb").text
        return await self.create_chunks(record.id, record.path, content)

    def queue_embeddings(self, path: str | Path) -> bool:
        return self.embedding_queue.enqueue(normalize_path(path))

    def cancel_embedding_queue(self) -> int:
        return self.embedding_queue.cancel()

    # --- removal / maintenance ---

    def remove_file(self, path: str | Path) -> None:
        """Drop a file and every record derived from it."""
        path = normalize_path(path)
        self.store.purge_file(path)
        self._delete_vectors(path)

    async def remove_deleted_files(
        self, progress: Optional[Callable[[int, int, int], None]] = None
    ) -> int:
        """Purge files that no longer exist on disk; returns how many were removed."""
        total = self.store.count_files()
        checked = deleted = 0
        for page in self.store.iter_file_pages():
            for record in page:
                checked += 1
                if not os.path.exists(record.path):
                    self.remove_file(record.path)
                    deleted += 1
            if progress is not None:
                progress(checked, total, deleted)
            await asyncio.sleep(0)
        if deleted:
            logger.info("Removed %d deleted files from the index", deleted)
        return deleted

    async def reindex_files(
        self, paths: Sequence[str], progress: Optional[Callable[[int, int], None]] = None
    ) -> int:
        """Reindex existing paths (embeddings queued) and purge vanished ones."""
        indexed = 0
        for n, path in enumerate(paths, start=1):
            path = normalize_path(path)
            if os.path.exists(path):
                if await self.index_file(path, queue_embeddings=True):
                    indexed += 1
            else:
                self.remove_file(path)
            if progress is not None:
                progress(n, len(paths))
        return indexed

    def clear(self) -> None:
        self.embedding_queue.cancel()
        self.store.clear()
        self.vectors.reset()
        if self.query_cache is not None:
            self.query_cache.clear()

    async def optimize(self) -> int:
        removed = await self.remove_deleted_files()
        self.store.vacuum()
        return removed

    def collect_directories(self) -> list[str]:
        """Project roots and include directories that exist, deduplicated and sorted."""
        candidates = [p.path for p in self.store.get_projects()]
        candidates.extend(self.include_directories)
        found = {normalize_path(c) for c in candidates}
        return sorted(d for d in found if os.path.isdir(d))

    async def rebuild(
        self,
        cancel: Optional[CancellationContext] = None,
        progress: Optional[PhaseProgressFn] = None,
    ) -> RebuildResult:
        """Clear everything and reindex all known directories with queued embeddings."""
        result = RebuildResult()

        def report(phase: str, current: int, total: int) -> None:
            if progress is not None:
                progress(phase, current, total)

        if cancel is None:
            cancel = CancellationContext()
        try:
            report("Clearing database", 0, 1)
            self.clear()
            cancel.check()

            report("Collecting directories", 0, 1)
            directories = self.collect_directories()

            report("Indexing files", 0, 0)
            seen: set[str] = set()
            for directory in directories:
                async for path in self.iter_files(directory):
                    cancel.check()
                    if path in seen:
                        continue
                    seen.add(path)
                    if await self.index_file(path, queue_embeddings=True):
                        result.files_indexed += 1
                    else:
                        result.errors += 1
                    if len(seen) % 10 == 0:
                        report("Indexing files", result.files_indexed, 0)
                        await asyncio.sleep(0.01)
        except OperationCancelled as exc:
            logger.info("Rebuild stopped after %d files: %s", result.files_indexed, exc)
            result.cancelled = True
            return result

        report("Complete", result.files_indexed, result.files_indexed)
        logger.info(
            "Rebuild complete: %d files indexed, %d errors", result.files_indexed, result.errors
        )
        return result

    async def verify(self) -> VerifyResult:
        """Integrity report: missing and stale files plus orphaned child rows."""
        issues: list[str] = []
        files = missing = stale = 0
        for page in self.store.iter_file_pages():
            for record in page:
                files += 1
                try:
                    st = os.stat(record.path)
                except FileNotFoundError:
                    missing += 1
                    issues.append(f"Missing file: {record.path}")
                    continue
                except OSError:
                    issues.append(f"Cannot stat file: {record.path}")
                    continue
                if st.st_mtime * 1000 > record.mtime:
                    stale += 1
                    issues.append(f"Stale file (needs reindex): {record.path}")
            await asyncio.sleep(0)

        orphaned_headings, orphaned_blocks = self.store.orphan_counts()
        if orphaned_headings:
            issues.append(f"{orphaned_headings} orphaned heading records")
        if orphaned_blocks:
            issues.append(f"{orphaned_blocks} orphaned source block records")

        return VerifyResult(
            ok=not issues,
            issues=issues,
            files=files,
            missing_files=missing,
            stale_files=stale,
            orphaned_headings=orphaned_headings,
            orphaned_blocks=orphaned_blocks,
        )

    # --- search ---

    def set_search_scope(self, scope: Optional[SearchScope]) -> None:
        self.scope = scope or SearchScope()

    async def search_full_text(self, query: str, limit: int = 100) -> list[SearchResult]:
        return await self.lexical.search(query, limit, self.scope)

    async def search_semantic(self, query: str, limit: int = 20) -> list[SearchResult]:
        return await self.vector_retriever.search(query, limit, self.scope)

    async def search_hybrid(self, query: str, limit: int = 20) -> list[SearchResult]:
        return await self.orchestrator.search_hybrid(query, limit, self.scope)

    async def search_advanced(self, query: str, limit: int = 20, **options) -> list[SearchResult]:
        return await self.orchestrator.search_advanced(query, limit, self.scope, **options)

    async def search(
        self,
        query: str,
        mode: Optional[str] = None,
        limit: Optional[int] = None,
        scope: Optional[SearchScope] = None,
        **options,
    ) -> list[SearchResult]:
        """Dispatch on ``mode`` after demoting it to what is currently available."""
        return await self.orchestrator.search(
            query, mode, limit, scope or self.scope, **options
        )

    async def search_with_mode(
        self,
        query: str,
        mode: Optional[str] = None,
        limit: Optional[int] = None,
        scope: Optional[SearchScope] = None,
        **options,
    ) -> tuple[SearchMode, list[SearchResult]]:
        return await self.orchestrator.search_with_mode(
            query, mode, limit, scope or self.scope, **options
        )

    # --- lifecycle ---

    async def aclose(self) -> None:
        self.embedding_queue.cancel()
        await self.ollama.aclose()
        closer = getattr(self.embedding_provider, "aclose", None)
        if closer is not None:
            await closer()
        self.close()

    def close(self) -> None:
        self.store.close()
