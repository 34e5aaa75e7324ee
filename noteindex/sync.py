# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Background reconciliation of the index against the file system.

Both passes are paginated, capped, cancellable and resumable: hitting a cap
stops early, and the next call picks up whatever is still stale. Embeddings
are always queued here, never computed inline.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from typing import TYPE_CHECKING, Callable, Optional, Sequence

from .cancellation import CancellationContext, is_cancelled
from .models import ScanResult, StaleCheckResult
from .storage.metadata import FILE_PAGE_SIZE, now_ms

if TYPE_CHECKING:
    from .indexer import NoteIndex

logger = logging.getLogger(__name__)

REINDEX_PAUSE_SECONDS = 0.1
SCAN_PROGRESS_KEY = "scan_progress"

StaleProgressFn = Callable[[int, int, int], None]
ScanProgressFn = Callable[[int, int, Optional[str]], None]


async def check_stale_files(
    index: "NoteIndex",
    batch_size: int = 50,
    yield_ms: int = 50,
    max_reindex: int = 0,
    cancel: Optional[CancellationContext] = None,
    on_progress: Optional[StaleProgressFn] = None,
    page_size: int = FILE_PAGE_SIZE,
    reindex_pause: float = REINDEX_PAUSE_SECONDS,
) -> StaleCheckResult:
    """
    Purge deleted files and reindex modified ones.

    Args:
        index: Index to reconcile
        batch_size: Files checked between yields
        yield_ms: Sleep per yield, in milliseconds
        max_reindex: Stop after this many reindexes (0 = unlimited)
        cancel: Cooperative cancellation; the current file always completes
        on_progress: Called after each page with (checked, total, reindexed)

    Returns:
        StaleCheckResult; declined reindexes are purged and counted as skipped
    """
    result = StaleCheckResult()
    store = index.store
    total = store.count_files()
    if total == 0:
        return result

    logger.info(
        "Checking %d files for staleness (max_reindex=%s)", total, max_reindex or "unlimited"
    )
    yield_seconds = yield_ms / 1000
    last_path: Optional[str] = None

    def capped() -> bool:
        return max_reindex > 0 and result.reindexed >= max_reindex

    while True:
        if is_cancelled(cancel):
            logger.info("Stale check cancelled")
            break
        if capped():
            logger.info("Reached max reindex limit (%d)", max_reindex)
            break

        page = store.get_files_after(last_path, page_size)
        if not page:
            break
        last_path = page[-1].path

        for i, record in enumerate(page):
            if is_cancelled(cancel) or capped():
                break
            result.checked += 1
            try:
                try:
                    mtime = os.stat(record.path).st_mtime * 1000
                except FileNotFoundError:
                    index.remove_file(record.path)
                    result.deleted += 1
                    continue
                if mtime > record.mtime:
                    result.stale += 1
                    if await index.index_file(record.path, queue_embeddings=True):
                        result.reindexed += 1
                    else:
                        # over a size cap or unreadable: drop the outdated rows
                        index.remove_file(record.path)
                        result.skipped += 1
                    await asyncio.sleep(reindex_pause)
            except Exception:
                logger.exception("Error checking staleness of %s", record.path)
            if i > 0 and i % batch_size == 0:
                await asyncio.sleep(yield_seconds)

        if on_progress is not None:
            on_progress(result.checked, total, result.reindexed)
        await asyncio.sleep(yield_seconds)

    logger.info(
        "Stale check complete: stale=%d deleted=%d reindexed=%d skipped=%d",
        result.stale,
        result.deleted,
        result.reindexed,
        result.skipped,
    )
    return result


async def scan_directories_in_background(
    index: "NoteIndex",
    directories: Sequence[str],
    batch_size: int = 50,
    yield_ms: int = 50,
    max_index: int = 0,
    cancel: Optional[CancellationContext] = None,
    on_progress: Optional[ScanProgressFn] = None,
    reindex_pause: float = REINDEX_PAUSE_SECONDS,
) -> ScanResult:
    """Discover new or changed files under ``directories`` and index them (capped)."""
    result = ScanResult()
    if not directories:
        return result

    logger.info(
        "Scanning %d directories (max_index=%s)", len(directories), max_index or "unlimited"
    )
    yield_seconds = yield_ms / 1000

    def capped() -> bool:
        return max_index > 0 and result.indexed >= max_index

    for directory in directories:
        if is_cancelled(cancel):
            break
        if capped():
            logger.info("Reached max index limit (%d)", max_index)
            break
        if not os.path.isdir(directory):
            logger.warning("Directory does not exist: %s", directory)
            continue

        if on_progress is not None:
            on_progress(result.scanned, result.indexed, directory)
        files_in_dir = 0
        async for path in index.iter_files(directory):
            if is_cancelled(cancel) or capped():
                break
            result.scanned += 1
            files_in_dir += 1
            try:
                if index.needs_reindex(path):
                    if index.store.get_file(path) is None:
                        result.new_files += 1
                    else:
                        result.changed += 1
                    if await index.index_file(path, queue_embeddings=True):
                        result.indexed += 1
                    else:
                        result.skipped += 1
                    await asyncio.sleep(reindex_pause)
            except Exception:
                logger.exception("Error processing %s", path)
            if files_in_dir % batch_size == 0:
                if on_progress is not None:
                    on_progress(result.scanned, result.indexed, directory)
                await asyncio.sleep(yield_seconds)

        await asyncio.sleep(yield_seconds)

    logger.info(
        "Directory scan complete: new=%d changed=%d indexed=%d",
        result.new_files,
        result.changed,
        result.indexed,
    )
    return result


def collect_sync_directories(index: "NoteIndex") -> list[str]:
    """Projects plus configured include directories that exist, sorted."""
    return index.collect_directories()


class BackgroundSync:
    """Startup reconciliation: a capped stale check, then a rotating directory scan."""

    def __init__(self, index: "NoteIndex"):
        self.index = index
        self.config = index.config
        self._cancel: Optional[CancellationContext] = None
        self.running = False
        self.last_stale: Optional[StaleCheckResult] = None
        self.last_scan: Optional[ScanResult] = None

    def cancel(self) -> None:
        if self._cancel is not None:
            self._cancel.cancel("background sync cancelled")

    def _next_batch(self, directories: list[str]) -> tuple[list[str], int, str]:
        """This session's directories, the index to resume from, and the list digest."""
        digest = hashlib.sha1("\n".join(directories).encode("utf-8")).hexdigest()
        state = self.index.store.get_meta_json(SCAN_PROGRESS_KEY, {}) or {}
        start = int(state.get("index", 0)) if state.get("hash") == digest else 0
        if start >= len(directories):
            start = 0
        end = min(start + self.config.sync_dirs_per_session, len(directories))
        return directories[start:end], (0 if end >= len(directories) else end), digest

    async def run_startup_sync(
        self, cancel: Optional[CancellationContext] = None
    ) -> tuple[StaleCheckResult, ScanResult]:
        if self.running:
            logger.debug("Background sync already running")
            return StaleCheckResult(), ScanResult()
        self.running = True
        self._cancel = cancel.child() if cancel is not None else CancellationContext()
        cfg = self.config
        try:
            stale = await check_stale_files(
                self.index,
                batch_size=cfg.sync_batch_size,
                yield_ms=cfg.sync_yield_ms,
                max_reindex=cfg.sync_max_reindex,
                cancel=self._cancel,
            )
            self.last_stale = stale

            scan = ScanResult()
            directories = collect_sync_directories(self.index)
            if directories and not self._cancel.cancelled:
                batch, next_index, digest = self._next_batch(directories)
                logger.info(
                    "Incremental directory scan: %d of %d directories",
                    len(batch),
                    len(directories),
                )
                scan = await scan_directories_in_background(
                    self.index,
                    batch,
                    batch_size=cfg.sync_batch_size,
                    yield_ms=cfg.sync_yield_ms,
                    max_index=cfg.sync_max_new_files,
                    cancel=self._cancel,
                )
                if not self._cancel.cancelled:
                    self.index.store.set_meta_json(
                        SCAN_PROGRESS_KEY,
                        {"index": next_index, "hash": digest, "last_scan": now_ms()},
                    )
                    if next_index == 0:
                        logger.info("Completed full directory scan cycle")
            self.last_scan = scan

            changes = stale.reindexed + stale.deleted + scan.indexed
            if changes:
                logger.info(
                    "Background sync: %d new, %d updated, %d removed",
                    scan.new_files,
                    stale.reindexed + scan.changed,
                    stale.deleted,
                )
            return stale, scan
        finally:
            self.running = False
            self._cancel = None
