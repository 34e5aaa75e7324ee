# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Process-wide service wiring.

Holds the single NoteIndex, its watcher and background sync, and exposes the
``*_op`` operations the admin API calls. Maintenance operations share one
lock so only one writer-heavy pass runs at a time.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .cancellation import CancellationContext
from .config import get_config
from .indexer import NoteIndex
from .search import SearchScope
from .sync import BackgroundSync, check_stale_files
from .watcher import NoteWatcher

logger = logging.getLogger(__name__)

_INDEX: Optional[NoteIndex] = None
_WATCHER: Optional[NoteWatcher] = None
_SYNC: Optional[BackgroundSync] = None
_SYNC_TASK: Optional[asyncio.Task] = None
_MAINTENANCE_LOCK: Optional[asyncio.Lock] = None
_CANCEL = CancellationContext()


def _get_index() -> NoteIndex:
    global _INDEX
    if _INDEX is None:
        logger.info("Opening note index at %s", get_config().index_path)
        _INDEX = NoteIndex(get_config())
    return _INDEX


def _get_watcher() -> Optional[NoteWatcher]:
    return _WATCHER


def _get_sync() -> BackgroundSync:
    global _SYNC
    if _SYNC is None:
        _SYNC = BackgroundSync(_get_index())
    return _SYNC


def _lock() -> asyncio.Lock:
    global _MAINTENANCE_LOCK
    if _MAINTENANCE_LOCK is None:
        _MAINTENANCE_LOCK = asyncio.Lock()
    return _MAINTENANCE_LOCK


def set_index(index: Optional[NoteIndex]) -> None:
    """Install an already-built index (tests, embedding hosts)."""
    global _INDEX, _SYNC, _MAINTENANCE_LOCK
    _INDEX = index
    _SYNC = None
    _MAINTENANCE_LOCK = None


async def _delayed_sync(delay: float) -> None:
    await asyncio.sleep(delay)
    if _CANCEL.cancelled:
        return
    try:
        async with _lock():
            await _get_sync().run_startup_sync(_CANCEL)
    except Exception:
        logger.exception("Startup sync failed")


async def start_service() -> NoteIndex:
    """Open the index, start watching and schedule the startup sync."""
    global _WATCHER, _SYNC_TASK, _CANCEL
    cfg = get_config()
    _CANCEL = CancellationContext()
    index = _get_index()

    if cfg.watch_enabled and _WATCHER is None:
        _WATCHER = NoteWatcher(index)
        _WATCHER.start()

    if cfg.sync_auto_check_stale and _SYNC_TASK is None:
        _SYNC_TASK = asyncio.get_running_loop().create_task(
            _delayed_sync(cfg.sync_stale_check_delay_seconds), name="noteindex-startup-sync"
        )
    return index


async def stop_service() -> None:
    global _INDEX, _WATCHER, _SYNC, _SYNC_TASK
    _CANCEL.cancel("service stopping")
    if _SYNC is not None:
        _SYNC.cancel()
    if _SYNC_TASK is not None:
        await asyncio.gather(_SYNC_TASK, return_exceptions=True)
        _SYNC_TASK = None
    if _WATCHER is not None:
        _WATCHER.stop()
        _WATCHER = None
    if _INDEX is not None:
        await _INDEX.aclose()
        _INDEX = None
    _SYNC = None


# --- operations ---


def get_status_op() -> Dict[str, Any]:
    index = _get_index()
    watcher = _get_watcher()
    sync = _SYNC
    return {
        "index": {
            "path": str(index.config.index_path),
            "vector_search": index.get_vector_search_status(),
            "schema_version": index.get_schema_info().current_version,
        },
        "embedding_queue": index.embedding_queue.status(),
        "watcher": {
            "enabled": watcher is not None and watcher.running,
            "watching": list(watcher.watched) if watcher is not None else [],
        },
        "sync": {
            "running": bool(sync and sync.running),
            "last_stale_check": sync.last_stale.to_dict() if sync and sync.last_stale else None,
            "last_scan": sync.last_scan.to_dict() if sync and sync.last_scan else None,
        },
        "search": {"default_mode": index.config.search_default_mode},
    }


def get_index_stats_op() -> Dict[str, Any]:
    index = _get_index()
    stats = index.get_stats().to_dict()
    if index.query_cache is not None:
        stats["query_cache"] = index.query_cache.stats()
    return stats


def get_schema_op() -> Dict[str, Any]:
    return _get_index().get_schema_info().to_dict()


async def rebuild_index_op() -> Dict[str, Any]:
    async with _lock():
        result = await _get_index().rebuild(cancel=_CANCEL.child())
    return result.to_dict()


async def verify_index_op() -> Dict[str, Any]:
    result = await _get_index().verify()
    return result.to_dict()


async def check_stale_op(max_reindex: int = 0) -> Dict[str, Any]:
    index = _get_index()
    cfg = index.config
    async with _lock():
        result = await check_stale_files(
            index,
            batch_size=cfg.sync_batch_size,
            yield_ms=cfg.sync_yield_ms,
            max_reindex=max_reindex,
            cancel=_CANCEL.child(),
        )
    return result.to_dict()


async def search_op(
    query: str,
    mode: Optional[str] = None,
    limit: Optional[int] = None,
    scope: Optional[SearchScope] = None,
) -> Dict[str, Any]:
    index = _get_index()
    resolved, results = await index.search_with_mode(query, mode, limit, scope)
    return {
        "query": query,
        "requested_mode": mode or index.config.search_default_mode,
        "mode": resolved.value,
        "count": len(results),
        "results": [r.to_dict() for r in results],
    }


def cancel_embeddings_op() -> Dict[str, Any]:
    dropped = _get_index().cancel_embedding_queue()
    return {"cancelled": dropped}
