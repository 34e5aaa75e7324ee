# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Background embedding generation.

Indexing writes lexical records immediately and hands files here so vector
work trickles out one file at a time with a pause between files. The queue
is an owned worker object with explicit state; at most one worker task runs.
"""

from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .indexer import NoteIndex

logger = logging.getLogger(__name__)

BACKLOG_THRESHOLD = 100
FAST_DELAY_SECONDS = 0.2
SLOW_DELAY_SECONDS = 0.5


class QueueState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"


class EmbeddingQueue:
    def __init__(
        self,
        index: "NoteIndex",
        fast_delay: float = FAST_DELAY_SECONDS,
        slow_delay: float = SLOW_DELAY_SECONDS,
    ):
        self.index = index
        self.fast_delay = fast_delay
        self.slow_delay = slow_delay
        self.state = QueueState.IDLE
        self.processed = 0
        self.failed = 0
        self.current: Optional[str] = None
        # dict preserves insertion order, giving a deduplicated FIFO
        self._pending: dict[str, None] = {}
        self._task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, path: object) -> bool:
        return path in self._pending

    def enqueue(self, path: str) -> bool:
        """Queue ``path`` unless already pending; returns True when newly added."""
        if path in self._pending:
            return False
        self._pending[path] = None
        self._ensure_worker()
        return True

    def cancel(self) -> int:
        """Drop everything not yet started; the in-flight file still completes."""
        dropped = len(self._pending)
        self._pending.clear()
        if self.state is QueueState.RUNNING:
            self.state = QueueState.CANCELLING
        if dropped:
            logger.info("Embedding queue cancelled; %d files dropped", dropped)
        return dropped

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "pending": len(self._pending),
            "current": self.current,
            "processed": self.processed,
            "failed": self.failed,
        }

    async def wait_idle(self) -> None:
        await self._idle.wait()

    def _ensure_worker(self) -> None:
        if self._task is not None and not self._task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the next enqueue from async code starts the worker
            return
        self.state = QueueState.RUNNING
        self._idle.clear()
        self._task = loop.create_task(self._run(), name="noteindex-embedding-queue")

    def _next_delay(self) -> float:
        return self.slow_delay if len(self._pending) > BACKLOG_THRESHOLD else self.fast_delay

    async def _run(self) -> None:
        try:
            while self._pending and self.state is QueueState.RUNNING:
                path = next(iter(self._pending))
                del self._pending[path]
                self.current = path
                try:
                    await self._process(path)
                except Exception:
                    self.failed += 1
                    logger.exception("Failed to generate embeddings for %s", path)
                finally:
                    self.current = None
                if self._pending and self.state is QueueState.RUNNING:
                    await asyncio.sleep(self._next_delay())
        finally:
            self.state = QueueState.IDLE
            self._task = None
            self._idle.set()
            if self._pending:
                # enqueued while we were winding down after a cancel
                self._ensure_worker()

    async def _process(self, path: str) -> None:
        if not os.path.exists(path):
            logger.debug("Skipping embeddings for missing file %s", path)
            return
        record = self.index.store.get_file(path)
        if record is None:
            logger.debug("Skipping embeddings for unindexed file %s", path)
            return
        written = await self.index.embed_file(record)
        self.processed += 1
        logger.debug("Embedded %s (%d chunks, %d pending)", path, written, len(self._pending))
