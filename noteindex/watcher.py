# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
File watching for live reindexing.

watchdog delivers events on its observer thread; they are marshalled onto
the asyncio loop with ``call_soon_threadsafe``. Saves are coalesced by a
ChangeBuffer (one flush timer per quiet window) and handed to an IndexQueue
whose single worker reindexes each batch.
"""

from __future__ import annotations

import asyncio
import logging
import os
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .analysis.filetypes import is_supported

if TYPE_CHECKING:
    from .indexer import NoteIndex

logger = logging.getLogger(__name__)

FlushCallback = Callable[[list[str]], Awaitable[None]]


class ChangeBuffer:
    """Coalesces paths and flushes them once ``delay`` seconds after the first arrival."""

    def __init__(self, delay: float, flush_callback: FlushCallback):
        self.delay = delay
        self.flush_callback = flush_callback
        self._paths: dict[str, None] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> list[str]:
        return list(self._paths)

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def enqueue(self, path: str) -> None:
        """Must be called on the event loop thread."""
        self._paths[path] = None
        if self._timer is None:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        batch = list(self._paths)
        self._paths.clear()
        if not batch:
            return
        task = asyncio.get_running_loop().create_task(self.flush_callback(batch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> None:
        """Flush immediately instead of waiting for the timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch = list(self._paths)
        self._paths.clear()
        if batch:
            await self.flush_callback(batch)

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._paths.clear()


class WorkerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class IndexQueue:
    """Single worker that reindexes changed files (or purges vanished ones)."""

    def __init__(
        self,
        index: "NoteIndex",
        on_indexed: Optional[Callable[[str, bool], None]] = None,
    ):
        self.index = index
        self.on_indexed = on_indexed
        self.state = WorkerState.IDLE
        self._pending: dict[str, None] = {}
        self._task: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

    def __len__(self) -> int:
        return len(self._pending)

    async def add(self, paths: Sequence[str]) -> None:
        for path in paths:
            self._pending[path] = None
        if self._pending and (self._task is None or self._task.done()):
            self.state = WorkerState.RUNNING
            self._idle.clear()
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name="noteindex-index-queue"
            )

    async def wait_idle(self) -> None:
        await self._idle.wait()

    async def _run(self) -> None:
        try:
            while self._pending:
                path = next(iter(self._pending))
                del self._pending[path]
                ok = False
                try:
                    if os.path.exists(path):
                        ok = await self.index.index_file(path, queue_embeddings=True)
                    else:
                        self.index.remove_file(path)
                        ok = True
                except Exception:
                    logger.exception("Failed to reindex %s", path)
                if self.on_indexed is not None:
                    self.on_indexed(path, ok)
                await asyncio.sleep(0)
        finally:
            self.state = WorkerState.IDLE
            self._task = None
            self._idle.set()


class _NoteEventHandler(FileSystemEventHandler):
    """Runs on the watchdog thread; forwards everything to the loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, dispatch: Callable[..., None]):
        super().__init__()
        self._loop = loop
        self._dispatch = dispatch

    def _forward(self, kind: str, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        dest = getattr(event, "dest_path", None) or None
        self._loop.call_soon_threadsafe(self._dispatch, kind, str(event.src_path), dest and str(dest))

    def on_created(self, event: FileSystemEvent) -> None:
        self._forward("created", event)

    def on_modified(self, event: FileSystemEvent) -> None:
        self._forward("modified", event)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._forward("deleted", event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._forward("moved", event)


class NoteWatcher:
    def __init__(
        self,
        index: "NoteIndex",
        directories: Optional[Sequence[str]] = None,
        debounce_seconds: Optional[float] = None,
    ):
        self.index = index
        self.directories = list(directories) if directories is not None else None
        delay = (
            debounce_seconds
            if debounce_seconds is not None
            else index.config.watch_debounce_seconds
        )
        self.queue = IndexQueue(index)
        self.buffer = ChangeBuffer(delay, self.queue.add)
        self._observer: Any = None
        self.watched: list[str] = []

    @property
    def running(self) -> bool:
        return self._observer is not None

    def _root_for(self, path: str) -> Optional[str]:
        """Deepest watched directory containing ``path``."""
        if self.watched:
            roots = self.watched
        elif self.directories is not None:
            roots = self.directories
        else:
            roots = self.index.collect_directories()
        best: Optional[str] = None
        for root in roots:
            root = os.path.abspath(os.path.expanduser(root))
            if path.startswith(root.rstrip(os.sep) + os.sep) and (
                best is None or len(root) > len(best)
            ):
                best = root
        return best

    def _watchable(self, path: str) -> bool:
        if not is_supported(path) or self.index.should_ignore(path):
            return False
        # dot-directories are skipped below the root only, as in iter_files
        root = self._root_for(path)
        relative = os.path.relpath(path, root) if root else os.path.basename(path)
        return not any(part.startswith(".") for part in relative.split(os.sep)[:-1])

    def handle_event(self, kind: str, src: str, dest: Optional[str] = None) -> None:
        """Route one file event; called on the loop thread."""
        if kind in ("created", "modified"):
            if self._watchable(src):
                self.buffer.enqueue(src)
        elif kind == "deleted":
            if self.index.store.get_file(src) is not None:
                self.index.remove_file(src)
                logger.debug("Removed deleted file %s", src)
        elif kind == "moved":
            if self.index.store.get_file(src) is not None:
                self.index.remove_file(src)
            if dest and self._watchable(dest):
                self.buffer.enqueue(dest)

    def start(self) -> None:
        if self._observer is not None:
            return
        loop = asyncio.get_running_loop()
        directories = (
            self.directories if self.directories is not None
            else self.index.collect_directories()
        )
        handler = _NoteEventHandler(loop, self.handle_event)
        observer = Observer()
        observer.daemon = True
        for directory in directories:
            if not os.path.isdir(directory):
                logger.warning("Not watching missing directory %s", directory)
                continue
            observer.schedule(handler, directory, recursive=True)
            self.watched.append(directory)
        observer.start()
        self._observer = observer
        logger.info("Watching %d directories for changes", len(self.watched))

    def stop(self) -> None:
        self.buffer.close()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None
        self.watched = []
