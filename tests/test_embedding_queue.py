import asyncio

import pytest

from noteindex.embedding_queue import EmbeddingQueue, QueueState


class RecordingIndex:
    """Just enough of NoteIndex for the queue: a store and embed_file."""

    def __init__(self, paths, delay=0.0, fail=()):
        self.store = self
        self.known = set(paths)
        self.delay = delay
        self.fail = set(fail)
        self.embedded = []
        self.started = asyncio.Event()

    def get_file(self, path):
        return path if path in self.known else None

    async def embed_file(self, record):
        self.started.set()
        await asyncio.sleep(self.delay)
        if record in self.fail:
            raise RuntimeError("boom")
        self.embedded.append(record)
        return 1


@pytest.fixture
def files(tmp_path):
    paths = []
    for name in ("a.org", "b.org", "c.org"):
        p = tmp_path / name
        p.write_text("* x\n")
        paths.append(str(p))
    return paths


async def test_enqueue_dedupes_and_processes_in_order(files):
    index = RecordingIndex(files)
    queue = EmbeddingQueue(index, fast_delay=0, slow_delay=0)
    assert queue.enqueue(files[0])
    assert queue.enqueue(files[1])
    assert not queue.enqueue(files[1])
    assert queue.state is QueueState.RUNNING
    await queue.wait_idle()
    assert index.embedded == files[:2]
    assert queue.status()["processed"] == 2
    assert queue.state is QueueState.IDLE


async def test_cancel_drops_pending_but_finishes_current(files):
    index = RecordingIndex(files, delay=0.05)
    queue = EmbeddingQueue(index, fast_delay=0, slow_delay=0)
    for path in files:
        queue.enqueue(path)
    await index.started.wait()
    assert queue.cancel() == 2
    assert queue.state is QueueState.CANCELLING
    await queue.wait_idle()
    assert index.embedded == files[:1]
    assert len(queue) == 0


async def test_failures_are_counted_and_worker_continues(files):
    index = RecordingIndex(files, fail={files[0]})
    queue = EmbeddingQueue(index, fast_delay=0, slow_delay=0)
    for path in files:
        queue.enqueue(path)
    await queue.wait_idle()
    assert queue.failed == 1
    assert index.embedded == files[1:]


async def test_missing_and_unindexed_files_are_skipped(files, tmp_path):
    index = RecordingIndex(files[:1])
    queue = EmbeddingQueue(index, fast_delay=0, slow_delay=0)
    queue.enqueue(str(tmp_path / "gone.org"))
    queue.enqueue(files[1])
    await queue.wait_idle()
    assert index.embedded == []


async def test_single_worker_restarts_after_idle(files):
    index = RecordingIndex(files)
    queue = EmbeddingQueue(index, fast_delay=0, slow_delay=0)
    queue.enqueue(files[0])
    await queue.wait_idle()
    queue.enqueue(files[1])
    await queue.wait_idle()
    assert index.embedded == files[:2]
