import asyncio

from noteindex.watcher import ChangeBuffer, IndexQueue, NoteWatcher, WorkerState


async def test_change_buffer_coalesces_into_one_flush():
    batches = []

    async def flush(batch):
        batches.append(batch)

    buffer = ChangeBuffer(0.05, flush)
    buffer.enqueue("/n/a.org")
    buffer.enqueue("/n/b.org")
    buffer.enqueue("/n/a.org")
    assert buffer.armed
    assert buffer.pending == ["/n/a.org", "/n/b.org"]
    await asyncio.sleep(0.15)
    assert batches == [["/n/a.org", "/n/b.org"]]
    assert not buffer.armed

    buffer.enqueue("/n/c.org")
    await buffer.flush()
    assert batches[-1] == ["/n/c.org"]
    assert not buffer.armed


async def test_change_buffer_close_drops_pending():
    batches = []

    async def flush(batch):
        batches.append(batch)

    buffer = ChangeBuffer(0.02, flush)
    buffer.enqueue("/n/a.org")
    buffer.close()
    await asyncio.sleep(0.05)
    assert batches == []


async def test_index_queue_indexes_and_purges(lexical_index, notes_dir):
    gone = notes_dir / "gone.org"
    gone.write_text("* Gone\n")
    await lexical_index.index_file(gone)
    gone.unlink()

    seen = []
    queue = IndexQueue(lexical_index, on_indexed=lambda path, ok: seen.append((path, ok)))
    await queue.add([str(notes_dir / "work.org"), str(gone)])
    assert queue.state is WorkerState.RUNNING
    await queue.wait_idle()
    assert queue.state is WorkerState.IDLE
    assert seen == [(str(notes_dir / "work.org"), True), (str(gone), True)]
    assert lexical_index.store.get_file(str(notes_dir / "work.org")) is not None
    assert lexical_index.store.get_file(str(gone)) is None


async def test_handle_event_routes_changes(lexical_index, notes_dir):
    watcher = NoteWatcher(lexical_index, directories=[str(notes_dir)], debounce_seconds=0.02)
    work = str(notes_dir / "work.org")
    notes = str(notes_dir / "notes.md")

    watcher.handle_event("modified", work)
    watcher.handle_event("created", str(notes_dir / "readme.txt"))
    watcher.handle_event("created", str(notes_dir / ".hidden" / "secret.org"))
    watcher.handle_event("modified", str(notes_dir / "node_modules" / "pkg.md"))
    assert watcher.buffer.pending == [work]

    await asyncio.sleep(0.08)
    await watcher.queue.wait_idle()
    assert lexical_index.store.get_file(work) is not None

    await lexical_index.index_file(notes)
    renamed = notes_dir / "renamed.md"
    (notes_dir / "notes.md").rename(renamed)
    watcher.handle_event("moved", notes, str(renamed))
    assert lexical_index.store.get_file(notes) is None
    await watcher.buffer.flush()
    await watcher.queue.wait_idle()
    assert lexical_index.store.get_file(str(renamed)) is not None

    watcher.handle_event("deleted", work)
    assert lexical_index.store.get_file(work) is None
    watcher.handle_event("deleted", str(notes_dir / "never-indexed.org"))


async def test_start_and_stop(lexical_index, notes_dir, tmp_path):
    watcher = NoteWatcher(lexical_index, directories=[str(notes_dir), str(tmp_path / "missing")])
    watcher.start()
    try:
        assert watcher.running
        assert watcher.watched == [str(notes_dir)]
    finally:
        watcher.stop()
    assert not watcher.running
    assert watcher.watched == []


async def test_root_inside_dot_directory_is_watched(lexical_index, tmp_path):
    root = tmp_path / ".notes"
    root.mkdir()
    (root / "inbox.org").write_text("* Inbox\n")
    (root / ".cache").mkdir()
    await lexical_index.index_directory(root)
    assert lexical_index.store.get_file(str(root / "inbox.org")) is not None

    watcher = NoteWatcher(lexical_index, directories=[str(root)], debounce_seconds=0.02)
    watcher.handle_event("modified", str(root / "inbox.org"))
    watcher.handle_event("created", str(root / ".cache" / "copy.org"))
    assert watcher.buffer.pending == [str(root / "inbox.org")]
    watcher.buffer.close()
