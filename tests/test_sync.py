import os

from noteindex.cancellation import CancellationContext
from noteindex.sync import (SCAN_PROGRESS_KEY, BackgroundSync, check_stale_files,
                            scan_directories_in_background)


def _make_notes(root, count):
    root.mkdir(parents=True, exist_ok=True)
    paths = []
    for i in range(count):
        p = root / f"note{i:02d}.org"
        p.write_text(f"* Note {i}\nbody {i}\n")
        paths.append(p)
    return paths


def _touch_later(path, seconds=10):
    st = os.stat(path)
    os.utime(path, (st.st_atime + seconds, st.st_mtime + seconds))


async def test_stale_check_reindexes_modified_files(lexical_index, tmp_path):
    paths = _make_notes(tmp_path / "notes", 5)
    await lexical_index.index_directory(tmp_path / "notes")
    _touch_later(paths[1])
    _touch_later(paths[3])

    progress = []
    result = await check_stale_files(
        lexical_index,
        yield_ms=0,
        reindex_pause=0,
        on_progress=lambda checked, total, reindexed: progress.append((checked, total)),
    )
    assert (result.checked, result.stale, result.reindexed, result.deleted) == (5, 2, 2, 0)
    assert progress[-1] == (5, 5)
    assert not lexical_index.needs_reindex(paths[1])


async def test_stale_check_is_capped_and_resumable(lexical_index, tmp_path):
    paths = _make_notes(tmp_path / "notes", 6)
    await lexical_index.index_directory(tmp_path / "notes")
    for p in paths:
        _touch_later(p)

    first = await check_stale_files(lexical_index, yield_ms=0, max_reindex=4, reindex_pause=0)
    assert first.reindexed == 4
    second = await check_stale_files(lexical_index, yield_ms=0, max_reindex=4, reindex_pause=0)
    assert second.reindexed == 2
    third = await check_stale_files(lexical_index, yield_ms=0, max_reindex=4, reindex_pause=0)
    assert third.reindexed == 0


async def test_stale_check_pages_survive_purges(lexical_index, tmp_path):
    paths = _make_notes(tmp_path / "notes", 7)
    await lexical_index.index_directory(tmp_path / "notes")
    for p in paths[:5]:
        os.remove(p)
    result = await check_stale_files(lexical_index, yield_ms=0, page_size=2, reindex_pause=0)
    assert result.deleted == 5
    assert result.checked == 7
    assert lexical_index.store.count_files() == 2


async def test_stale_check_cancelled(lexical_index, tmp_path):
    _make_notes(tmp_path / "notes", 3)
    await lexical_index.index_directory(tmp_path / "notes")
    cancel = CancellationContext()
    cancel.cancel()
    result = await check_stale_files(lexical_index, yield_ms=0, cancel=cancel)
    assert result.checked == 0


async def test_scan_finds_new_and_changed(lexical_index, tmp_path):
    root = tmp_path / "notes"
    paths = _make_notes(root, 3)
    await lexical_index.index_file(paths[0])
    await lexical_index.index_file(paths[1])
    _touch_later(paths[1])

    dirs_seen = []
    result = await scan_directories_in_background(
        lexical_index,
        [str(root), str(tmp_path / "missing")],
        yield_ms=0,
        reindex_pause=0,
        on_progress=lambda scanned, indexed, current: dirs_seen.append(current),
    )
    assert (result.scanned, result.new_files, result.changed, result.indexed) == (3, 1, 1, 2)
    assert dirs_seen[0] == str(root)


async def test_scan_respects_max_index(lexical_index, tmp_path):
    root = tmp_path / "notes"
    _make_notes(root, 5)
    result = await scan_directories_in_background(
        lexical_index, [str(root)], yield_ms=0, max_index=2, reindex_pause=0
    )
    assert result.indexed == 2
    assert lexical_index.store.count_files() == 2


async def test_startup_sync_rotates_directories(test_config, lexical_index, tmp_path):
    test_config.set("sync.dirs_per_session", 2)
    dirs = []
    for name in ("a", "b", "c"):
        _make_notes(tmp_path / "projects" / name, 1)
        dirs.append(str(tmp_path / "projects" / name))
        lexical_index.store.add_project(dirs[-1])

    sync = BackgroundSync(lexical_index)
    _, scan = await sync.run_startup_sync()
    assert scan.indexed == 2
    assert lexical_index.store.get_meta_json(SCAN_PROGRESS_KEY)["index"] == 2

    _, scan = await sync.run_startup_sync()
    assert scan.indexed == 1
    assert lexical_index.store.get_meta_json(SCAN_PROGRESS_KEY)["index"] == 0
    assert lexical_index.store.count_files() == 3
    assert not sync.running


async def test_startup_sync_removes_deleted(test_config, lexical_index, tmp_path):
    paths = _make_notes(tmp_path / "notes", 2)
    lexical_index.store.add_project(str(tmp_path / "notes"))
    await lexical_index.index_directory(tmp_path / "notes")
    os.remove(paths[0])
    stale, _ = await BackgroundSync(lexical_index).run_startup_sync()
    assert stale.deleted == 1


async def test_declined_reindex_does_not_block_later_files(test_config, lexical_index, tmp_path):
    test_config.set("index.max_file_lines", 5)
    root = tmp_path / "notes"
    root.mkdir()
    too_long, normal = root / "a.org", root / "b.org"
    too_long.write_text("* A\nshort\n")
    normal.write_text("* B\nshort\n")
    await lexical_index.index_directory(root)

    too_long.write_text("\n".join(f"line {i}" for i in range(50)))
    _touch_later(too_long)
    normal.write_text("* B\nedited\n")
    _touch_later(normal)

    first = await check_stale_files(lexical_index, yield_ms=0, max_reindex=1, reindex_pause=0)
    assert (first.stale, first.reindexed, first.skipped) == (2, 1, 1)
    assert lexical_index.store.get_file(str(too_long)) is None
    assert not lexical_index.needs_reindex(normal)

    second = await check_stale_files(lexical_index, yield_ms=0, max_reindex=1, reindex_pause=0)
    assert (second.checked, second.stale) == (1, 0)


async def test_scan_counts_declined_files_as_skipped(test_config, lexical_index, tmp_path):
    test_config.set("index.max_file_lines", 5)
    root = tmp_path / "notes"
    root.mkdir()
    (root / "a.org").write_text("\n".join(f"line {i}" for i in range(50)))
    (root / "b.org").write_text("* B\n")
    result = await scan_directories_in_background(
        lexical_index, [str(root)], yield_ms=0, max_index=1, reindex_pause=0
    )
    assert (result.scanned, result.indexed, result.skipped) == (2, 1, 1)
