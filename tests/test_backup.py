import copy
import json

import pytest

import noteindex.config as note_config
from noteindex.backup import BACKUP_VERSION, BackupError, export_backup, import_backup
from noteindex.indexer import NoteIndex


@pytest.fixture
def fresh_index(test_config, tmp_path):
    cfg = note_config.Config(tmp_path / "other-config.json")
    cfg.config_data = copy.deepcopy(test_config.config_data)
    cfg.set("index.path", str(tmp_path / "restored"))
    index = NoteIndex(cfg)
    yield index
    index.close()


async def test_export_and_restore(lexical_index, fresh_index, notes_dir, tmp_path):
    lexical_index.store.add_project(str(notes_dir), "Notes")
    lexical_index.set_rules(include=[str(notes_dir)], exclude=["*.tmp"])
    await lexical_index.index_directory(notes_dir)

    target = tmp_path / "backups" / "noteindex.json"
    summary = export_backup(lexical_index, target)
    assert summary == {"projects": 1, "files": 2}

    data = json.loads(target.read_text())
    assert data["version"] == BACKUP_VERSION
    assert data["indexedFilesCount"] == 2
    assert data["projects"][0]["name"] == "Notes"
    assert "*.tmp" in data["rules"]["exclude"]

    (notes_dir / "notes.md").unlink()
    restored = import_backup(fresh_index, target)
    assert restored == {"projects": 1, "files_to_index": 1}
    assert [p.path for p in fresh_index.store.get_projects()] == [str(notes_dir)]
    assert fresh_index.include_directories == [str(notes_dir)]
    assert fresh_index.should_ignore(notes_dir / "draft.tmp")
    assert fresh_index.store.count_files() == 0


def test_import_rejects_bad_files(lexical_index, tmp_path):
    with pytest.raises(BackupError, match="not found"):
        import_backup(lexical_index, tmp_path / "nope.json")

    wrong = tmp_path / "wrong.json"
    wrong.write_text(json.dumps({"version": 99, "projects": []}))
    with pytest.raises(BackupError, match="version"):
        import_backup(lexical_index, wrong)

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(BackupError):
        import_backup(lexical_index, broken)


def test_import_skips_malformed_projects(lexical_index, tmp_path):
    backup = tmp_path / "partial.json"
    backup.write_text(json.dumps({
        "version": BACKUP_VERSION,
        "projects": [{"name": "no path"}, "junk", {"path": str(tmp_path)}],
    }))
    assert import_backup(lexical_index, backup) == {"projects": 1, "files_to_index": 0}
