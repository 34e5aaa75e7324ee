"""
Export and restore of user-facing index settings.

A backup holds projects, include/exclude rules and the list of indexed files
for reference. Index contents are never exported; after a restore the next
sync or rebuild reindexes whatever is still on disk.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .storage.metadata import now_ms

if TYPE_CHECKING:
    from .indexer import NoteIndex

logger = logging.getLogger(__name__)

BACKUP_VERSION = 1


class BackupError(Exception):
    """The backup file is unreadable or in an unsupported format."""


def export_backup(index: "NoteIndex", path: str | Path) -> dict[str, int]:
    projects = index.store.get_projects()
    files = [
        {"path": record.path, "file_type": record.file_type, "mtime": record.mtime}
        for page in index.store.iter_file_pages()
        for record in page
    ]
    exported = now_ms()
    payload: dict[str, Any] = {
        "version": BACKUP_VERSION,
        "exportedAt": exported,
        "exportedAtHuman": datetime.fromtimestamp(exported / 1000, tz=timezone.utc).isoformat(),
        "projects": [
            {"path": p.path, "name": p.name, "type": p.type, "lastOpened": p.last_opened}
            for p in projects
        ],
        "rules": {
            "include": index.include_directories,
            "exclude": index.exclude_patterns,
        },
        "indexedFilesCount": len(files),
        "indexedFiles": files,
    }

    target = Path(path).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    logger.info("Exported %d projects and %d files to %s", len(projects), len(files), target)
    return {"projects": len(projects), "files": len(files)}


def _load(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise BackupError(f"Backup file not found: {path}") from exc
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise BackupError(f"Cannot read backup {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise BackupError("Backup root must be a JSON object")
    if data.get("version") != BACKUP_VERSION:
        raise BackupError(f"Unsupported backup version: {data.get('version')!r}")
    return data


def import_backup(index: "NoteIndex", path: str | Path) -> dict[str, int]:
    """
    Restore projects and rules from a backup.

    Returns:
        ``{"projects": restored, "files_to_index": listed files still on disk}``

    Raises:
        BackupError: if the file is missing, malformed or of another version
    """
    data = _load(Path(path).expanduser())

    restored = 0
    for entry in data.get("projects") or []:
        if not isinstance(entry, dict) or not entry.get("path"):
            logger.warning("Skipping malformed project entry %r", entry)
            continue
        index.store.add_project(
            entry["path"], entry.get("name"), entry.get("type") or "manual"
        )
        restored += 1

    rules = data.get("rules") or {}
    if rules:
        index.set_rules(rules.get("include") or [], rules.get("exclude") or [])

    on_disk = sum(
        1
        for entry in data.get("indexedFiles") or []
        if isinstance(entry, dict) and entry.get("path") and os.path.exists(entry["path"])
    )
    logger.info("Restored %d projects; %d listed files still on disk", restored, on_disk)
    return {"projects": restored, "files_to_index": on_disk}
