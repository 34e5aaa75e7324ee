"""Versioned schema migrations for the notes store.

Each migration is a list of statements applied in one transaction and
recorded in ``schema_version``. Databases created before version tracking
existed are detected by probing for the tables later versions added.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass

from ..models import MigrationEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    up: tuple[str, ...]


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        description="Initial schema with FTS5 content index",
        up=(
            """
            CREATE TABLE IF NOT EXISTS files (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT UNIQUE NOT NULL,
                file_type TEXT NOT NULL DEFAULT 'org',
                mtime REAL NOT NULL,
                hash TEXT NOT NULL,
                size INTEGER NOT NULL,
                indexed_at INTEGER NOT NULL,
                keywords TEXT DEFAULT '{}'
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS headings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file_id INTEGER NOT NULL,
                file_path TEXT NOT NULL,
                level INTEGER NOT NULL,
                title TEXT NOT NULL,
                line_number INTEGER NOT NULL,
                begin_pos INTEGER NOT NULL,
                todo_state TEXT,
                priority TEXT,
                tags TEXT DEFAULT '[]',
                inherited_tags TEXT DEFAULT '[]',
                properties TEXT DEFAULT '{}',
                scheduled TEXT,
                deadline TEXT,
                closed TEXT,
                cell_index INTEGER,
                FOREIGN KEY (file_id) REFERENCES files(id) ON DELETE CASCADE
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS source_blocks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file_id INTEGER NOT NULL,
                file_path TEXT NOT NULL,
                language TEXT NOT NULL,
                content TEXT NOT NULL,
                line_number INTEGER NOT NULL,
                headers TEXT DEFAULT '{}',
                cell_index INTEGER,
                FOREIGN KEY (file_id) REFERENCES files(id) ON DELETE CASCADE
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS links (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file_id INTEGER NOT NULL,
                file_path TEXT NOT NULL,
                link_type TEXT NOT NULL,
                target TEXT NOT NULL,
                description TEXT,
                line_number INTEGER NOT NULL,
                FOREIGN KEY (file_id) REFERENCES files(id) ON DELETE CASCADE
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS hashtags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tag TEXT NOT NULL,
                file_path TEXT NOT NULL,
                UNIQUE(tag, file_path)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS chunks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file_id INTEGER NOT NULL,
                file_path TEXT NOT NULL,
                content TEXT NOT NULL,
                line_start INTEGER NOT NULL,
                line_end INTEGER NOT NULL,
                FOREIGN KEY (file_id) REFERENCES files(id) ON DELETE CASCADE
            )
            """,
            """
            CREATE VIRTUAL TABLE IF NOT EXISTS fts_content USING fts5(
                file_path,
                title,
                content,
                tokenize='porter unicode61'
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_headings_file ON headings(file_id)",
            "CREATE INDEX IF NOT EXISTS idx_headings_todo ON headings(todo_state)",
            "CREATE INDEX IF NOT EXISTS idx_headings_deadline ON headings(deadline)",
            "CREATE INDEX IF NOT EXISTS idx_headings_scheduled ON headings(scheduled)",
            "CREATE INDEX IF NOT EXISTS idx_blocks_file ON source_blocks(file_id)",
            "CREATE INDEX IF NOT EXISTS idx_blocks_language ON source_blocks(language)",
            "CREATE INDEX IF NOT EXISTS idx_links_file ON links(file_id)",
            "CREATE INDEX IF NOT EXISTS idx_hashtags_tag ON hashtags(tag)",
            "CREATE INDEX IF NOT EXISTS idx_chunks_file ON chunks(file_path)",
            "CREATE INDEX IF NOT EXISTS idx_files_type ON files(file_type)",
        ),
    ),
    Migration(
        version=2,
        description="Add projects table and project_id on files",
        up=(
            """
            CREATE TABLE IF NOT EXISTS projects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT UNIQUE NOT NULL,
                name TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'manual',
                last_opened INTEGER,
                created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now') * 1000)
            )
            """,
            "ALTER TABLE files ADD COLUMN project_id INTEGER REFERENCES projects(id) ON DELETE SET NULL",
            "CREATE INDEX IF NOT EXISTS idx_projects_path ON projects(path)",
            "CREATE INDEX IF NOT EXISTS idx_files_project ON files(project_id)",
        ),
    ),
    Migration(
        version=3,
        description="Add db_metadata key/value table",
        up=(
            """
            CREATE TABLE IF NOT EXISTS db_metadata (
                key TEXT PRIMARY KEY NOT NULL,
                value TEXT NOT NULL,
                updated_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now') * 1000)
            )
            """,
        ),
    ),
    Migration(
        version=4,
        description="Add heading_id to links for heading-scoped link queries",
        up=(
            "ALTER TABLE links ADD COLUMN heading_id INTEGER REFERENCES headings(id) ON DELETE SET NULL",
            "CREATE INDEX IF NOT EXISTS idx_links_heading ON links(heading_id)",
            "CREATE INDEX IF NOT EXISTS idx_links_target ON links(target)",
            "CREATE INDEX IF NOT EXISTS idx_links_file_type ON links(file_path, link_type)",
        ),
    ),
)


def latest_version() -> int:
    return MIGRATIONS[-1].version if MIGRATIONS else 0


def pending_migrations(current_version: int) -> list[Migration]:
    return [m for m in MIGRATIONS if m.version > current_version]


class MigrationRunner:
    """Applies pending migrations to a sqlite3 connection."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def _init_version_table(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at INTEGER NOT NULL,
                description TEXT
            )
            """
        )
        self.conn.commit()

    def current_version(self) -> int:
        try:
            row = self.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        except sqlite3.OperationalError:
            return 0
        return int(row[0]) if row and row[0] is not None else 0

    def history(self) -> list[MigrationEntry]:
        try:
            rows = self.conn.execute(
                "SELECT version, applied_at, description FROM schema_version ORDER BY version"
            ).fetchall()
        except sqlite3.OperationalError:
            return []
        return [MigrationEntry(int(r[0]), int(r[1]), r[2] or "") for r in rows]

    def _table_exists(self, name: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type IN ('table', 'view') AND name = ?",
            (name,),
        ).fetchone()
        return row is not None

    def _is_fresh(self) -> bool:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM sqlite_master "
            "WHERE type='table' AND name NOT LIKE 'sqlite_%' AND name != 'schema_version'"
        ).fetchone()
        return int(row[0]) == 0

    def _detect_legacy_version(self) -> int:
        if self._table_exists("db_metadata"):
            return 3
        if self._table_exists("projects"):
            return 2
        if self._table_exists("files"):
            return 1
        return 0

    def _record(self, migration: Migration) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO schema_version (version, applied_at, description) "
            "VALUES (?, ?, ?)",
            (migration.version, int(time.time() * 1000), migration.description),
        )

    def run(self) -> int:
        """Apply every pending migration and return how many were applied."""
        self._init_version_table()
        current = self.current_version()

        if current == 0 and not self._is_fresh():
            current = self._detect_legacy_version()
            if current > 0:
                logger.info("Detected legacy schema version %s", current)
                for migration in MIGRATIONS:
                    if migration.version <= current:
                        self._record(migration)
                self.conn.commit()

        pending = pending_migrations(current)
        if not pending:
            logger.debug("Schema is up to date (version %s)", current)
            return 0

        for migration in pending:
            logger.info(
                "Applying migration v%s: %s", migration.version, migration.description
            )
            try:
                with self.conn:
                    for statement in migration.up:
                        self.conn.execute(statement)
                    self._record(migration)
            except sqlite3.Error:
                logger.exception("Migration v%s failed", migration.version)
                raise
        return len(pending)
