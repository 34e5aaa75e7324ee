"""SQLite store for files and their derived records.

Every child table (headings, source blocks, links, hashtags, chunks, FTS
rows) is keyed by file path and is replaced wholesale when a file is
reindexed: :meth:`MetadataStore.replace_file` purges then inserts in one
transaction, so readers never see a half-indexed file.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Iterable, Iterator, Optional, Sequence

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from ..models import (
    FileRecord,
    HeadingRecord,
    LinkRecord,
    ProjectRecord,
    SchemaInfo,
    SourceBlockRecord,
)
from .migrations import MigrationRunner, latest_version

logger = logging.getLogger(__name__)

FILE_PAGE_SIZE = 100

_PURGE_STATEMENTS = (
    "DELETE FROM headings WHERE file_path = ?",
    "DELETE FROM source_blocks WHERE file_path = ?",
    "DELETE FROM links WHERE file_path = ?",
    "DELETE FROM hashtags WHERE file_path = ?",
    "DELETE FROM chunks WHERE file_path = ?",
    "DELETE FROM fts_content WHERE file_path = ?",
    "DELETE FROM files WHERE path = ?",
)


def _is_transient(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


_retry_transient = retry(
    retry=retry_if_exception(_is_transient),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.1, max=2),
    reraise=True,
)


def now_ms() -> int:
    return int(time.time() * 1000)


def _scope_clause(column: str, path_prefix: Optional[str]) -> tuple[str, list[Any]]:
    if not path_prefix:
        return "", []
    return f" AND substr({column}, 1, ?) = ?", [len(path_prefix), path_prefix]


class MetadataStore:
    def __init__(self, db_path: Path, *, timeout: float = 60.0):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False, timeout=timeout)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA busy_timeout=60000;")
        self.migrations = MigrationRunner(self.conn)
        self.migrations.run()

    def close(self) -> None:
        try:
            self.conn.close()
        except sqlite3.Error:
            logger.debug("Error closing notes database", exc_info=True)

    def schema_info(self) -> SchemaInfo:
        return SchemaInfo(
            current_version=self.migrations.current_version(),
            latest_version=latest_version(),
            history=self.migrations.history(),
        )

    # --- files ---

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> FileRecord:
        return FileRecord(
            id=int(row["id"]),
            path=row["path"],
            file_type=row["file_type"],
            mtime=float(row["mtime"]),
            hash=row["hash"],
            size=int(row["size"]),
            indexed_at=int(row["indexed_at"]),
            project_id=row["project_id"],
        )

    def get_file(self, path: str) -> Optional[FileRecord]:
        row = self.conn.execute("SELECT * FROM files WHERE path = ?", (path,)).fetchone()
        return self._row_to_file(row) if row else None

    def get_file_mtime(self, path: str) -> Optional[float]:
        row = self.conn.execute("SELECT mtime FROM files WHERE path = ?", (path,)).fetchone()
        return float(row[0]) if row else None

    def get_mtimes(self, paths: Sequence[str]) -> dict[str, float]:
        out: dict[str, float] = {}
        # stay below SQLite's bound-parameter limit
        for i in range(0, len(paths), 500):
            batch = list(paths[i : i + 500])
            placeholders = ",".join("?" for _ in batch)
            rows = self.conn.execute(
                f"SELECT path, mtime FROM files WHERE path IN ({placeholders})", batch
            ).fetchall()
            out.update({r["path"]: float(r["mtime"]) for r in rows})
        return out

    def count_files(self) -> int:
        return int(self.conn.execute("SELECT COUNT(*) FROM files").fetchone()[0])

    def get_files_page(self, limit: int, offset: int = 0) -> list[FileRecord]:
        rows = self.conn.execute(
            "SELECT * FROM files ORDER BY path LIMIT ? OFFSET ?", (limit, offset)
        ).fetchall()
        return [self._row_to_file(r) for r in rows]

    def get_files_after(self, after_path: Optional[str], limit: int) -> list[FileRecord]:
        """Keyset page ordered by path; stable while rows are purged mid-pass."""
        if after_path is None:
            rows = self.conn.execute(
                "SELECT * FROM files ORDER BY path LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM files WHERE path > ? ORDER BY path LIMIT ?",
                (after_path, limit),
            ).fetchall()
        return [self._row_to_file(r) for r in rows]

    def iter_file_pages(self, page_size: int = FILE_PAGE_SIZE) -> Iterator[list[FileRecord]]:
        last: Optional[str] = None
        while True:
            page = self.get_files_after(last, page_size)
            if not page:
                return
            yield page
            last = page[-1].path

    def list_file_paths(self) -> list[str]:
        return [r[0] for r in self.conn.execute("SELECT path FROM files ORDER BY path")]

    @_retry_transient
    def purge_file(self, path: str) -> None:
        """Delete a file row and every record derived from it."""
        with self.conn:
            for sql in _PURGE_STATEMENTS:
                self.conn.execute(sql, (path,))

    @_retry_transient
    def replace_file(
        self,
        *,
        path: str,
        file_type: str,
        mtime: float,
        content_hash: str,
        size: int,
        title: str,
        content: str,
        headings: Sequence[HeadingRecord] = (),
        blocks: Sequence[SourceBlockRecord] = (),
        links: Sequence[LinkRecord] = (),
        hashtags: Iterable[str] = (),
        project_id: Optional[int] = None,
    ) -> int:
        """Purge then reinsert a file and its children; returns the new file id."""
        with self.conn:
            for sql in _PURGE_STATEMENTS:
                self.conn.execute(sql, (path,))

            cur = self.conn.execute(
                "INSERT INTO files (path, file_type, mtime, hash, size, indexed_at, keywords, project_id) "
                "VALUES (?, ?, ?, ?, ?, ?, '{}', ?)",
                (path, file_type, mtime, content_hash, size, now_ms(), project_id),
            )
            file_id = int(cur.lastrowid)

            heading_ids: list[tuple[int, int]] = []
            for h in headings:
                hcur = self.conn.execute(
                    """
                    INSERT INTO headings
                        (file_id, file_path, level, title, line_number, begin_pos,
                         todo_state, priority, tags, inherited_tags, properties,
                         scheduled, deadline, closed, cell_index)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        file_id, path, h.level, h.title, h.line_number, h.begin_pos,
                        h.todo_state, h.priority, json.dumps(h.tags),
                        json.dumps(h.inherited_tags), json.dumps(h.properties),
                        h.scheduled, h.deadline, h.closed, h.cell_index,
                    ),
                )
                heading_ids.append((h.line_number, int(hcur.lastrowid)))

            self.conn.executemany(
                "INSERT INTO source_blocks "
                "(file_id, file_path, language, content, line_number, headers, cell_index) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (file_id, path, b.language, b.content, b.line_number,
                     json.dumps(b.headers), b.cell_index)
                    for b in blocks
                ],
            )

            heading_ids.sort()
            link_rows = []
            for link in links:
                owner = None
                for line, hid in heading_ids:
                    if line > link.line_number:
                        break
                    owner = hid
                link_rows.append(
                    (file_id, path, link.link_type, link.target, link.description,
                     link.line_number, owner)
                )
            self.conn.executemany(
                "INSERT INTO links "
                "(file_id, file_path, link_type, target, description, line_number, heading_id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                link_rows,
            )

            self.conn.executemany(
                "INSERT OR IGNORE INTO hashtags (tag, file_path) VALUES (?, ?)",
                [(tag.lower(), path) for tag in hashtags],
            )
            self.conn.execute(
                "INSERT INTO fts_content (file_path, title, content) VALUES (?, ?, ?)",
                (path, title, content),
            )
        return file_id

    # --- chunks ---

    def delete_chunks(self, path: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM chunks WHERE file_path = ?", (path,))

    def insert_chunks(
        self, file_id: int, path: str, chunks: Sequence[tuple[int, int, str]]
    ) -> list[int]:
        """Insert ``(line_start, line_end, text)`` rows and return their ids."""
        ids: list[int] = []
        with self.conn:
            for line_start, line_end, text in chunks:
                cur = self.conn.execute(
                    "INSERT INTO chunks (file_id, file_path, content, line_start, line_end) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (file_id, path, text, line_start, line_end),
                )
                ids.append(int(cur.lastrowid))
        return ids

    def clear_chunks(self) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM chunks")

    def count_chunks(self, path: Optional[str] = None) -> int:
        if path is None:
            return int(self.conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0])
        return int(
            self.conn.execute(
                "SELECT COUNT(*) FROM chunks WHERE file_path = ?", (path,)
            ).fetchone()[0]
        )

    # --- full text ---

    def search_fts(
        self, query: str, limit: int = 100, path_prefix: Optional[str] = None
    ) -> list[sqlite3.Row]:
        """BM25-ranked MATCH; raises sqlite3.OperationalError on bad FTS syntax."""
        scope_sql, scope_args = _scope_clause("file_path", path_prefix)
        return self.conn.execute(
            f"""
            SELECT file_path, title,
                   snippet(fts_content, 2, '<mark>', '</mark>', '...', 32) AS snippet,
                   bm25(fts_content) AS score
            FROM fts_content
            WHERE fts_content MATCH ?{scope_sql}
            ORDER BY score
            LIMIT ?
            """,
            [query, *scope_args, limit],
        ).fetchall()

    # --- headings, blocks, tags ---

    @staticmethod
    def _row_to_heading(row: sqlite3.Row) -> HeadingRecord:
        return HeadingRecord(
            id=row["id"],
            file_id=row["file_id"],
            file_path=row["file_path"],
            level=row["level"],
            title=row["title"],
            line_number=row["line_number"],
            begin_pos=row["begin_pos"],
            todo_state=row["todo_state"],
            priority=row["priority"],
            tags=json.loads(row["tags"] or "[]"),
            inherited_tags=json.loads(row["inherited_tags"] or "[]"),
            properties=json.loads(row["properties"] or "{}"),
            scheduled=row["scheduled"],
            deadline=row["deadline"],
            closed=row["closed"],
            cell_index=row["cell_index"],
        )

    @staticmethod
    def _row_to_block(row: sqlite3.Row) -> SourceBlockRecord:
        return SourceBlockRecord(
            id=row["id"],
            file_id=row["file_id"],
            file_path=row["file_path"],
            language=row["language"],
            content=row["content"],
            line_number=row["line_number"],
            headers=json.loads(row["headers"] or "{}"),
            cell_index=row["cell_index"],
        )

    def get_headings(self, path: str) -> list[HeadingRecord]:
        rows = self.conn.execute(
            "SELECT * FROM headings WHERE file_path = ? ORDER BY line_number", (path,)
        ).fetchall()
        return [self._row_to_heading(r) for r in rows]

    def get_links(self, path: str) -> list[LinkRecord]:
        rows = self.conn.execute(
            "SELECT * FROM links WHERE file_path = ? ORDER BY line_number", (path,)
        ).fetchall()
        return [
            LinkRecord(
                id=r["id"], file_id=r["file_id"], file_path=r["file_path"],
                link_type=r["link_type"], target=r["target"],
                description=r["description"], line_number=r["line_number"],
                heading_id=r["heading_id"],
            )
            for r in rows
        ]

    def get_source_blocks(self, path: str) -> list[SourceBlockRecord]:
        rows = self.conn.execute(
            "SELECT * FROM source_blocks WHERE file_path = ? ORDER BY line_number", (path,)
        ).fetchall()
        return [self._row_to_block(r) for r in rows]

    def search_headings(
        self,
        query: str = "",
        *,
        todo_state: Optional[str] = None,
        tag: Optional[str] = None,
        limit: int = 100,
        path_prefix: Optional[str] = None,
    ) -> list[HeadingRecord]:
        sql = "SELECT * FROM headings WHERE title LIKE ?"
        args: list[Any] = [f"%{query}%"]
        if todo_state:
            sql += " AND todo_state = ?"
            args.append(todo_state)
        if tag:
            sql += " AND (tags LIKE ? OR inherited_tags LIKE ?)"
            args.extend([f'%"{tag}"%', f'%"{tag}"%'])
        scope_sql, scope_args = _scope_clause("file_path", path_prefix)
        sql += scope_sql + " ORDER BY file_path, line_number LIMIT ?"
        args.extend([*scope_args, limit])
        return [self._row_to_heading(r) for r in self.conn.execute(sql, args)]

    def search_by_property(self, name: str, value: Optional[str] = None) -> list[HeadingRecord]:
        rows = self.conn.execute(
            "SELECT * FROM headings WHERE properties LIKE ? ORDER BY file_path, line_number",
            (f'%"{name}"%',),
        ).fetchall()
        out = []
        for r in rows:
            heading = self._row_to_heading(r)
            if name not in heading.properties:
                continue
            if value is not None and heading.properties[name] != value:
                continue
            out.append(heading)
        return out

    def search_source_blocks(
        self, language: Optional[str] = None, query: Optional[str] = None, limit: int = 100
    ) -> list[SourceBlockRecord]:
        sql = "SELECT * FROM source_blocks WHERE 1=1"
        args: list[Any] = []
        if language:
            sql += " AND language = ?"
            args.append(language)
        if query:
            sql += " AND content LIKE ?"
            args.append(f"%{query}%")
        sql += " ORDER BY file_path, line_number LIMIT ?"
        args.append(limit)
        return [self._row_to_block(r) for r in self.conn.execute(sql, args)]

    def get_todos(self, state: Optional[str] = None) -> list[HeadingRecord]:
        if state:
            rows = self.conn.execute(
                "SELECT * FROM headings WHERE todo_state = ? ORDER BY file_path, line_number",
                (state,),
            )
        else:
            rows = self.conn.execute(
                "SELECT * FROM headings WHERE todo_state IS NOT NULL "
                "ORDER BY file_path, line_number"
            )
        return [self._row_to_heading(r) for r in rows]

    def get_all_tags(self) -> list[str]:
        tags: set[str] = set()
        for (raw,) in self.conn.execute("SELECT DISTINCT tags FROM headings WHERE tags != '[]'"):
            tags.update(json.loads(raw))
        return sorted(tags)

    def get_all_todo_states(self) -> list[str]:
        rows = self.conn.execute(
            "SELECT DISTINCT todo_state FROM headings WHERE todo_state IS NOT NULL "
            "ORDER BY todo_state"
        )
        return [r[0] for r in rows]

    def get_all_languages(self) -> list[str]:
        rows = self.conn.execute("SELECT DISTINCT language FROM source_blocks ORDER BY language")
        return [r[0] for r in rows]

    def find_by_hashtag(self, tag: str) -> list[str]:
        rows = self.conn.execute(
            "SELECT file_path FROM hashtags WHERE tag = ? ORDER BY file_path",
            (tag.lower().lstrip("#"),),
        )
        return [r[0] for r in rows]

    def get_all_hashtags(self) -> list[str]:
        return [r[0] for r in self.conn.execute("SELECT DISTINCT tag FROM hashtags ORDER BY tag")]

    # --- stats / maintenance ---

    def _count(self, sql: str, args: Sequence[Any] = ()) -> int:
        return int(self.conn.execute(sql, args).fetchone()[0])

    def counts(self) -> dict[str, int]:
        return {
            "files": self._count("SELECT COUNT(*) FROM files"),
            "headings": self._count("SELECT COUNT(*) FROM headings"),
            "blocks": self._count("SELECT COUNT(*) FROM source_blocks"),
            "links": self._count("SELECT COUNT(*) FROM links"),
            "chunks": self._count("SELECT COUNT(*) FROM chunks"),
        }

    def counts_by_type(self) -> dict[str, int]:
        rows = self.conn.execute("SELECT file_type, COUNT(*) FROM files GROUP BY file_type")
        return {r[0]: int(r[1]) for r in rows}

    def last_indexed(self) -> Optional[int]:
        row = self.conn.execute("SELECT MAX(indexed_at) FROM files").fetchone()
        return int(row[0]) if row and row[0] is not None else None

    def orphan_counts(self) -> tuple[int, int]:
        headings = self._count(
            "SELECT COUNT(*) FROM headings h LEFT JOIN files f ON h.file_id = f.id "
            "WHERE f.id IS NULL"
        )
        blocks = self._count(
            "SELECT COUNT(*) FROM source_blocks sb LEFT JOIN files f ON sb.file_id = f.id "
            "WHERE f.id IS NULL"
        )
        return headings, blocks

    def clear(self) -> None:
        with self.conn:
            for table in (
                "chunks", "fts_content", "hashtags", "links", "source_blocks", "headings", "files"
            ):
                self.conn.execute(f"DELETE FROM {table}")

    def vacuum(self) -> None:
        self.conn.execute("VACUUM")

    # --- db_metadata ---

    def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM db_metadata WHERE key = ?", (key,)).fetchone()
        return row[0] if row else default

    def set_meta(self, key: str, value: str) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT INTO db_metadata (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "updated_at = excluded.updated_at",
                (key, value, now_ms()),
            )

    def get_meta_json(self, key: str, default: Any = None) -> Any:
        raw = self.get_meta(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed db_metadata value for %s", key)
            return default

    def set_meta_json(self, key: str, value: Any) -> None:
        self.set_meta(key, json.dumps(value))

    # --- projects ---

    @staticmethod
    def _row_to_project(row: sqlite3.Row) -> ProjectRecord:
        return ProjectRecord(
            id=int(row["id"]),
            path=row["path"],
            name=row["name"],
            type=row["type"],
            last_opened=row["last_opened"],
            created_at=row["created_at"],
        )

    def add_project(self, path: str, name: Optional[str] = None, type: str = "manual") -> int:
        with self.conn:
            self.conn.execute(
                "INSERT OR IGNORE INTO projects (path, name, type, created_at) VALUES (?, ?, ?, ?)",
                (path, name or Path(path).name, type, now_ms()),
            )
        row = self.conn.execute("SELECT id FROM projects WHERE path = ?", (path,)).fetchone()
        return int(row[0])

    def get_projects(self) -> list[ProjectRecord]:
        rows = self.conn.execute(
            "SELECT * FROM projects ORDER BY last_opened DESC, name"
        ).fetchall()
        return [self._row_to_project(r) for r in rows]

    def get_project_by_path(self, path: str) -> Optional[ProjectRecord]:
        row = self.conn.execute("SELECT * FROM projects WHERE path = ?", (path,)).fetchone()
        return self._row_to_project(row) if row else None

    def remove_project(self, path: str) -> None:
        with self.conn:
            row = self.conn.execute("SELECT id FROM projects WHERE path = ?", (path,)).fetchone()
            if row:
                self.conn.execute(
                    "UPDATE files SET project_id = NULL WHERE project_id = ?", (row[0],)
                )
                self.conn.execute("DELETE FROM projects WHERE id = ?", (row[0],))

    def touch_project(self, path: str) -> None:
        with self.conn:
            self.conn.execute(
                "UPDATE projects SET last_opened = ? WHERE path = ?", (now_ms(), path)
            )

    def get_project_for_file(self, file_path: str) -> Optional[ProjectRecord]:
        """Deepest project whose directory contains ``file_path``."""
        best: Optional[ProjectRecord] = None
        for project in self.get_projects():
            prefix = project.path.rstrip("/") + "/"
            if file_path.startswith(prefix) and (best is None or len(project.path) > len(best.path)):
                best = project
        return best

    def get_files_in_project(self, project_id: int) -> list[FileRecord]:
        rows = self.conn.execute(
            "SELECT * FROM files WHERE project_id = ? ORDER BY path", (project_id,)
        ).fetchall()
        return [self._row_to_file(r) for r in rows]
