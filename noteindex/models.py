# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Records stored by the index and result objects returned to callers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Optional


@dataclass
class FileRecord:
    """A tracked document. ``mtime`` is in milliseconds since the epoch."""

    id: int
    path: str
    file_type: str
    mtime: float
    hash: str
    size: int
    indexed_at: int
    project_id: Optional[int] = None


@dataclass
class HeadingRecord:
    """A heading row; ``tags`` are its own, ``inherited_tags`` come from ancestors."""

    file_path: str
    level: int
    title: str
    line_number: int
    begin_pos: int = 0
    todo_state: Optional[str] = None
    priority: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    inherited_tags: list[str] = field(default_factory=list)
    properties: dict[str, str] = field(default_factory=dict)
    scheduled: Optional[str] = None
    deadline: Optional[str] = None
    closed: Optional[str] = None
    cell_index: Optional[int] = None
    id: Optional[int] = None
    file_id: Optional[int] = None


@dataclass
class SourceBlockRecord:
    file_path: str
    language: str
    content: str
    line_number: int
    headers: dict[str, str] = field(default_factory=dict)
    cell_index: Optional[int] = None
    id: Optional[int] = None
    file_id: Optional[int] = None


@dataclass
class LinkRecord:
    file_path: str
    link_type: str
    target: str
    line_number: int
    description: Optional[str] = None
    heading_id: Optional[int] = None
    id: Optional[int] = None
    file_id: Optional[int] = None


@dataclass
class ProjectRecord:
    id: int
    path: str
    name: str
    type: str = "manual"
    last_opened: Optional[int] = None
    created_at: Optional[int] = None


@dataclass
class SearchResult:
    """Uniform result shape shared by every search strategy."""

    type: str
    file_path: str
    line_number: int
    preview: str
    score: float
    title: Optional[str] = None
    distance: Optional[float] = None
    query_source: Optional[str] = None
    retrieval_method: Optional[str] = None
    reranker_score: Optional[float] = None
    retrieval_rank: Optional[int] = None

    @property
    def key(self) -> tuple[str, int]:
        return (self.file_path, self.line_number)

    def with_updates(self, **changes: Any) -> "SearchResult":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class DbStats:
    files: int = 0
    headings: int = 0
    blocks: int = 0
    links: int = 0
    chunks: int = 0
    has_embeddings: bool = False
    vector_search_supported: bool = False
    vector_search_error: Optional[str] = None
    last_indexed: Optional[int] = None
    by_type: dict[str, int] = field(default_factory=dict)
    embedding_queue: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StaleCheckResult:
    checked: int = 0
    stale: int = 0
    deleted: int = 0
    reindexed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ScanResult:
    scanned: int = 0
    new_files: int = 0
    changed: int = 0
    indexed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RebuildResult:
    files_indexed: int = 0
    errors: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class VerifyResult:
    ok: bool
    issues: list[str]
    files: int = 0
    missing_files: int = 0
    stale_files: int = 0
    orphaned_headings: int = 0
    orphaned_blocks: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "issues": list(self.issues),
            "stats": {
                "files": self.files,
                "missing_files": self.missing_files,
                "stale_files": self.stale_files,
                "orphaned_headings": self.orphaned_headings,
                "orphaned_blocks": self.orphaned_blocks,
            },
        }


@dataclass
class MigrationEntry:
    version: int
    applied_at: int
    description: str


@dataclass
class SchemaInfo:
    current_version: int
    latest_version: int
    history: list[MigrationEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
