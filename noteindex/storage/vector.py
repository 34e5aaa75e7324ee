"""Vector index wrapper around LanceDB.

A single table holds one row per chunk with a fixed-width vector column.
Availability is probed once at construction; callers check
:attr:`VectorIndex.supported` before every vector operation instead of
retrying a broken backend per call.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional, Sequence

import lancedb
import numpy as np
import pyarrow as pa

from ..schema import get_chunk_model

logger = logging.getLogger(__name__)

TABLE_NAME = "note_chunks"


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class VectorIndex:
    def __init__(self, base_path: Path, dimension: int, table_name: str = TABLE_NAME):
        self.base_path = base_path
        self.dimension = dimension
        self.table_name = table_name
        self.supported = False
        self.error: Optional[str] = None
        self._db: Any = None
        self._table: Any = None
        self._init_db()

    def _init_db(self) -> None:
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            self._db = lancedb.connect(str(self.base_path))
            if self.table_name in set(self._db.table_names()):
                self._table = self._db.open_table(self.table_name)
            else:
                self._create(mode="create")
            actual = self._table_dimension()
            if actual is not None and actual != self.dimension:
                logger.warning(
                    "LanceDB table dimension %s does not match embedding dimension %s; "
                    "recreating vector table",
                    actual,
                    self.dimension,
                )
                self._create(mode="overwrite")
            self.supported = True
            self.error = None
        except Exception as exc:
            # Any backend failure disables vector search for this session.
            self.supported = False
            self.error = f"{type(exc).__name__}: {exc}"
            logger.warning("Vector search unavailable: %s", self.error)
            logger.debug("LanceDB initialisation failed", exc_info=True)

    def _create(self, mode: str) -> None:
        self._table = self._db.create_table(
            self.table_name, schema=get_chunk_model(self.dimension), mode=mode
        )

    def _table_dimension(self) -> Optional[int]:
        try:
            vector_type = self._table.schema.field("vector").type
        except (KeyError, AttributeError):
            logger.debug("Could not inspect LanceDB vector schema", exc_info=True)
            return None
        if isinstance(vector_type, pa.FixedSizeListType):
            return int(vector_type.list_size)
        return None

    def reset(self, dimension: Optional[int] = None) -> None:
        """Drop all vectors, optionally switching the vector width."""
        if not self.supported:
            return
        if dimension is not None:
            self.dimension = dimension
        self._create(mode="overwrite")

    def add(self, records: Sequence[dict]) -> None:
        if not self.supported or not records:
            return
        self._table.add(list(records))

    def delete_file(self, file_path: str) -> None:
        if not self.supported:
            return
        self._table.delete(f"file_path = {_quote(file_path)}")

    def count(self) -> int:
        if not self.supported:
            return 0
        try:
            return int(self._table.count_rows())
        except Exception:
            logger.exception("Failed to count rows on vector table")
            return 0

    def search(
        self,
        vector: Sequence[float] | np.ndarray,
        limit: int = 20,
        path_prefix: Optional[str] = None,
    ) -> list[dict]:
        """Nearest chunks by cosine distance; each row carries ``_distance``."""
        if not self.supported or self.count() == 0:
            return []
        query_vec = np.asarray(vector, dtype="float32")
        q = self._table.search(query_vec).distance_type("cosine")
        if path_prefix:
            like = path_prefix.replace("'", "''") + "%"
            q = q.where(f"file_path LIKE '{like}'", prefilter=True)
        rows = q.limit(limit).to_list()
        if path_prefix:
            # LIKE treats '_' as a wildcard
            rows = [r for r in rows if str(r.get("file_path", "")).startswith(path_prefix)]
        return rows
