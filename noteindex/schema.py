from datetime import datetime
from functools import lru_cache

from lancedb.pydantic import LanceModel, Vector


@lru_cache(maxsize=None)
def get_chunk_model(dimension: int) -> type[LanceModel]:
    """Return the LanceDB row model for note chunks with a fixed vector width."""

    class NoteChunk(LanceModel):
        vector: Vector(dimension)  # type: ignore[valid-type]
        chunk_id: int
        file_id: int
        file_path: str
        line_start: int
        line_end: int
        content: str
        last_updated: datetime

    return NoteChunk
