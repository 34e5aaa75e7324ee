from datetime import datetime, timezone

import numpy as np

from noteindex.storage.vector import VectorIndex


def _row(chunk_id, path, vector, line=1):
    return {
        "vector": [float(x) for x in vector],
        "chunk_id": chunk_id,
        "file_id": 1,
        "file_path": path,
        "line_start": line,
        "line_end": line + 1,
        "content": f"chunk {chunk_id}",
        "last_updated": datetime.now(timezone.utc),
    }


def test_vector_index_add_search_delete(tmp_path):
    v = VectorIndex(tmp_path / "lance", 4)
    assert v.supported, v.error
    v.add([
        _row(1, "/n/a.org", [1, 0, 0, 0]),
        _row(2, "/n/b_c.org", [0, 1, 0, 0]),
        _row(3, "/n/sub/c.org", [0.9, 0.1, 0, 0], line=5),
    ])
    assert v.count() == 3

    rows = v.search(np.array([1, 0, 0, 0], dtype="float32"), limit=3)
    assert rows[0]["file_path"] == "/n/a.org"
    assert rows[0]["_distance"] < rows[-1]["_distance"]

    scoped = v.search([1, 0, 0, 0], limit=3, path_prefix="/n/sub/")
    assert [r["file_path"] for r in scoped] == ["/n/sub/c.org"]

    v.delete_file("/n/a.org")
    assert v.count() == 2


def test_reset_changes_dimension(tmp_path):
    v = VectorIndex(tmp_path / "lance", 4)
    v.add([_row(1, "/n/a.org", [1, 0, 0, 0])])
    v.reset(8)
    assert v.dimension == 8
    assert v.count() == 0
    v.add([_row(2, "/n/a.org", [1, 0, 0, 0, 0, 0, 0, 0])])
    assert v.count() == 1


def test_reopen_with_other_dimension_recreates_table(tmp_path):
    v = VectorIndex(tmp_path / "lance", 4)
    v.add([_row(1, "/n/a.org", [1, 0, 0, 0])])
    reopened = VectorIndex(tmp_path / "lance", 8)
    assert reopened.supported
    assert reopened.count() == 0
