# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Pytest configuration and shared fixtures for noteindex tests.
"""

import hashlib

import numpy as np
import pytest
from numpy.random import default_rng

import noteindex.config as note_config
from noteindex.indexer import NoteIndex

WORK_ORG = """#+TITLE: Work
* Work :work:
** TODO Urgent task :urgent:
   DEADLINE: <2025-03-14 Fri>
   :PROPERTIES:
   :OWNER: dana
   :END:
Project deadline is Friday.
#+BEGIN_SRC python :results output
print("release")
#+END_SRC
See [[https://example.com][Example]] and #planning
"""

NOTES_MD = """# Groceries #home
Buy milk and eggs at the market.

## [TODO] Call plumber
The kitchen sink leaks again.

```python
x = 1
```
"""


class HashEmbeddingProvider:
    """Deterministic provider: each text seeds its own unit vector."""

    name = "hash"

    def __init__(self, dimensions: int = 32):
        self.dimensions = dimensions
        self.calls = 0

    def _vector(self, text: str) -> np.ndarray:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        # Use int from digest to seed a local RNG; avoid global np.random state
        rng = default_rng(int.from_bytes(digest[:8], "big", signed=False))
        vec = rng.standard_normal(self.dimensions).astype("float32")
        return vec / (np.linalg.norm(vec) + 1e-8)

    async def embed(self, text):
        self.calls += 1
        return self._vector(text)

    async def embed_batch(self, texts):
        self.calls += 1
        if not texts:
            return np.zeros((0, self.dimensions), dtype="float32")
        return np.stack([self._vector(t) for t in texts])


class FailingEmbeddingProvider(HashEmbeddingProvider):
    name = "failing"

    async def embed(self, text):
        raise RuntimeError("provider down")

    async def embed_batch(self, texts):
        raise RuntimeError("provider down")


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Config pointing at a temp index, with network features off."""
    cfg = note_config.Config(tmp_path / "missing-config.json")
    cfg.config_data = {
        "server": {"log_level": "DEBUG"},
        "index": {"path": str(tmp_path / "index"), "include": [], "exclude": []},
        "watch": {"enabled": False, "debounce_seconds": 0.05},
        "embeddings": {"enabled": False},
        "sync": {"auto_check_stale": False, "batch_size": 10, "yield_ms": 0},
        "search": {
            "default_mode": "hybrid",
            "ollama_url": "http://127.0.0.1:9",
            "query_expansion": {"enabled": True, "method": "prf"},
            "reranking": {"enabled": False},
        },
        "admin": {
            "enabled": True,
            "host": "127.0.0.1",
            "port": 8765,
            "api_key": None,
            "allowed_ips": ["127.0.0.1", "testclient"],
        },
    }
    monkeypatch.setattr(note_config, "_config", cfg)
    return cfg


@pytest.fixture
def notes_dir(tmp_path):
    """A small notes tree with org and Markdown files plus ignored paths."""
    root = tmp_path / "notes"
    root.mkdir()
    (root / "work.org").write_text(WORK_ORG)
    (root / "notes.md").write_text(NOTES_MD)
    (root / "readme.txt").write_text("not indexed")

    hidden = root / ".hidden"
    hidden.mkdir()
    (hidden / "secret.org").write_text("* Secret\n")

    modules = root / "node_modules"
    modules.mkdir()
    (modules / "pkg.md").write_text("# Vendored\n")
    return root


@pytest.fixture
def embedder():
    return HashEmbeddingProvider(32)


@pytest.fixture
def test_index(test_config, embedder):
    """NoteIndex with the deterministic embedding provider."""
    index = NoteIndex(test_config, embedding_provider=embedder)
    yield index
    index.close()


@pytest.fixture
def lexical_index(test_config):
    """NoteIndex without any embedding provider."""
    index = NoteIndex(test_config)
    yield index
    index.close()
