import json

import noteindex.config as note_config
from noteindex.config import DEFAULT_EMBEDDING_DIMENSION, Config


def test_load_from_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "index": {"path": str(tmp_path / "idx"), "max_file_lines": 500},
        "search": {"default_mode": "fast", "hybrid": {"fts_weight": 0.7}},
    }))
    cfg = Config(path)
    assert cfg.index_path == (tmp_path / "idx").resolve()
    assert cfg.db_path.name == "notes.db"
    assert cfg.lance_dir == cfg.index_path / "lancedb"
    assert cfg.max_file_lines == 500
    assert cfg.search_default_mode == "fast"
    assert cfg.hybrid_fts_weight == 0.7
    assert cfg.hybrid_vector_weight == 0.5


def test_defaults_match_documented_values(tmp_path):
    cfg = Config(tmp_path / "nope.json")
    assert cfg.sync_max_reindex == 50
    assert cfg.sync_dirs_per_session == 5
    assert cfg.hybrid_k == 60
    assert cfg.reranking_top_k == 30
    assert cfg.expansion_prf_top_k == 5
    assert cfg.cache_max_entries == 500
    assert cfg.admin_port == 8765


def test_invalid_dimension_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"embeddings": {"dimension": "wide"}}))
    cfg = Config(path)
    assert cfg.embeddings_dimension == DEFAULT_EMBEDDING_DIMENSION


def test_unknown_search_mode_falls_back_to_hybrid(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"search": {"default_mode": "turbo"}}))
    assert Config(path).search_default_mode == "hybrid"


def test_env_fallback(tmp_path, monkeypatch):
    monkeypatch.setenv("NOTEINDEX_INDEX_PATH", str(tmp_path / "envidx"))
    monkeypatch.setenv("NOTEINDEX_INCLUDE_DIRS", "/a, /b")
    monkeypatch.setenv("NOTEINDEX_ADMIN_API_KEY", "k")
    cfg = Config(tmp_path / "missing.json")
    assert cfg.index_path == (tmp_path / "envidx").resolve()
    assert cfg.include_directories == ["/a", "/b"]
    assert cfg.admin_api_key == "k"


def test_dot_notation_get_and_set(tmp_path):
    cfg = Config(tmp_path / "missing.json")
    cfg.set("search.reranking.enabled", True)
    assert cfg.get("search.reranking.enabled") is True
    assert cfg.get("search.nothing.here", "fallback") == "fallback"


def test_load_config_replaces_singleton(tmp_path, monkeypatch):
    monkeypatch.setattr(note_config, "_config", None)
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"admin": {"port": 9999}}))
    cfg = note_config.load_config(path)
    assert note_config.get_config() is cfg
    assert cfg.admin_port == 9999
