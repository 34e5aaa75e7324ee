# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Configuration loader for noteindex.

Loads configuration from config.json file with fallback to environment variables.
"""

import os
import json
from pathlib import Path
from typing import Dict, Any, Optional
import logging

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_DIMENSION = 384
DEFAULT_OLLAMA_URL = "http://localhost:11434"
SEARCH_MODES = ("fast", "semantic", "hybrid", "advanced")
EXPANSION_METHODS = ("prf", "llm", "both")


def _parse_csv_list(raw_value: Optional[str]) -> list[str]:
    """Parse comma-separated environment variable values into a list."""
    if not raw_value:
        return []
    return [item.strip() for item in raw_value.split(",") if item.strip()]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    """Configuration manager for noteindex."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config.json file. If None, searches in:
                1. ./config.json (current directory)
                2. ~/.noteindex/config.json
                3. Falls back to environment variables
        """
        self.config_data: Dict[str, Any] = {}
        self._load_config(config_path)
        self._validate_embeddings_dimension()
        self._validate_search_mode()

    def _load_config(self, config_path: Optional[Path] = None):
        """Load configuration from file or environment."""
        if config_path:
            if config_path.exists():
                self._load_from_file(config_path)
                return
            logger.info(
                f"Config path {config_path} does not exist, "
                "using environment variables"
            )
            self._load_from_env()
            return

        local_config = Path("config.json")
        if local_config.exists():
            self._load_from_file(local_config)
            return

        user_config = Path.home() / ".noteindex" / "config.json"
        if user_config.exists():
            self._load_from_file(user_config)
            return

        logger.info("No config.json found, using environment variables")
        self._load_from_env()

    def _validate_embeddings_dimension(self) -> None:
        """Validate the configured embeddings dimension, defaulting when unusable."""
        dimension_value = self.get("embeddings.dimension")
        if dimension_value is None:
            return

        try:
            dimension = int(dimension_value)
            if dimension <= 0:
                raise ValueError(dimension_value)
        except (TypeError, ValueError):
            logger.warning(
                "Invalid embeddings.dimension '%s', defaulting to %s",
                dimension_value,
                DEFAULT_EMBEDDING_DIMENSION,
            )
            self.config_data.setdefault("embeddings", {})["dimension"] = (
                DEFAULT_EMBEDDING_DIMENSION
            )
            return

        self.config_data.setdefault("embeddings", {})["dimension"] = dimension

    def _validate_search_mode(self) -> None:
        mode = self.get("search.default_mode")
        if mode is not None and mode not in SEARCH_MODES:
            logger.warning("Unknown search.default_mode '%s', using 'hybrid'", mode)
            self.config_data.setdefault("search", {})["default_mode"] = "hybrid"

    def _load_from_file(self, path: Path):
        """Load configuration from JSON file."""
        try:
            with open(path, "r") as f:
                self.config_data = json.load(f)
            logger.info(f"Loaded configuration from {path}")
        except (OSError, ValueError) as e:
            logger.error(f"Error loading config from {path}: {e}")
            self._load_from_env()

    def _load_from_env(self):
        """Load configuration from NOTEINDEX_* environment variables."""
        self.config_data = {
            "server": {
                "log_level": os.getenv("NOTEINDEX_LOG_LEVEL", "INFO"),
                "log_file": os.getenv("NOTEINDEX_LOG_FILE") or None,
            },
            "index": {
                "path": os.getenv("NOTEINDEX_INDEX_PATH", "~/.noteindex"),
                "include": _parse_csv_list(os.getenv("NOTEINDEX_INCLUDE_DIRS")),
                "exclude": _parse_csv_list(os.getenv("NOTEINDEX_EXCLUDE")),
            },
            "watch": {
                "enabled": _env_bool("NOTEINDEX_WATCH_ENABLED", "true"),
                "debounce_seconds": float(os.getenv("NOTEINDEX_WATCH_DEBOUNCE", "0.5")),
            },
            "embeddings": {
                "enabled": _env_bool("NOTEINDEX_EMBEDDINGS_ENABLED", "false"),
                "provider": os.getenv("NOTEINDEX_EMBEDDINGS_PROVIDER") or None,
                "model": os.getenv("NOTEINDEX_EMBEDDINGS_MODEL") or None,
                "dimension": os.getenv("NOTEINDEX_EMBEDDINGS_DIMENSION") or None,
                "api_key": os.getenv("NOTEINDEX_EMBEDDINGS_API_KEY") or None,
            },
            "search": {
                "default_mode": os.getenv("NOTEINDEX_SEARCH_MODE", "hybrid"),
                "ollama_url": os.getenv("NOTEINDEX_OLLAMA_URL", DEFAULT_OLLAMA_URL),
            },
            "admin": self._load_admin_from_env(),
        }

    def _load_admin_from_env(self) -> Dict[str, Any]:
        """Load admin config from environment variables."""
        allowed_ips_raw = os.getenv("NOTEINDEX_ADMIN_ALLOWED_IPS", "127.0.0.1,::1")
        return {
            "enabled": _env_bool("NOTEINDEX_ADMIN_ENABLED", "true"),
            "host": os.getenv("NOTEINDEX_ADMIN_HOST", "127.0.0.1"),
            "port": int(os.getenv("NOTEINDEX_ADMIN_PORT", "8765")),
            "api_key": os.getenv("NOTEINDEX_ADMIN_API_KEY") or None,
            "allowed_ips": _parse_csv_list(allowed_ips_raw),
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-notation key."""
        keys = key.split(".")
        value = self.config_data
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value by dot-notation key (in memory only)."""
        keys = key.split(".")
        node = self.config_data
        for k in keys[:-1]:
            node = node.setdefault(k, {})
        node[keys[-1]] = value

    # --- Server / logging ---

    @property
    def log_level(self) -> str:
        return str(self.get("server.log_level", "INFO")).upper()

    @property
    def log_file(self) -> Optional[str]:
        """Log file path from config or NOTEINDEX_LOG_FILE."""
        return self.get("server.log_file") or os.getenv("NOTEINDEX_LOG_FILE") or None

    # --- Index ---

    @property
    def index_path(self) -> Path:
        path_str = self.get("index.path", "~/.noteindex")
        return Path(path_str).expanduser().resolve()

    @property
    def db_path(self) -> Path:
        return self.index_path / "notes.db"

    @property
    def lance_dir(self) -> Path:
        """Directory used by LanceDB, defaulting to ``index_path / "lancedb"``."""
        path_str = self.get("index.lance_dir")
        if path_str:
            return Path(path_str).expanduser().resolve()
        return self.index_path / "lancedb"

    @property
    def max_file_size_mb(self) -> float:
        return float(self.get("index.max_file_size_mb", 10))

    @property
    def max_file_lines(self) -> int:
        return int(self.get("index.max_file_lines", 10000))

    @property
    def exclude_patterns(self) -> list[str]:
        """Glob patterns or literal paths skipped during walks."""
        value = self.get("index.exclude", [])
        if isinstance(value, str):
            value = [value]
        return [str(item) for item in value if str(item).strip()]

    @property
    def include_directories(self) -> list[str]:
        value = self.get("index.include", [])
        if isinstance(value, str):
            value = [value]
        return [str(item) for item in value if str(item).strip()]

    # --- Watcher ---

    @property
    def watch_enabled(self) -> bool:
        return bool(self.get("watch.enabled", True))

    @property
    def watch_debounce_seconds(self) -> float:
        """Get file watch debounce time in seconds."""
        return float(self.get("watch.debounce_seconds", 0.5))

    # --- Embeddings ---

    @property
    def embeddings_enabled(self) -> bool:
        return bool(self.get("embeddings.enabled", False))

    @property
    def embeddings_provider(self) -> Optional[str]:
        """Get embeddings provider (ollama, openai, sentence-transformers)."""
        return self.get("embeddings.provider")

    @property
    def embeddings_model(self) -> Optional[str]:
        return self.get("embeddings.model")

    @property
    def embeddings_dimension(self) -> Optional[int]:
        """Explicit dimension override; None lets the provider decide."""
        value = self.get("embeddings.dimension")
        return int(value) if value is not None else None

    @property
    def embeddings_api_key(self) -> Optional[str]:
        """API key from config, falling back to OPENAI_API_KEY."""
        return self.get("embeddings.api_key") or os.getenv("OPENAI_API_KEY") or None

    @property
    def embeddings_base_url(self) -> Optional[str]:
        return self.get("embeddings.base_url")

    @property
    def embeddings_timeout_seconds(self) -> float:
        return float(self.get("embeddings.timeout_seconds", 30.0))

    @property
    def embeddings_kwargs(self) -> dict:
        """Extra keyword arguments passed through to the provider constructor."""
        value = self.get("embeddings.kwargs", {})
        return dict(value) if isinstance(value, dict) else {}

    # --- Background sync ---

    @property
    def sync_auto_check_stale(self) -> bool:
        return bool(self.get("sync.auto_check_stale", True))

    @property
    def sync_stale_check_delay_seconds(self) -> float:
        return float(self.get("sync.stale_check_delay_seconds", 5.0))

    @property
    def sync_max_reindex(self) -> int:
        return int(self.get("sync.max_reindex_per_sync", 50))

    @property
    def sync_max_new_files(self) -> int:
        return int(self.get("sync.max_new_files_per_sync", 50))

    @property
    def sync_dirs_per_session(self) -> int:
        return int(self.get("sync.dirs_per_session", 5))

    @property
    def sync_batch_size(self) -> int:
        return int(self.get("sync.batch_size", 25))

    @property
    def sync_yield_ms(self) -> int:
        return int(self.get("sync.yield_ms", 10))

    # --- Search ---

    @property
    def search_default_mode(self) -> str:
        return self.get("search.default_mode", "hybrid")

    @property
    def search_default_limit(self) -> int:
        return int(self.get("search.default_limit", 20))

    @property
    def ollama_url(self) -> str:
        return str(self.get("search.ollama_url", DEFAULT_OLLAMA_URL)).rstrip("/")

    @property
    def expansion_enabled(self) -> bool:
        return bool(self.get("search.query_expansion.enabled", True))

    @property
    def expansion_method(self) -> str:
        method = self.get("search.query_expansion.method", "prf")
        return method if method in EXPANSION_METHODS else "prf"

    @property
    def expansion_prf_top_k(self) -> int:
        return int(self.get("search.query_expansion.prf_top_k", 5))

    @property
    def expansion_prf_term_count(self) -> int:
        return int(self.get("search.query_expansion.prf_term_count", 5))

    @property
    def expansion_llm_model(self) -> str:
        return self.get("search.query_expansion.llm_model", "qwen3:1.7b")

    @property
    def expansion_max_variants(self) -> int:
        return int(self.get("search.query_expansion.max_variants", 3))

    @property
    def reranking_enabled(self) -> bool:
        return bool(self.get("search.reranking.enabled", False))

    @property
    def reranking_model(self) -> str:
        return self.get("search.reranking.model", "qwen3:0.6b")

    @property
    def reranking_top_k(self) -> int:
        return int(self.get("search.reranking.top_k", 30))

    @property
    def reranking_use_position_blending(self) -> bool:
        return bool(self.get("search.reranking.use_position_blending", True))

    @property
    def reranking_batch_size(self) -> int:
        return int(self.get("search.reranking.batch_size", 5))

    @property
    def reranking_timeout_seconds(self) -> float:
        return float(self.get("search.reranking.timeout_seconds", 30.0))

    @property
    def hybrid_fts_weight(self) -> float:
        return float(self.get("search.hybrid.fts_weight", 0.5))

    @property
    def hybrid_vector_weight(self) -> float:
        return float(self.get("search.hybrid.vector_weight", 0.5))

    @property
    def hybrid_k(self) -> int:
        """RRF smoothing constant used by the advanced pipeline."""
        return int(self.get("search.hybrid.k", 60))

    @property
    def hybrid_use_position_bonus(self) -> bool:
        return bool(self.get("search.hybrid.use_position_bonus", True))

    @property
    def cache_enabled(self) -> bool:
        return bool(self.get("search.caching.enabled", True))

    @property
    def cache_ttl_seconds(self) -> float:
        return float(self.get("search.caching.ttl_seconds", 900))

    @property
    def cache_max_entries(self) -> int:
        return int(self.get("search.caching.max_entries", 500))

    # --- Admin API configuration ---

    @property
    def admin_enabled(self) -> bool:
        return self.get("admin.enabled", True)

    @property
    def admin_host(self) -> str:
        return self.get("admin.host", "127.0.0.1")

    @property
    def admin_port(self) -> int:
        return int(self.get("admin.port", 8765))

    @property
    def admin_api_key(self) -> Optional[str]:
        return self.get("admin.api_key")

    @property
    def admin_allowed_ips(self) -> list[str]:
        return self.get("admin.allowed_ips", ["127.0.0.1", "::1"])


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def load_config(config_path: Optional[Path] = None):
    """Load configuration from specified path."""
    global _config
    _config = Config(config_path)
    return _config
