"""Incremental indexing and multi-strategy search over org, Markdown and notebook files."""

from .config import Config, get_config, load_config
from .indexer import NoteIndex

__version__ = "0.1.0"

__all__ = ["Config", "NoteIndex", "get_config", "load_config", "__version__"]
