"""Pure analysis helpers for chunking, content extraction, and file classification."""

from .chunking import chunk_text, hard_wrap
from .extraction import (ContentExtractor, DefaultExtractor, ParsedDocument,
                         ParsedHeading, extract_hashtags, flatten_headings)
from .filetypes import classify_path, is_binary_content, is_supported

__all__ = [
    "ContentExtractor",
    "DefaultExtractor",
    "ParsedDocument",
    "ParsedHeading",
    "chunk_text",
    "classify_path",
    "extract_hashtags",
    "flatten_headings",
    "hard_wrap",
    "is_binary_content",
    "is_supported",
]
