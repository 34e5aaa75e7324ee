"""Document type and source-block language classification helpers."""

from __future__ import annotations

from pathlib import Path

DOCUMENT_EXTS = {
    ".org": "org",
    ".md": "md",
    ".markdown": "md",
    ".ipynb": "ipynb",
}

# Never run binary detection on these; org files routinely embed control
# characters in babel results.
KNOWN_TEXT_EXTS = {".org", ".md", ".markdown", ".txt"}

LANGUAGE_ALIASES = {
    "py": "python",
    "python3": "python",
    "ipython": "python",
    "js": "javascript",
    "ts": "typescript",
    "sh": "shell",
    "bash": "shell",
    "zsh": "shell",
    "elisp": "emacs-lisp",
    "el": "emacs-lisp",
    "jupyter-python": "python",
    "yml": "yaml",
    "rs": "rust",
    "rb": "ruby",
    "c++": "cpp",
    "cxx": "cpp",
}

BINARY_SAMPLE_CHARS = 8192
BINARY_RATIO = 0.1


def classify_path(path: str | Path) -> str | None:
    """Return the document type for ``path`` or None when unsupported."""
    return DOCUMENT_EXTS.get(Path(path).suffix.lower())


def is_supported(path: str | Path) -> bool:
    return classify_path(path) is not None


def normalize_language(name: str | None) -> str:
    lang = (name or "").strip().lower()
    if not lang:
        return "text"
    return LANGUAGE_ALIASES.get(lang, lang)


def is_binary_content(content: str) -> bool:
    """NUL bytes or more than 10% non-printable characters in the first 8 KB."""
    sample = content[:BINARY_SAMPLE_CHARS]
    if not sample:
        return False
    if "\0" in sample:
        return True
    non_printable = sum(
        1 for ch in sample if (ord(ch) < 32 and ch not in "\t\n\r") or ord(ch) == 127
    )
    return non_printable / len(sample) > BINARY_RATIO


def needs_binary_check(path: str | Path) -> bool:
    return Path(path).suffix.lower() not in KNOWN_TEXT_EXTS
