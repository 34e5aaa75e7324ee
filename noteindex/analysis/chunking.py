"""Stateless text chunking utilities."""

from __future__ import annotations

DEFAULT_CHUNK_CHARS = 2000
DEFAULT_OVERLAP_LINES = 3
HARD_WINDOW_CHARS = 8000
HARD_OVERLAP_CHARS = 200


def hard_wrap(
    text: str, *, window: int = HARD_WINDOW_CHARS, overlap: int = HARD_OVERLAP_CHARS
) -> list[str]:
    """Fallback char-based windowing for runaway chunks."""
    if window <= 0 or len(text) <= window:
        return [text]
    step = max(1, window - overlap)
    return [text[i : i + window] for i in range(0, len(text), step)]


def chunk_text(
    text: str,
    chunk_chars: int = DEFAULT_CHUNK_CHARS,
    overlap_lines: int = DEFAULT_OVERLAP_LINES,
) -> list[tuple[int, int, int, str]]:
    """Split text into ~``chunk_chars`` windows with line tracking.

    Returns ``(chunk_index, line_start, line_end, text)`` tuples with
    1-indexed inclusive line numbers. Each window after the first starts
    with the last ``overlap_lines`` lines of the previous one.
    """
    lines = text.split("\n")
    chunks: list[tuple[int, int, int, str]] = []

    current: list[str] = []
    char_count = 0
    line_start = 1
    fresh_lines = 0

    def flush(line_end: int) -> None:
        body = "\n".join(current).strip()
        if not body:
            return
        pieces = hard_wrap(body)
        for piece in pieces:
            chunks.append((len(chunks), line_start, line_end, piece))

    for i, line in enumerate(lines):
        current.append(line)
        char_count += len(line) + 1
        fresh_lines += 1

        if char_count >= chunk_chars:
            flush(i + 1)
            keep = current[-overlap_lines:] if overlap_lines > 0 else []
            line_start = i + 2 - len(keep)
            current = list(keep)
            char_count = sum(len(x) + 1 for x in current)
            fresh_lines = 0

    if fresh_lines:
        flush(len(lines))

    return chunks
