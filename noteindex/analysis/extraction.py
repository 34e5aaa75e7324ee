"""Content extraction: raw document text to headings, source blocks and links.

The indexer only talks to the :class:`ContentExtractor` protocol, so a full
org or Markdown grammar can be plugged in. :class:`DefaultExtractor` is a
line-oriented implementation that covers the structure the index stores:
heading levels, TODO keywords, priorities, tags, property drawers, planning
timestamps, source blocks and links.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Iterator, Optional, Protocol

from .filetypes import normalize_language

DEFAULT_TODO_KEYWORDS = (
    "TODO", "NEXT", "STARTED", "WAITING", "HOLD", "SOMEDAY",
    "DONE", "CANCELLED", "CANCELED",
)

# Planning lines are looked for in the four lines after a heading.
PLANNING_WINDOW = 5

_ORG_HEADING = re.compile(r"^(\*+)\s+(.*?)\s*$")
_ORG_TAGS = re.compile(r"\s+(:(?:[\w@#%]+:)+)\s*$")
_ORG_PRIORITY = re.compile(r"^\[#([A-Z0-9])\]\s*")
_ORG_TODO_SETTING = re.compile(r"^#\+(?:SEQ_|TYP_)?TODO:\s*(.*)$", re.IGNORECASE)
_ORG_SRC_BEGIN = re.compile(r"^\s*#\+BEGIN_SRC\b\s*(\S*)\s*(.*)$", re.IGNORECASE)
_ORG_SRC_END = re.compile(r"^\s*#\+END_SRC\b", re.IGNORECASE)
_ORG_PROPERTY = re.compile(r"^\s*:([^:\s]+):\s*(.*?)\s*$")
_ORG_LINK = re.compile(r"\[\[([^\]]+)\](?:\[([^\]]*)\])?\]")

_SCHEDULED = re.compile(r"SCHEDULED:\s*<(\d{4}-\d{2}-\d{2}[^>]*)>")
_DEADLINE = re.compile(r"DEADLINE:\s*<(\d{4}-\d{2}-\d{2}[^>]*)>")
_CLOSED = re.compile(r"CLOSED:\s*\[(\d{4}-\d{2}-\d{2}[^\]]*)\]")

_MD_HEADING = re.compile(r"^(#{1,6})\s+(.*)$")
_MD_TAGS = re.compile(r"\s+#(\w+(?:\s+#\w+)*)$")
_MD_TODO = re.compile(r"^\[([A-Z]+)\]\s+")
_MD_FENCE = re.compile(r"^(```|~~~)\s*([\w+#.-]*)(.*)$")
_MD_LINK = re.compile(r"(?<!!)\[([^\]]*)\]\(([^)\s]+)(?:\s+\"[^\"]*\")?\)")

_BARE_URL = re.compile(r"(?<![\[(<])\bhttps?://[^\s\]\)>]+")
_BLOCK_HEADER = re.compile(r":(\S+)\s+([^:\s][^:]*?)(?=\s+:|\s*$)")
_HASHTAG = re.compile(r"(?<![\w#&/])#([A-Za-z][\w-]*)")
_LINK_SCHEME = re.compile(r"^([A-Za-z][\w+.-]*):")


@dataclass
class ParsedHeading:
    level: int
    title: str
    line_number: int
    begin_pos: int = 0
    todo_state: Optional[str] = None
    priority: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    properties: dict[str, str] = field(default_factory=dict)
    scheduled: Optional[str] = None
    deadline: Optional[str] = None
    closed: Optional[str] = None
    cell_index: Optional[int] = None
    children: list["ParsedHeading"] = field(default_factory=list)


@dataclass
class ParsedSourceBlock:
    language: str
    content: str
    line_number: int
    headers: dict[str, str] = field(default_factory=dict)
    cell_index: Optional[int] = None


@dataclass
class ParsedLink:
    link_type: str
    target: str
    line_number: int
    description: Optional[str] = None


@dataclass
class ParsedDocument:
    """Structure of one document; ``text`` is what the full-text index sees."""

    doc_type: str
    text: str
    headings: list[ParsedHeading] = field(default_factory=list)
    source_blocks: list[ParsedSourceBlock] = field(default_factory=list)
    links: list[ParsedLink] = field(default_factory=list)


class ContentExtractor(Protocol):
    def parse(self, text: str, doc_type: str) -> ParsedDocument: ...

    def flatten_headings(self, doc: ParsedDocument) -> Iterator[ParsedHeading]: ...


def flatten_headings(doc: ParsedDocument) -> Iterator[ParsedHeading]:
    """Yield every heading of the outline tree in document order."""
    stack = list(reversed(doc.headings))
    while stack:
        heading = stack.pop()
        yield heading
        stack.extend(reversed(heading.children))


def extract_hashtags(text: str) -> list[str]:
    """Unique lowercase ``#tags`` in order of first appearance."""
    seen: dict[str, None] = {}
    for match in _HASHTAG.finditer(text):
        seen.setdefault(match.group(1).lower(), None)
    return list(seen)


def classify_link(target: str) -> str:
    match = _LINK_SCHEME.match(target)
    if match and not re.match(r"^[A-Za-z]:[\\/]", target):
        return match.group(1).lower()
    if target.startswith("*"):
        return "heading"
    if target.startswith("#"):
        return "custom-id"
    if target.startswith(("/", "./", "../", "~")) or "." in target.rsplit("/", 1)[-1]:
        return "file"
    return "fuzzy"


def parse_block_headers(raw: str) -> dict[str, str]:
    return {m.group(1): m.group(2).strip() for m in _BLOCK_HEADER.finditer(raw or "")}


def _line_offsets(lines: list[str]) -> list[int]:
    offsets = []
    pos = 0
    for line in lines:
        offsets.append(pos)
        pos += len(line) + 1
    return offsets


def _bare_urls(line: str, line_number: int, skip: set[str]) -> list[ParsedLink]:
    out = []
    for match in _BARE_URL.finditer(line):
        url = match.group(0).rstrip(".,;")
        if url in skip:
            continue
        out.append(ParsedLink(classify_link(url), url, line_number))
    return out


def _nest(flat: list[ParsedHeading]) -> list[ParsedHeading]:
    roots: list[ParsedHeading] = []
    stack: list[ParsedHeading] = []
    for heading in flat:
        while stack and stack[-1].level >= heading.level:
            stack.pop()
        if stack:
            stack[-1].children.append(heading)
        else:
            roots.append(heading)
        stack.append(heading)
    return roots


class DefaultExtractor:
    """Regex-level extractor for org outlines, Markdown and Jupyter notebooks."""

    def __init__(self, todo_keywords: tuple[str, ...] = DEFAULT_TODO_KEYWORDS):
        self.todo_keywords = tuple(todo_keywords)

    def flatten_headings(self, doc: ParsedDocument) -> Iterator[ParsedHeading]:
        return flatten_headings(doc)

    def parse(self, text: str, doc_type: str) -> ParsedDocument:
        if doc_type == "org":
            return self._parse_org(text)
        if doc_type == "md":
            return self._parse_markdown(text)
        if doc_type == "ipynb":
            return self._parse_notebook(text)
        raise ValueError(f"Unsupported document type: {doc_type}")

    # --- org ---

    def _file_todo_keywords(self, lines: list[str]) -> set[str]:
        keywords = set(self.todo_keywords)
        for line in lines:
            match = _ORG_TODO_SETTING.match(line)
            if not match:
                continue
            for word in match.group(1).split():
                if word == "|":
                    continue
                keywords.add(re.sub(r"\(.*\)$", "", word))
        return keywords

    def _parse_org(self, text: str) -> ParsedDocument:
        lines = text.split("\n")
        offsets = _line_offsets(lines)
        keywords = self._file_todo_keywords(lines)
        flat: list[ParsedHeading] = []
        blocks: list[ParsedSourceBlock] = []
        links: list[ParsedLink] = []

        i = 0
        while i < len(lines):
            line = lines[i]
            line_number = i + 1

            begin = _ORG_SRC_BEGIN.match(line)
            if begin:
                body: list[str] = []
                j = i + 1
                while j < len(lines) and not _ORG_SRC_END.match(lines[j]):
                    body.append(lines[j])
                    j += 1
                blocks.append(
                    ParsedSourceBlock(
                        language=normalize_language(begin.group(1)),
                        content="\n".join(body),
                        line_number=line_number,
                        headers=parse_block_headers(begin.group(2)),
                    )
                )
                i = j + 1
                continue

            heading_match = _ORG_HEADING.match(line)
            if heading_match:
                flat.append(
                    self._org_heading(heading_match, lines, i, offsets[i], keywords)
                )

            described: set[str] = set()
            for match in _ORG_LINK.finditer(line):
                target = match.group(1)
                described.add(target)
                links.append(
                    ParsedLink(classify_link(target), target, line_number, match.group(2) or None)
                )
            links.extend(_bare_urls(line, line_number, described))
            i += 1

        return ParsedDocument("org", text, _nest(flat), blocks, links)

    def _org_heading(
        self,
        match: re.Match,
        lines: list[str],
        index: int,
        begin_pos: int,
        keywords: set[str],
    ) -> ParsedHeading:
        level = len(match.group(1))
        rest = match.group(2)

        tags: list[str] = []
        tag_match = _ORG_TAGS.search(" " + rest)
        if tag_match:
            tags = [t for t in tag_match.group(1).split(":") if t]
            rest = (" " + rest)[: tag_match.start()].strip()

        todo_state = None
        first, _, remainder = rest.partition(" ")
        if first in keywords:
            todo_state = first
            rest = remainder.strip()

        priority = None
        prio_match = _ORG_PRIORITY.match(rest)
        if prio_match:
            priority = prio_match.group(1)
            rest = rest[prio_match.end():]

        heading = ParsedHeading(
            level=level,
            title=rest.strip(),
            line_number=index + 1,
            begin_pos=begin_pos,
            todo_state=todo_state,
            priority=priority,
            tags=tags,
        )

        j = index + 1
        end = min(index + PLANNING_WINDOW, len(lines))
        while j < end:
            body_line = lines[j]
            if _ORG_HEADING.match(body_line):
                break
            if m := _SCHEDULED.search(body_line):
                heading.scheduled = m.group(1)
            if m := _DEADLINE.search(body_line):
                heading.deadline = m.group(1)
            if m := _CLOSED.search(body_line):
                heading.closed = m.group(1)
            if body_line.strip().upper() == ":PROPERTIES:":
                k = j + 1
                while k < len(lines) and lines[k].strip().upper() != ":END:":
                    if _ORG_HEADING.match(lines[k]):
                        break
                    if prop := _ORG_PROPERTY.match(lines[k]):
                        heading.properties[prop.group(1)] = prop.group(2)
                    k += 1
                break
            j += 1
        return heading

    # --- markdown ---

    def _markdown_lines(
        self,
        lines: list[str],
        *,
        first_line: int = 1,
        base_pos: int = 0,
        cell_index: Optional[int] = None,
    ) -> tuple[list[ParsedHeading], list[ParsedSourceBlock], list[ParsedLink]]:
        offsets = _line_offsets(lines)
        headings: list[ParsedHeading] = []
        blocks: list[ParsedSourceBlock] = []
        links: list[ParsedLink] = []

        i = 0
        while i < len(lines):
            line = lines[i]
            line_number = first_line + i

            fence = _MD_FENCE.match(line)
            if fence:
                marker = fence.group(1)
                body: list[str] = []
                j = i + 1
                while j < len(lines) and not lines[j].startswith(marker):
                    body.append(lines[j])
                    j += 1
                blocks.append(
                    ParsedSourceBlock(
                        language=normalize_language(fence.group(2)),
                        content="\n".join(body),
                        line_number=line_number,
                        headers=parse_block_headers(fence.group(3)),
                        cell_index=cell_index,
                    )
                )
                i = j + 1
                continue

            heading_match = _MD_HEADING.match(line)
            if heading_match:
                title = heading_match.group(2)
                tags: list[str] = []
                tag_match = _MD_TAGS.search(title)
                if tag_match:
                    tags = re.split(r"\s+#", tag_match.group(1))
                    title = title[: tag_match.start()]
                todo_state = None
                todo_match = _MD_TODO.match(title)
                if todo_match:
                    todo_state = todo_match.group(1)
                    title = title[todo_match.end():]
                headings.append(
                    ParsedHeading(
                        level=len(heading_match.group(1)),
                        title=title.strip(),
                        line_number=line_number,
                        begin_pos=base_pos + offsets[i],
                        todo_state=todo_state,
                        tags=tags,
                        cell_index=cell_index,
                    )
                )

            described: set[str] = set()
            for match in _MD_LINK.finditer(line):
                target = match.group(2)
                described.add(target)
                links.append(
                    ParsedLink(classify_link(target), target, line_number, match.group(1) or None)
                )
            links.extend(_bare_urls(line, line_number, described))
            i += 1

        return headings, blocks, links

    def _parse_markdown(self, text: str) -> ParsedDocument:
        headings, blocks, links = self._markdown_lines(text.split("\n"))
        return ParsedDocument("md", text, _nest(headings), blocks, links)

    # --- notebooks ---

    def _parse_notebook(self, raw: str) -> ParsedDocument:
        notebook = json.loads(raw)
        if not isinstance(notebook, dict) or not isinstance(notebook.get("cells"), list):
            raise ValueError("Not a Jupyter notebook: missing cells")

        metadata = notebook.get("metadata") or {}
        kernel_language = (
            (metadata.get("language_info") or {}).get("name")
            or (metadata.get("kernelspec") or {}).get("language")
            or "python"
        )

        parts: list[str] = []
        headings: list[ParsedHeading] = []
        blocks: list[ParsedSourceBlock] = []
        links: list[ParsedLink] = []
        line_cursor = 1
        pos_cursor = 0

        for cell_index, cell in enumerate(notebook["cells"]):
            source = cell.get("source", "")
            if isinstance(source, list):
                source = "".join(source)
            cell_lines = source.split("\n")
            cell_type = cell.get("cell_type")

            if cell_type == "markdown":
                h, b, lk = self._markdown_lines(
                    cell_lines, first_line=line_cursor, base_pos=pos_cursor, cell_index=cell_index
                )
                headings.extend(h)
                blocks.extend(b)
                links.extend(lk)
            elif cell_type == "code" and source.strip():
                blocks.append(
                    ParsedSourceBlock(
                        language=normalize_language(kernel_language),
                        content=source,
                        line_number=line_cursor,
                        cell_index=cell_index,
                    )
                )

            parts.append(source)
            # cells are joined with a blank line
            line_cursor += len(cell_lines) + 1
            pos_cursor += len(source) + 2

        text = "\n\n".join(parts)
        return ParsedDocument("ipynb", text, _nest(headings), blocks, links)
