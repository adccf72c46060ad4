"""Markdown chunker: H2/H3 header-bounded splits for long documents.

Strategy:
- Documents at or below ``threshold_lines`` lines are one chunk.
- Longer documents split at ``##`` / ``###`` headings outside fenced code.
- Content before the first split heading (preamble) becomes chunk 0.
- ``heading_path`` records the nesting, e.g. ``"Setup > Installation"``.
- No split headings → one chunk.

Pure functions of the content: re-chunking identical content reproduces the
same chunk indexes and hashes. Source files are never touched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Any

import yaml

from compound_docs.errors import ParseError
from compound_docs.ingest.hashing import compute_hash

DEFAULT_THRESHOLD_LINES = 500
HEADING_SEPARATOR = " > "

# ## / ### headings; optional closing #'s are stripped
_SPLIT_HEADING_RE = re.compile(r"^(#{2,3})[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$")
_H1_RE = re.compile(r"^#[ \t]+(.+?)(?:[ \t]+#+)?[ \t]*$")
_FENCE_RE = re.compile(r"^[ ]{0,3}(`{3,}|~{3,})")
_FRONTMATTER_DELIM = "---"


@dataclass(frozen=True)
class ChunkSpan:
    index: int
    heading_path: str
    content: str
    content_hash: str


def chunk_document(content: str, threshold_lines: int = DEFAULT_THRESHOLD_LINES) -> list[ChunkSpan]:
    """Split *content* into ordered chunks.

    Args:
        content: Markdown body (frontmatter already removed).
        threshold_lines: Documents with more lines than this are split.

    Raises:
        ParseError: An unterminated code fence makes heading detection unreliable.
    """
    lines = content.split("\n")
    if len(lines) <= threshold_lines:
        return [_span(0, "", content)]

    boundaries: list[tuple[int, int, str]] = []  # (line_no, level, title)
    for line_no, level, title in _iter_headings(lines):
        if level in (2, 3):
            boundaries.append((line_no, level, title))

    if not boundaries:
        return [_span(0, "", content)]

    spans: list[ChunkSpan] = []
    preamble = "\n".join(lines[: boundaries[0][0]])
    if preamble.strip():
        spans.append(_span(0, "", preamble.strip("\n")))

    h2: str | None = None
    h3: str | None = None
    for i, (line_no, level, title) in enumerate(boundaries):
        if level == 2:
            h2, h3 = title, None
        else:
            h3 = title
        end = boundaries[i + 1][0] if i + 1 < len(boundaries) else len(lines)
        body = "\n".join(lines[line_no:end]).strip("\n")
        path = HEADING_SEPARATOR.join(p for p in (h2, h3) if p)
        spans.append(_span(len(spans), path, body))

    return spans


def _span(index: int, heading_path: str, text: str) -> ChunkSpan:
    return ChunkSpan(index=index, heading_path=heading_path, content=text, content_hash=compute_hash(text))


def _iter_headings(lines: list[str]):
    """Yield ``(line_no, level, title)`` for ATX headings outside fenced code."""
    fence: str | None = None
    fence_line = 0
    for line_no, line in enumerate(lines):
        m = _FENCE_RE.match(line)
        if fence is None:
            if m:
                fence, fence_line = m.group(1), line_no
                continue
            if line.startswith("#"):
                hm = _SPLIT_HEADING_RE.match(line) or _H1_RE.match(line)
                if hm:
                    level = len(hm.group(1)) if hm.re is _SPLIT_HEADING_RE else 1
                    title = hm.group(2) if hm.re is _SPLIT_HEADING_RE else hm.group(1)
                    yield line_no, level, title.strip()
        elif m and m.group(1)[0] == fence[0] and len(m.group(1)) >= len(fence) and not line.strip().lstrip(fence[0]):
            fence = None
    if fence is not None:
        raise ParseError(f"Unterminated code fence opened on line {fence_line + 1}")


# ------------------------------------------------------------------
# Frontmatter + title
# ------------------------------------------------------------------


def parse_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split YAML frontmatter from the Markdown body.

    Returns:
        ``(frontmatter, body)``. Documents without frontmatter return ``({}, content)``.

    Raises:
        ParseError: Unclosed block, invalid YAML, or a non-mapping value.
    """
    lines = content.split("\n")
    if not lines or lines[0].rstrip() != _FRONTMATTER_DELIM:
        return {}, content
    for end, line in enumerate(lines[1:], start=1):
        if line.rstrip() in (_FRONTMATTER_DELIM, "..."):
            break
    else:
        raise ParseError("Frontmatter block is not closed with '---'")

    try:
        data = yaml.safe_load("\n".join(lines[1:end])) or {}
    except yaml.YAMLError as exc:
        raise ParseError(f"Invalid YAML frontmatter: {exc}") from exc
    if not isinstance(data, dict):
        raise ParseError("Frontmatter must be a YAML mapping")
    return data, "\n".join(lines[end + 1 :])


def extract_title(body: str, path: str, frontmatter: dict[str, Any] | None = None) -> str:
    """Frontmatter ``title``, else the first H1, else the file stem."""
    if frontmatter and isinstance(frontmatter.get("title"), str) and frontmatter["title"].strip():
        return frontmatter["title"].strip()
    try:
        for _, level, title in _iter_headings(body.split("\n")):
            if level == 1:
                return title
    except ParseError:
        return PurePosixPath(path).stem  # unterminated fence
    return PurePosixPath(path).stem
