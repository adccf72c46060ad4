"""Intra-corpus link extraction from Markdown content.

Recognised:
- inline links ``[text](target "title")`` (images excluded)
- reference definitions ``[id]: target``

Ignored (not errors): links inside fenced or inline code, URLs with a scheme
(``http:``, ``mailto:`` …), pure ``#anchors``, non-Markdown targets, targets
that resolve outside the root, and self-links.
"""

from __future__ import annotations

import posixpath
import re
from urllib.parse import unquote

_INLINE_LINK_RE = re.compile(
    r"(?<!!)\[(?:[^\[\]\\]|\\.)*\]\(\s*(<[^>]*>|[^)\s]+)(?:\s+(?:\"[^\"]*\"|'[^']*'|\([^)]*\)))?\s*\)"
)
_REFERENCE_DEF_RE = re.compile(r"^[ ]{0,3}\[[^\]]+\]:[ \t]*(<[^>]*>|\S+)", re.MULTILINE)
_INLINE_CODE_RE = re.compile(r"(`+)(?:(?!\1).)+?\1", re.DOTALL)
_FENCE_RE = re.compile(r"^[ ]{0,3}(`{3,}|~{3,})")
_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")
_MARKDOWN_SUFFIXES = (".md", ".markdown")


def extract_links(content: str, source_path: str = "") -> list[str]:
    """Return the distinct Markdown documents *content* links to.

    Args:
        content: Markdown text.
        source_path: POSIX path of the linking document relative to the root;
            relative targets resolve against its directory.

    Returns:
        Root-relative POSIX paths in first-occurrence order, without duplicates.
    """
    text = _strip_code(content)
    raw_targets = [m.group(1) for m in _INLINE_LINK_RE.finditer(text)]
    raw_targets += [m.group(1) for m in _REFERENCE_DEF_RE.finditer(text)]

    source = _normalize(source_path) if source_path else ""
    found: dict[str, None] = {}
    for raw in raw_targets:
        target = resolve_target(raw, source)
        if target and target != source:
            found.setdefault(target, None)
    return list(found)


def resolve_target(raw: str, source_path: str = "") -> str | None:
    """Resolve one raw link target to a root-relative path, or None if ignored."""
    target = raw.strip()
    if target.startswith("<") and target.endswith(">"):
        target = target[1:-1].strip()
    if not target or target.startswith("#") or target.startswith("//"):
        return None
    if _SCHEME_RE.match(target):
        return None

    target = target.split("#", 1)[0].split("?", 1)[0]
    target = unquote(target).replace("\\", "/")
    if not target.lower().endswith(_MARKDOWN_SUFFIXES):
        return None

    if target.startswith("/"):
        joined = target.lstrip("/")
    else:
        joined = posixpath.join(posixpath.dirname(source_path), target)
    resolved = posixpath.normpath(joined)
    if resolved == ".." or resolved.startswith("../") or resolved.startswith("/"):
        return None
    return resolved


def _normalize(path: str) -> str:
    return posixpath.normpath(path.replace("\\", "/")).lstrip("/")


def _strip_code(content: str) -> str:
    """Blank out fenced blocks and inline code spans."""
    out: list[str] = []
    fence: str | None = None
    for line in content.split("\n"):
        m = _FENCE_RE.match(line)
        if fence is None:
            if m:
                fence = m.group(1)
                out.append("")
                continue
            out.append(line)
        else:
            if m and m.group(1)[0] == fence[0] and len(m.group(1)) >= len(fence):
                fence = None
            out.append("")
    return _INLINE_CODE_RE.sub("", "\n".join(out))
