"""Text utilities for chat transports: length-limited splitting and
markdown → HTML conversion.

Conversion handles the subset agents actually produce: fenced and inline
code, bold, italic, strikethrough, links and headings. Code spans and link
targets are pulled out into placeholders before HTML escaping so they are
escaped exactly once and never reformatted.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeAlias

ELLIPSIS = "..."

# Split points, most preferred first
_SEPARATORS = ("\n\n", "\n", " ")

LengthFn: TypeAlias = Callable[[str], int]


def utf16_len(text: str) -> int:
    """Length in UTF-16 code units, the unit Telegram's limits are counted in."""
    return len(text.encode("utf-16-le")) // 2


def _fit(text: str, limit: int, length_fn: LengthFn) -> int:
    """Longest prefix of *text* (in characters) whose measured length is within *limit*."""
    if length_fn is len:
        return min(limit, len(text))
    lo, hi = 0, min(limit, len(text))
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if length_fn(text[:mid]) <= limit:
            lo = mid
        else:
            hi = mid - 1
    return lo


def split_message(text: str, limit: int, length_fn: LengthFn = len) -> list[str]:
    """Split *text* into chunks no longer than *limit*, as measured by *length_fn*.

    Breaks at the last paragraph boundary that fits, else the last newline,
    else the last space, else hard-cuts. Leading whitespace of each following
    chunk is dropped.
    """
    if limit <= 0:
        raise ValueError("limit must be positive")
    if length_fn(text) <= limit:
        return [text]

    chunks: list[str] = []
    remaining = text
    while remaining:
        if length_fn(remaining) <= limit:
            chunks.append(remaining)
            break
        fit = max(_fit(remaining, limit, length_fn), 1)
        split_at = -1
        for sep in _SEPARATORS:
            split_at = remaining.rfind(sep, 0, fit + len(sep))
            if split_at > 0:
                break
        if split_at <= 0:
            split_at = fit
        chunks.append(remaining[:split_at])
        remaining = remaining[split_at:].lstrip()
    return chunks


def truncate_for_limit(text: str, limit: int, length_fn: LengthFn = len) -> str:
    """Clip *text* to *limit*, ending in an ellipsis when clipped."""
    if length_fn(text) <= limit:
        return text
    return text[: _fit(text, limit - len(ELLIPSIS), length_fn)] + ELLIPSIS


def escape_html(s: str, *, quote: bool = False) -> str:
    """Escape HTML special characters."""
    s = s.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
    if quote:
        s = s.replace('"', "&quot;")
    return s


@dataclass(frozen=True)
class HtmlDialect:
    """Tag names a transport understands."""

    bold: str = "b"
    italic: str = "i"
    strike: str = "s"
    line_break: str | None = None  # replacement for "\n", None keeps newlines


TELEGRAM_HTML = HtmlDialect()
MATRIX_HTML = HtmlDialect(bold="strong", italic="em", strike="del", line_break="<br>")

_FENCE_RE = re.compile(r"```[\w+-]*\n?(.*?)```", re.DOTALL)
_INLINE_CODE_RE = re.compile(r"`([^`\n]+)`")
_LINK_RE = re.compile(r"\[([^\]\n]+)\]\(([^)\s]+)\)")
_HEADING_RE = re.compile(r"^#{1,6}\s+(.+?)\s*#*$", re.MULTILINE)
_BOLD_RE = re.compile(r"\*\*(.+?)\*\*|__(.+?)__", re.DOTALL)
_ITALIC_STAR_RE = re.compile(r"(?<![*\w])\*(?![*\s])(.+?)(?<![*\s])\*(?![*\w])")
_ITALIC_UNDERSCORE_RE = re.compile(r"(?<!\w)_(?!_)(.+?)(?<!_)_(?!\w)")
_STRIKE_RE = re.compile(r"~~(.+?)~~", re.DOTALL)
_PLACEHOLDER_RE = re.compile("\x00(\\d+)\x00")


def markdown_to_html(text: str, dialect: HtmlDialect = TELEGRAM_HTML) -> str:
    """Convert a markdown subset to transport HTML."""
    stash: list[str] = []

    def hold(fragment: str) -> str:
        stash.append(fragment)
        return f"\x00{len(stash) - 1}\x00"

    # 1. Code first: its contents must not be touched by later passes.
    result = _FENCE_RE.sub(
        lambda m: hold(f"<pre><code>{escape_html(m.group(1).rstrip(chr(10)))}</code></pre>"),
        text,
    )
    result = _INLINE_CODE_RE.sub(lambda m: hold(f"<code>{escape_html(m.group(1))}</code>"), result)

    # 2. Link targets are escaped here, labels go through the normal passes.
    result = _LINK_RE.sub(
        lambda m: hold(f'<a href="{escape_html(m.group(2), quote=True)}">')
        + m.group(1)
        + hold("</a>"),
        result,
    )

    # 3. Escape everything else, then apply inline styles.
    result = escape_html(result)
    b, i, s = dialect.bold, dialect.italic, dialect.strike
    result = _HEADING_RE.sub(lambda m: f"<{b}>{m.group(1)}</{b}>", result)
    result = _BOLD_RE.sub(lambda m: f"<{b}>{m.group(1) or m.group(2)}</{b}>", result)
    result = _ITALIC_STAR_RE.sub(lambda m: f"<{i}>{m.group(1)}</{i}>", result)
    result = _ITALIC_UNDERSCORE_RE.sub(lambda m: f"<{i}>{m.group(1)}</{i}>", result)
    result = _STRIKE_RE.sub(lambda m: f"<{s}>{m.group(1)}</{s}>", result)
    if dialect.line_break is not None:
        result = result.replace("\n", dialect.line_break)

    # 4. Put the held fragments back.
    return _PLACEHOLDER_RE.sub(lambda m: stash[int(m.group(1))], result)


def markdown_to_telegram_html(text: str) -> str:
    return markdown_to_html(text, TELEGRAM_HTML)


def markdown_to_matrix_html(text: str) -> str:
    return markdown_to_html(text, MATRIX_HTML)
