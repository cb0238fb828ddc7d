"""Text cleaning and excerpt helpers shared by the extractor and search.

Provides:
- strip_markdown(): Reduce markdown to plain text for indexing
- strip_html(): Remove embedded HTML using a real parser
- generate_excerpt(): Window of text around a match position
- generate_preview_excerpt(): Leading excerpt cut at a word boundary
- find_highlights(): Match ranges of query terms inside a text
"""

from __future__ import annotations

import re
import warnings
from dataclasses import dataclass

_FRONTMATTER = re.compile(r"^---\r?\n.*?\r?\n---\r?\n?", re.DOTALL)
_FENCED_CODE = re.compile(r"```.*?```", re.DOTALL)
_INLINE_CODE = re.compile(r"`[^`\n]+`")
_WIKI_LINK_ALIAS = re.compile(r"\[\[([^\]|]+)\|([^\]]+)\]\]")
_WIKI_LINK = re.compile(r"\[\[([^\]]+)\]\]")
_IMAGE = re.compile(r"!\[([^\]]*)\]\([^)]+\)")
_LINK = re.compile(r"\[([^\]]+)\]\([^)]+\)")
_HEADING_MARK = re.compile(r"^#{1,6}\s+", re.MULTILINE)
_BOLD = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC = re.compile(r"\*([^*\n]+)\*")
_BOLD_UNDERSCORE = re.compile(r"__([^_]+)__")
_ITALIC_UNDERSCORE = re.compile(r"\b_([^_\n]+)_\b")
_STRIKE = re.compile(r"~~([^~]+)~~")
_BLOCKQUOTE = re.compile(r"^>\s?", re.MULTILINE)
_RULE = re.compile(r"^[-*_]{3,}\s*$", re.MULTILINE)
_BULLET = re.compile(r"^[ \t]*[-*+]\s+", re.MULTILINE)
_NUMBERED = re.compile(r"^[ \t]*\d+\.\s+", re.MULTILINE)
_BLANK_LINES = re.compile(r"\n{3,}")
_SPACES = re.compile(r"[ \t]+")
_HTML_TAG = re.compile(r"<[A-Za-z/!][^>]*>")

_WORD = re.compile(r"\w+", re.UNICODE)


@dataclass(frozen=True)
class HighlightRange:
    """Half-open [start, end) character range of a match."""

    start: int
    end: int


def strip_html(html: str) -> str:
    """
    Remove HTML markup, keeping the text content.

    Uses BeautifulSoup rather than a tag regex so malformed markup
    such as ``<<script>`` cannot slip through.
    """
    from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

    with warnings.catch_warnings():
        warnings.filterwarnings(
            "ignore", category=MarkupResemblesLocatorWarning
        )
        soup = BeautifulSoup(html, "html.parser")

    for element in soup(["script", "style"]):
        element.decompose()

    return soup.get_text()


def strip_markdown(content: str) -> str:
    """
    Strip markdown syntax for cleaner indexing.

    Removes YAML frontmatter, code, link syntax, embedded HTML,
    emphasis and list markers, and collapses excess whitespace.
    Line structure is preserved so line-level filters still work.
    """
    text = content.replace("\r\n", "\n")

    text = _FRONTMATTER.sub("", text, count=1)

    text = _FENCED_CODE.sub("", text)
    text = _INLINE_CODE.sub("", text)

    # Wiki links keep the alias, or the target when there is none
    text = _WIKI_LINK_ALIAS.sub(r"\2", text)
    text = _WIKI_LINK.sub(r"\1", text)

    text = _IMAGE.sub(r"\1", text)
    text = _LINK.sub(r"\1", text)

    if _HTML_TAG.search(text):
        text = strip_html(text)

    text = _HEADING_MARK.sub("", text)

    text = _BOLD.sub(r"\1", text)
    text = _ITALIC.sub(r"\1", text)
    text = _BOLD_UNDERSCORE.sub(r"\1", text)
    text = _ITALIC_UNDERSCORE.sub(r"\1", text)
    text = _STRIKE.sub(r"\1", text)

    text = _BLOCKQUOTE.sub("", text)
    text = _RULE.sub("", text)
    text = _BULLET.sub("", text)
    text = _NUMBERED.sub("", text)

    text = _BLANK_LINES.sub("\n\n", text)
    text = _SPACES.sub(" ", text)

    return text.strip()


def word_tokens(text: str) -> list[str]:
    """Split text into word tokens (letters, digits, underscore)."""
    return _WORD.findall(text)


def generate_excerpt(content: str, match_position: int, length: int) -> str:
    """
    Generate an excerpt of roughly ``length`` chars around a match.

    Both edges snap to a nearby word boundary; ellipses mark cut ends.
    """
    half = length // 2
    start = max(0, match_position - half)
    end = min(len(content), match_position + half)

    if start > 0:
        space = content.find(" ", start)
        if space != -1 and space < start + 20:
            start = space + 1
    if end < len(content):
        space = content.rfind(" ", 0, end)
        if space != -1 and space > end - 20:
            end = space

    excerpt = content[start:end]
    if start > 0:
        excerpt = "..." + excerpt
    if end < len(content):
        excerpt = excerpt + "..."
    return excerpt


def generate_preview_excerpt(content: str, length: int) -> str:
    """Generate an excerpt from the beginning of content."""
    if len(content) <= length:
        return content
    space = content.rfind(" ", 0, length)
    cutoff = space if space > length - 30 else length
    return content[:cutoff] + "..."


def find_highlights(
    text: str, terms: list[str], case_sensitive: bool = False
) -> list[HighlightRange]:
    """
    Find every occurrence of the given terms in text.

    Overlapping matches are merged, and ranges come back sorted.
    """
    haystack = text if case_sensitive else text.lower()
    ranges: list[tuple[int, int]] = []

    for term in terms:
        if not term:
            continue
        needle = term if case_sensitive else term.lower()
        pos = haystack.find(needle)
        while pos != -1:
            ranges.append((pos, pos + len(needle)))
            pos = haystack.find(needle, pos + len(needle))

    merged: list[HighlightRange] = []
    for start, end in sorted(ranges):
        if merged and start <= merged[-1].end:
            last = merged.pop()
            merged.append(HighlightRange(last.start, max(last.end, end)))
        else:
            merged.append(HighlightRange(start, end))
    return merged
