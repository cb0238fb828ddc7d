"""Structured query parsing for note search.

Supported syntax (extraction order matters; each pass works on the
residue of the previous ones):

    "exact phrase"        phrase that must appear verbatim
    -#tag                 exclude notes with tag
    #tag  #parent/child   require tag
    line:(a b)            all terms on one line (also section:, heading:)
    path:work  folder:x   path prefix filter (includes subfolders)
    file:name  title:x    title contains
    tag:name   tag:#name  require tag
    heading:term          some heading contains term
    created:>2024-01-01   after / <before / bare = on that day
    modified:2024-01-01   same for modification time
    [key]:value           frontmatter property (any key)
    key:value             frontmatter property (non-reserved keys)
    -word                 exclude notes containing word
    anything else         free text

parse_query() never fails: fragments that do not form a valid filter
stay in the free text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from collections.abc import Callable

# Prefixes handled by specific rules; the frontmatter catch-all skips them
RESERVED_PREFIXES = frozenset(
    {
        "path",
        "folder",
        "created",
        "modified",
        "title",
        "heading",
        "file",
        "tag",
        "line",
        "section",
    }
)

DAY_MS = 86_400_000

# A structured token starts at the beginning of the text or after whitespace
_B = r"(?<!\S)"

_PHRASE = re.compile(r'"([^"]*)"')
_NEGATED_TAG = re.compile(_B + r"-#([\w\-/]+)")
_TAG = re.compile(_B + r"#([\w\-/]+)")
_GROUP = re.compile(_B + r"(line|section|heading):\(([^)]*)\)", re.IGNORECASE)
_PATH = re.compile(_B + r"(?:path|folder):(\S*)", re.IGNORECASE)
_TITLE = re.compile(_B + r"(?:file|title):(\S*)", re.IGNORECASE)
_TAG_PREFIX = re.compile(_B + r"tag:#?(\S*)", re.IGNORECASE)
_HEADING = re.compile(_B + r"heading:(\S*)", re.IGNORECASE)
_DATE = re.compile(
    _B + r"(created|modified):([<>]?)(\d{4}-\d{2}-\d{2})(?!\S)", re.IGNORECASE
)
_BRACKET_PROPERTY = re.compile(_B + r"\[([^\]]+)\]:(\S*)")
_PROPERTY = re.compile(_B + r"([A-Za-z_][\w\-]*):(\S*)")
_NEGATED_TERM = re.compile(_B + r"-([^\s\-]\S*)")
_WHITESPACE = re.compile(r"\s+")

DateField = Literal["created", "modified"]
DateOperator = Literal["before", "after", "on"]
GroupContext = Literal["line", "section", "heading"]


@dataclass(frozen=True)
class DateFilter:
    """A created/modified date constraint (date is YYYY-MM-DD, UTC)."""

    field: DateField
    operator: DateOperator
    date: str

    def day_bounds(self) -> tuple[int, int]:
        """Epoch-millis [start, end] of the filter's calendar day."""
        day = datetime.strptime(self.date, "%Y-%m-%d").replace(tzinfo=UTC)
        start = int(day.timestamp() * 1000)
        return start, start + DAY_MS - 1


@dataclass(frozen=True)
class TermGroup:
    """Terms that must co-occur within one line, section or heading."""

    context: GroupContext
    terms: tuple[str, ...]


@dataclass(frozen=True)
class ParsedQuery:
    """Structured form of a raw query string."""

    text: str = ""
    phrases: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    excluded_tags: frozenset[str] = frozenset()
    excluded_terms: frozenset[str] = frozenset()
    paths: tuple[str, ...] = ()
    title_terms: tuple[str, ...] = ()
    heading_terms: tuple[str, ...] = ()
    term_groups: tuple[TermGroup, ...] = ()
    # Sorted (key, value) pairs; the last value given for a key wins
    frontmatter: tuple[tuple[str, str], ...] = ()
    date_filters: tuple[DateFilter, ...] = ()

    @property
    def has_post_filters(self) -> bool:
        """Whether any constraint must be applied after the engine search."""
        return bool(
            self.phrases
            or self.excluded_tags
            or self.excluded_terms
            or self.paths
            or self.title_terms
            or self.heading_terms
            or self.term_groups
            or self.frontmatter
        )

    @property
    def has_filters(self) -> bool:
        """Whether the query constrains anything besides free text."""
        return bool(self.tags or self.date_filters or self.has_post_filters)

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.has_filters


def _operator(op: str) -> DateOperator:
    if op == ">":
        return "after"
    if op == "<":
        return "before"
    return "on"


def _is_valid_date(value: str) -> bool:
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True


def _extract(
    pattern: re.Pattern, text: str, handle: Callable[[re.Match], str | None]
) -> str:
    """Remove every match of pattern, passing each to handle().

    handle() may return a string to keep in place of the match
    (used for fragments that turn out not to be valid filters).
    """

    def replace(match: re.Match) -> str:
        kept = handle(match)
        return kept if kept is not None else " "

    return pattern.sub(replace, text)


def parse_query(raw: str) -> ParsedQuery:
    """
    Parse a raw query string into a ParsedQuery.

    Total function: malformed syntax degrades to literal free text.

    Args:
        raw: Query as typed by the user

    Returns:
        ParsedQuery (duplicates are kept; filters are idempotent)
    """
    phrases: list[str] = []
    tags: list[str] = []
    excluded_tags: set[str] = set()
    excluded_terms: set[str] = set()
    paths: list[str] = []
    title_terms: list[str] = []
    heading_terms: list[str] = []
    term_groups: list[TermGroup] = []
    frontmatter: dict[str, str] = {}
    date_filters: list[DateFilter] = []

    text = raw or ""

    # 1. Quoted phrases
    def on_phrase(m: re.Match) -> None:
        phrase = m.group(1).strip()
        if phrase:
            phrases.append(phrase)

    text = _extract(_PHRASE, text, on_phrase)

    # 2. Negated tags (before plain tags, or "-" would be left dangling)
    text = _extract(
        _NEGATED_TAG, text, lambda m: excluded_tags.add(m.group(1).rstrip("/"))
    )

    # 3. Tags, including nested parent/child
    text = _extract(_TAG, text, lambda m: tags.append(m.group(1).rstrip("/")))

    # 4. Grouped line:/section:/heading: filters
    def on_group(m: re.Match) -> None:
        terms = tuple(m.group(2).split())
        if terms:
            term_groups.append(TermGroup(m.group(1).lower(), terms))

    text = _extract(_GROUP, text, on_group)

    # 5. path: / folder:
    text = _extract(_PATH, text, lambda m: paths.append(m.group(1).rstrip("/")))

    # 6. file: / title:, tag:, heading:
    text = _extract(_TITLE, text, lambda m: title_terms.append(m.group(1)))

    def on_tag_prefix(m: re.Match) -> None:
        if m.group(1):
            tags.append(m.group(1).rstrip("/"))

    text = _extract(_TAG_PREFIX, text, on_tag_prefix)
    text = _extract(_HEADING, text, lambda m: heading_terms.append(m.group(1)))

    # 7. created: / modified: dates
    def on_date(m: re.Match) -> str | None:
        if not _is_valid_date(m.group(3)):
            return m.group(0)
        date_filters.append(
            DateFilter(
                field=m.group(1).lower(),
                operator=_operator(m.group(2)),
                date=m.group(3),
            )
        )
        return None

    text = _extract(_DATE, text, on_date)

    # 8. Frontmatter properties: [key]:value, then key:value catch-all
    def on_bracket(m: re.Match) -> None:
        frontmatter[m.group(1).strip()] = m.group(2)

    text = _extract(_BRACKET_PROPERTY, text, on_bracket)

    def on_property(m: re.Match) -> str | None:
        if m.group(1).lower() in RESERVED_PREFIXES:
            return m.group(0)
        frontmatter[m.group(1)] = m.group(2)
        return None

    text = _extract(_PROPERTY, text, on_property)

    # 9. Negated bare terms
    text = _extract(
        _NEGATED_TERM, text, lambda m: excluded_terms.add(m.group(1))
    )

    # 10. Whatever is left is free text
    text = _WHITESPACE.sub(" ", text).strip()

    return ParsedQuery(
        text=text,
        phrases=tuple(phrases),
        tags=tuple(tags),
        excluded_tags=frozenset(excluded_tags),
        excluded_terms=frozenset(excluded_terms),
        paths=tuple(paths),
        title_terms=tuple(title_terms),
        heading_terms=tuple(heading_terms),
        term_groups=tuple(term_groups),
        frontmatter=tuple(sorted(frontmatter.items())),
        date_filters=tuple(date_filters),
    )
