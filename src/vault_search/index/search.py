"""Two-phase note search over the in-memory engine.

Provides:
- SearchCoordinator: Owns the engine handle and the path → internal id table
- build_native_filters(): ParsedQuery → engine-native TagFilter/DateRange
- build_search_term(): ParsedQuery → engine term string
- apply_post_filters(): Constraints the engine cannot express

Search flow:
    ParsedQuery ─► native filters + term ─► engine.search (over-fetch)
                                              │
                          post filters ◄──────┘
                               │
                    truncate ─► excerpts ─► SearchResult list
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime

from ..text import (
    HighlightRange,
    find_highlights,
    generate_excerpt,
    generate_preview_excerpt,
    word_tokens,
)
from . import engine
from .engine import (
    DateRange,
    DocumentNotFoundError,
    EngineHandle,
    EngineHit,
    EngineQuery,
    NativeFilter,
    TagFilter,
)
from .extractor import IndexableDocument
from .query import ParsedQuery, TermGroup
from .schema import optimize_fts_index

logger = logging.getLogger(__name__)

# Candidates requested per wanted result while post filters are active
OVERFETCH_FACTOR = 10

# Fuzzy matching only kicks in for terms longer than this
FUZZY_MIN_TERM_LENGTH = 4
FUZZY_TOLERANCE = 1

# Phrase words shorter than this are not sent to the engine
MIN_PHRASE_WORD = 3

SCORE_SOURCE_TEXT = "text"

_SECTION_BREAK = re.compile(r"\n\s*\n")


@dataclass
class SearchResult:
    """A single ranked note with display fields."""

    path: str
    title: str
    score: float
    score_source: str
    excerpt: str
    matched_tags: list[str] = field(default_factory=list)
    folder: str = ""
    created_at: str = ""
    modified_at: str = ""
    highlights: list[HighlightRange] = field(default_factory=list)


# ─────────────────────────────────────────────────────────────────
# Query translation
# ─────────────────────────────────────────────────────────────────


def build_native_filters(query: ParsedQuery) -> tuple[NativeFilter, ...]:
    """
    Translate the engine-native parts of a query.

    Date operators use the UTC calendar day of the filter date:
    ``after`` means later than the start of that day, ``before`` means
    earlier than it, and ``on`` covers the whole day.
    """
    where: list[NativeFilter] = []
    if query.tags:
        where.append(TagFilter(tags=tuple(query.tags)))

    for date_filter in query.date_filters:
        start, end = date_filter.day_bounds()
        if date_filter.operator == "after":
            where.append(DateRange(date_filter.field, lower=start + 1))
        elif date_filter.operator == "before":
            where.append(DateRange(date_filter.field, upper=start - 1))
        else:
            where.append(DateRange(date_filter.field, lower=start, upper=end))

    return tuple(where)


def _longest_word(phrase: str) -> str | None:
    words = [w for w in word_tokens(phrase) if len(w) >= MIN_PHRASE_WORD]
    if not words:
        return None
    return max(words, key=len)


def build_search_term(query: ParsedQuery) -> str:
    """
    Build the term sent to the engine.

    The tokenizer is not phrase aware, so each phrase contributes only
    its longest word; exact phrase matching happens in post filtering.
    """
    parts = [query.text] if query.text else []
    for phrase in query.phrases:
        word = _longest_word(phrase)
        if word:
            parts.append(word)
    return " ".join(parts).strip()


def _tolerance_for(term: str, query: ParsedQuery, fuzzy: bool) -> int:
    if fuzzy and not query.phrases and len(term) > FUZZY_MIN_TERM_LENGTH:
        return FUZZY_TOLERANCE
    return 0


# ─────────────────────────────────────────────────────────────────
# Post filters
# ─────────────────────────────────────────────────────────────────


def matches_path(doc: IndexableDocument, path_filter: str) -> bool:
    """
    Check a document against one path/folder prefix filter.

    ``work`` matches folder ``work``, any folder below it and the note
    ``work.md``, but not ``workshop``.
    """
    p = path_filter.lower().strip("/")
    if not p:
        return True

    folder = doc.folder.lower()
    path = doc.path.lower()
    return (
        folder == p
        or folder.startswith(p + "/")
        or path == p
        or path.startswith(p + "/")
        or path.removesuffix(".md") == p
    )


def _haystack(doc: IndexableDocument) -> str:
    return "\n".join([doc.title, doc.body, *doc.headings])


def _contains_all(text: str, terms: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return all(term.lower() in lowered for term in terms)


def _matches_group(doc: IndexableDocument, group: TermGroup) -> bool:
    if group.context == "line":
        blocks = doc.body.splitlines()
    elif group.context == "section":
        blocks = _SECTION_BREAK.split(doc.body)
    else:
        blocks = doc.headings
    return any(_contains_all(block, group.terms) for block in blocks)


def _matches_frontmatter(doc: IndexableDocument, key: str, value: str) -> bool:
    return f"{key}:{value}".lower() in doc.frontmatter.lower()


def _passes(
    doc: IndexableDocument, query: ParsedQuery, case_sensitive: bool
) -> bool:
    if query.paths and not any(matches_path(doc, p) for p in query.paths):
        return False

    haystack = _haystack(doc)
    folded = haystack.lower()

    for phrase in query.phrases:
        if case_sensitive:
            if phrase not in haystack:
                return False
        elif phrase.lower() not in folded:
            return False

    if case_sensitive and query.text:
        if not all(word in haystack for word in query.text.split()):
            return False

    if any(term.lower() in folded for term in query.excluded_terms):
        return False

    if query.excluded_tags:
        doc_tags = {t.lower() for t in doc.tags}
        if any(t.lower() in doc_tags for t in query.excluded_tags):
            return False

    for term in query.heading_terms:
        if not any(term.lower() in h.lower() for h in doc.headings):
            return False

    for term in query.title_terms:
        lowered = term.lower()
        if lowered not in doc.title.lower() and lowered not in doc.path.lower():
            return False

    if not all(_matches_group(doc, group) for group in query.term_groups):
        return False

    return all(
        _matches_frontmatter(doc, key, value)
        for key, value in query.frontmatter
    )


def apply_post_filters(
    hits: list[EngineHit], query: ParsedQuery, case_sensitive: bool = False
) -> list[EngineHit]:
    """Keep the hits satisfying every non-native constraint, in order."""
    return [hit for hit in hits if _passes(hit.document, query, case_sensitive)]


# ─────────────────────────────────────────────────────────────────
# Result shaping
# ─────────────────────────────────────────────────────────────────


def _format_timestamp(millis: int) -> str:
    return datetime.fromtimestamp(millis / 1000, tz=UTC).isoformat()


def _highlight_terms(query: ParsedQuery) -> list[str]:
    terms = list(query.phrases)
    terms.extend(word_tokens(query.text))
    return terms


def _first_match(body: str, terms: list[str], case_sensitive: bool) -> int:
    haystack = body if case_sensitive else body.lower()
    positions = []
    for term in terms:
        pos = haystack.find(term if case_sensitive else term.lower())
        if pos != -1:
            positions.append(pos)
    return min(positions) if positions else -1


def _to_result(
    hit: EngineHit,
    query: ParsedQuery,
    excerpt_length: int,
    case_sensitive: bool,
) -> SearchResult:
    doc = hit.document
    terms = _highlight_terms(query)

    position = _first_match(doc.body, terms, case_sensitive)
    if position >= 0:
        excerpt = generate_excerpt(doc.body, position, excerpt_length)
    else:
        excerpt = generate_preview_excerpt(doc.body, excerpt_length)

    wanted = {t.lower() for t in query.tags}
    return SearchResult(
        path=doc.path,
        title=doc.title,
        score=hit.score,
        score_source=SCORE_SOURCE_TEXT,
        excerpt=excerpt,
        matched_tags=[t for t in doc.tags if t.lower() in wanted],
        folder=doc.folder,
        created_at=_format_timestamp(doc.created_at),
        modified_at=_format_timestamp(doc.modified_at),
        highlights=find_highlights(excerpt, terms, case_sensitive),
    )


# ─────────────────────────────────────────────────────────────────
# Coordinator
# ─────────────────────────────────────────────────────────────────


class SearchCoordinator:
    """
    Single owner of the engine and of the path → internal id table.

    Every mutation and every search runs under one re-entrant lock, so
    an upsert's remove-then-insert can never interleave with another
    mutation. The coordinator is "not ready" until reset() or
    load_snapshot() has created an engine.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._handle: EngineHandle | None = None
        self._path_ids: dict[str, int] = {}

    @property
    def lock(self) -> threading.RLock:
        """Lock guarding the engine (held by callers batching mutations)."""
        return self._lock

    @property
    def is_ready(self) -> bool:
        return self._handle is not None

    @property
    def document_count(self) -> int:
        with self._lock:
            if self._handle is None:
                return 0
            return engine.count(self._handle)

    def paths(self) -> list[str]:
        """Paths currently indexed, sorted."""
        with self._lock:
            return sorted(self._path_ids)

    def internal_id(self, path: str) -> int | None:
        with self._lock:
            return self._path_ids.get(path)

    # ─── Lifecycle ──────────────────────────────────────────────

    def _replace(self, handle: EngineHandle, path_ids: dict[str, int]) -> None:
        old = self._handle
        self._handle = handle
        self._path_ids = path_ids
        if old is not None:
            old.close()

    def reset(self) -> None:
        """Replace the engine with an empty one."""
        with self._lock:
            self._replace(engine.create_empty(), {})

    def load_snapshot(self, blob: bytes, path_map: dict[str, int]) -> None:
        """
        Replace the engine with a deserialized snapshot.

        Raises:
            sqlite3.DatabaseError: If the blob is corrupt
            ValueError: If the snapshot schema version does not match
        """
        handle = engine.deserialize(blob)
        with self._lock:
            self._replace(handle, dict(path_map))

    def serialize(self) -> tuple[bytes, dict[str, int]] | None:
        """Snapshot the engine and id table (None when not ready)."""
        with self._lock:
            if self._handle is None:
                return None
            return engine.serialize(self._handle), dict(self._path_ids)

    def optimize(self) -> None:
        """Merge FTS segments (after bulk loading)."""
        with self._lock:
            if self._handle is not None:
                optimize_fts_index(self._handle.conn)

    def close(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.close()
            self._handle = None
            self._path_ids = {}

    # ─── Mutation ───────────────────────────────────────────────

    def _remove_id(self, path: str) -> None:
        internal_id = self._path_ids.pop(path, None)
        if internal_id is None:
            return
        try:
            engine.remove(self._handle, internal_id)
        except DocumentNotFoundError:
            logger.debug("Engine had already dropped %s (id %d)", path, internal_id)

    def upsert(self, doc: IndexableDocument) -> None:
        """Insert a document, superseding any previous entry for its path."""
        with self._lock:
            if self._handle is None:
                self.reset()
            self._remove_id(doc.path)
            self._path_ids[doc.path] = engine.insert(self._handle, doc)

    def remove(self, path: str) -> bool:
        """
        Remove a path from the index.

        Returns:
            True if the path was indexed (unknown paths are a no-op)
        """
        with self._lock:
            if self._handle is None or path not in self._path_ids:
                return False
            self._remove_id(path)
            return True

    # ─── Search ─────────────────────────────────────────────────

    def search(
        self,
        query: ParsedQuery,
        limit: int = 20,
        excerpt_length: int = 150,
        fuzzy: bool = True,
        case_sensitive: bool = False,
    ) -> list[SearchResult]:
        """
        Run a parsed query.

        Args:
            query: Output of parse_query()
            limit: Maximum results (must be positive)
            excerpt_length: Excerpt size in characters (must be positive)
            fuzzy: Allow edit-distance matching for longer terms
            case_sensitive: Enforce case for phrases and text words

        Returns:
            At most ``limit`` results, best first. Empty when the index
            is not ready yet or the query has nothing to search for.

        Raises:
            ValueError: If limit or excerpt_length is not positive
        """
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        if excerpt_length <= 0:
            raise ValueError(f"excerpt_length must be positive, got {excerpt_length}")

        if query.is_empty:
            return []

        term = build_search_term(query)
        where = build_native_filters(query)

        post_filtering = query.has_post_filters or (
            case_sensitive and bool(query.text)
        )
        fetch_limit = limit * OVERFETCH_FACTOR if post_filtering else limit
        tolerance = _tolerance_for(term, query, fuzzy)

        with self._lock:
            if self._handle is None:
                return []

            hits = engine.search(
                self._handle,
                EngineQuery(
                    term=term, tolerance=tolerance, limit=fetch_limit, where=where
                ),
            )
            if not hits and tolerance > 0:
                logger.debug("No fuzzy hits for %r, retrying exact", term)
                hits = engine.search(
                    self._handle,
                    EngineQuery(term=term, tolerance=0, limit=fetch_limit, where=where),
                )

        hits = apply_post_filters(hits, query, case_sensitive)[:limit]
        return [_to_result(hit, query, excerpt_length, case_sensitive) for hit in hits]
