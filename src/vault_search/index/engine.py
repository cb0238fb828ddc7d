"""In-memory FTS5 index engine.

Provides the low-level engine capability the search coordinator builds on:
- create_empty() / deserialize(): Obtain an engine handle
- insert() / remove(): Mutate documents by opaque internal id
- search(): BM25-ranked term search with native filters
- serialize() / count(): Snapshot and size

Only two filter kinds are native (see TagFilter and DateRange); anything
else has to be applied by the caller on the returned hits.

Term syntax:
- Words are tokenized and quoted, so user input never reaches FTS5
  as operators
- Every word must match (FTS5 implicit AND)
- tolerance > 0 expands each word into an OR over vocabulary terms
  within that edit distance
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from ..text import word_tokens
from .schema import (
    INSERT_NOTE_SQL,
    INSERT_TAG_SQL,
    SCHEMA_VERSION,
    TEXT_COLUMNS,
    configure_connection,
    create_memory_database,
    get_schema_version,
    note_to_row,
)

if TYPE_CHECKING:
    from .extractor import IndexableDocument

logger = logging.getLogger(__name__)

DEFAULT_BOOST = {"title": 3.0, "headings": 2.0, "body": 1.0}

# Upper bound on vocabulary variants per word during fuzzy expansion
MAX_FUZZY_VARIANTS = 25


class DocumentNotFoundError(KeyError):
    """Raised when removing an internal id the engine does not hold."""


# ─────────────────────────────────────────────────────────────────
# Native filters (one class per kind the engine can evaluate)
# ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TagFilter:
    """Document must carry every listed tag (case-insensitive)."""

    tags: tuple[str, ...]


@dataclass(frozen=True)
class DateRange:
    """Timestamp must fall within inclusive epoch-millis bounds."""

    field: Literal["created", "modified"]
    lower: int | None = None
    upper: int | None = None


NativeFilter = TagFilter | DateRange

_DATE_COLUMNS = {"created": "created_at", "modified": "modified_at"}


@dataclass(frozen=True)
class EngineQuery:
    """A single engine search request."""

    term: str = ""
    tolerance: int = 0
    properties: tuple[str, ...] = TEXT_COLUMNS
    limit: int = 20
    where: tuple[NativeFilter, ...] = ()
    boost: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_BOOST))


@dataclass
class EngineHit:
    """A ranked hit with its full stored document."""

    id: int
    score: float
    document: IndexableDocument


@dataclass
class EngineHandle:
    """Owns the in-memory connection backing one engine instance."""

    conn: sqlite3.Connection

    def close(self) -> None:
        self.conn.close()


# ─────────────────────────────────────────────────────────────────
# Lifecycle
# ─────────────────────────────────────────────────────────────────


def create_empty() -> EngineHandle:
    """Create an empty engine with the current schema."""
    return EngineHandle(conn=create_memory_database())


def serialize(handle: EngineHandle) -> bytes:
    """Serialize the whole engine database to bytes."""
    return handle.conn.serialize()


def deserialize(blob: bytes) -> EngineHandle:
    """
    Reconstitute an engine from serialize() output.

    Raises:
        sqlite3.DatabaseError: If the blob is not a valid database
        ValueError: If the blob was written by another schema version
    """
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    try:
        conn.deserialize(blob)
        configure_connection(conn)
        version = get_schema_version(conn)
        if version != SCHEMA_VERSION:
            raise ValueError(
                f"Snapshot schema version {version} != {SCHEMA_VERSION}"
            )
        # Touch every table so corruption surfaces here, not mid-search
        conn.execute("SELECT COUNT(*) FROM notes").fetchone()
        conn.execute("SELECT COUNT(*) FROM notes_fts").fetchone()
    except Exception:
        conn.close()
        raise
    return EngineHandle(conn=conn)


def count(handle: EngineHandle) -> int:
    """Number of documents held by the engine."""
    return handle.conn.execute("SELECT COUNT(*) FROM notes").fetchone()[0]


# ─────────────────────────────────────────────────────────────────
# Mutation
# ─────────────────────────────────────────────────────────────────


def insert(handle: EngineHandle, doc: IndexableDocument) -> int:
    """
    Insert a document and return its new internal id.

    The engine does not deduplicate by path; callers own that mapping.
    """
    conn = handle.conn
    cursor = conn.execute(INSERT_NOTE_SQL, note_to_row(doc))
    internal_id = cursor.lastrowid
    for tag in {t.lower() for t in doc.tags}:
        conn.execute(INSERT_TAG_SQL, (internal_id, tag))
    conn.commit()
    return internal_id


def remove(handle: EngineHandle, internal_id: int) -> None:
    """
    Remove a document by internal id.

    Raises:
        DocumentNotFoundError: If no document has that id
    """
    conn = handle.conn
    cursor = conn.execute("DELETE FROM notes WHERE id = ?", (internal_id,))
    conn.commit()
    if cursor.rowcount == 0:
        raise DocumentNotFoundError(internal_id)


# ─────────────────────────────────────────────────────────────────
# Search
# ─────────────────────────────────────────────────────────────────


def _quote(token: str) -> str:
    """Quote a token for FTS5 (doubling internal quotes)."""
    return '"' + token.replace('"', '""') + '"'


def edit_distance(a: str, b: str, max_distance: int) -> int:
    """
    Levenshtein distance, stopping early once it exceeds max_distance.

    Returns max_distance + 1 for anything beyond the cutoff.
    """
    if abs(len(a) - len(b)) > max_distance:
        return max_distance + 1

    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        if min(current) > max_distance:
            return max_distance + 1
        previous = current
    return min(previous[-1], max_distance + 1)


def _fuzzy_variants(
    conn: sqlite3.Connection, word: str, tolerance: int
) -> list[str]:
    """Vocabulary terms within ``tolerance`` edits of ``word``."""
    cursor = conn.execute(
        "SELECT term FROM notes_vocab WHERE length(term) BETWEEN ? AND ?",
        (max(1, len(word) - tolerance), len(word) + tolerance),
    )
    scored = []
    for row in cursor:
        term = row[0]
        distance = edit_distance(word, term, tolerance)
        if distance <= tolerance:
            scored.append((distance, term))
    scored.sort()
    return [term for _, term in scored[:MAX_FUZZY_VARIANTS]]


def build_match_expression(
    conn: sqlite3.Connection,
    term: str,
    tolerance: int = 0,
    properties: tuple[str, ...] = TEXT_COLUMNS,
) -> str:
    """
    Build a safe FTS5 MATCH expression for a free-text term.

    Returns:
        The expression, or "" if the term has no searchable words
    """
    unknown = set(properties) - set(TEXT_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown search properties: {sorted(unknown)}")

    words = [w.lower() for w in word_tokens(term)]
    if not words:
        return ""

    parts: list[str] = []
    for word in dict.fromkeys(words):
        variants = [word]
        if tolerance > 0:
            variants.extend(_fuzzy_variants(conn, word, tolerance))
        quoted = [_quote(v) for v in dict.fromkeys(variants)]
        if len(quoted) == 1:
            parts.append(quoted[0])
        else:
            parts.append("(" + " OR ".join(quoted) + ")")

    expression = " AND ".join(parts)

    if set(properties) != set(TEXT_COLUMNS):
        columns = " ".join(c for c in TEXT_COLUMNS if c in properties)
        expression = "{" + columns + "} : (" + expression + ")"

    return expression


def add_native_filters(
    sql: str,
    params: list,
    where: tuple[NativeFilter, ...],
    table_alias: str = "n",
) -> str:
    """
    Append WHERE clauses for native filters to a SQL query.

    Modifies params in-place and returns the updated SQL string.
    """
    for native in where:
        if isinstance(native, TagFilter):
            for tag in native.tags:
                sql += (
                    " AND EXISTS (SELECT 1 FROM note_tags t"
                    f" WHERE t.note_id = {table_alias}.id AND t.tag = ?)"
                )
                params.append(tag.lower())
        elif isinstance(native, DateRange):
            column = f"{table_alias}.{_DATE_COLUMNS[native.field]}"
            if native.lower is not None:
                sql += f" AND {column} >= ?"
                params.append(native.lower)
            if native.upper is not None:
                sql += f" AND {column} <= ?"
                params.append(native.upper)
        else:
            raise TypeError(f"Unsupported native filter: {native!r}")
    return sql


def _row_to_document(row: sqlite3.Row) -> IndexableDocument:
    from .extractor import IndexableDocument

    headings = row["headings"]
    return IndexableDocument(
        path=row["path"],
        title=row["title"],
        body=row["body"],
        tags=json.loads(row["tags"]),
        folder=row["folder"],
        headings=headings.split("\n") if headings else [],
        created_at=row["created_at"],
        modified_at=row["modified_at"],
        frontmatter=row["frontmatter"],
    )


def _normalize_score(raw: float) -> float:
    """Map a positive BM25 value onto 0..1 (monotonic)."""
    raw = max(raw, 0.0)
    return raw / (1.0 + raw)


def search(handle: EngineHandle, query: EngineQuery) -> list[EngineHit]:
    """
    Search the engine.

    An empty term returns every document passing the native filters,
    newest modification first, with score 0.0. Otherwise hits are ranked
    by BM25 using the per-column boosts.

    Returns:
        Up to query.limit hits, best first
    """
    if query.limit <= 0:
        return []

    conn = handle.conn
    params: list = []

    if not query.term.strip():
        sql = "SELECT n.*, 0.0 AS rank_score FROM notes n WHERE 1 = 1"
        sql = add_native_filters(sql, params, query.where)
        sql += " ORDER BY n.modified_at DESC, n.id ASC LIMIT ?"
    else:
        expression = build_match_expression(
            conn, query.term, query.tolerance, query.properties
        )
        if not expression:
            return []

        weights = ", ".join(
            str(float(query.boost.get(column, 1.0))) for column in TEXT_COLUMNS
        )
        # BM25 returns negative scores (more negative = better match)
        sql = f"""
            SELECT n.*, -bm25(notes_fts, {weights}) AS rank_score
            FROM notes_fts
            JOIN notes n ON notes_fts.rowid = n.id
            WHERE notes_fts MATCH ?
        """
        params.append(expression)
        sql = add_native_filters(sql, params, query.where)
        sql += " ORDER BY rank_score DESC, n.id ASC LIMIT ?"

    params.append(query.limit)

    hits: list[EngineHit] = []
    for row in conn.execute(sql, params):
        hits.append(
            EngineHit(
                id=row["id"],
                score=_normalize_score(row["rank_score"]),
                document=_row_to_document(row),
            )
        )
    return hits
