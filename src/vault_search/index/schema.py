"""SQLite schema for the in-memory FTS5 note index.

The schema uses:
- notes: Base table storing the indexable document fields
- notes_fts: FTS5 virtual table over title, body and headings
- notes_vocab: fts5vocab view over notes_fts (used for fuzzy expansion)
- note_tags: One row per (note, tag) for native tag containment filters

The index lives in memory and is persisted as a whole via
sqlite3 serialize/deserialize, so SCHEMA_VERSION is also the snapshot
format version: bump it whenever the layout changes and old snapshots
will be discarded in favour of a rebuild.
"""

from __future__ import annotations

import json
import sqlite3
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .extractor import IndexableDocument

# Current schema version (stored with every snapshot)
SCHEMA_VERSION = 1

# PRAGMAs for the in-memory engine connection
DEFAULT_PRAGMAS = {
    "foreign_keys": "ON",
    "temp_store": "MEMORY",
}

# Full-text columns, in notes_fts column order (bm25 weights follow it)
TEXT_COLUMNS = ("title", "body", "headings")

INSERT_NOTE_SQL = """INSERT INTO notes
    (path, title, body, headings, tags, folder, created_at, modified_at,
     frontmatter)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)"""

INSERT_TAG_SQL = "INSERT OR IGNORE INTO note_tags (note_id, tag) VALUES (?, ?)"


def note_to_row(
    doc: IndexableDocument,
) -> tuple[str, str, str, str, str, str, int, int, str]:
    """
    Convert an IndexableDocument to a notes row tuple.

    Headings are newline-joined so FTS5 tokenizes them as text while
    the original list can still be recovered; tags are stored as JSON.

    Returns:
        Tuple matching INSERT_NOTE_SQL parameter order
    """
    return (
        doc.path,
        doc.title,
        doc.body,
        "\n".join(doc.headings),
        json.dumps(list(doc.tags)),
        doc.folder,
        int(doc.created_at),
        int(doc.modified_at),
        doc.frontmatter,
    )


def get_schema_sql() -> str:
    """Return the complete schema creation SQL."""
    return """
-- Note documents
-- Note: id is the opaque internal id handed back by insert()
CREATE TABLE IF NOT EXISTS notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    body TEXT NOT NULL DEFAULT '',
    headings TEXT NOT NULL DEFAULT '',   -- newline-joined heading texts
    tags TEXT NOT NULL DEFAULT '[]',     -- JSON array, original casing
    folder TEXT NOT NULL DEFAULT '',
    created_at INTEGER NOT NULL DEFAULT 0,   -- epoch millis
    modified_at INTEGER NOT NULL DEFAULT 0,  -- epoch millis
    frontmatter TEXT NOT NULL DEFAULT ''     -- newline-joined key:value
);

CREATE INDEX IF NOT EXISTS idx_notes_path ON notes(path);
CREATE INDEX IF NOT EXISTS idx_notes_created ON notes(created_at);
CREATE INDEX IF NOT EXISTS idx_notes_modified ON notes(modified_at DESC);

-- Lowercased tags for native containment filters
CREATE TABLE IF NOT EXISTS note_tags (
    note_id INTEGER NOT NULL REFERENCES notes(id) ON DELETE CASCADE,
    tag TEXT NOT NULL,
    PRIMARY KEY(note_id, tag)
);
CREATE INDEX IF NOT EXISTS idx_note_tags_tag ON note_tags(tag);

-- FTS5 index (external content - shares storage with notes table)
-- Uses porter stemmer for English + unicode61 for international text
CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
    title,
    body,
    headings,
    content='notes',
    content_rowid='id',
    tokenize='porter unicode61'
);

-- Vocabulary of indexed terms (one row per distinct term)
CREATE VIRTUAL TABLE IF NOT EXISTS notes_vocab USING fts5vocab(
    notes_fts, 'row'
);

-- Triggers to keep FTS index in sync with notes table
CREATE TRIGGER IF NOT EXISTS notes_ai AFTER INSERT ON notes BEGIN
    INSERT INTO notes_fts(rowid, title, body, headings)
    VALUES (new.id, new.title, new.body, new.headings);
END;

CREATE TRIGGER IF NOT EXISTS notes_ad AFTER DELETE ON notes BEGIN
    INSERT INTO notes_fts(notes_fts, rowid, title, body, headings)
    VALUES('delete', old.id, old.title, old.body, old.headings);
END;

CREATE TRIGGER IF NOT EXISTS notes_au AFTER UPDATE ON notes BEGIN
    INSERT INTO notes_fts(notes_fts, rowid, title, body, headings)
    VALUES('delete', old.id, old.title, old.body, old.headings);
    INSERT INTO notes_fts(rowid, title, body, headings)
    VALUES (new.id, new.title, new.body, new.headings);
END;

-- Schema version tracking (travels inside serialized snapshots)
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);
"""


def configure_connection(conn: sqlite3.Connection) -> sqlite3.Connection:
    """Apply the row factory and standard PRAGMAs to a connection."""
    conn.row_factory = sqlite3.Row
    for pragma, value in DEFAULT_PRAGMAS.items():
        conn.execute(f"PRAGMA {pragma}={value}")
    return conn


def create_memory_database() -> sqlite3.Connection:
    """
    Create an empty in-memory index database with the full schema.

    The connection uses check_same_thread=False: the watcher thread,
    debounce timers and the server all reach it, serialized by the
    SearchCoordinator lock.
    """
    conn = configure_connection(
        sqlite3.connect(":memory:", check_same_thread=False)
    )
    conn.executescript(get_schema_sql())
    conn.execute(
        "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
    )
    conn.commit()
    return conn


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Read the schema version stored in an index database (0 if absent)."""
    try:
        row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    except sqlite3.OperationalError:
        return 0
    return row[0] if row else 0


def optimize_fts_index(conn: sqlite3.Connection) -> None:
    """
    Optimize the FTS index for better query performance.

    Call after bulk insertion (full rebuild).
    """
    conn.execute("INSERT INTO notes_fts(notes_fts) VALUES('optimize')")
    conn.commit()
