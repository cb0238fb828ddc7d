"""
Vault Search MCP Server

Provides MCP tools for searching a folder of markdown notes through an
in-memory FTS5 index with a structured query language.

TOOLS (3 total):
- search(query, limit?, case_sensitive?) - Ranked structured search
- index_status() - Index statistics
- reindex() - Force a full rebuild
"""

from __future__ import annotations

import asyncio
import time
from typing_extensions import TypedDict

from fastmcp import FastMCP

from .config import get_max_results

mcp = FastMCP("Vault Search")


# ========== Response Type Definitions ==========


class NoteResult(TypedDict, total=False):
    """A note matching a search."""

    path: str
    title: str
    score: float
    score_source: str
    excerpt: str
    matched_tags: list[str]
    folder: str
    created_at: str
    modified_at: str
    highlights: list[list[int]]


class IndexStatusInfo(TypedDict):
    """Statistics about the search index."""

    ready: bool
    document_count: int
    file_count: int
    last_full_build: str | None
    snapshot_size_mb: float
    source: str
    pending_updates: int
    watcher_running: bool


class ReindexResult(TypedDict):
    """Outcome of a forced rebuild."""

    document_count: int
    elapsed_seconds: float


# ========== Helper Functions ==========


def _get_index_manager():
    """Get the IndexManager singleton, lazily imported."""
    from .index import IndexManager

    return IndexManager.get_instance()


# Module-level lock to prevent duplicate concurrent initialization
_init_lock = asyncio.Lock()


async def _ensure_ready(manager) -> None:
    """Load or build the index on first use."""
    if manager.is_ready:
        return
    async with _init_lock:
        if not manager.is_ready:  # double-check
            await asyncio.to_thread(manager.initialize)


def _to_note_result(result) -> NoteResult:
    return {
        "path": result.path,
        "title": result.title,
        "score": result.score,
        "score_source": result.score_source,
        "excerpt": result.excerpt,
        "matched_tags": list(result.matched_tags),
        "folder": result.folder,
        "created_at": result.created_at,
        "modified_at": result.modified_at,
        "highlights": [[h.start, h.end] for h in result.highlights],
    }


async def _run_search(
    query: str, limit: int | None, case_sensitive: bool
) -> list[NoteResult]:
    manager = _get_index_manager()
    await _ensure_ready(manager)
    results = await asyncio.to_thread(
        manager.search,
        query,
        limit=limit if limit is not None else get_max_results(),
        case_sensitive=case_sensitive,
    )
    return [_to_note_result(r) for r in results]


async def _run_index_status() -> IndexStatusInfo:
    manager = _get_index_manager()
    stats = await asyncio.to_thread(manager.get_stats)
    return {
        "ready": manager.is_ready,
        "document_count": stats.document_count,
        "file_count": stats.file_count,
        "last_full_build": (
            stats.last_full_build.isoformat() if stats.last_full_build else None
        ),
        "snapshot_size_mb": round(stats.snapshot_size_mb, 3),
        "source": stats.source,
        "pending_updates": stats.pending_updates,
        "watcher_running": stats.watcher_running,
    }


async def _run_reindex() -> ReindexResult:
    manager = _get_index_manager()
    start = time.time()
    async with _init_lock:
        status = await asyncio.to_thread(manager.rebuild)
    return {
        "document_count": status.document_count,
        "elapsed_seconds": round(time.time() - start, 2),
    }


# ========== Tools ==========


@mcp.tool
async def search(
    query: str,
    limit: int | None = None,
    case_sensitive: bool = False,
) -> list[NoteResult]:
    """
    Search notes with ranked full-text matching and structured filters.

    Args:
        query: Free text plus any of:
            - "exact phrase"
            - #tag / -#tag (nested tags like #project/alpha work)
            - path:work or folder:work (includes subfolders)
            - title:word, heading:word, tag:name
            - line:(a b), section:(a b), heading:(a b) for co-occurrence
            - created:>2024-01-01, modified:<2024-06-01, created:2024-03-15
            - key:value or [key]:value frontmatter filters
            - -word to exclude notes containing a word
        limit: Maximum results (default: VAULT_SEARCH_MAX_RESULTS or 20)
        case_sensitive: Match phrases and words case-sensitively

    Returns:
        Notes sorted by relevance, each with an excerpt and highlight
        ranges ([start, end) offsets into the excerpt).

    Examples:
        >>> search("#project path:work")
        >>> search('"quarterly planning" -#old')
        >>> search("created:>2024-01-01 meeting")
    """
    return await _run_search(query, limit, case_sensitive)


@mcp.tool
async def index_status() -> IndexStatusInfo:
    """
    Report the state of the search index.

    Returns:
        Indexed and on-disk note counts, last full build time, snapshot
        size, where the index came from (snapshot or rebuild), pending
        updates and whether the file watcher is running.
    """
    return await _run_index_status()


@mcp.tool
async def reindex() -> ReindexResult:
    """
    Rebuild the search index from every note in the vault.

    Only needed if results look out of date; the index normally stays
    current on its own.
    """
    return await _run_reindex()


if __name__ == "__main__":
    mcp.run()
