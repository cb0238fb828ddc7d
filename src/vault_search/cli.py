"""Command-line interface for vault-search.

Provides commands for:
- index: Build the search index from the vault and save a snapshot
- status: Show index statistics
- rebuild: Force a full rebuild
- search: Run a query from the terminal
- serve: Run the MCP server (default)

Usage:
    vault-search                  # Run MCP server (default)
    vault-search serve --watch    # Run with real-time index updates
    vault-search index            # Build index from the vault
    vault-search status           # Show index status
    vault-search rebuild          # Force rebuild index
    vault-search search "#project path:work"
"""

import logging
import sys
import time
from typing import Annotated

import cyclopts

from .config import get_index_path, get_vault_root

app = cyclopts.App(
    name="vault-search",
    help="Structured full-text search over a folder of markdown notes.",
)


def _configure_logging(verbose: bool) -> None:
    """Send log records to stderr (stdout carries the MCP protocol)."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _format_size(size_mb: float) -> str:
    """Format file size for display."""
    if size_mb < 1:
        return f"{size_mb * 1024:.1f} KB"
    return f"{size_mb:.1f} MB"


def _format_time(seconds: float) -> str:
    """Format duration for display."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    return f"{minutes}m {secs:.1f}s"


def _progress_bar(current: int, total: int | None, width: int = 40) -> str:
    """Create a progress bar string."""
    if total is None or total == 0:
        # Indeterminate progress
        return f"[{'=' * (current % width)}>]"

    pct = min(current / total, 1.0)
    filled = int(width * pct)
    bar = "=" * filled + "-" * (width - filled)
    return f"[{bar}] {pct * 100:.0f}%"


def _progress_printer(verbose: bool):
    """Progress callback for rebuilds (None when not verbose)."""
    if not verbose:
        return None

    last_report = 0.0

    def progress(current: int, total: int) -> None:
        nonlocal last_report
        now = time.time()
        # Throttle updates to avoid spam
        if now - last_report < 0.2 and current < total:
            return
        last_report = now
        bar = _progress_bar(current, total)
        print(f"\r{bar} {current:,}/{total:,} notes", end="", flush=True)

    return progress


def _run_serve(watch: bool = False) -> None:
    """Internal function to run the MCP server."""
    from .index import IndexManager
    from .server import mcp

    manager = IndexManager.get_instance()

    print(f"Loading index for {manager.vault_root}...", file=sys.stderr, flush=True)
    start = time.time()
    status = manager.initialize()
    print(
        f"Index ready: {status.document_count:,} notes from {status.source} "
        f"({_format_time(time.time() - start)})",
        file=sys.stderr,
    )

    if watch:

        def on_update() -> None:
            print("Index updated", file=sys.stderr)

        if manager.start_watcher(on_update=on_update):
            print("File watcher started", file=sys.stderr)
        else:
            print("Warning: Could not start file watcher", file=sys.stderr)

    try:
        mcp.run()
    finally:
        manager.shutdown()


@app.command
def serve(
    watch: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--watch", "-w"],
            help="Watch the vault and update the index in real-time",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """
    Run the MCP server.

    This is the default command when no subcommand is specified.
    At startup the index is loaded from its snapshot, or rebuilt when
    there is none or it is stale. Use --watch to keep it current while
    notes are edited.
    """
    _configure_logging(verbose)
    _run_serve(watch=watch)


@app.command
def index(
    verbose: Annotated[
        bool,
        cyclopts.Parameter(name=["--verbose", "-v"], help="Show progress"),
    ] = False,
) -> None:
    """
    Build the search index from the vault.

    Reads every markdown note under VAULT_SEARCH_ROOT and saves a
    snapshot so the server starts instantly next time.
    """
    from .index import IndexManager

    _configure_logging(verbose)

    print(f"Building search index for {get_vault_root()}...")
    print(f"Snapshot location: {get_index_path()}")
    print()

    manager = IndexManager()
    start = time.time()

    try:
        status = manager.rebuild(on_progress=_progress_printer(verbose))
        elapsed = time.time() - start

        if verbose:
            print()  # Newline after progress

        print(f"✓ Indexed {status.document_count:,} notes in {_format_time(elapsed)}")

        stats = manager.get_stats()
        if stats.persistence_enabled:
            print(f"  Snapshot size: {_format_size(stats.snapshot_size_mb)}")
        else:
            print("  Snapshot: disabled (low-memory mode)")

    except Exception as e:
        print(f"\n✗ Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        manager.shutdown()


@app.command
def status(
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """
    Show index statistics.

    Displays:
    - Indexed note count and notes on disk
    - Last full build time
    - Snapshot file size
    """
    from .index import IndexManager

    _configure_logging(verbose)
    manager = IndexManager()

    try:
        stored = manager.store.load_index(manager.cache.vault_id)
        if stored is None:
            print("No index snapshot found.")
            print(f"Expected location: {get_index_path()}")
            print()
            print("Run 'vault-search index' to build the index.")
            sys.exit(1)

        file_count = manager.extractor.get_file_count()

        print("Vault Search Index Status")
        print("=" * 40)
        print(f"Vault:        {manager.vault_root}")
        print(f"Location:     {manager.index_path}")
        print(f"Notes:        {stored.document_count:,} indexed")
        print(f"On disk:      {file_count:,}")
        print(f"Snapshot:     {_format_size(manager.store.size_mb())}")
        print()

        if stored.last_full_build:
            built = stored.last_full_build.strftime("%Y-%m-%d %H:%M:%S")
            print(f"Last build:   {built}")
        else:
            print("Last build:   Unknown")

        if not manager.cache.is_snapshot_usable(stored, file_count):
            print()
            print("⚠ Index is stale. Run 'vault-search rebuild' to refresh.")
    finally:
        manager.store.close()


@app.command
def rebuild(
    verbose: Annotated[
        bool,
        cyclopts.Parameter(name=["--verbose", "-v"], help="Show progress"),
    ] = False,
) -> None:
    """
    Force rebuild the search index.

    Discards the snapshot contents and re-reads every note.
    """
    from .index import IndexManager

    _configure_logging(verbose)
    print(f"Rebuilding index for {get_vault_root()}...")

    manager = IndexManager()
    start = time.time()

    try:
        status = manager.rebuild(on_progress=_progress_printer(verbose))
        elapsed = time.time() - start

        if verbose:
            print()

        print(f"✓ Rebuilt {status.document_count:,} notes in {_format_time(elapsed)}")

    except Exception as e:
        print(f"\n✗ Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        manager.shutdown()


@app.command
def search(
    query: str,
    limit: Annotated[
        int,
        cyclopts.Parameter(name=["--limit", "-n"], help="Maximum results"),
    ] = 10,
    case_sensitive: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--case-sensitive", "-c"],
            help="Match phrases and words case-sensitively",
        ),
    ] = False,
    fuzzy: Annotated[
        bool,
        cyclopts.Parameter(
            name="--fuzzy",
            negative="--no-fuzzy",
            help="Allow typo-tolerant matching",
        ),
    ] = True,
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """
    Search the vault from the terminal.

    Supports the full query syntax: "exact phrase", #tag, -#tag,
    path:folder, title:word, heading:word, created:>2024-01-01,
    key:value frontmatter filters and -word exclusions.
    """
    from .index import IndexManager

    _configure_logging(verbose)

    if limit <= 0:
        print("Error: --limit must be positive", file=sys.stderr)
        sys.exit(1)

    manager = IndexManager()
    try:
        manager.initialize()
        results = manager.search(
            query, limit=limit, fuzzy=fuzzy, case_sensitive=case_sensitive
        )
    finally:
        manager.shutdown()

    if not results:
        print("No matching notes.")
        return

    for i, result in enumerate(results, 1):
        print(f"{i:>2}. {result.path}  ({result.score:.3f})")
        if result.matched_tags:
            print(f"    tags: {', '.join('#' + t for t in result.matched_tags)}")
        if result.excerpt:
            print(f"    {result.excerpt}")


@app.default
def default_handler(
    watch: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--watch", "-w"],
            help="Watch the vault and update the index in real-time",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """Run the MCP server (default when no command specified)."""
    _configure_logging(verbose)
    _run_serve(watch=watch)


def main() -> None:
    """Entry point for the CLI."""
    app()
