"""Vault Search - Structured full-text search over markdown notes.

Features:
- In-memory FTS5 index with BM25 ranking, snapshotted to disk
- Query language: phrases, #tags, path:, created:/modified:, key:value
- Incremental updates from a file watcher with debounced batching

Usage:
    vault-search            # Run MCP server (default)
    vault-search index      # Build search index from the vault
    vault-search status     # Show index statistics
    vault-search rebuild    # Force rebuild index
    vault-search search Q   # Query from the terminal
"""

from .cli import main
from .server import mcp

__all__ = ["main", "mcp"]
