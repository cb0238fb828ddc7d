"""In-memory full-text index for a note vault.

This module provides:
- IndexManager: Main interface for loading, updating, and searching the index
- parse_query(): Structured query language → ParsedQuery
- SearchCoordinator: Two-phase search (engine-native filters + post filters)
- IncrementalSyncManager: Debounced, batched updates from file events
- VaultWatcher: Real-time file watcher feeding the sync manager
"""

from .cache import CacheManager, IndexStatus
from .manager import IndexManager, IndexStats
from .query import ParsedQuery, parse_query
from .search import SearchCoordinator, SearchResult
from .sync import EventKind, FileEvent, IncrementalSyncManager
from .watcher import VaultWatcher

__all__ = [
    "CacheManager",
    "EventKind",
    "FileEvent",
    "IncrementalSyncManager",
    "IndexManager",
    "IndexStats",
    "IndexStatus",
    "ParsedQuery",
    "SearchCoordinator",
    "SearchResult",
    "VaultWatcher",
    "parse_query",
]
