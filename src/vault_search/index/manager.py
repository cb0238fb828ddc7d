"""IndexManager - Central interface for the vault search index.

Provides:
- initialize(): Load the snapshot or build the index from the vault
- search(): Parse a structured query and run it
- handle_event() / start_watcher(): Incremental updates
- get_stats(): Index statistics for status reporting
- shutdown(): Stop updates and write a final snapshot

Wiring:
    watcher ─► IncrementalSyncManager ─► SearchCoordinator ◄─ CacheManager
                      │                                          │
                      └── on_index_changed ─► persist debounce ──┘

Thread Safety:
- get_instance() uses a class-level lock
- All index mutation and search funnel through the SearchCoordinator lock
- The watcher and debounce timers run in their own threads
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import (
    get_debounce_ms,
    get_excerpt_length,
    get_excluded_folders,
    get_excluded_tags,
    get_fuzzy_enabled,
    get_index_path,
    get_low_memory_mode,
    get_max_results,
    get_persist_debounce_ms,
    get_staleness_fraction,
    get_vault_root,
)
from .cache import CacheManager, IndexStatus
from .debounce import Debouncer, TimerFactory
from .extractor import DocumentExtractor
from .query import parse_query
from .search import SearchCoordinator, SearchResult
from .store import IndexStore, get_vault_id
from .sync import FileEvent, IncrementalSyncManager

if TYPE_CHECKING:
    from collections.abc import Callable

    from .watcher import VaultWatcher

logger = logging.getLogger(__name__)


@dataclass
class IndexStats:
    """Statistics about the search index."""

    document_count: int
    file_count: int
    last_full_build: datetime | None
    snapshot_size_mb: float
    source: str
    pending_updates: int
    persistence_enabled: bool
    watcher_running: bool

    @property
    def staleness_ratio(self) -> float | None:
        """Indexed documents per note on disk (None for an empty vault)."""
        if self.file_count == 0:
            return None
        return self.document_count / self.file_count


class IndexManager:
    """
    Manages the in-memory search index for one vault.

    The vault root and snapshot location come from the environment:
    - VAULT_SEARCH_ROOT: Vault directory
    - VAULT_SEARCH_INDEX_PATH: Snapshot store location
    - VAULT_SEARCH_LOW_MEMORY: Disable snapshots entirely
    """

    _instance: IndexManager | None = None
    _instance_lock = threading.Lock()

    def __init__(
        self,
        vault_root: Path | None = None,
        index_path: Path | None = None,
        timer_factory: TimerFactory | None = None,
    ):
        """
        Initialize the IndexManager.

        Args:
            vault_root: Vault directory (uses config default if None)
            index_path: Snapshot store path (uses config default if None)
            timer_factory: Timer constructor for both debounces
        """
        self._vault_root = vault_root or get_vault_root()
        self._index_path = index_path or get_index_path()

        self.extractor = DocumentExtractor(
            self._vault_root,
            excluded_folders=get_excluded_folders(),
            excluded_tags=get_excluded_tags(),
        )
        self.coordinator = SearchCoordinator()
        self.store = IndexStore(self._index_path)
        self.cache = CacheManager(
            self.coordinator,
            self.extractor,
            self.store,
            get_vault_id(self._vault_root),
            staleness_fraction=get_staleness_fraction(),
            low_memory=get_low_memory_mode(),
        )

        kwargs = {"timer_factory": timer_factory} if timer_factory else {}
        self._persist_debouncer = Debouncer(
            get_persist_debounce_ms() / 1000, self._persist, **kwargs
        )
        self.sync = IncrementalSyncManager(
            self.extractor,
            self.coordinator,
            on_index_changed=self._on_index_changed,
            debounce_ms=get_debounce_ms(),
            timer_factory=timer_factory,
        )

        self._watcher: VaultWatcher | None = None
        self._watcher_callback: Callable[[], None] | None = None
        self._init_lock = threading.Lock()

    @classmethod
    def get_instance(cls) -> IndexManager:
        """Get the singleton IndexManager instance (thread-safe)."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = IndexManager()
            return cls._instance

    @property
    def vault_root(self) -> Path:
        return self._vault_root

    @property
    def index_path(self) -> Path:
        """Get the snapshot store file path."""
        return self._index_path

    @property
    def is_ready(self) -> bool:
        return self.coordinator.is_ready

    def has_snapshot(self) -> bool:
        """Check if a snapshot of this vault has been persisted."""
        try:
            return self.store.load_index(self.cache.vault_id) is not None
        except sqlite3.Error as e:
            logger.warning("Could not read snapshot store: %s", e)
            return False

    def initialize(
        self, on_progress: Callable[[int, int], None] | None = None
    ) -> IndexStatus:
        """
        Make the index ready (no-op if it already is).

        Args:
            on_progress: Optional callback(current, total) during a rebuild
        """
        with self._init_lock:
            if self.coordinator.is_ready:
                return self.cache.status()
            return self.cache.initialize(on_progress)

    def rebuild(
        self, on_progress: Callable[[int, int], None] | None = None
    ) -> IndexStatus:
        """Force a full rebuild from the vault."""
        return self.cache.full_rebuild(on_progress)

    def search(
        self,
        query: str,
        limit: int | None = None,
        excerpt_length: int | None = None,
        fuzzy: bool | None = None,
        case_sensitive: bool = False,
    ) -> list[SearchResult]:
        """
        Search the vault with the structured query syntax.

        Args:
            query: Raw query (see vault_search.index.query)
            limit: Maximum results (config default if None)
            excerpt_length: Excerpt size (config default if None)
            fuzzy: Fuzzy matching (config default if None)
            case_sensitive: Match phrases and words case-sensitively

        Returns:
            List of SearchResult, best first (empty if not ready)
        """
        return self.coordinator.search(
            parse_query(query),
            limit=get_max_results() if limit is None else limit,
            excerpt_length=(
                get_excerpt_length() if excerpt_length is None else excerpt_length
            ),
            fuzzy=get_fuzzy_enabled() if fuzzy is None else fuzzy,
            case_sensitive=case_sensitive,
        )

    def handle_event(self, event: FileEvent) -> None:
        """Feed one file event into incremental sync."""
        self.sync.handle_event(event)

    def _on_index_changed(self) -> None:
        if self.cache.persistence_enabled:
            self._persist_debouncer.reset()
        if self._watcher_callback is not None:
            self._watcher_callback()

    def _persist(self) -> None:
        self.cache.persist()

    def get_stats(self) -> IndexStats:
        """
        Get index statistics.

        Returns:
            IndexStats with counts, snapshot size, and watcher state
        """
        return IndexStats(
            document_count=self.coordinator.document_count,
            file_count=self.extractor.get_file_count(),
            last_full_build=self.cache.last_full_build,
            snapshot_size_mb=self.store.size_mb(),
            source=self.cache.source,
            pending_updates=len(self.sync.pending_paths),
            persistence_enabled=self.cache.persistence_enabled,
            watcher_running=self.watcher_running,
        )

    # ─────────────────────────────────────────────────────────────────
    # File Watcher Methods
    # ─────────────────────────────────────────────────────────────────

    def start_watcher(self, on_update: Callable[[], None] | None = None) -> bool:
        """
        Start the file watcher for real-time index updates.

        Args:
            on_update: Optional callback after each applied change

        Returns:
            True if watcher started, False if already running or failed
        """
        if self._watcher is not None and self._watcher.is_running:
            return False

        from .watcher import VaultWatcher

        self._watcher_callback = on_update
        self._watcher = VaultWatcher(self._vault_root, on_event=self.handle_event)
        return self._watcher.start()

    def stop_watcher(self) -> None:
        """Stop the file watcher if running."""
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None

    @property
    def watcher_running(self) -> bool:
        """Check if the file watcher is running."""
        return self._watcher is not None and self._watcher.is_running

    def shutdown(self) -> None:
        """
        Stop all updates and write a final snapshot.

        Pending file updates are dropped, not flushed.
        """
        self.stop_watcher()
        self._persist_debouncer.cancel()
        self.sync.shutdown()
        self.cache.cancel_rebuild()
        if self.cache.persistence_enabled and self.coordinator.is_ready:
            self.cache.persist()
        self.store.close()
        self.coordinator.close()
