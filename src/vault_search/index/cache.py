"""Index lifecycle: load a snapshot or rebuild, and persist.

State machine:
    Uninitialized ─► initialize() ─┬─► load snapshot ─► Ready
                                   └─► full rebuild  ─► Ready

A snapshot is trusted only if its schema version matches and it is not
stale: its document count must be at least STALENESS_FRACTION of the
notes currently in the vault (an empty vault is never stale). Anything
wrong with a snapshot falls back to a full rebuild; persistence
failures only cost durability.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Literal

from .schema import SCHEMA_VERSION

if TYPE_CHECKING:
    from collections.abc import Callable

    from .extractor import DocumentExtractor
    from .search import SearchCoordinator
    from .store import IndexStore, StoredIndex

logger = logging.getLogger(__name__)

DEFAULT_STALENESS_FRACTION = 0.8

IndexSource = Literal["snapshot", "rebuild", "none"]


@dataclass
class IndexStatus:
    """Outcome of an initialization or rebuild."""

    is_ready: bool
    document_count: int
    last_updated: datetime | None
    source: IndexSource


def serialization_supported() -> bool:
    """Whether the running SQLite can serialize in-memory databases."""
    return hasattr(sqlite3.Connection, "serialize")


class CacheManager:
    """
    Owns the index lifecycle for one vault.

    Usage:
        cache = CacheManager(coordinator, extractor, store, vault_id)
        status = cache.initialize()
        ...
        cache.persist()
    """

    def __init__(
        self,
        coordinator: SearchCoordinator,
        extractor: DocumentExtractor,
        store: IndexStore | None,
        vault_id: str,
        staleness_fraction: float = DEFAULT_STALENESS_FRACTION,
        low_memory: bool = False,
    ):
        """
        Initialize the cache manager.

        Args:
            coordinator: Index owner to load into or rebuild
            extractor: Source of vault documents
            store: Snapshot store (None disables persistence)
            vault_id: Snapshot key for this vault
            staleness_fraction: Minimum cached/live document ratio
            low_memory: Resource-constrained mode, never serialize
        """
        self.coordinator = coordinator
        self.extractor = extractor
        self.store = store
        self.vault_id = vault_id
        self.staleness_fraction = staleness_fraction
        self.low_memory = low_memory

        self.last_full_build: datetime | None = None
        self.source: IndexSource = "none"
        self._cancel_event = threading.Event()
        self._rebuild_lock = threading.Lock()
        # Set while the index holds only part of the vault
        self._incomplete = False

    @property
    def persistence_enabled(self) -> bool:
        return (
            self.store is not None
            and not self.low_memory
            and serialization_supported()
        )

    @property
    def rebuilding(self) -> bool:
        return self._rebuild_lock.locked()

    def status(self) -> IndexStatus:
        """Current status without changing anything."""
        return IndexStatus(
            is_ready=self.coordinator.is_ready,
            document_count=self.coordinator.document_count,
            last_updated=self.last_full_build,
            source=self.source,
        )

    def is_snapshot_usable(self, stored: StoredIndex, live_count: int) -> bool:
        """
        Check a stored snapshot against the running version and the vault.

        Args:
            stored: Snapshot read from the store
            live_count: Number of indexable notes in the vault now
        """
        if stored.schema_version != SCHEMA_VERSION:
            logger.warning(
                "Snapshot schema version %d != %d, rebuilding",
                stored.schema_version,
                SCHEMA_VERSION,
            )
            return False

        if live_count == 0:
            return True

        threshold = live_count * self.staleness_fraction
        if stored.document_count < threshold:
            logger.warning(
                "Snapshot is stale (%d documents, %d notes on disk), rebuilding",
                stored.document_count,
                live_count,
            )
            return False
        return True

    def _load_stored(self) -> StoredIndex | None:
        try:
            return self.store.load_index(self.vault_id)
        except sqlite3.Error as e:
            logger.warning("Could not read snapshot store: %s", e)
            return None

    def initialize(
        self, on_progress: Callable[[int, int], None] | None = None
    ) -> IndexStatus:
        """
        Make the index ready: from a usable snapshot, else by rebuilding.

        Never raises for snapshot problems; they only force a rebuild.
        """
        if self.persistence_enabled:
            stored = self._load_stored()
            if stored is not None and self.is_snapshot_usable(
                stored, self.extractor.get_file_count()
            ):
                try:
                    self.coordinator.load_snapshot(stored.data, stored.path_map)
                except Exception as e:  # Broad: any corrupt snapshot means rebuild
                    logger.warning("Snapshot could not be loaded: %s", e)
                else:
                    self.last_full_build = stored.last_full_build
                    self._incomplete = False
                    self.source = "snapshot"
                    logger.info(
                        "Loaded index snapshot (%d documents)",
                        self.coordinator.document_count,
                    )
                    return self.status()
        else:
            logger.debug("Persistence disabled, building index from vault")

        return self.full_rebuild(on_progress)

    def full_rebuild(
        self, on_progress: Callable[[int, int], None] | None = None
    ) -> IndexStatus:
        """
        Rebuild the index from the vault, one document at a time.

        A cancelled rebuild leaves a partial (but consistent) index and
        is never persisted, not even by later persist() calls, until a
        rebuild completes.
        """
        with self._rebuild_lock:
            self._cancel_event.clear()
            self._incomplete = True
            self.coordinator.reset()

            count = self.extractor.index_all_streaming(
                self.coordinator.upsert,
                on_progress=on_progress,
                should_cancel=self._cancel_event.is_set,
            )
            self.coordinator.optimize()
            self.source = "rebuild"

            if self._cancel_event.is_set():
                logger.info("Rebuild cancelled after %d documents", count)
                return self.status()

            self.last_full_build = datetime.now()
            self._incomplete = False
            logger.info("Rebuilt index with %d documents", count)

        self.persist()
        return self.status()

    def cancel_rebuild(self) -> None:
        """Ask a running rebuild to stop after the current file."""
        self._cancel_event.set()

    def persist(self) -> bool:
        """
        Serialize the index and write it to the store (best effort).

        Returns:
            True if a snapshot was written
        """
        if not self.persistence_enabled:
            return False
        if self._incomplete or self.rebuilding:
            logger.debug("Index incomplete, snapshot not written")
            return False

        try:
            snapshot = self.coordinator.serialize()
            if snapshot is None:
                return False
            data, path_map = snapshot
            self.store.save_index(
                self.vault_id,
                data,
                path_map,
                len(path_map),
                self.last_full_build,
            )
        except (sqlite3.Error, OSError, MemoryError) as e:
            logger.warning("Failed to persist index snapshot: %s", e)
            return False
        return True
