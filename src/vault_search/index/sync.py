"""Incremental index maintenance driven by file events.

Per-path state:  Untracked ─► Pending ─► Flushed

- CREATED / MODIFIED: the path enters the pending map (last write wins)
  and the trailing debounce restarts. When it fires, every pending path
  is extracted and upserted as one batch, with one change notification.
- DELETED: bypasses the debounce. Any queued re-index is dropped and the
  path is removed right away.
- RENAMED: the old path is removed right away; the new path is queued
  as if modified.

Shutdown cancels the debounce and drops pending updates without
extracting them.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .debounce import Debouncer, TimerFactory

if TYPE_CHECKING:
    from collections.abc import Callable

    from .extractor import DocumentExtractor
    from .search import SearchCoordinator

logger = logging.getLogger(__name__)

# Above this many queued paths the batch is flushed without waiting
MAX_PENDING_CHANGES = 10000


class EventKind(enum.Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass(frozen=True)
class FileEvent:
    """A vault file lifecycle event (paths are vault-relative POSIX)."""

    kind: EventKind
    path: str
    old_path: str | None = None


class IncrementalSyncManager:
    """
    Keeps the index consistent with vault changes.

    Usage:
        sync = IncrementalSyncManager(extractor, coordinator, on_index_changed=cb)
        sync.handle_event(FileEvent(EventKind.MODIFIED, "work/notes.md"))
        ...
        sync.shutdown()
    """

    def __init__(
        self,
        extractor: DocumentExtractor,
        coordinator: SearchCoordinator,
        on_index_changed: Callable[[], None] | None = None,
        debounce_ms: int = 2000,
        timer_factory: TimerFactory | None = None,
    ):
        """
        Initialize the sync manager.

        Args:
            extractor: Converts vault files into documents
            coordinator: Index owner that receives upserts and removals
            on_index_changed: Optional callback after each applied change
            debounce_ms: Quiet period before a batch is flushed
            timer_factory: Timer constructor (tests pass a manual timer)
        """
        self.extractor = extractor
        self.coordinator = coordinator
        self.on_index_changed = on_index_changed

        kwargs = {"timer_factory": timer_factory} if timer_factory else {}
        self._debouncer = Debouncer(debounce_ms / 1000, self.flush, **kwargs)

        self._pending: dict[str, FileEvent] = {}
        self._pending_lock = threading.Lock()
        # Held for a whole flush and for each delete/rename
        self._flush_lock = threading.Lock()
        self._closed = False

    @property
    def pending_paths(self) -> list[str]:
        """Paths waiting for the next flush, sorted."""
        with self._pending_lock:
            return sorted(self._pending)

    def handle_event(self, event: FileEvent) -> None:
        """Apply or queue a single file event."""
        if self._closed:
            logger.debug("Ignoring %s after shutdown", event)
            return

        if event.kind in (EventKind.CREATED, EventKind.MODIFIED):
            self._queue(event)
        elif event.kind == EventKind.DELETED:
            self._delete(event.path)
        elif event.kind == EventKind.RENAMED:
            self._rename(event)

    def _queue(self, event: FileEvent) -> None:
        if not self.extractor.is_trackable(event.path):
            return

        with self._pending_lock:
            self._pending[event.path] = event
            overflow = len(self._pending) >= MAX_PENDING_CHANGES

        if overflow:
            logger.warning(
                "Pending limit (%d) reached, flushing early", MAX_PENDING_CHANGES
            )
            self._debouncer.cancel()
            self.flush()
        else:
            self._debouncer.reset()

    def _removal_targets(self, path: str) -> list[str]:
        """The indexed path itself, or every note below a deleted folder."""
        if self.coordinator.internal_id(path) is not None:
            return [path]
        prefix = path.rstrip("/") + "/"
        return [p for p in self.coordinator.paths() if p.startswith(prefix)]

    def _delete(self, path: str) -> None:
        with self._flush_lock:
            with self._pending_lock:
                self._pending.pop(path, None)
            removed = [
                p for p in self._removal_targets(path) if self.coordinator.remove(p)
            ]

        if removed:
            logger.debug("Removed %d note(s) for deleted %s", len(removed), path)
            self._notify()

    def _rename(self, event: FileEvent) -> None:
        if event.old_path:
            self._delete(event.old_path)
        self._queue(FileEvent(EventKind.MODIFIED, event.path))

    def flush(self) -> int:
        """
        Extract and upsert every pending path as one batch.

        A file that fails extraction is skipped; the rest of the batch
        still applies.

        Returns:
            Number of paths processed
        """
        with self._flush_lock:
            with self._pending_lock:
                batch = list(self._pending)
                self._pending.clear()

            if not batch:
                return 0

            upserted = 0
            for path in batch:
                try:
                    doc = self.extractor.index_file(path)
                except FileNotFoundError:
                    # Deleted before the debounce fired
                    self.coordinator.remove(path)
                    continue
                except (OSError, ValueError) as e:
                    logger.warning("Failed to index %s: %s", path, e)
                    continue

                if doc is None:
                    # Now excluded (e.g. an excluded tag was added)
                    self.coordinator.remove(path)
                else:
                    self.coordinator.upsert(doc)
                    upserted += 1

        logger.debug("Flushed %d pending path(s), %d upserted", len(batch), upserted)
        self._notify()
        return len(batch)

    def _notify(self) -> None:
        if self.on_index_changed is None:
            return
        try:
            self.on_index_changed()
        except Exception as e:  # Broad: user callback
            logger.warning("Error in on_index_changed callback: %s", e)

    def shutdown(self) -> None:
        """Cancel the debounce and drop pending updates."""
        self._closed = True
        self._debouncer.cancel()
        with self._pending_lock:
            dropped = len(self._pending)
            self._pending.clear()
        if dropped:
            logger.info("Dropped %d pending update(s) at shutdown", dropped)
