"""File watcher feeding vault changes to the sync manager.

Uses watchfiles (Rust-based, efficient) to monitor the vault root and
converts raw changes into typed FileEvents:
- added    → CREATED
- modified → MODIFIED
- deleted  → DELETED
- one deleted + one added note in the same batch → RENAMED
- deleted + added for one path → MODIFIED if it still exists, else DELETED

The watcher runs in a background thread; debouncing of re-indexing is
the sync manager's job, watchfiles only batches raw notifications.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from watchfiles import Change, watch

from .extractor import NOTE_SUFFIX
from .sync import EventKind, FileEvent

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

# Milliseconds watchfiles waits to group raw notifications
DEFAULT_WATCH_DEBOUNCE_MS = 200

_CHANGE_KINDS = {
    Change.added: EventKind.CREATED,
    Change.modified: EventKind.MODIFIED,
    Change.deleted: EventKind.DELETED,
}


def to_vault_path(root: Path, raw_path: str) -> str | None:
    """
    Convert an absolute path reported by watchfiles to a vault path.

    Returns:
        Vault-relative POSIX path, or None for paths outside the vault
        or inside hidden directories
    """
    try:
        relative = Path(raw_path).resolve().relative_to(root.resolve())
    except (OSError, ValueError):
        logger.warning("Ignoring path outside vault: %s", raw_path)
        return None

    posix = PurePosixPath(relative.as_posix())
    if not posix.parts or any(part.startswith(".") for part in posix.parts):
        return None
    return posix.as_posix()


def _is_note(path: str) -> bool:
    return path.lower().endswith(NOTE_SUFFIX)


def _resolve_kind(changes: set[Change], raw_path: str) -> EventKind:
    """Collapse all changes to one path within a batch into a single kind."""
    if len(changes) == 1:
        return _CHANGE_KINDS[next(iter(changes))]
    # Atomic saves report delete and add together; the disk decides
    if Change.deleted in changes:
        return EventKind.MODIFIED if Path(raw_path).exists() else EventKind.DELETED
    if Change.added in changes:
        return EventKind.CREATED
    return EventKind.MODIFIED


def convert_changes(
    root: Path, changes: Iterable[tuple[Change, str]]
) -> list[FileEvent]:
    """
    Turn one watchfiles batch into FileEvents, at most one per path.

    Deletions are kept for any path (a deleted folder removes its
    notes); creations and modifications only for notes.
    """
    by_path: dict[str, tuple[str, set[Change]]] = {}
    for change, raw_path in changes:
        if change not in _CHANGE_KINDS:
            continue
        path = to_vault_path(root, raw_path)
        if path is None:
            continue
        by_path.setdefault(path, (raw_path, set()))[1].add(change)

    events: list[FileEvent] = []
    for path in sorted(by_path):
        raw_path, path_changes = by_path[path]
        kind = _resolve_kind(path_changes, raw_path)
        if kind != EventKind.DELETED and not _is_note(path):
            continue
        events.append(FileEvent(kind, path))

    deleted = [e for e in events if e.kind == EventKind.DELETED and _is_note(e.path)]
    created = [e for e in events if e.kind == EventKind.CREATED]
    if len(deleted) == 1 and len(created) == 1:
        rename = FileEvent(
            EventKind.RENAMED, created[0].path, old_path=deleted[0].path
        )
        events = [e for e in events if e not in (deleted[0], created[0])]
        events.append(rename)

    return events


class VaultWatcher:
    """
    Watches the vault directory and reports FileEvents.

    Usage:
        watcher = VaultWatcher(vault_root, on_event=sync.handle_event)
        watcher.start()
        # ... later ...
        watcher.stop()
    """

    def __init__(
        self,
        root: Path,
        on_event: Callable[[FileEvent], None],
        debounce_ms: int = DEFAULT_WATCH_DEBOUNCE_MS,
    ):
        """
        Initialize the watcher.

        Args:
            root: Vault root directory
            on_event: Called for every converted event, in order
            debounce_ms: Milliseconds watchfiles groups raw changes for
        """
        self.root = root
        self.on_event = on_event
        self.debounce_ms = debounce_ms

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> bool:
        """
        Start watching for changes.

        Returns:
            True if started, False if the vault root does not exist
        """
        if not self.root.is_dir():
            logger.warning("Vault root %s not found, watcher not started", self.root)
            return False
        if self.is_running:
            return True

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._watch_loop,
            name="VaultWatcher",
            daemon=True,
        )
        self._thread.start()
        logger.info("File watcher started for %s", self.root)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Stop watching and wait for thread to finish."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        """Check if watcher is running."""
        return self._thread is not None and self._thread.is_alive()

    def _watch_loop(self) -> None:
        """Main watch loop (runs in background thread)."""
        logger.debug("Starting watch loop on %s", self.root)

        for changes in watch(
            self.root,
            stop_event=self._stop_event,
            debounce=self.debounce_ms,
            recursive=True,
        ):
            if self._stop_event.is_set():
                break

            for event in convert_changes(self.root, changes):
                try:
                    self.on_event(event)
                except Exception as e:  # Broad: keep the watcher alive
                    logger.warning("Error handling %s: %s", event, e)
