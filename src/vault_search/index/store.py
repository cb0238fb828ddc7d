"""Persistent snapshot store for serialized indexes.

One row per vault in a small SQLite file:

    snapshots(vault_id PK, data BLOB, path_map JSON, document_count,
              last_full_build, schema_version, saved_at)

The file is created with owner-only permissions (0600): snapshots hold
the full text of every note.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .schema import SCHEMA_VERSION

logger = logging.getLogger(__name__)

STORE_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS snapshots (
    vault_id TEXT PRIMARY KEY,
    data BLOB NOT NULL,
    path_map TEXT NOT NULL,          -- JSON object: path -> internal id
    document_count INTEGER NOT NULL,
    last_full_build TEXT,            -- ISO timestamp
    schema_version INTEGER NOT NULL,
    saved_at TEXT NOT NULL
);
"""


@dataclass
class StoredIndex:
    """A snapshot as read back from the store."""

    vault_id: str
    data: bytes
    path_map: dict[str, int]
    document_count: int
    last_full_build: datetime | None
    schema_version: int


def get_vault_id(root: Path) -> str:
    """
    Derive a stable snapshot key for a vault.

    Combines the folder name (readable) with a hash of the resolved
    path, so two vaults with the same name do not collide.
    """
    resolved = str(root.expanduser().resolve())
    digest = hashlib.sha256(resolved.encode()).hexdigest()[:12]
    return f"{root.name or 'vault'}-{digest}"


class IndexStore:
    """
    Reads and writes index snapshots.

    Usage:
        store = IndexStore(get_index_path())
        store.save_index(vault_id, blob, path_map, count, built_at)
        stored = store.load_index(vault_id)
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._conn_lock = threading.Lock()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create the store connection (thread-safe)."""
        with self._conn_lock:
            if self._conn is None:
                self._conn = self._open()
            return self._conn

    def _open(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        is_new_db = not self.db_path.exists()

        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        # Must be done after sqlite3.connect() creates the file
        if is_new_db:
            try:
                os.chmod(self.db_path, 0o600)
                logger.debug("Set secure permissions (0600) on %s", self.db_path)
            except OSError as e:
                logger.warning(
                    "Could not set secure permissions on %s: %s", self.db_path, e
                )

        conn.executescript(STORE_SCHEMA_SQL)
        conn.commit()
        return conn

    def close(self) -> None:
        with self._conn_lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def save_index(
        self,
        vault_id: str,
        data: bytes,
        path_map: dict[str, int],
        document_count: int,
        last_full_build: datetime | None,
    ) -> None:
        """
        Write (or replace) the snapshot for a vault.

        Raises:
            sqlite3.Error: If the write fails
        """
        conn = self._get_conn()
        conn.execute(
            """INSERT OR REPLACE INTO snapshots
               (vault_id, data, path_map, document_count, last_full_build,
                schema_version, saved_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                vault_id,
                sqlite3.Binary(data),
                json.dumps(path_map),
                document_count,
                last_full_build.isoformat() if last_full_build else None,
                SCHEMA_VERSION,
                datetime.now().isoformat(),
            ),
        )
        conn.commit()
        logger.debug(
            "Saved snapshot %s (%d documents, %.1f KB)",
            vault_id,
            document_count,
            len(data) / 1024,
        )

    def load_index(self, vault_id: str) -> StoredIndex | None:
        """
        Read the snapshot for a vault.

        Returns:
            StoredIndex, or None if there is none or its metadata is
            unreadable
        """
        if not self.db_path.exists():
            return None

        row = (
            self._get_conn()
            .execute("SELECT * FROM snapshots WHERE vault_id = ?", (vault_id,))
            .fetchone()
        )
        if row is None:
            return None

        try:
            path_map = {str(k): int(v) for k, v in json.loads(row["path_map"]).items()}
            last_full_build = (
                datetime.fromisoformat(row["last_full_build"])
                if row["last_full_build"]
                else None
            )
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Unreadable snapshot metadata for %s: %s", vault_id, e)
            return None

        return StoredIndex(
            vault_id=vault_id,
            data=bytes(row["data"]),
            path_map=path_map,
            document_count=row["document_count"],
            last_full_build=last_full_build,
            schema_version=row["schema_version"],
        )

    def delete_index(self, vault_id: str) -> bool:
        """
        Delete the snapshot for a vault.

        Returns:
            True if a snapshot was deleted
        """
        if not self.db_path.exists():
            return False
        conn = self._get_conn()
        cursor = conn.execute("DELETE FROM snapshots WHERE vault_id = ?", (vault_id,))
        conn.commit()
        return cursor.rowcount > 0

    def clear_all(self) -> int:
        """Delete every stored snapshot and return how many there were."""
        if not self.db_path.exists():
            return 0
        conn = self._get_conn()
        cursor = conn.execute("DELETE FROM snapshots")
        conn.commit()
        conn.execute("VACUUM")
        return cursor.rowcount

    def size_mb(self) -> float:
        """Size of the store file in megabytes (0.0 if absent)."""
        if not self.db_path.exists():
            return 0.0
        return self.db_path.stat().st_size / (1024 * 1024)
