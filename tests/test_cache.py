"""Tests for CacheManager: snapshot load, staleness and rebuilds."""

from __future__ import annotations

import sqlite3
from unittest.mock import patch

import pytest
from conftest import write_note

from vault_search.index.cache import CacheManager
from vault_search.index.extractor import DocumentExtractor
from vault_search.index.schema import SCHEMA_VERSION
from vault_search.index.search import SearchCoordinator
from vault_search.index.store import IndexStore, StoredIndex


@pytest.fixture
def store(tmp_path):
    s = IndexStore(tmp_path / "index.db")
    yield s
    s.close()


@pytest.fixture
def fresh_coordinator():
    """A second, not-yet-ready coordinator (as after a restart)."""
    coord = SearchCoordinator()
    yield coord
    coord.close()


def make_cache(coordinator, extractor, store, **kwargs) -> CacheManager:
    return CacheManager(coordinator, extractor, store, "vault-test", **kwargs)


def stored(document_count: int, schema_version: int = SCHEMA_VERSION) -> StoredIndex:
    return StoredIndex(
        vault_id="vault-test",
        data=b"",
        path_map={},
        document_count=document_count,
        last_full_build=None,
        schema_version=schema_version,
    )


class TestSnapshotUsability:
    """Tests for is_snapshot_usable()."""

    @pytest.mark.parametrize(
        "cached, live, expected",
        [
            (10, 20, False),
            (15, 20, False),
            (16, 20, True),
            (25, 20, True),
            (0, 0, True),
            (5, 0, True),
        ],
    )
    def test_staleness(self, coordinator, extractor, cached, live, expected):
        cache = make_cache(coordinator, extractor, None)
        assert cache.is_snapshot_usable(stored(cached), live) is expected

    def test_schema_mismatch(self, coordinator, extractor):
        cache = make_cache(coordinator, extractor, None)
        assert not cache.is_snapshot_usable(stored(3, SCHEMA_VERSION + 1), 3)

    def test_custom_fraction(self, coordinator, extractor):
        cache = make_cache(coordinator, extractor, None, staleness_fraction=0.5)
        assert cache.is_snapshot_usable(stored(10), 20)


class TestInitialize:
    """Tests for initialize()."""

    def test_first_run_rebuilds_and_persists(self, coordinator, extractor, store):
        cache = make_cache(coordinator, extractor, store)
        status = cache.initialize()

        assert status.is_ready
        assert status.source == "rebuild"
        assert status.document_count == 3
        assert status.last_updated is not None
        assert store.load_index("vault-test").document_count == 3

    def test_usable_snapshot_loaded(
        self, coordinator, fresh_coordinator, extractor, store
    ):
        first = make_cache(coordinator, extractor, store)
        first.initialize()

        second = make_cache(fresh_coordinator, extractor, store)
        with patch.object(second, "full_rebuild") as mock_rebuild:
            status = second.initialize()

        mock_rebuild.assert_not_called()
        assert status.source == "snapshot"
        assert status.document_count == 3
        assert status.last_updated == first.last_full_build
        assert fresh_coordinator.paths() == coordinator.paths()

    def test_stale_snapshot_rebuilt(
        self, coordinator, fresh_coordinator, extractor, store, vault
    ):
        make_cache(coordinator, extractor, store).initialize()
        write_note(vault, "new1.md", "one")
        write_note(vault, "new2.md", "two")

        status = make_cache(fresh_coordinator, extractor, store).initialize()
        assert status.source == "rebuild"
        assert status.document_count == 5

    def test_corrupt_snapshot_rebuilt(self, fresh_coordinator, extractor, store):
        store.save_index("vault-test", b"garbage" * 100, {"inbox.md": 1}, 3, None)

        status = make_cache(fresh_coordinator, extractor, store).initialize()
        assert status.is_ready
        assert status.source == "rebuild"
        assert status.document_count == 3

    def test_schema_mismatch_rebuilt(
        self, coordinator, fresh_coordinator, extractor, store
    ):
        make_cache(coordinator, extractor, store).initialize()
        conn = store._get_conn()
        conn.execute("UPDATE snapshots SET schema_version = ?", (SCHEMA_VERSION + 1,))
        conn.commit()

        status = make_cache(fresh_coordinator, extractor, store).initialize()
        assert status.source == "rebuild"

    def test_unreadable_store_rebuilt(self, fresh_coordinator, extractor, store):
        cache = make_cache(fresh_coordinator, extractor, store)
        with patch.object(
            store, "load_index", side_effect=sqlite3.DatabaseError("bad file")
        ):
            status = cache.initialize()
        assert status.source == "rebuild"
        assert status.document_count == 3

    def test_empty_vault_snapshot_reused(self, tmp_path, store):
        empty = tmp_path / "empty"
        empty.mkdir()
        ext = DocumentExtractor(empty)

        first, second = SearchCoordinator(), SearchCoordinator()
        try:
            assert make_cache(first, ext, store).initialize().document_count == 0
            status = make_cache(second, ext, store).initialize()
            assert status.source == "snapshot"
            assert status.is_ready
        finally:
            first.close()
            second.close()


class TestPersistence:
    """Tests for persist() and when persistence is disabled."""

    def test_low_memory_never_persists(self, coordinator, extractor, store):
        cache = make_cache(coordinator, extractor, store, low_memory=True)
        assert not cache.persistence_enabled

        status = cache.initialize()
        assert status.source == "rebuild"
        assert cache.persist() is False
        assert not store.db_path.exists()

    def test_no_store(self, coordinator, extractor):
        cache = make_cache(coordinator, extractor, None)
        assert not cache.persistence_enabled
        assert cache.initialize().is_ready

    def test_serialization_unsupported(self, coordinator, extractor, store):
        cache = make_cache(coordinator, extractor, store)
        with patch(
            "vault_search.index.cache.serialization_supported", return_value=False
        ):
            assert not cache.persistence_enabled

    def test_persist_failure_is_not_fatal(self, coordinator, extractor, store):
        cache = make_cache(coordinator, extractor, store)
        with patch.object(
            store, "save_index", side_effect=sqlite3.OperationalError("disk full")
        ):
            status = cache.initialize()
            assert cache.persist() is False
        assert status.is_ready
        assert status.document_count == 3

    def test_persist_not_ready(self, fresh_coordinator, extractor, store):
        cache = make_cache(fresh_coordinator, extractor, store)
        assert cache.persist() is False

    def test_persist_after_change(self, coordinator, extractor, store):
        cache = make_cache(coordinator, extractor, store)
        cache.initialize()
        coordinator.remove("inbox.md")

        assert cache.persist() is True
        stored_index = store.load_index("vault-test")
        assert stored_index.document_count == 2
        assert "inbox.md" not in stored_index.path_map


class TestRebuild:
    """Tests for full_rebuild() and cancellation."""

    def test_rebuild_replaces_contents(self, coordinator, extractor, store):
        cache = make_cache(coordinator, extractor, store)
        cache.initialize()
        coordinator.remove("inbox.md")

        status = cache.full_rebuild()
        assert status.document_count == 3
        assert "inbox.md" in coordinator.paths()

    def test_progress_reported(self, coordinator, extractor, store):
        progress = []
        make_cache(coordinator, extractor, store).full_rebuild(
            lambda cur, total: progress.append((cur, total))
        )
        assert progress[-1] == (3, 3)

    def test_cancelled_rebuild_not_persisted(self, coordinator, extractor, store):
        cache = make_cache(coordinator, extractor, store)

        status = cache.full_rebuild(lambda cur, total: cache.cancel_rebuild())

        assert status.is_ready
        assert status.document_count == 1
        assert status.last_updated is None
        assert store.load_index("vault-test") is None
        assert not cache.rebuilding

    def test_partial_index_never_persisted_later(self, coordinator, extractor, store):
        """A cancelled rebuild stays unpersisted until a rebuild completes."""
        cache = make_cache(coordinator, extractor, store)
        cache.full_rebuild(lambda cur, total: cache.cancel_rebuild())

        assert cache.persist() is False
        assert store.load_index("vault-test") is None

        cache.full_rebuild()
        snapshot = store.load_index("vault-test")
        assert snapshot is not None
        assert snapshot.document_count == 3

    def test_persist_skipped_during_rebuild(self, coordinator, extractor, store):
        cache = make_cache(coordinator, extractor, store)
        results = []

        cache.full_rebuild(lambda cur, total: results.append(cache.persist()))

        assert results == [False, False, False]
        assert store.load_index("vault-test").document_count == 3
