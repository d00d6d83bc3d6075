"""Tests for local sync state."""

from pathlib import Path

import pytest

from offlinesync.core.errors import FileSystemError
from offlinesync.sync.state import LocalSyncState, scan_local_entries
from offlinesync.sync.types import LocalEntry
from tests.factories import write_file


class TestLocalSyncState:
    """Tests for LocalSyncState."""

    def test_mark_and_get(self, state: LocalSyncState) -> None:
        state.mark_synced("sd", "music", LocalEntry("a", "a.mp3", 10, "abc", 1.0))
        entry = state.get_item("sd", "music", "a")
        assert entry == LocalEntry("a", "a.mp3", 10, "abc", 1.0)
        assert state.get_item("sd", "other", "a") is None

    def test_mark_synced_replaces(self, state: LocalSyncState) -> None:
        state.mark_synced("sd", "music", LocalEntry("a", "a.mp3", 10, "abc", 1.0))
        state.mark_synced("sd", "music", LocalEntry("a", "a.mp3", 20, "def", 2.0))
        items = state.list_items("sd", "music")
        assert len(items) == 1
        assert items[0].size == 20

    def test_synced_at_defaults_to_now(self, state: LocalSyncState) -> None:
        state.mark_synced("sd", "music", LocalEntry("a", "a.mp3", 10))
        assert state.get_item("sd", "music", "a").synced_at > 0

    def test_tracked_path(self, state: LocalSyncState) -> None:
        state.mark_synced("sd", "music", LocalEntry("a", "x/a.mp3", 10))
        assert state.is_tracked_path("sd", "music", "x/a.mp3")
        assert not state.is_tracked_path("sd", "music", "x/b.mp3")

    def test_mark_deleted(self, state: LocalSyncState) -> None:
        state.mark_synced("sd", "music", LocalEntry("a", "a.mp3", 10))
        state.mark_deleted("sd", "music", "a")
        assert state.list_items("sd", "music") == []

    def test_last_sync(self, state: LocalSyncState) -> None:
        assert state.get_last_sync("sd", "music") is None
        state.set_last_sync("sd", "music", 123.5)
        assert state.get_last_sync("sd", "music") == 123.5

    def test_persists_across_connections(self, tmp_path: Path) -> None:
        db = tmp_path / "nested" / "state.db"
        first = LocalSyncState(db)
        first.mark_synced("sd", "music", LocalEntry("a", "a.mp3", 10))
        first.close()
        second = LocalSyncState(db)
        try:
            assert second.get_item("sd", "music", "a") is not None
        finally:
            second.close()


class TestScanLocalEntries:
    """Tests for scan_local_entries."""

    def test_missing_root_fails(self, tmp_path: Path, state: LocalSyncState) -> None:
        with pytest.raises(FileSystemError):
            scan_local_entries(tmp_path / "gone", state, "sd", "music")

    def test_vanished_files_are_forgotten(self, tmp_path: Path, state: LocalSyncState) -> None:
        write_file(tmp_path, "a.mp3", b"aaaa")
        state.mark_synced("sd", "music", LocalEntry("a", "a.mp3", 4, "h"))
        state.mark_synced("sd", "music", LocalEntry("b", "b.mp3", 4, "h"))

        entries = scan_local_entries(tmp_path, state, "sd", "music")

        assert [e.item_id for e in entries] == ["a"]
        assert state.get_item("sd", "music", "b") is None

    def test_size_change_drops_checksum(self, tmp_path: Path, state: LocalSyncState) -> None:
        write_file(tmp_path, "a.mp3", b"longer content")
        state.mark_synced("sd", "music", LocalEntry("a", "a.mp3", 4, "h"))

        entries = scan_local_entries(tmp_path, state, "sd", "music")

        assert entries[0].size == len(b"longer content")
        assert entries[0].checksum is None

    def test_untracked_files_ignored(self, tmp_path: Path, state: LocalSyncState) -> None:
        """Files the engine never wrote are never reported."""
        write_file(tmp_path, "mine.mp3", b"x")
        assert scan_local_entries(tmp_path, state, "sd", "music") == []
