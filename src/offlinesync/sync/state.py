"""Local state management for synced items.

This module provides:
- LocalSyncState: SQLite record of the items this engine has synced
- scan_local_entries: Build the authoritative list of LocalEntries

Architecture:
    The database only records what the engine itself wrote, per target
    and job. At the start of every cycle the destination is scanned and
    the scan wins: rows whose file disappeared are pruned, files whose
    size changed lose their recorded checksum. Files the engine never
    wrote are invisible to the planner, so they are never evicted.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from pathlib import Path

from offlinesync.core.errors import FileSystemError
from offlinesync.sync.types import LocalEntry

logger = logging.getLogger(__name__)


class LocalSyncState:
    """SQLite-based record of synced items.

    Thread-safe: workers of the transfer pool record completions
    concurrently through one connection guarded by a lock.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize local state database.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self._db_path = db_path if db_path == ":memory:" else Path(db_path)
        if isinstance(self._db_path, Path):
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe database access
        self._lock = threading.RLock()

        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            isolation_level=None,  # Autocommit mode
        )
        self._conn.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrency
        self._conn.execute("PRAGMA journal_mode=WAL")

        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS synced_items (
                target_id TEXT NOT NULL,
                job TEXT NOT NULL,
                item_id TEXT NOT NULL,
                path TEXT NOT NULL,
                size INTEGER NOT NULL,
                checksum TEXT,
                synced_at REAL NOT NULL,
                PRIMARY KEY (target_id, job, item_id)
            );

            CREATE INDEX IF NOT EXISTS idx_synced_items_path
                ON synced_items (target_id, job, path);

            -- Key-value state (last cycle times)
            CREATE TABLE IF NOT EXISTS sync_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    @staticmethod
    def _entry_from_row(row: sqlite3.Row) -> LocalEntry:
        return LocalEntry(
            item_id=row["item_id"],
            path=row["path"],
            size=row["size"],
            checksum=row["checksum"],
            synced_at=row["synced_at"],
        )

    # === Item operations ===

    def get_item(self, target_id: str, job: str, item_id: str) -> LocalEntry | None:
        """Get a tracked item.

        Returns:
            LocalEntry if tracked, None otherwise.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM synced_items WHERE target_id = ? AND job = ? AND item_id = ?",
                (target_id, job, item_id),
            ).fetchone()
        return self._entry_from_row(row) if row else None

    def list_items(self, target_id: str, job: str) -> list[LocalEntry]:
        """List tracked items of a job, ordered by path."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM synced_items WHERE target_id = ? AND job = ? ORDER BY path",
                (target_id, job),
            ).fetchall()
        return [self._entry_from_row(row) for row in rows]

    def is_tracked_path(self, target_id: str, job: str, path: str) -> bool:
        """Check whether a relative path was written by this engine."""
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM synced_items WHERE target_id = ? AND job = ? AND path = ?",
                (target_id, job, path),
            ).fetchone()
        return row is not None

    def mark_synced(self, target_id: str, job: str, entry: LocalEntry) -> None:
        """Record an item as synced (insert or replace)."""
        synced_at = entry.synced_at or time.time()
        with self._lock:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO synced_items
                    (target_id, job, item_id, path, size, checksum, synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (target_id, job, entry.item_id, entry.path, entry.size,
                 entry.checksum, synced_at),
            )

    def mark_deleted(self, target_id: str, job: str, item_id: str) -> None:
        """Forget a tracked item."""
        with self._lock:
            self._conn.execute(
                "DELETE FROM synced_items WHERE target_id = ? AND job = ? AND item_id = ?",
                (target_id, job, item_id),
            )

    # === Key-value state ===

    def get_value(self, key: str) -> str | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM sync_state WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_value(self, key: str, value: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO sync_state (key, value) VALUES (?, ?)",
                (key, value),
            )

    def get_last_sync(self, target_id: str, job: str) -> float | None:
        """Time of the last completed cycle for a job."""
        value = self.get_value(f"last_sync:{target_id}:{job}")
        return float(value) if value is not None else None

    def set_last_sync(self, target_id: str, job: str, timestamp: float | None = None) -> None:
        self.set_value(f"last_sync:{target_id}:{job}", str(timestamp or time.time()))


def scan_local_entries(
    root: Path,
    state: LocalSyncState,
    target_id: str,
    job: str,
) -> list[LocalEntry]:
    """Reconcile tracked items with what is actually on disk.

    Args:
        root: Destination root directory of the job.
        state: Sync state database.
        target_id: Target identifier.
        job: Job name.

    Returns:
        Entries for tracked files that still exist, ordered by path. A file
        whose size no longer matches the record is returned with its actual
        size and no checksum, so the planner treats it as stale.

    Raises:
        FileSystemError: If the root directory is missing, so a vanished
            mount never looks like a set of deleted files.
    """
    if not root.is_dir():
        raise FileSystemError(
            f"Destination root is not a directory: {root}", context={"path": str(root)}
        )

    entries: list[LocalEntry] = []
    for tracked in state.list_items(target_id, job):
        path = root / tracked.path
        try:
            stat = path.stat()
        except FileNotFoundError:
            logger.info(f"Tracked file vanished, forgetting it: {tracked.path}")
            state.mark_deleted(target_id, job, tracked.item_id)
            continue

        if not path.is_file():
            logger.warning(f"Tracked path is no longer a file: {tracked.path}")
            state.mark_deleted(target_id, job, tracked.item_id)
            continue

        if stat.st_size != tracked.size:
            logger.info(f"Tracked file changed on disk: {tracked.path}")
            entries.append(
                LocalEntry(
                    item_id=tracked.item_id,
                    path=tracked.path,
                    size=stat.st_size,
                    checksum=None,
                    synced_at=tracked.synced_at,
                )
            )
        else:
            entries.append(tracked)
    return entries
