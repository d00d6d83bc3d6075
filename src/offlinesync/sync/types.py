"""Data model for the sync engine.

This module provides:
- CatalogItem: Immutable snapshot of one remote item
- LocalEntry: An item already present at the destination
- ManifestAction / ManifestEntry / SkippedCandidate / SyncManifest: Planner output
- TransferStatus / TransferOperation: Per-entry transfer state machine
- ItemError / SyncResult: Per-cycle outcome
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from offlinesync.core.errors import SyncError


@dataclass(frozen=True)
class CatalogItem:
    """One item of a remote catalog.

    Attributes:
        item_id: Stable identifier (also the relative destination path).
        name: Display name.
        size: Size in bytes.
        attributes: Source-specific metadata (year, rating, genres, ...).
        address: Remote path or URL used to fetch the item.
        checksum: Optional SHA-256 hex digest of the content.
    """

    item_id: str
    name: str
    size: int
    attributes: Mapping[str, Any] = field(default_factory=dict)
    address: str = ""
    checksum: str | None = None

    def __post_init__(self) -> None:
        # Freeze the attribute bag so a catalog snapshot cannot be mutated
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    def __hash__(self) -> int:
        return hash((self.item_id, self.size, self.checksum))

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "item_id": self.item_id,
            "name": self.name,
            "size": self.size,
            "attributes": dict(self.attributes),
            "address": self.address,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CatalogItem:
        """Create from a catalog payload entry."""
        return cls(
            item_id=str(data["item_id"] if "item_id" in data else data["id"]),
            name=str(data.get("name", data.get("item_id", data.get("id")))),
            size=int(data["size"]),
            attributes=data.get("attributes", {}),
            address=str(data.get("address", data.get("url", ""))),
            checksum=data.get("checksum"),
        )


@dataclass(frozen=True)
class LocalEntry:
    """An item present at the destination and tracked as synced.

    Attributes:
        item_id: Catalog identifier.
        path: Path relative to the destination root.
        size: Size on disk in bytes.
        checksum: Checksum recorded when the item was last verified.
        synced_at: Timestamp of the last successful sync.
    """

    item_id: str
    path: str
    size: int
    checksum: str | None = None
    synced_at: float = 0.0


class ManifestAction(str, Enum):
    """Planned action for one item."""

    KEEP = "keep"
    FETCH = "fetch"
    EVICT = "evict"


@dataclass(frozen=True)
class ManifestEntry:
    """One planned action.

    ``item`` is set for catalog items, ``local`` for entries that already
    exist at the destination. Evictions of orphans only carry ``local``.
    """

    action: ManifestAction
    reason: str
    item: CatalogItem | None = None
    local: LocalEntry | None = None
    score: float = 0.0

    @property
    def item_id(self) -> str:
        if self.item is not None:
            return self.item.item_id
        assert self.local is not None
        return self.local.item_id

    @property
    def size(self) -> int:
        """Bytes this entry occupies (or frees, for evictions)."""
        if self.action == ManifestAction.EVICT and self.local is not None:
            return self.local.size
        if self.item is not None:
            return self.item.size
        assert self.local is not None
        return self.local.size

    @property
    def name(self) -> str:
        if self.item is not None:
            return self.item.name
        assert self.local is not None
        return self.local.path

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "name": self.name,
            "action": self.action.value,
            "reason": self.reason,
            "size": self.size,
            "score": self.score,
        }


@dataclass(frozen=True)
class SkippedCandidate:
    """A catalog item that was not selected, kept for reporting."""

    item: CatalogItem
    reason: str
    score: float = 0.0


@dataclass(frozen=True)
class SyncManifest:
    """Planned keep/fetch/evict actions for one cycle.

    The total size of keep and fetch entries stays within ``budget``
    unless orphans kept because deletion is disabled already exceed it.
    Those are never dropped: nothing is fetched and the excess is
    reported in ``orphan_overflow``, so ``planned_size - orphan_overflow``
    is always within ``budget``.
    """

    entries: tuple[ManifestEntry, ...]
    budget: int
    skipped: tuple[SkippedCandidate, ...] = ()
    orphan_overflow: int = 0
    created_at: float = field(default_factory=time.time)

    def _with(self, action: ManifestAction) -> list[ManifestEntry]:
        return [e for e in self.entries if e.action == action]

    @property
    def keeps(self) -> list[ManifestEntry]:
        return self._with(ManifestAction.KEEP)

    @property
    def fetches(self) -> list[ManifestEntry]:
        return self._with(ManifestAction.FETCH)

    @property
    def evictions(self) -> list[ManifestEntry]:
        return self._with(ManifestAction.EVICT)

    @property
    def planned_size(self) -> int:
        """Total bytes of keep and fetch entries."""
        return sum(
            e.size for e in self.entries if e.action in (ManifestAction.KEEP, ManifestAction.FETCH)
        )

    @property
    def fetch_size(self) -> int:
        return sum(e.size for e in self.fetches)

    def same_plan(self, other: SyncManifest) -> bool:
        """Compare plans ignoring the creation timestamp."""
        return (
            self.entries == other.entries
            and self.budget == other.budget
            and self.skipped == other.skipped
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "budget": self.budget,
            "planned_size": self.planned_size,
            "fetch_size": self.fetch_size,
            "orphan_overflow": self.orphan_overflow,
            "created_at": self.created_at,
            "entries": [e.to_dict() for e in self.entries],
            "skipped": [
                {"item_id": s.item.item_id, "name": s.item.name, "size": s.item.size,
                 "reason": s.reason, "score": s.score}
                for s in self.skipped
            ],
        }


class TransferStatus(str, Enum):
    """Status of a transfer operation."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Valid state transitions
VALID_TRANSITIONS: dict[TransferStatus, set[TransferStatus]] = {
    TransferStatus.PENDING: {
        TransferStatus.IN_PROGRESS,
        TransferStatus.CANCELLED,
        TransferStatus.FAILED,
    },
    TransferStatus.IN_PROGRESS: {
        TransferStatus.COMPLETED,
        TransferStatus.CANCELLED,
        TransferStatus.FAILED,
    },
    TransferStatus.COMPLETED: set(),  # Terminal
    TransferStatus.FAILED: set(),  # Terminal
    TransferStatus.CANCELLED: set(),  # Terminal
}


class InvalidTransitionError(Exception):
    """Raised when attempting an invalid state transition."""

    pass


@dataclass
class TransferOperation:
    """Tracked transfer of one manifest entry.

    Attributes:
        entry: The manifest entry being executed.
        source: Remote address or source path.
        destination: Final destination path.
        expected_size: Size announced by the catalog.
        transferred: Bytes written so far.
        checksum: Expected checksum, if the catalog provides one.
        status: Current status.
        error: Failure description.
    """

    entry: ManifestEntry
    source: str
    destination: str
    expected_size: int
    transferred: int = 0
    checksum: str | None = None
    status: TransferStatus = TransferStatus.PENDING
    error: str | None = None
    started_at: float | None = None
    finished_at: float | None = None

    def transition_to(self, new_status: TransferStatus) -> None:
        """Transition to a new status with validation."""
        if new_status not in VALID_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot transition from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def start(self) -> None:
        self.transition_to(TransferStatus.IN_PROGRESS)
        self.started_at = time.time()

    def complete(self) -> None:
        self.transition_to(TransferStatus.COMPLETED)
        self.finished_at = time.time()

    def fail(self, error: str) -> None:
        self.transition_to(TransferStatus.FAILED)
        self.error = error
        self.finished_at = time.time()

    def cancel(self) -> None:
        if self.status in (TransferStatus.PENDING, TransferStatus.IN_PROGRESS):
            self.transition_to(TransferStatus.CANCELLED)
            self.finished_at = time.time()

    @property
    def is_terminal(self) -> bool:
        return not VALID_TRANSITIONS[self.status]


@dataclass(frozen=True)
class ItemError:
    """A per-item failure recorded in a SyncResult."""

    item_id: str
    category: str
    message: str
    severity: str = "medium"

    @classmethod
    def from_error(cls, item_id: str, error: SyncError) -> ItemError:
        return cls(
            item_id=item_id,
            category=error.category.value,
            message=error.message,
            severity=error.severity.value,
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "item_id": self.item_id,
            "category": self.category,
            "message": self.message,
            "severity": self.severity,
        }


@dataclass
class SyncResult:
    """Outcome of one sync cycle (or one job within a cycle).

    Attributes:
        job: Job name.
        target_id: Target identifier.
        items_processed: Entries that reached a terminal state.
        fetched: Items fetched successfully.
        evicted: Items evicted successfully.
        kept: Items kept without transfer.
        bytes_moved: Bytes written to the destination.
        started_at: Wall clock start time.
        duration: Seconds elapsed.
        errors: Per-item and cycle-level errors.
        cancelled: Whether the run was cancelled.
    """

    job: str
    target_id: str
    items_processed: int = 0
    fetched: int = 0
    evicted: int = 0
    kept: int = 0
    bytes_moved: int = 0
    started_at: float = field(default_factory=time.time)
    duration: float = 0.0
    errors: list[ItemError] = field(default_factory=list)
    cancelled: bool = False
    aborted: bool = False

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled and not self.aborted

    @property
    def failed_items(self) -> list[str]:
        return [e.item_id for e in self.errors if e.item_id]

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job,
            "target_id": self.target_id,
            "success": self.success,
            "items_processed": self.items_processed,
            "fetched": self.fetched,
            "evicted": self.evicted,
            "kept": self.kept,
            "bytes_moved": self.bytes_moved,
            "started_at": self.started_at,
            "duration": self.duration,
            "cancelled": self.cancelled,
            "aborted": self.aborted,
            "errors": [e.to_dict() for e in self.errors],
        }
