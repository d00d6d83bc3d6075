"""Selection planner.

This module provides:
- SelectionPlanner: Computes a budgeted keep/fetch/evict manifest
- plan: Functional shortcut

Algorithm (single pass, no backtracking):
1. Filter the catalog.
2. Score and sort candidates, highest first; ties keep catalog order.
3. Apply the per-group sub-budget in that order. Items over their
   group's limit leave candidacy; nothing is re-optimized.
4. Walk the remaining candidates once, accepting each item that still
   fits in the budget. Items that do not fit are skipped and the walk
   continues with smaller ones. Accepted items already present with a
   matching checksum are kept, others are fetched. Kept items count
   against the budget.
5. Local entries that were not accepted are evicted. Local entries whose
   item left the catalog are evicted only when delete_extras is set,
   otherwise kept (and reserved from the budget first).

Greedy selection can leave part of the budget unused when a group limit
rejects a large high-priority item; this is accepted in exchange for a
deterministic, bounded pass.
"""

from __future__ import annotations

import logging
from collections.abc import Hashable, Iterable, Sequence
from typing import Any

from offlinesync.core.errors import ValidationError
from offlinesync.core.rules import FilterTree, GroupLimit, PriorityRule
from offlinesync.core.sizes import format_size
from offlinesync.sync.filters import evaluate, rank
from offlinesync.sync.types import (
    CatalogItem,
    LocalEntry,
    ManifestAction,
    ManifestEntry,
    SkippedCandidate,
    SyncManifest,
)

logger = logging.getLogger(__name__)

REASON_SELECTED = "selected"
REASON_UPDATED = "selected, content changed"
REASON_PRESENT = "already present"
REASON_NOT_SELECTED = "not selected"
REASON_NOT_IN_CATALOG = "not in catalog"
REASON_ORPHAN_KEPT = "orphaned, deletion disabled"
REASON_FILTERED = "filtered out"
REASON_DUPLICATE = "duplicate item id"
REASON_TOO_LARGE = "larger than budget"
REASON_NO_ROOM = "exceeds remaining budget"


def is_current(item: CatalogItem, local: LocalEntry) -> bool:
    """Check whether a local entry holds the catalog's version of an item.

    Checksums are compared when both sides have one, sizes otherwise.
    """
    if item.checksum and local.checksum:
        return item.checksum.lower() == local.checksum.lower()
    return item.size == local.size


def _group_key(value: Any) -> Hashable:
    if isinstance(value, list | tuple | set | frozenset):
        return tuple(sorted(str(v) for v in value))
    if isinstance(value, Hashable):
        return value
    return repr(value)


class SelectionPlanner:
    """Produce a SyncManifest from a catalog snapshot and local state.

    Usage:
        planner = SelectionPlanner(group_limit=GroupLimit("series", max_items=10))
        manifest = planner.plan(catalog, local_entries, filters, priorities, budget)
    """

    def __init__(
        self,
        group_limit: GroupLimit | None = None,
        delete_extras: bool = False,
    ) -> None:
        """Initialize the planner.

        Args:
            group_limit: Optional per-group sub-budget applied before
                the global budget.
            delete_extras: Evict local entries whose item is no longer
                in the catalog.
        """
        self._group_limit = group_limit
        self._delete_extras = delete_extras

    def plan(
        self,
        catalog: Sequence[CatalogItem],
        local_entries: Iterable[LocalEntry],
        filters: FilterTree,
        priorities: Sequence[PriorityRule],
        budget: int,
    ) -> SyncManifest:
        """Compute the manifest for one cycle.

        Args:
            catalog: Catalog snapshot, in listing order.
            local_entries: Entries currently present at the destination.
            filters: Filter tree applied to the catalog.
            priorities: Priority rules used for ordering.
            budget: Byte budget for keep and fetch entries.

        Returns:
            The manifest. Identical inputs give an identical plan.

        Raises:
            ValidationError: If the budget is negative.
        """
        if budget < 0:
            raise ValidationError(f"Budget must not be negative: {budget}")

        local_by_id: dict[str, LocalEntry] = {}
        for entry in local_entries:
            local_by_id.setdefault(entry.item_id, entry)

        skipped: list[SkippedCandidate] = []

        # Deduplicate the catalog, first listing wins
        unique: list[CatalogItem] = []
        seen: set[str] = set()
        for item in catalog:
            if item.item_id in seen:
                skipped.append(SkippedCandidate(item, REASON_DUPLICATE))
                continue
            seen.add(item.item_id)
            unique.append(item)

        # Orphans: present locally, gone from the catalog
        orphan_entries: list[ManifestEntry] = []
        reserved = 0
        for local in local_by_id.values():
            if local.item_id in seen:
                continue
            if self._delete_extras:
                orphan_entries.append(
                    ManifestEntry(ManifestAction.EVICT, REASON_NOT_IN_CATALOG, local=local)
                )
            else:
                orphan_entries.append(
                    ManifestEntry(ManifestAction.KEEP, REASON_ORPHAN_KEPT, local=local)
                )
                reserved += local.size

        orphan_overflow = max(reserved - budget, 0)
        if orphan_overflow:
            logger.warning(
                f"Orphaned files exceed the budget by {format_size(orphan_overflow)} "
                f"and deletion is disabled"
            )
        remaining = max(budget - reserved, 0)

        candidates: list[CatalogItem] = []
        for item in unique:
            if evaluate(item, filters):
                candidates.append(item)
            else:
                skipped.append(SkippedCandidate(item, REASON_FILTERED))

        ranked = self._apply_group_limit(rank(candidates, priorities), skipped)

        accepted: list[ManifestEntry] = []
        accepted_ids: set[str] = set()
        used = 0
        for item, item_score in ranked:
            if item.size > remaining - used:
                reason = REASON_TOO_LARGE if item.size > budget else REASON_NO_ROOM
                skipped.append(SkippedCandidate(item, reason, item_score))
                continue

            used += item.size
            accepted_ids.add(item.item_id)
            local = local_by_id.get(item.item_id)
            if local is not None and is_current(item, local):
                action, reason = ManifestAction.KEEP, REASON_PRESENT
            elif local is not None:
                action, reason = ManifestAction.FETCH, REASON_UPDATED
            else:
                action, reason = ManifestAction.FETCH, REASON_SELECTED
            accepted.append(
                ManifestEntry(action, reason, item=item, local=local, score=item_score)
            )

        catalog_by_id = {item.item_id: item for item in unique}
        evictions = [
            ManifestEntry(
                ManifestAction.EVICT,
                REASON_NOT_SELECTED,
                item=catalog_by_id[local.item_id],
                local=local,
            )
            for local in local_by_id.values()
            if local.item_id in seen and local.item_id not in accepted_ids
        ]

        entries = tuple(accepted + orphan_entries + evictions)
        manifest = SyncManifest(
            entries=entries,
            budget=budget,
            skipped=tuple(skipped),
            orphan_overflow=orphan_overflow,
        )
        logger.info(
            f"Planned {len(manifest.fetches)} fetch, {len(manifest.keeps)} keep, "
            f"{len(manifest.evictions)} evict "
            f"({format_size(manifest.planned_size)} of {format_size(budget)})"
        )
        return manifest

    def _apply_group_limit(
        self,
        ranked: list[tuple[CatalogItem, float]],
        skipped: list[SkippedCandidate],
    ) -> list[tuple[CatalogItem, float]]:
        limit = self._group_limit
        if limit is None:
            return ranked

        counts: dict[Hashable, int] = {}
        sizes: dict[Hashable, int] = {}
        survivors: list[tuple[CatalogItem, float]] = []
        for item, item_score in ranked:
            value = item.attributes.get(limit.attribute)
            if value is None:
                survivors.append((item, item_score))
                continue

            key = _group_key(value)
            count = counts.get(key, 0)
            size = sizes.get(key, 0)
            over_items = limit.max_items is not None and count >= limit.max_items
            over_bytes = limit.max_bytes is not None and size + item.size > limit.max_bytes
            if over_items or over_bytes:
                skipped.append(
                    SkippedCandidate(
                        item, f"group limit ({limit.attribute}={value})", item_score
                    )
                )
                continue

            counts[key] = count + 1
            sizes[key] = size + item.size
            survivors.append((item, item_score))
        return survivors


def plan(
    catalog: Sequence[CatalogItem],
    local_entries: Iterable[LocalEntry],
    filters: FilterTree,
    priorities: Sequence[PriorityRule],
    budget: int,
    *,
    group_limit: GroupLimit | None = None,
    delete_extras: bool = False,
) -> SyncManifest:
    """Compute a manifest (see SelectionPlanner.plan)."""
    planner = SelectionPlanner(group_limit=group_limit, delete_extras=delete_extras)
    return planner.plan(catalog, local_entries, filters, priorities, budget)
