"""Manifest reports.

This module provides:
- manifest_rows: Flat rows describing a manifest (planned and skipped)
- write_manifest_csv: CSV export
- render_transfer_script: POSIX shell script replaying a manifest with rsync
- render_markdown_summary: Human readable summary
"""

from __future__ import annotations

import csv
import io
import shlex
import time
from pathlib import Path
from typing import IO, Any

from offlinesync.core.sizes import format_size
from offlinesync.sync.types import ManifestAction, SyncManifest

CSV_COLUMNS = ("action", "item_id", "name", "size", "size_human", "score", "reason", "address")


def manifest_rows(manifest: SyncManifest) -> list[dict[str, Any]]:
    """Planned entries in manifest order, then skipped candidates."""
    rows: list[dict[str, Any]] = []
    for entry in manifest.entries:
        rows.append(
            {
                "action": entry.action.value,
                "item_id": entry.item_id,
                "name": entry.name,
                "size": entry.size,
                "size_human": format_size(entry.size),
                "score": entry.score,
                "reason": entry.reason,
                "address": entry.item.address if entry.item else "",
            }
        )
    for skipped in manifest.skipped:
        rows.append(
            {
                "action": "skip",
                "item_id": skipped.item.item_id,
                "name": skipped.item.name,
                "size": skipped.item.size,
                "size_human": format_size(skipped.item.size),
                "score": skipped.score,
                "reason": skipped.reason,
                "address": skipped.item.address,
            }
        )
    return rows


def write_manifest_csv(manifest: SyncManifest, output: Path | IO[str]) -> None:
    """Write a manifest as CSV to a path or an open text stream."""
    if isinstance(output, Path):
        with open(output, "w", encoding="utf-8", newline="") as f:
            write_manifest_csv(manifest, f)
        return
    writer = csv.DictWriter(output, fieldnames=CSV_COLUMNS)
    writer.writeheader()
    writer.writerows(manifest_rows(manifest))


def manifest_to_csv(manifest: SyncManifest) -> str:
    buffer = io.StringIO()
    write_manifest_csv(manifest, buffer)
    return buffer.getvalue()


def render_transfer_script(
    manifest: SyncManifest,
    dest_root: Path | str,
    include_deletions: bool = False,
) -> str:
    """Render a shell script performing the manifest with rsync.

    Fetches become ``rsync --partial`` commands from the item address.
    Evictions become ``rm`` commands, commented out unless
    include_deletions is set.
    """
    root = Path(dest_root)
    lines = [
        "#!/bin/sh",
        "# Generated by offlinesync on " + time.strftime("%Y-%m-%d %H:%M:%S"),
        f"# Budget: {format_size(manifest.budget)}, planned: {format_size(manifest.planned_size)}, "
        f"to fetch: {format_size(manifest.fetch_size)}",
        "set -e",
        "",
    ]

    fetches = manifest.fetches
    if fetches:
        lines.append(f"# Fetch {len(fetches)} items")
    for entry in fetches:
        if entry.item is None:
            continue
        dest = root / entry.item_id
        lines.append(f"mkdir -p {shlex.quote(str(dest.parent))}")
        lines.append(
            "rsync -av --partial --progress "
            f"{shlex.quote(entry.item.address)} {shlex.quote(str(dest))}"
        )

    evictions = manifest.evictions
    if evictions:
        lines.append("")
        lines.append(f"# Evict {len(evictions)} items")
    prefix = "" if include_deletions else "# "
    for entry in evictions:
        if entry.local is None:
            continue
        lines.append(f"{prefix}rm -f {shlex.quote(str(root / entry.local.path))}")

    lines.append("")
    return "\n".join(lines)


def render_markdown_summary(manifest: SyncManifest, title: str = "Sync plan") -> str:
    """Summary of a manifest as Markdown."""
    counts = {action: 0 for action in ManifestAction}
    for entry in manifest.entries:
        counts[entry.action] += 1

    sections = [
        f"# {title}",
        "",
        f"**Generated:** {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(manifest.created_at))}",
        "",
        "| | Items | Size |",
        "|---|---:|---:|",
        f"| Keep | {counts[ManifestAction.KEEP]} | "
        f"{format_size(sum(e.size for e in manifest.keeps))} |",
        f"| Fetch | {counts[ManifestAction.FETCH]} | {format_size(manifest.fetch_size)} |",
        f"| Evict | {counts[ManifestAction.EVICT]} | "
        f"{format_size(sum(e.size for e in manifest.evictions))} |",
        f"| Skipped | {len(manifest.skipped)} | "
        f"{format_size(sum(s.item.size for s in manifest.skipped))} |",
        "",
        f"Budget: {format_size(manifest.budget)}, planned: {format_size(manifest.planned_size)} "
        f"({_percent(manifest.planned_size, manifest.budget)} used)",
    ]
    if manifest.orphan_overflow:
        sections.append("")
        sections.append(
            f"Warning: kept orphans exceed the budget by {format_size(manifest.orphan_overflow)}"
        )

    largest = sorted(manifest.fetches, key=lambda e: e.size, reverse=True)[:10]
    if largest:
        sections += ["", "## Largest fetches", ""]
        sections += [f"- {e.name} ({format_size(e.size)})" for e in largest]

    if manifest.skipped:
        sections += ["", "## Skipped", ""]
        sections += [
            f"- {s.item.name} ({format_size(s.item.size)}): {s.reason}" for s in manifest.skipped
        ]
    sections.append("")
    return "\n".join(sections)


def _percent(part: int, whole: int) -> str:
    if whole <= 0:
        return "0.0%"
    return f"{part * 100.0 / whole:.1f}%"
