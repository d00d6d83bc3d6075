"""Dry-run commands for the offlinesync CLI.

Commands:
- plan: Plan a job without touching the target and export the manifest
- find: Look up catalog items by name
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from offlinesync.cli.common import config_from_context, fail
from offlinesync.core.errors import SyncError
from offlinesync.core.sizes import format_size, parse_size


@click.command()
@click.option("--job", "job_name", required=True, help="Job to plan.")
@click.option("--budget", default=None, help="Budget override, e.g. 64GB.")
@click.option("--csv", "csv_path", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="Write the manifest as CSV.")
@click.option("--script", "script_path", type=click.Path(dir_okay=False, path_type=Path),
              default=None, help="Write an rsync transfer script.")
@click.option("--markdown", "markdown_path", type=click.Path(dir_okay=False, path_type=Path),
              default=None, help="Write a Markdown summary.")
@click.option("--include-deletions", is_flag=True,
              help="Emit active rm commands for evictions in the script.")
@click.pass_context
def plan(
    ctx: click.Context,
    job_name: str,
    budget: str | None,
    csv_path: Path | None,
    script_path: Path | None,
    markdown_path: Path | None,
    include_deletions: bool,
) -> None:
    """Plan a job without transferring anything.

    The catalog is listed and the manifest computed exactly as a sync
    cycle would, then printed and optionally exported.

    Examples:

        offlinesync plan --job movies --budget 120GB --csv movies.csv
    """
    from offlinesync.service import SyncService
    from offlinesync.sync.reports import (
        render_markdown_summary,
        render_transfer_script,
        write_manifest_csv,
    )

    try:
        budget_bytes = parse_size(budget) if budget is not None else None
    except ValueError as e:
        fail(str(e))

    config = config_from_context(ctx)
    service = SyncService(config)
    try:
        orchestrator = service.find_job(job_name)
        manifest = orchestrator.preview(job_name, budget=budget_bytes)
    except SyncError as e:
        fail(e.message)
    finally:
        service.state.close()

    click.echo(f"Plan for {job_name} on {orchestrator.target_id}:")
    click.echo(f"  Budget:   {format_size(manifest.budget)}")
    click.echo(f"  Keep:     {len(manifest.keeps)}")
    click.echo(f"  Fetch:    {len(manifest.fetches)} ({format_size(manifest.fetch_size)})")
    click.echo(f"  Evict:    {len(manifest.evictions)}")
    click.echo(f"  Skipped:  {len(manifest.skipped)}")
    click.echo(f"  Planned:  {format_size(manifest.planned_size)}")
    if manifest.orphan_overflow:
        click.echo(
            f"  Warning: kept orphans exceed the budget by "
            f"{format_size(manifest.orphan_overflow)}",
            err=True,
        )

    if csv_path is not None:
        write_manifest_csv(manifest, csv_path)
        click.echo(f"Wrote {csv_path}")
    if script_path is not None:
        dest_root = orchestrator.destination(job_name)
        script_path.write_text(
            render_transfer_script(manifest, dest_root, include_deletions=include_deletions),
            encoding="utf-8",
        )
        script_path.chmod(0o755)
        click.echo(f"Wrote {script_path}")
    if markdown_path is not None:
        markdown_path.write_text(
            render_markdown_summary(manifest, title=f"Sync plan: {job_name}"),
            encoding="utf-8",
        )
        click.echo(f"Wrote {markdown_path}")


@click.command()
@click.argument("query")
@click.option("--job", "job_name", required=True, help="Job whose catalog is searched.")
@click.option("--threshold", type=click.FloatRange(0.0, 1.0), default=None,
              help="Minimum similarity (default 0.6).")
@click.option("--limit", type=int, default=10, show_default=True)
@click.pass_context
def find(
    ctx: click.Context,
    query: str,
    job_name: str,
    threshold: float | None,
    limit: int,
) -> None:
    """Find catalog items whose name resembles QUERY."""
    from offlinesync.service import SyncService
    from offlinesync.sync.matcher import ContentMatcher

    config = config_from_context(ctx)
    service = SyncService(config)
    try:
        catalog = service.find_job(job_name).list_catalog(job_name)
    except SyncError as e:
        fail(e.message)
    finally:
        service.state.close()

    matcher = ContentMatcher()
    matches = matcher.find_best_match(query, catalog, threshold=threshold, limit=limit)
    if not matches:
        click.echo(f"No match for '{query}'")
        sys.exit(1)
    for match in matches:
        marker = "=" if match.is_exact else "~"
        click.echo(
            f"{marker} {match.score:.2f}  {match.item.name}  "
            f"({format_size(match.item.size)}, id {match.item.item_id})"
        )
