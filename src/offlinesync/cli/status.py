"""Inspection commands for the offlinesync CLI.

Commands:
- status: Query the HTTP API of a running service
- targets: List configured targets
"""

from __future__ import annotations

import json

import click
import httpx

from offlinesync.cli.common import config_from_context, fail
from offlinesync.core.sizes import format_size


@click.command()
@click.option("--url", default="http://127.0.0.1:8080", show_default=True,
              help="Base URL of a service started with 'run --serve'.")
@click.option("--json", "as_json", is_flag=True, help="Print the raw status document.")
def status(url: str, as_json: bool) -> None:
    """Show the status of a running service."""
    try:
        response = httpx.get(f"{url.rstrip('/')}/status", timeout=5.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        fail(f"Cannot reach {url}: {e}")
    data = response.json()

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    click.echo(f"State: {data['state']}" + (" (running)" if data["running"] else " (stopped)"))
    if data.get("active_target"):
        click.echo(f"Active target: {data['active_target']}")
    for entry in data.get("targets", []):
        target = entry.get("target", {})
        line = f"  {entry['target_id']}: {target.get('state', '?')}, cycle {entry['state']}"
        if not entry.get("enabled", True):
            line += ", disabled"
        click.echo(line)
        progress = entry.get("progress")
        if progress:
            click.echo(
                f"    {progress['items_done']}/{progress['items_planned']} items, "
                f"{format_size(progress['bytes_done'])}/{format_size(progress['bytes_planned'])}"
            )
        last = entry.get("last_result")
        if last:
            outcome = "ok" if last["success"] else "failed"
            click.echo(
                f"    last {last['job']}: {outcome}, {last['fetched']} fetched, "
                f"{last['evicted']} evicted"
            )
    open_breakers = [n for n, b in data.get("breakers", {}).items() if b.get("state") == "open"]
    if open_breakers:
        click.echo(f"Open circuits: {', '.join(open_breakers)}")


@click.command()
@click.pass_context
def targets(ctx: click.Context) -> None:
    """List configured targets and their jobs."""
    config = config_from_context(ctx)
    if not config.targets:
        click.echo("No targets configured.")
        return
    for target in config.targets:
        present = "present" if target.path.is_dir() else "absent"
        kind = "removable" if target.removable else "static"
        click.echo(f"{target.target_id}: {target.path} ({kind}, {present})")
        for job in config.jobs_for(target.target_id):
            cap = format_size(job.max_size) if job.max_size else "free space"
            schedule = f"every {job.interval:g}s" if job.interval else "on demand"
            click.echo(f"  - {job.name} [{job.direction.value}] budget {cap}, {schedule}")
