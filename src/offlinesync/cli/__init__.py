"""Command-line interface for offlinesync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- run: Run the sync service (daemon, single pass, or with the HTTP API)
- plan: Dry-run a job and export the manifest
- find: Look up catalog items by name
- status: Query a running service over HTTP
- targets: List configured targets
"""

from __future__ import annotations

from pathlib import Path

import click

from offlinesync import __version__
from offlinesync.cli.config import get_config_dir, get_config_file, load_config
from offlinesync.cli.plan import find, plan
from offlinesync.cli.run import run
from offlinesync.cli.status import status, targets


@click.group()
@click.version_option(version=__version__, prog_name="offlinesync")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ~/.offlinesync/config.json).",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """offlinesync - budgeted content sync to removable storage."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


# Sync commands
cli.add_command(run)
cli.add_command(plan)
cli.add_command(find)

# Inspection commands
cli.add_command(status)
cli.add_command(targets)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "load_config",
]
