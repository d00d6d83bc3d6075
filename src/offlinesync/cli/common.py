"""Helpers shared by CLI commands."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import NoReturn

import click

from offlinesync.cli.config import load_config
from offlinesync.core.config import EngineConfig
from offlinesync.core.errors import SyncError


def fail(message: str) -> NoReturn:
    """Print an error and exit with status 1."""
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def config_from_context(ctx: click.Context) -> EngineConfig:
    """Load the config named by the group's --config option."""
    path: Path | None = (ctx.obj or {}).get("config_path")
    try:
        return load_config(path)
    except SyncError as e:
        fail(e.message)
