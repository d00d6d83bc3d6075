"""Configuration utilities for the offlinesync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
from pathlib import Path

from offlinesync.core.config import EngineConfig
from offlinesync.core.errors import ConfigurationError


def get_config_dir() -> Path:
    """Get the configuration directory for offlinesync.

    Returns:
        Path to ~/.offlinesync.
    """
    return Path.home() / ".offlinesync"


def get_config_file() -> Path:
    """Get the path to the default config file."""
    return get_config_dir() / "config.json"


def load_config(path: Path | None = None) -> EngineConfig:
    """Load and validate the engine configuration from a JSON file.

    Args:
        path: Config file (the default config file if None).

    Raises:
        ConfigurationError: If the file is missing, not JSON, or invalid.
    """
    config_file = path or get_config_file()
    if not config_file.exists():
        raise ConfigurationError(
            f"Config file not found: {config_file}", context={"path": str(config_file)}
        )
    try:
        data = json.loads(config_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(
            f"Invalid JSON in {config_file}: {e}", context={"path": str(config_file)}
        ) from e
    return EngineConfig.from_dict(data)
