"""Shared pytest fixtures."""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from offlinesync.core.config import EngineConfig
from offlinesync.service import SyncService
from offlinesync.sync.state import LocalSyncState
from tests.factories import engine_data


@pytest.fixture
def state(tmp_path: Path) -> Generator[LocalSyncState, None, None]:
    """Sync state database in a temporary directory."""
    db = LocalSyncState(tmp_path / "state.db")
    yield db
    db.close()


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    """Engine with one static target ``sd`` and one job ``movies``."""
    return EngineConfig.from_dict(engine_data(tmp_path))


@pytest.fixture
def service(engine_config: EngineConfig) -> Generator[SyncService, None, None]:
    """A service that is not started; attach targets as needed."""
    svc = SyncService(engine_config)
    yield svc
    svc.close()
