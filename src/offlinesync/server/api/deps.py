"""FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from offlinesync.core.errors import TargetUnavailableError
from offlinesync.service import SyncService
from offlinesync.sync.orchestrator import SyncOrchestrator


def get_service(request: Request) -> SyncService:
    """Get the sync service from app state."""
    service: SyncService = request.app.state.service
    return service


def get_orchestrator(service: SyncService, target_id: str) -> SyncOrchestrator:
    """Look up a target's orchestrator, 404 if the target is unknown."""
    try:
        return service.orchestrator(target_id)
    except TargetUnavailableError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown target: {target_id}",
        ) from None
