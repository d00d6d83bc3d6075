"""Control API routes.

- POST /control/start: run a cycle now (one target or every ready target)
- POST /control/stop: cancel running cycles; schedules stay active
- POST /control/refresh: re-probe targets
- POST /control/breakers/reset: close circuit breakers (one or all)
- POST /targets/{id}/enable, /targets/{id}/disable
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, HTTPException, status

from offlinesync.core.errors import ValidationError
from offlinesync.server.api.deps import get_orchestrator, get_service
from offlinesync.server.schemas import (
    BreakerResetRequest,
    BreakerResetResponse,
    ControlRequest,
    ControlResponse,
    TargetToggleResponse,
)
from offlinesync.service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["control"])


def _target_of(request: ControlRequest | None, service: SyncService) -> str | None:
    target = request.target if request else None
    if target is not None:
        # 404 for unknown targets
        get_orchestrator(service, target)
    return target


@router.post("/control/start", response_model=ControlResponse)
def control_start(
    request: ControlRequest | None = Body(default=None),
    service: SyncService = Depends(get_service),
) -> ControlResponse:
    """Trigger a sync cycle."""
    target = _target_of(request, service)
    started = service.trigger(target)
    logger.info(f"Control: start {target or 'all'} -> {started}")
    return ControlResponse(action="start", targets=started)


@router.post("/control/stop", response_model=ControlResponse)
def control_stop(
    request: ControlRequest | None = Body(default=None),
    service: SyncService = Depends(get_service),
) -> ControlResponse:
    """Cancel running cycles."""
    target = _target_of(request, service)
    cancelled = service.cancel(target)
    logger.info(f"Control: stop {target or 'all'} -> {cancelled}")
    return ControlResponse(action="stop", targets=cancelled)


@router.post("/control/refresh", response_model=ControlResponse)
def control_refresh(
    request: ControlRequest | None = Body(default=None),
    service: SyncService = Depends(get_service),
) -> ControlResponse:
    """Re-probe targets."""
    target = _target_of(request, service)
    return ControlResponse(action="refresh", targets=service.refresh(target))


@router.post("/control/breakers/reset", response_model=BreakerResetResponse)
def reset_breakers(
    request: BreakerResetRequest | None = Body(default=None),
    service: SyncService = Depends(get_service),
) -> BreakerResetResponse:
    """Close circuit breakers without waiting for their cooldown."""
    name = request.name if request else None
    try:
        names = service.reset_breakers(name)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from None
    return BreakerResetResponse(breakers=names)


@router.post("/targets/{target_id}/enable", response_model=TargetToggleResponse)
def enable_target(
    target_id: str,
    service: SyncService = Depends(get_service),
) -> TargetToggleResponse:
    """Allow cycles on a target."""
    orchestrator = get_orchestrator(service, target_id)
    service.enable_target(target_id)
    return TargetToggleResponse(target_id=target_id, enabled=orchestrator.enabled)


@router.post("/targets/{target_id}/disable", response_model=TargetToggleResponse)
def disable_target(
    target_id: str,
    service: SyncService = Depends(get_service),
) -> TargetToggleResponse:
    """Prevent new cycles on a target; a running cycle completes."""
    orchestrator = get_orchestrator(service, target_id)
    service.disable_target(target_id)
    return TargetToggleResponse(target_id=target_id, enabled=orchestrator.enabled)
