"""Status feed API routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from offlinesync.server.api.deps import get_orchestrator, get_service
from offlinesync.server.schemas import ManifestResponse, StatusResponse, status_to_response
from offlinesync.service import SyncService

router = APIRouter(tags=["status"])


@router.get("/status", response_model=StatusResponse)
def get_status(service: SyncService = Depends(get_service)) -> StatusResponse:
    """Snapshot of every target, cycle and circuit breaker."""
    return status_to_response(service.status())


@router.get("/status/{target_id}")
def get_target_status(
    target_id: str,
    service: SyncService = Depends(get_service),
) -> dict[str, Any]:
    """Status of one target: lifecycle, progress and recent results."""
    orchestrator = get_orchestrator(service, target_id)
    entry = orchestrator.status()
    entry["target"] = service.manager.get(target_id).to_dict()
    return entry


@router.get("/manifest/{target_id}", response_model=ManifestResponse)
def get_manifest(
    target_id: str,
    job: str | None = None,
    service: SyncService = Depends(get_service),
) -> ManifestResponse:
    """Last manifest planned for a target (first job unless ``job`` is given)."""
    orchestrator = get_orchestrator(service, target_id)
    manifest = orchestrator.last_manifest(job)
    if manifest is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No manifest planned yet",
        )
    job_name = job or (orchestrator.jobs[0].name if orchestrator.jobs else None)
    return ManifestResponse(target_id=target_id, job=job_name, **manifest.to_dict())
