"""Health check API route."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from offlinesync.server.api.deps import get_service
from offlinesync.server.schemas import HealthResponse, health_to_response
from offlinesync.service import SyncService

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check(service: SyncService = Depends(get_service)) -> HealthResponse:
    """Report healthy, degraded or unhealthy with the reasons."""
    return health_to_response(service.health())
