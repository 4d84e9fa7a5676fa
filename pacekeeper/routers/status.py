"""Read-only health and status endpoints.

- GET /health — liveness plus whether a run is in progress
- GET /status — budgets, proxy pool, session and last run summary

No endpoint exposes cookie values or proxy credentials.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter

from pacekeeper import __version__
from pacekeeper.models.responses import ApiResponse, HealthData, StatusData

if TYPE_CHECKING:
    from pacekeeper.services.orchestrator import Orchestrator


def create_status_router(orchestrator: Orchestrator) -> APIRouter:
    """Factory that creates the status router bound to *orchestrator*."""

    status_router = APIRouter(tags=["status"])

    @status_router.get("/health")
    async def health() -> dict:
        return ApiResponse[HealthData](
            success=True,
            data=HealthData(version=__version__, running=orchestrator.running),
        ).model_dump()

    @status_router.get("/status")
    async def status() -> dict:
        """Current controller state."""
        data = StatusData(**await orchestrator.get_status())
        return ApiResponse[StatusData](success=True, data=data).model_dump(mode="json")

    return status_router
