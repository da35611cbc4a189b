"""Health check endpoints."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends

from command_orchestrator.dependencies import get_actor, get_worker_pool
from command_orchestrator.services.authorization import Actor
from command_orchestrator.services.background_tasks import get_task_tracker
from command_orchestrator.services.worker import CommandWorkerPool
from command_orchestrator.version import get_version

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    """
    Simple health check for liveness probe.

    Returns 200 if service is running. No authentication required.
    """
    return {"status": "ok", "version": get_version()}


@router.get("/health/detailed")
async def health_detailed(
    _: Annotated[Actor, Depends(get_actor)],
    pool: Annotated[CommandWorkerPool, Depends(get_worker_pool)],
) -> dict[str, Any]:
    """Worker pool occupancy and recent background task failures (requires authentication)."""
    return {
        "status": "ok" if pool.running else "degraded",
        "version": get_version(),
        "workers": {
            "max_concurrent": pool.max_concurrent,
            "active": pool.active_count(),
            "queued": pool.queued_count(),
        },
        "background_tasks": await get_task_tracker().get_status(),
    }
