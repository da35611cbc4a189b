from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from command_orchestrator.services.container import get_container

if TYPE_CHECKING:
    from command_orchestrator.services.authorization import Actor
    from command_orchestrator.services.orchestrator import CommandOrchestrator
    from command_orchestrator.services.worker import CommandWorkerPool

security = HTTPBearer(auto_error=False)


async def get_actor(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> Actor:
    """
    Resolve the bearer token to the configured actor.

    Role checks happen in the orchestrator; this only rejects unknown tokens.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    actor = get_container().authorization.authenticate(credentials.credentials)
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


async def get_orchestrator() -> CommandOrchestrator:
    """Get the command orchestrator via dependency injection."""
    return get_container().orchestrator


async def get_worker_pool() -> CommandWorkerPool:
    """Get the worker pool via dependency injection."""
    return get_container().pool
