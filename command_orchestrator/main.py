import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from command_orchestrator.api import commands, health, repos
from command_orchestrator.config import Settings, get_settings
from command_orchestrator.exceptions import (
    ExternalOperationError,
    InvalidConfigError,
    InvalidStateError,
    LockedError,
    NotFoundError,
    OperationCancelledError,
    OperationTimeoutError,
    OrchestratorError,
    PermissionDeniedError,
)
from command_orchestrator.logging_config import configure_json_logging
from command_orchestrator.middleware.request_id import RequestIDMiddleware
from command_orchestrator.services.container import build_container, clear_container, init_container
from command_orchestrator.utils.error_handling import format_exception_for_response
from command_orchestrator.version import get_version

logger = logging.getLogger(__name__)

# Most specific first: isinstance is checked in order
ERROR_STATUS: tuple[tuple[type[OrchestratorError], int], ...] = (
    (InvalidConfigError, 422),
    (InvalidStateError, status.HTTP_409_CONFLICT),
    (OperationCancelledError, status.HTTP_409_CONFLICT),
    (LockedError, status.HTTP_423_LOCKED),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (ExternalOperationError, status.HTTP_502_BAD_GATEWAY),
    (OperationTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
)


def status_for(error: OrchestratorError) -> int:
    """HTTP status code for an orchestrator error (500 when unmapped)."""
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def orchestrator_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, OrchestratorError)
    code = status_for(exc)
    if code >= 500:
        logger.error(
            "Request failed",
            exc_info=exc,
            extra={"path": request.url.path, "error_type": type(exc).__name__},
        )
    else:
        logger.info(
            "Request rejected",
            extra={"path": request.url.path, "status_code": code, "error": exc.message},
        )
    return JSONResponse(status_code=code, content={"detail": format_exception_for_response(exc)})


def create_app(
    settings: Settings | None = None,
    hosting_transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use (loaded from CONFIG_PATH at startup when None)
        hosting_transport: Optional httpx transport for the hosting client (tests)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application startup and shutdown."""
        current = settings or get_settings()
        configure_json_logging(log_level=current.log_level, use_json=current.log_json)
        logger.info("Starting command orchestrator", extra={"version": get_version()})

        container = build_container(current, hosting_transport=hosting_transport)
        init_container(container)

        container.pool.start()
        summary = await container.orchestrator.recover()
        logger.info(
            "Command orchestrator ready",
            extra={
                "workers": current.max_concurrent_commands,
                "github_enabled": current.github_enabled,
                **summary,
            },
        )

        yield

        logger.info("Command orchestrator shutting down")
        await container.pool.shutdown()
        clear_container()

    app = FastAPI(
        title="Command Orchestrator",
        description="Drives code-modification commands through a git pipeline",
        version=get_version(),
        lifespan=lifespan,
    )
    app.add_middleware(RequestIDMiddleware)
    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)

    app.include_router(commands.router)
    app.include_router(repos.router)
    app.include_router(health.router)
    return app


app = create_app()
