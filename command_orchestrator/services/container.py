"""
Service dependency container.

Centralizes service creation and access without global state mutation in
API modules.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from command_orchestrator.services.artifacts import ArtifactManager
from command_orchestrator.services.authorization import Actor, AuthorizationService, Role
from command_orchestrator.services.command_store import CommandStore
from command_orchestrator.services.git import GitService
from command_orchestrator.services.hosting import GitHubClient
from command_orchestrator.services.lock import LockManager
from command_orchestrator.services.log_store import LogStore
from command_orchestrator.services.orchestrator import CommandOrchestrator
from command_orchestrator.services.repo_paths import RepoPathService
from command_orchestrator.services.report_store import ReportStore
from command_orchestrator.services.runner import ExecutionRunner
from command_orchestrator.services.tool_runner import ToolRunner
from command_orchestrator.services.worker import CommandWorkerPool

if TYPE_CHECKING:
    import httpx

    from command_orchestrator.config import Settings


class ServiceContainer:
    """Container for all application services.

    Services are injected into routes via FastAPI's Depends() mechanism.
    """

    def __init__(
        self,
        orchestrator: CommandOrchestrator,
        authorization: AuthorizationService,
        pool: CommandWorkerPool,
    ) -> None:
        self.orchestrator = orchestrator
        self.authorization = authorization
        self.pool = pool


def build_container(
    settings: Settings,
    hosting_transport: httpx.AsyncBaseTransport | None = None,
) -> ServiceContainer:
    """
    Wire every service from settings.

    Args:
        settings: Application settings
        hosting_transport: Optional httpx transport for the hosting client (tests)
    """
    store = CommandStore(settings.commands_dir)
    log_store = LogStore(settings.logs_dir)
    report_store = ReportStore(settings.reports_dir)
    artifacts = ArtifactManager(settings.artifacts_dir)

    git_service = GitService(
        user_name=settings.git_user_name,
        user_email=settings.git_user_email,
        auth_token=settings.github_token,
        timeout_seconds=settings.git_timeout_seconds,
    )
    hosting = GitHubClient(
        git_service,
        enabled=settings.github_enabled,
        token=settings.github_token,
        api_url=settings.github_api_url,
        timeout_seconds=settings.github_timeout_seconds,
        transport=hosting_transport,
    )
    tool_runner = ToolRunner(
        git_service,
        settings.tool_executable,
        timeout_seconds=settings.tool_timeout_seconds,
    )
    runner = ExecutionRunner(
        store,
        log_store,
        report_store,
        artifacts,
        git_service,
        hosting,
        tool_runner,
        workspace_dir=Path(settings.workspace_path),
        branch=settings.git_branch,
        git_timeout_seconds=settings.git_timeout_seconds,
    )
    pool = CommandWorkerPool(runner.run, max_concurrent=settings.max_concurrent_commands)
    authorization = AuthorizationService(
        {
            user.token: Actor(name=user.name, role=Role.parse(user.role))
            for user in settings.auth_users
        }
    )
    orchestrator = CommandOrchestrator(
        store=store,
        log_store=log_store,
        report_store=report_store,
        artifacts=artifacts,
        locks=LockManager(store),
        runner=runner,
        pool=pool,
        authorization=authorization,
        repo_paths=RepoPathService(git_service, settings.repos_dir),
        tool_runner=tool_runner,
    )
    return ServiceContainer(orchestrator=orchestrator, authorization=authorization, pool=pool)


_container: ServiceContainer | None = None


def init_container(container: ServiceContainer) -> None:
    """Install the service container (called once in FastAPI lifespan)."""
    global _container
    _container = container


def clear_container() -> None:
    global _container
    _container = None


def get_container() -> ServiceContainer:
    """Get service container (use via FastAPI Depends).

    Raises:
        RuntimeError: If container not initialized (lifespan not running)
    """
    if _container is None:
        msg = "Service container not initialized - application lifespan may not be running"
        raise RuntimeError(msg)
    return _container
