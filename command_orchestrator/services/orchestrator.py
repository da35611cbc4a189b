"""
Orchestrator facade: the lifecycle operations on commands.

Every mutating operation checks the actor's role, then the lock, then the
command's status, and only then touches the record. Validation failures
(InvalidConfigError, InvalidStateError, LockedError, NotFoundError,
PermissionDeniedError) are raised before any run is scheduled.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from command_orchestrator.exceptions import InvalidStateError
from command_orchestrator.models.command import (
    Command,
    CommandConfig,
    CommandDetail,
    CommandStatus,
    RepoRef,
)
from command_orchestrator.models.log import LogPage, LogStream
from command_orchestrator.services.authorization import SYSTEM_ACTOR, Actor, Role
from command_orchestrator.services.stages import next_stage

if TYPE_CHECKING:
    from command_orchestrator.models.report import CheckReport, TestReport
    from command_orchestrator.services.artifacts import ArtifactManager
    from command_orchestrator.services.authorization import AuthorizationService
    from command_orchestrator.services.command_store import CommandStore
    from command_orchestrator.services.lock import LockManager
    from command_orchestrator.services.log_store import LogStore
    from command_orchestrator.services.repo_paths import RepoPathService
    from command_orchestrator.services.report_store import ReportStore
    from command_orchestrator.services.runner import ExecutionRunner
    from command_orchestrator.services.tool_runner import ToolRunner
    from command_orchestrator.services.worker import CommandWorkerPool

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "Run interrupted by service restart"


class CommandOrchestrator:
    """Lifecycle and retrieval operations consumed by the API layer."""

    def __init__(
        self,
        store: CommandStore,
        log_store: LogStore,
        report_store: ReportStore,
        artifacts: ArtifactManager,
        locks: LockManager,
        runner: ExecutionRunner,
        pool: CommandWorkerPool,
        authorization: AuthorizationService,
        repo_paths: RepoPathService,
        tool_runner: ToolRunner,
    ):
        self.store = store
        self.log_store = log_store
        self.report_store = report_store
        self.artifacts = artifacts
        self.locks = locks
        self.runner = runner
        self.pool = pool
        self.authorization = authorization
        self.repo_paths = repo_paths
        self.tool_runner = tool_runner

    async def _audit(self, command_id: str, message: str, actor: Actor) -> None:
        await self.log_store.append(command_id, LogStream.AUDIT, message, actor=actor.name)

    async def _mutable(self, command_id: str, actor: Actor, operation: str) -> Command:
        """Load a command for a mutating operation after role and lock checks."""
        self.authorization.check_role(actor, Role.USER)
        command = await self.store.get(command_id)
        self.locks.ensure_unlocked(command, operation)
        return command

    @staticmethod
    def _require_not_running(command: Command, operation: str) -> None:
        if command.status == CommandStatus.RUNNING:
            msg = f"Cannot {operation} a running command"
            raise InvalidStateError(
                msg,
                context={"command_id": command.id, "operation": operation, "status": "running"},
            )

    async def _discard_workspace(self, command_id: str) -> None:
        workspace = self.runner.workspace(command_id)
        if workspace.exists():
            await asyncio.to_thread(shutil.rmtree, workspace, ignore_errors=True)

    # Lifecycle operations

    async def create(self, config: CommandConfig, actor: Actor) -> Command:
        """
        Create a command and schedule its first run.

        Raises:
            PermissionDeniedError: If the actor is not at least a user
            InvalidConfigError: If a target path was never discovered
        """
        self.authorization.check_role(actor, Role.USER)
        await self.repo_paths.validate(config)

        command = Command(
            config=CommandConfig.model_validate(config.model_dump()),
            created_by=actor.name,
        )
        await self.store.create(command)
        await self._audit(command.id, f"Created by {actor.name}", actor)
        self.pool.schedule(command.id)

        logger.info(
            "Command created",
            extra={
                "command_id": command.id,
                "repo": config.repo.full_name,
                "command": config.command.value,
                "actor": actor.name,
            },
        )
        return command

    async def restart(self, command_id: str, actor: Actor) -> Command:
        """
        Reset a command to Begin and schedule a fresh run.

        Logs, reports, the archive and the working tree of earlier runs
        are discarded.
        """
        command = await self._mutable(command_id, actor, "restart")
        self._require_not_running(command, "restart")

        await self.log_store.clear(command_id)
        await self.report_store.clear(command_id)
        await self.artifacts.remove(command_id)
        await self._discard_workspace(command_id)

        await self._audit(command_id, f"Restarted by {actor.name}", actor)
        command = await self.store.update(command_id, Command.reset)
        self.pool.schedule(command_id)

        logger.info("Command restarted", extra={"command_id": command_id, "actor": actor.name})
        return command

    async def resume(self, command_id: str, actor: Actor) -> Command:
        """Continue a failed or stopped command from its current stage."""
        command = await self._mutable(command_id, actor, "resume")
        if command.status not in (CommandStatus.FAILED, CommandStatus.STOPPED):
            msg = f"Cannot resume a {command.status.value} command"
            raise InvalidStateError(
                msg,
                context={"command_id": command_id, "status": command.status.value},
            )

        await self._audit(
            command_id, f"Resumed by {actor.name} at stage '{command.stage.value}'", actor
        )

        def _apply(c: Command) -> None:
            c.status = CommandStatus.RUNNING

        command = await self.store.update(command_id, _apply)
        self.pool.schedule(command_id)

        logger.info(
            "Command resumed",
            extra={"command_id": command_id, "stage": command.stage.value, "actor": actor.name},
        )
        return command

    async def stop(self, command_id: str, actor: Actor) -> Command:
        """
        Ask the running command to stop at its next stage boundary.

        The status becomes Stopped once the runner acknowledges. A command
        marked running with no run in this process is stopped directly.
        """
        command = await self._mutable(command_id, actor, "stop")
        if command.status != CommandStatus.RUNNING:
            msg = f"Cannot stop a {command.status.value} command"
            raise InvalidStateError(
                msg,
                context={"command_id": command_id, "status": command.status.value},
            )

        await self._audit(command_id, f"Stop requested by {actor.name}", actor)
        if self.pool.request_stop(command_id):
            return command

        await self._audit(command_id, f"Stopped at stage '{command.stage.value}'", actor)

        def _apply(c: Command) -> None:
            c.status = CommandStatus.STOPPED

        command = await self.store.update(command_id, _apply)
        logger.info(
            "Stopped command without an active run",
            extra={"command_id": command_id, "actor": actor.name},
        )
        return command

    async def lock(self, command_id: str, actor: Actor) -> Command:
        """Freeze a command against mutating operations (admin only)."""
        self.authorization.check_role(actor, Role.ADMIN)
        await self.store.get(command_id)
        await self._audit(command_id, f"Locked by {actor.name}", actor)
        return await self.locks.lock(command_id)

    async def unlock(self, command_id: str, actor: Actor) -> Command:
        """Lift the administrative lock (admin only)."""
        self.authorization.check_role(actor, Role.ADMIN)
        await self.store.get(command_id)
        await self._audit(command_id, f"Unlocked by {actor.name}", actor)
        return await self.locks.unlock(command_id)

    async def update(self, command_id: str, config: CommandConfig, actor: Actor) -> Command:
        """Replace the configuration of a command that is not running."""
        command = await self._mutable(command_id, actor, "update")
        self._require_not_running(command, "update")
        await self.repo_paths.validate(config)

        new_config = CommandConfig.model_validate(config.model_dump())
        await self._audit(command_id, f"Configuration updated by {actor.name}", actor)

        def _apply(c: Command) -> None:
            c.config = new_config

        command = await self.store.update(command_id, _apply)
        logger.info("Command configuration updated", extra={"command_id": command_id})
        return command

    async def remove(self, command_id: str, actor: Actor) -> None:
        """Delete a command with its logs, reports, archive and working tree (admin only)."""
        self.authorization.check_role(actor, Role.ADMIN)
        command = await self.store.get(command_id)
        self.locks.ensure_unlocked(command, "remove")
        self._require_not_running(command, "remove")

        self.pool.request_stop(command_id)
        await self.store.delete(command_id)
        await self.log_store.clear(command_id)
        await self.report_store.clear(command_id)
        await self.artifacts.remove(command_id)
        await self._discard_workspace(command_id)

        logger.info(
            "Command removed",
            extra={"command_id": command_id, "actor": actor.name},
        )

    async def recover(self) -> dict[str, int]:
        """
        Reconcile persisted commands with a freshly started process.

        Pending commands are queued again. Commands persisted as running
        lost their run with the previous process; they become failed so an
        operator decides whether to resume them.
        """
        requeued = 0
        interrupted = 0
        for command in await self.store.list_all():
            if command.status == CommandStatus.PENDING:
                if self.pool.schedule(command.id):
                    requeued += 1
            elif command.status == CommandStatus.RUNNING and not self.pool.is_busy(command.id):
                await self._audit(
                    command.id,
                    f"{INTERRUPTED_ERROR} at stage '{command.stage.value}'",
                    SYSTEM_ACTOR,
                )

                def _apply(c: Command) -> None:
                    c.status = CommandStatus.FAILED
                    c.error = INTERRUPTED_ERROR
                    c.failed_stage = next_stage(c.stage, c.has_changes)

                await self.store.update(command.id, _apply)
                interrupted += 1

        logger.info(
            "Recovered persisted commands",
            extra={"requeued": requeued, "interrupted": interrupted},
        )
        return {"requeued": requeued, "interrupted": interrupted}

    # Read operations

    async def load(self, command_id: str) -> Command:
        return await self.store.get(command_id)

    async def detail(self, command_id: str) -> CommandDetail:
        """Command with its equivalent tool command line."""
        command = await self.store.get(command_id)
        return CommandDetail(
            **command.model_dump(),
            command_line=self.tool_runner.command_line(command.config),
        )

    async def list_all(self) -> list[Command]:
        return await self.store.list_all()

    async def list_by_status(self, status: CommandStatus) -> list[Command]:
        return await self.store.list_by_status(status)

    async def execution_log(
        self, command_id: str, after: int | None = None, limit: int | None = None
    ) -> LogPage:
        await self.store.get(command_id)
        return await self.log_store.read(command_id, LogStream.EXECUTION, after=after, limit=limit)

    async def audit_log(
        self, command_id: str, after: int | None = None, limit: int | None = None
    ) -> LogPage:
        await self.store.get(command_id)
        return await self.log_store.read(command_id, LogStream.AUDIT, after=after, limit=limit)

    async def check_reports(self, command_id: str) -> list[CheckReport]:
        await self.store.get(command_id)
        return await self.report_store.list_check_reports(command_id)

    async def test_reports(self, command_id: str) -> list[TestReport]:
        await self.store.get(command_id)
        return await self.report_store.list_test_reports(command_id)

    async def resolve_archive(self, command_id: str) -> Path:
        """
        Path of the command's current archive.

        Raises:
            NotFoundError: If the command or its archive does not exist
        """
        await self.store.get(command_id)
        return await self.artifacts.retrieve(command_id)

    # Repository paths

    async def available_paths(self, repo: RepoRef) -> list[str]:
        return await self.repo_paths.available_paths(repo)

    async def discover_paths(self, repo: RepoRef, actor: Actor) -> list[str]:
        """Refresh the recorded target paths of a repository."""
        self.authorization.check_role(actor, Role.USER)
        return await self.repo_paths.discover(repo)
