"""
Execution runner: drives one command through the pipeline.

The runner advances a command one stage at a time, in pipeline order,
starting after the stage persisted on its record. For every stage it
echoes the equivalent shell command to the execution log, runs the
stage's external operation, appends an audit entry and only then persists
the new stage. A crash between the two leaves the audit log one step
ahead of the record, and resume re-derives its position from the record.

Cancellation is checked at stage boundaries. The tool stage additionally
hands the cancel event to the tool runner, which kills the subprocess.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from command_orchestrator.exceptions import (
    NotFoundError,
    OperationCancelledError,
    OperationTimeoutError,
    OrchestratorError,
    StorageError,
    ToolError,
)
from command_orchestrator.models.command import Command, CommandStatus, Stage
from command_orchestrator.models.log import LogStream
from command_orchestrator.services.stages import describe, next_stage

if TYPE_CHECKING:
    from command_orchestrator.services.artifacts import ArtifactManager
    from command_orchestrator.services.command_store import CommandStore
    from command_orchestrator.services.git import GitService
    from command_orchestrator.services.hosting import GitHubClient
    from command_orchestrator.services.log_store import LogStore
    from command_orchestrator.services.report_store import ReportStore
    from command_orchestrator.services.tool_runner import ToolRunner

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BRANCH = "feature/batchai"


def commit_message(command: Command) -> str:
    """Commit message for the changes a command produced."""
    parts = ["batchai", command.config.command.value, *command.config.target_paths]
    return " ".join(parts)


class ExecutionRunner:
    """Advances commands through their pipeline stages."""

    def __init__(
        self,
        store: CommandStore,
        log_store: LogStore,
        report_store: ReportStore,
        artifacts: ArtifactManager,
        git_service: GitService,
        hosting: GitHubClient,
        tool_runner: ToolRunner,
        *,
        workspace_dir: Path,
        branch: str = DEFAULT_BRANCH,
        git_timeout_seconds: int = 300,
    ) -> None:
        self.store = store
        self.log_store = log_store
        self.report_store = report_store
        self.artifacts = artifacts
        self.git_service = git_service
        self.hosting = hosting
        self.tool_runner = tool_runner
        self.workspace_dir = workspace_dir
        self.branch = branch
        self.git_timeout_seconds = git_timeout_seconds

    def working_tree(self, command: Command) -> Path:
        """Checkout location of a command's repository."""
        return self.workspace_dir / command.id / command.config.repo.name

    def workspace(self, command_id: str) -> Path:
        """Directory holding everything checked out for a command."""
        return self.workspace_dir / command_id

    async def run(self, command_id: str, cancel_event: asyncio.Event | None = None) -> None:
        """
        Drive a command from its persisted stage to End, failure or stop.

        Args:
            command_id: Command to execute
            cancel_event: Set by a stop request

        Raises:
            StorageError: If progress cannot be persisted; the command keeps
                its last persisted status and stage
        """
        cancel_event = cancel_event or asyncio.Event()
        try:
            command = await self.store.get(command_id)
        except NotFoundError:
            logger.info("Command removed before its run started", extra={"command_id": command_id})
            return

        if command.status not in (CommandStatus.PENDING, CommandStatus.RUNNING):
            logger.info(
                "Skipping run of command that is not runnable",
                extra={"command_id": command_id, "status": command.status.value},
            )
            return

        if cancel_event.is_set():
            await self._mark_stopped(command)
            return

        start_time = time.time()
        await self._audit(command_id, f"Run started at stage '{command.stage.value}'")
        command = await self.store.update(command_id, _set_running)
        logger.info(
            "Command run started",
            extra={"command_id": command_id, "stage": command.stage.value},
        )

        try:
            await self._advance(command, cancel_event)
        except StorageError:
            logger.exception(
                "Command run aborted: progress could not be persisted",
                extra={"command_id": command_id},
            )
            raise
        finally:
            logger.info(
                "Command run finished",
                extra={
                    "command_id": command_id,
                    "duration_seconds": round(time.time() - start_time, 2),
                },
            )

    async def _advance(self, command: Command, cancel_event: asyncio.Event) -> None:
        while True:
            if cancel_event.is_set():
                await self._mark_stopped(command)
                return

            stage = next_stage(command.stage, command.has_changes)
            if stage is None:
                return
            label = describe(stage).label

            await self._log(command.id, f"$ {self._shell_echo(command, stage)}")
            try:
                updates = await self._execute(command, stage, cancel_event)
            except OperationCancelledError:
                await self._mark_stopped(command)
                return
            except StorageError:
                raise
            except OrchestratorError as e:
                await self._mark_failed(command, stage, e.message)
                return
            except Exception as e:
                logger.exception(
                    "Unexpected error in stage",
                    extra={"command_id": command.id, "stage": stage.value},
                )
                await self._mark_failed(command, stage, f"{type(e).__name__}: {e}")
                return

            await self._audit(command.id, f"Stage '{label}' completed")

            def _apply(c: Command, stage: Stage = stage, updates: dict[str, Any] = updates) -> None:
                c.stage = stage
                for name, value in updates.items():
                    setattr(c, name, value)
                if stage == Stage.END:
                    c.status = CommandStatus.DONE
                    c.error = None

            command = await self.store.update(command.id, _apply)
            logger.info(
                "Stage completed",
                extra={"command_id": command.id, "stage": stage.value},
            )

            if stage == Stage.END:
                await self._audit(command.id, "Command done")
                return

    async def _execute(
        self, command: Command, stage: Stage, cancel_event: asyncio.Event
    ) -> dict[str, Any]:
        """Run the operation bound to ``stage`` and return record field updates."""
        repo = command.config.repo
        tree = self.working_tree(command)

        if stage == Stage.CHECKED_REMOTE:
            await self._bounded("check_remote", self.hosting.check_remote(repo))
            return {}

        if stage == Stage.FORKED:
            fork = await self._bounded("fork", self.hosting.fork(repo))
            return {"fork_url": fork.clone_url, "fork_html_url": fork.html_url}

        if stage == Stage.CLONED_OR_PULLED:
            url = command.fork_url or repo.clone_url
            outcome = await self._git("clone_or_pull", self.git_service.clone_or_pull, url, tree)
            await self._log(command.id, f"Working tree {outcome}: {tree}")
            return {}

        if stage == Stage.CHECKED_OUT:
            await self._git("checkout", self.git_service.checkout, tree, self.branch)
            return {}

        if stage == Stage.TOOL_EXECUTED:
            return await self._run_tool(command, tree, cancel_event)

        if stage == Stage.CHANGES_ADDED:
            staged = await self._git("add", self.git_service.add_all, tree)
            await self._log(command.id, f"{staged} file(s) staged")
            return {}

        if stage == Stage.CHANGES_COMMITTED:
            committed = await self._git(
                "commit", self.git_service.commit, tree, commit_message(command)
            )
            if not committed:
                await self._log(command.id, "Nothing to commit")
            return {}

        if stage == Stage.CHANGES_PUSHED:
            await self._git("push", self.git_service.push, tree, self.branch)
            return {}

        if stage == Stage.COMMIT_ID_RESOLVED:
            sha = await self._git("rev-parse", self.git_service.resolve_commit_id, tree)
            commit_url = f"{command.fork_html_url}/commit/{sha}" if command.fork_html_url else None
            await self._log(command.id, sha)
            return {"commit_id": sha, "commit_url": commit_url}

        if stage == Stage.END:
            archive = await self.artifacts.archive(command.id, tree)
            await self._log(command.id, f"Archived working tree to {archive.name}")
            return {}

        msg = f"No operation bound to stage '{stage.value}'"
        raise OrchestratorError(msg, context={"command_id": command.id, "stage": stage.value})

    async def _run_tool(
        self, command: Command, tree: Path, cancel_event: asyncio.Event
    ) -> dict[str, Any]:
        async def forward(line: str) -> None:
            await self.log_store.append(command.id, LogStream.EXECUTION, line)

        result = await self.tool_runner.execute(
            tree, command.config, on_output=forward, cancel_event=cancel_event
        )
        if result.reports:
            await self.report_store.record(command.id, result.reports)
        if result.exit_code != 0:
            msg = f"Tool exited with status {result.exit_code}"
            raise ToolError(
                msg,
                context={"command_id": command.id, "exit_code": result.exit_code},
            )
        return {"has_changes": result.has_diff}

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.git_timeout_seconds)
        except TimeoutError as e:
            msg = f"{operation} timed out after {self.git_timeout_seconds}s"
            raise OperationTimeoutError(
                msg,
                context={"operation": operation, "timeout_seconds": self.git_timeout_seconds},
            ) from e

    async def _git(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        """
        Run a blocking git operation in a worker thread under the git timeout.

        A thread cannot be killed, so on timeout the stage only fails once the
        thread has returned: GitService kills its git subprocess after the
        same budget, and nothing may still touch the working tree when the
        command becomes failed (or is resumed).
        """
        work = asyncio.ensure_future(asyncio.to_thread(func, *args))
        try:
            return await self._bounded(operation, asyncio.shield(work))
        except OperationTimeoutError:
            logger.warning(
                "Waiting for timed out git operation to stop",
                extra={"operation": operation},
            )
            try:
                await work
            except Exception as e:
                logger.info(
                    "Timed out git operation stopped",
                    extra={"operation": operation, "error_type": type(e).__name__},
                )
            raise

    def _shell_echo(self, command: Command, stage: Stage) -> str:
        repo = command.config.repo
        tree = self.working_tree(command)
        if stage == Stage.CHECKED_REMOTE:
            return shlex.join(["git", "ls-remote", "--heads", repo.clone_url])
        if stage == Stage.FORKED:
            return shlex.join(["gh", "repo", "fork", repo.full_name])
        if stage == Stage.CLONED_OR_PULLED:
            if (tree / ".git").exists():
                return shlex.join(["git", "-C", str(tree), "pull"])
            return shlex.join(["git", "clone", command.fork_url or repo.clone_url, str(tree)])
        if stage == Stage.CHECKED_OUT:
            return shlex.join(["git", "checkout", "-b", self.branch])
        if stage == Stage.TOOL_EXECUTED:
            return self.tool_runner.command_line(command.config, str(tree))
        if stage == Stage.CHANGES_ADDED:
            return "git add -A"
        if stage == Stage.CHANGES_COMMITTED:
            return shlex.join(["git", "commit", "-m", commit_message(command)])
        if stage == Stage.CHANGES_PUSHED:
            return shlex.join(["git", "push", "-u", "origin", self.branch])
        if stage == Stage.COMMIT_ID_RESOLVED:
            return "git rev-parse HEAD"
        return shlex.join(["zip", "-r", str(self.artifacts.archive_path(command.id)), "."])

    async def _log(self, command_id: str, message: str) -> None:
        await self.log_store.append(command_id, LogStream.EXECUTION, message)

    async def _audit(self, command_id: str, message: str) -> None:
        await self.log_store.append(command_id, LogStream.AUDIT, message, actor="runner")

    async def _mark_stopped(self, command: Command) -> None:
        await self._audit(command.id, f"Stopped at stage '{command.stage.value}'")
        await self.store.update(command.id, _set_stopped)
        logger.info(
            "Command stopped",
            extra={"command_id": command.id, "stage": command.stage.value},
        )

    async def _mark_failed(self, command: Command, stage: Stage, cause: str) -> None:
        logger.error(
            "Stage failed",
            extra={"command_id": command.id, "stage": stage.value, "error": cause},
        )
        await self._audit(
            command.id,
            f"Stage '{describe(stage).label}' failed: {cause}",
        )
        await self._archive_last_state(command)

        def _apply(c: Command) -> None:
            c.status = CommandStatus.FAILED
            c.error = cause
            c.failed_stage = stage

        await self.store.update(command.id, _apply)

    async def _archive_last_state(self, command: Command) -> None:
        tree = self.working_tree(command)
        if not tree.is_dir():
            return
        try:
            await self.artifacts.archive(command.id, tree)
        except StorageError as e:
            await self._audit(command.id, f"Could not archive last state: {e.message}")


def _set_running(command: Command) -> None:
    command.status = CommandStatus.RUNNING
    command.failed_stage = None


def _set_stopped(command: Command) -> None:
    command.status = CommandStatus.STOPPED
