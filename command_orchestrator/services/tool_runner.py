"""
Runner for the external code-modification tool.

The tool is an opaque subprocess. Its stdout and stderr are merged and
forwarded line by line, so ANSI colouring survives for consumers that render
it. Bytes that are not valid utf-8 are kept as visible ``\\xNN`` escapes, and
a line longer than ``MAX_LINE_CHARS`` (carriage-return progress bars) is
forwarded in pieces.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import shlex
import tempfile
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from command_orchestrator.exceptions import (
    OperationCancelledError,
    OperationTimeoutError,
    ToolError,
)
from command_orchestrator.models.command import CommandConfig, CommandKind
from command_orchestrator.models.report import CheckReport, Report, TestReport

if TYPE_CHECKING:
    from command_orchestrator.services.git import GitService

logger = logging.getLogger(__name__)

REPORT_DIR_ENV = "BATCHAI_REPORT_DIR"
MAX_LINE_CHARS = 1024 * 1024
_READ_SIZE = 64 * 1024

OutputHandler = Callable[[str], Awaitable[None]]


@dataclass
class ToolResult:
    """Outcome of one tool invocation."""

    exit_code: int
    output_lines: int = 0
    has_diff: bool = False
    reports: list[Report] = field(default_factory=list)


@dataclass
class _OutputCounter:
    lines: int = 0


def build_arguments(executable: list[str], config: CommandConfig, working_tree: str) -> list[str]:
    """
    Build the tool's argv.

    Layout: ``<tool> [global options] <check|test> [command options]
    <repository directory> [target paths...]``.
    """
    options = config.options
    args = list(executable)
    if options.enable_symbol_reference:
        args.append("--enable-symbol-reference")
    if options.force:
        args.append("--force")
    if options.num:
        args.extend(["--num", str(options.num)])
    if options.concurrent:
        args.append("--concurrent")
    if options.lang:
        args.extend(["--lang", options.lang])

    args.append(config.command.value)
    if config.command == CommandKind.CHECK and options.fix:
        args.append("--fix")
    if config.command == CommandKind.TEST and options.test_library:
        args.extend(["--test-library", options.test_library])

    args.append(working_tree)
    args.extend(config.target_paths)
    return args


def command_line(executable: list[str], config: CommandConfig, working_tree: str = ".") -> str:
    """Shell-quoted command line equivalent to a command's tool invocation."""
    return shlex.join(build_arguments(executable, config, working_tree))


def collect_reports(report_dir: Path) -> list[Report]:
    """Load the report files the tool wrote into ``report_dir``."""
    reports: list[Report] = []
    for path in sorted(report_dir.rglob("*.json")):
        model: type[CheckReport] | type[TestReport]
        if path.name.endswith(".check.json"):
            model = CheckReport
        elif path.name.endswith(".test.json"):
            model = TestReport
        else:
            continue
        try:
            reports.append(model.model_validate_json(path.read_bytes()))
        except (OSError, ValidationError) as e:
            logger.warning(
                "Ignoring unreadable tool report",
                extra={"file": str(path), "error": str(e), "error_type": type(e).__name__},
            )
    return reports


class ToolRunner:
    """Executes the code-modification tool against a working tree."""

    def __init__(
        self,
        git_service: GitService,
        executable: list[str],
        timeout_seconds: int = 3600,
    ) -> None:
        """
        Initialize the tool runner.

        Args:
            git_service: Used to detect whether the run changed the working tree
            executable: Program and leading arguments (e.g. ["batchai"])
            timeout_seconds: Budget for one tool run
        """
        self.git_service = git_service
        self.executable = executable
        self.timeout_seconds = timeout_seconds

    def command_line(self, config: CommandConfig, working_tree: str = ".") -> str:
        return command_line(self.executable, config, working_tree)

    async def execute(
        self,
        working_tree: Path,
        config: CommandConfig,
        *,
        on_output: OutputHandler,
        cancel_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """
        Run the tool and stream its output.

        Args:
            working_tree: Checked-out repository to modify
            config: Command configuration (sub-command, options, target paths)
            on_output: Awaited for every output line, in emission order
            cancel_event: Kill handle; setting it terminates the process

        Returns:
            ToolResult with exit code, output, diff flag and reports

        Raises:
            ToolError: If the tool cannot be started
            OperationTimeoutError: If the run exceeds its budget
            OperationCancelledError: If the cancel event fired mid-run
        """
        args = build_arguments(self.executable, config, str(working_tree))
        output = _OutputCounter()

        with tempfile.TemporaryDirectory(prefix="tool-reports-") as report_dir:
            env = os.environ.copy()
            env[REPORT_DIR_ENV] = report_dir

            logger.info(
                "Starting tool",
                extra={"argv": shlex.join(args), "working_tree": str(working_tree)},
            )
            try:
                process = await asyncio.create_subprocess_exec(
                    *args,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    cwd=str(working_tree),
                    env=env,
                )
            except OSError as exc:
                msg = f"Failed to start tool: {exc}"
                raise ToolError(
                    msg,
                    context={"argv": args, "error_type": type(exc).__name__},
                ) from exc

            try:
                exit_code = await self._supervise(process, output, on_output, cancel_event)
            finally:
                if process.returncode is None:
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()

            reports = collect_reports(Path(report_dir))

        has_diff = await asyncio.to_thread(self.git_service.has_changes, working_tree)
        logger.info(
            "Tool finished",
            extra={
                "exit_code": exit_code,
                "lines": output.lines,
                "has_diff": has_diff,
                "reports": len(reports),
            },
        )
        return ToolResult(
            exit_code=exit_code,
            output_lines=output.lines,
            has_diff=has_diff,
            reports=reports,
        )

    async def _supervise(
        self,
        process: asyncio.subprocess.Process,
        output: _OutputCounter,
        on_output: OutputHandler,
        cancel_event: asyncio.Event | None,
    ) -> int:
        pump = asyncio.create_task(self._pump(process, output, on_output))
        waiters: set[asyncio.Future[object]] = {pump}
        cancel_wait: asyncio.Task[bool] | None = None
        if cancel_event is not None:
            cancel_wait = asyncio.create_task(cancel_event.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if pump not in done:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
            if cancel_wait is not None and cancel_wait in done:
                logger.info("Tool killed on stop request")
                msg = "Tool run cancelled"
                raise OperationCancelledError(msg, context={"lines": output.lines})
            logger.error(
                "Tool timed out",
                extra={"timeout_seconds": self.timeout_seconds, "lines": output.lines},
            )
            msg = f"Tool timed out after {self.timeout_seconds}s"
            raise OperationTimeoutError(
                msg, context={"timeout_seconds": self.timeout_seconds, "lines": output.lines}
            )

        # Re-raises failures of the output handler (e.g. StorageError)
        pump.result()
        return await process.wait()

    async def _pump(
        self,
        process: asyncio.subprocess.Process,
        output: _OutputCounter,
        on_output: OutputHandler,
    ) -> None:
        assert process.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="backslashreplace")
        pending = ""
        while True:
            chunk = await process.stdout.read(_READ_SIZE)
            pending += decoder.decode(chunk, final=not chunk)
            *complete, pending = pending.split("\n")
            for line in complete:
                await self._emit(line.removesuffix("\r"), output, on_output)
            # No newline in sight: forward what is buffered to keep memory bounded
            while len(pending) > MAX_LINE_CHARS:
                piece, pending = pending[:MAX_LINE_CHARS], pending[MAX_LINE_CHARS:]
                await self._emit(piece, output, on_output)
            if not chunk:
                break
        if pending:
            await self._emit(pending, output, on_output)

    @staticmethod
    async def _emit(line: str, output: _OutputCounter, on_output: OutputHandler) -> None:
        output.lines += 1
        await on_output(line)
