"""Tests for the code-modification tool runner."""

from __future__ import annotations

import asyncio
import json
import sys
import textwrap
from pathlib import Path

import pytest

from command_orchestrator.exceptions import (
    OperationCancelledError,
    OperationTimeoutError,
    ToolError,
)
from command_orchestrator.models.command import (
    CommandConfig,
    CommandKind,
    CommandOptions,
    RepoRef,
)
from command_orchestrator.models.report import CheckReport, TestReport
from command_orchestrator.services.git import GitService
from command_orchestrator.services.tool_runner import (
    MAX_LINE_CHARS,
    ToolRunner,
    build_arguments,
    collect_reports,
    command_line,
)

REPO = RepoRef(owner="octo", name="demo")


@pytest.fixture
def working_tree(origin_repo: Path, tmp_path: Path) -> Path:
    path = tmp_path / "work" / "demo"
    GitService().clone_or_pull(str(origin_repo), path)
    return path


@pytest.fixture
def tool(fake_tool: list[str]) -> ToolRunner:
    return ToolRunner(GitService(), fake_tool, timeout_seconds=20)


class Collector:
    def __init__(self) -> None:
        self.lines: list[str] = []

    async def __call__(self, line: str) -> None:
        self.lines.append(line)


class TestArguments:
    def test_check_with_every_option(self) -> None:
        config = CommandConfig(
            repo=REPO,
            command=CommandKind.CHECK,
            target_paths=["src/app.py", "docs"],
            options=CommandOptions(
                force=True,
                num=5,
                concurrent=True,
                enable_symbol_reference=True,
                lang="en",
                fix=True,
            ),
        )

        assert build_arguments(["batchai"], config, "/w/demo") == [
            "batchai",
            "--enable-symbol-reference",
            "--force",
            "--num",
            "5",
            "--concurrent",
            "--lang",
            "en",
            "check",
            "--fix",
            "/w/demo",
            "src/app.py",
            "docs",
        ]

    def test_test_command_with_library(self) -> None:
        config = CommandConfig(
            repo=REPO,
            command=CommandKind.TEST,
            options=CommandOptions(test_library="pytest"),
        )

        assert build_arguments(["batchai"], config, ".") == [
            "batchai",
            "test",
            "--test-library",
            "pytest",
            ".",
        ]

    def test_command_line_is_shell_quoted(self) -> None:
        config = CommandConfig(repo=REPO, target_paths=["my dir/file.py"])
        assert command_line(["batchai"], config) == "batchai check . 'my dir/file.py'"


class TestCollectReports:
    def test_reads_check_and_test_reports(self, tmp_path: Path) -> None:
        (tmp_path / "a.check.json").write_text(json.dumps({"path": "a.py", "has_issue": True}))
        (tmp_path / "b.test.json").write_text(json.dumps({"path": "b.py"}))
        (tmp_path / "notes.json").write_text("{}")
        (tmp_path / "broken.check.json").write_text("{")

        reports = collect_reports(tmp_path)

        assert [type(r) for r in reports] == [CheckReport, TestReport]
        assert [r.path for r in reports] == ["a.py", "b.py"]


class TestExecute:
    @pytest.mark.asyncio
    async def test_streams_output_and_detects_changes(
        self, tool: ToolRunner, working_tree: Path, command_config: CommandConfig
    ) -> None:
        collector = Collector()

        result = await tool.execute(working_tree, command_config, on_output=collector)

        assert result.exit_code == 0
        assert result.has_diff is True
        assert result.output_lines == len(collector.lines)
        assert collector.lines[0].startswith("\x1b[32mbatchai\x1b[0m ")
        assert collector.lines[1] == "scanning src/app.py"
        assert collector.lines[-1] == "done"
        assert [r.path for r in result.reports] == ["src/app.py"]

    @pytest.mark.asyncio
    async def test_noop_run_has_no_diff(
        self,
        tool: ToolRunner,
        working_tree: Path,
        command_config: CommandConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("FAKE_TOOL_MODE", "noop")

        result = await tool.execute(working_tree, command_config, on_output=Collector())

        assert result.exit_code == 0
        assert result.has_diff is False
        assert result.reports == []

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_reported(
        self,
        tool: ToolRunner,
        working_tree: Path,
        command_config: CommandConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("FAKE_TOOL_MODE", "fail")

        collector = Collector()

        result = await tool.execute(working_tree, command_config, on_output=collector)

        assert result.exit_code == 3
        assert "boom" in collector.lines

    @pytest.mark.asyncio
    async def test_timeout_kills_tool(
        self,
        fake_tool: list[str],
        working_tree: Path,
        command_config: CommandConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("FAKE_TOOL_MODE", "sleep")
        tool = ToolRunner(GitService(), fake_tool, timeout_seconds=1)

        with pytest.raises(OperationTimeoutError):
            await tool.execute(working_tree, command_config, on_output=Collector())

    @pytest.mark.asyncio
    async def test_cancel_event_kills_tool(
        self,
        tool: ToolRunner,
        working_tree: Path,
        command_config: CommandConfig,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("FAKE_TOOL_MODE", "sleep")
        cancel = asyncio.Event()

        async def on_output(line: str) -> None:
            cancel.set()

        with pytest.raises(OperationCancelledError):
            await asyncio.wait_for(
                tool.execute(working_tree, command_config, on_output=on_output, cancel_event=cancel),
                timeout=10,
            )

    @pytest.mark.asyncio
    async def test_missing_executable(
        self, working_tree: Path, command_config: CommandConfig, tmp_path: Path
    ) -> None:
        tool = ToolRunner(GitService(), [str(tmp_path / "no-such-tool")])

        with pytest.raises(ToolError):
            await tool.execute(working_tree, command_config, on_output=Collector())


def _script_tool(tmp_path: Path, body: str) -> ToolRunner:
    script = tmp_path / "script_tool.py"
    script.write_text(textwrap.dedent(body))
    return ToolRunner(GitService(), [sys.executable, str(script)], timeout_seconds=20)


class TestOutputStreaming:
    @pytest.mark.asyncio
    async def test_progress_output_without_newlines_is_forwarded_in_pieces(
        self, working_tree: Path, command_config: CommandConfig, tmp_path: Path
    ) -> None:
        tool = _script_tool(
            tmp_path,
            """
            import sys
            sys.stdout.write("\\r".join(f"progress {i}%" for i in range(200_000)) + "\\n")
            sys.stdout.write("done\\n")
            """,
        )
        collector = Collector()

        result = await tool.execute(working_tree, command_config, on_output=collector)

        progress = "\r".join(f"progress {i}%" for i in range(200_000))
        assert result.exit_code == 0
        assert collector.lines[-1] == "done"
        assert len(collector.lines) > 2
        assert all(len(line) <= MAX_LINE_CHARS for line in collector.lines)
        assert "".join(collector.lines[:-1]) == progress
        assert result.output_lines == len(collector.lines)

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_kept_as_escapes(
        self, working_tree: Path, command_config: CommandConfig, tmp_path: Path
    ) -> None:
        tool = _script_tool(
            tmp_path,
            """
            import sys
            sys.stdout.buffer.write(b"caf\\xc3\\xa9 \\xff\\xfe ok\\r\\n")
            sys.stdout.buffer.write(b"tail without newline")
            """,
        )
        collector = Collector()

        await tool.execute(working_tree, command_config, on_output=collector)

        assert collector.lines == ["café \\xff\\xfe ok", "tail without newline"]
