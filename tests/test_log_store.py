"""Tests for execution and audit log storage."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from command_orchestrator.models.log import LogEntry, LogStream
from command_orchestrator.services.log_store import LogStore, entries_as_text, render_audit_line


@pytest.fixture
def log_store(tmp_path: Path) -> LogStore:
    return LogStore(tmp_path / "logs")


class TestAppendAndRead:
    @pytest.mark.asyncio
    async def test_entries_keep_insertion_order(self, log_store: LogStore) -> None:
        for i in range(5):
            await log_store.append("cmd_1", LogStream.EXECUTION, f"line {i}")

        page = await log_store.read("cmd_1", LogStream.EXECUTION)

        assert [e.seq for e in page.entries] == [0, 1, 2, 3, 4]
        assert [e.message for e in page.entries] == [f"line {i}" for i in range(5)]
        assert page.next_cursor == 4

    @pytest.mark.asyncio
    async def test_streams_are_independent(self, log_store: LogStore) -> None:
        await log_store.append("cmd_1", LogStream.EXECUTION, "output")
        await log_store.append("cmd_1", LogStream.AUDIT, "Created by alice", actor="alice")

        execution = await log_store.read("cmd_1", LogStream.EXECUTION)
        audit = await log_store.read("cmd_1", LogStream.AUDIT)

        assert [e.message for e in execution.entries] == ["output"]
        assert [e.message for e in audit.entries] == ["Created by alice"]
        assert audit.entries[0].seq == 0
        assert audit.entries[0].actor == "alice"

    @pytest.mark.asyncio
    async def test_ansi_sequences_are_kept_verbatim(self, log_store: LogStore) -> None:
        colored = "\x1b[31merror\x1b[0m: bad thing"
        await log_store.append("cmd_1", LogStream.EXECUTION, colored)

        page = await log_store.read("cmd_1", LogStream.EXECUTION)
        assert page.entries[0].message == colored

    @pytest.mark.asyncio
    async def test_read_unknown_command_is_empty(self, log_store: LogStore) -> None:
        page = await log_store.read("cmd_none", LogStream.AUDIT)
        assert page.entries == []
        assert page.next_cursor == -1


class TestCursor:
    @pytest.mark.asyncio
    async def test_after_returns_only_newer_entries(self, log_store: LogStore) -> None:
        for i in range(4):
            await log_store.append("cmd_1", LogStream.EXECUTION, f"line {i}")

        page = await log_store.read("cmd_1", LogStream.EXECUTION, after=1)

        assert [e.seq for e in page.entries] == [2, 3]
        assert page.next_cursor == 3

    @pytest.mark.asyncio
    async def test_polling_without_new_entries_keeps_cursor(self, log_store: LogStore) -> None:
        await log_store.append("cmd_1", LogStream.EXECUTION, "only")

        page = await log_store.read("cmd_1", LogStream.EXECUTION, after=0)

        assert page.entries == []
        assert page.next_cursor == 0

    @pytest.mark.asyncio
    async def test_limit_pages_through_the_stream(self, log_store: LogStore) -> None:
        for i in range(5):
            await log_store.append("cmd_1", LogStream.EXECUTION, f"line {i}")

        first = await log_store.read("cmd_1", LogStream.EXECUTION, limit=2)
        second = await log_store.read(
            "cmd_1", LogStream.EXECUTION, after=first.next_cursor, limit=2
        )

        assert [e.seq for e in first.entries] == [0, 1]
        assert [e.seq for e in second.entries] == [2, 3]

    @pytest.mark.asyncio
    async def test_follow_up_poll_parses_only_new_entries(self, log_store: LogStore) -> None:
        for i in range(50):
            await log_store.append("cmd_1", LogStream.EXECUTION, f"line {i}")
        first = await log_store.read("cmd_1", LogStream.EXECUTION)
        await log_store.append("cmd_1", LogStream.EXECUTION, "line 50")
        await log_store.append("cmd_1", LogStream.EXECUTION, "line 51")

        parse = LogEntry.model_validate_json
        with patch.object(LogEntry, "model_validate_json", side_effect=parse) as parsed:
            second = await log_store.read(
                "cmd_1", LogStream.EXECUTION, after=first.next_cursor
            )

        assert [e.message for e in second.entries] == ["line 50", "line 51"]
        assert parsed.call_count == 2

    @pytest.mark.asyncio
    async def test_stream_rewritten_behind_the_reader_is_rescanned(
        self, log_store: LogStore, tmp_path: Path
    ) -> None:
        for i in range(3):
            await log_store.append("cmd_1", LogStream.EXECUTION, f"old {i}")
        first = await log_store.read("cmd_1", LogStream.EXECUTION)

        writer = LogStore(tmp_path / "logs")
        await writer.clear("cmd_1")
        for i in range(6):
            await writer.append("cmd_1", LogStream.EXECUTION, f"rewritten entry {i}")

        page = await log_store.read("cmd_1", LogStream.EXECUTION, after=first.next_cursor)

        assert [e.message for e in page.entries] == [
            "rewritten entry 3",
            "rewritten entry 4",
            "rewritten entry 5",
        ]


class TestPersistence:
    @pytest.mark.asyncio
    async def test_sequence_continues_after_reopen(self, tmp_path: Path) -> None:
        first = LogStore(tmp_path / "logs")
        await first.append("cmd_1", LogStream.AUDIT, "one")
        await first.append("cmd_1", LogStream.AUDIT, "two")

        reopened = LogStore(tmp_path / "logs")
        entry = await reopened.append("cmd_1", LogStream.AUDIT, "three")

        assert entry.seq == 2

    @pytest.mark.asyncio
    async def test_partial_trailing_line_is_ignored(self, log_store: LogStore) -> None:
        await log_store.append("cmd_1", LogStream.EXECUTION, "complete")
        path = log_store.logs_dir / "cmd_1" / "execution.jsonl"
        with path.open("a", encoding="utf-8") as f:
            f.write('{"seq": 1, "timest')

        page = await log_store.read("cmd_1", LogStream.EXECUTION)

        assert [e.message for e in page.entries] == ["complete"]

    @pytest.mark.asyncio
    async def test_clear_discards_both_streams(self, log_store: LogStore) -> None:
        await log_store.append("cmd_1", LogStream.EXECUTION, "output")
        await log_store.append("cmd_1", LogStream.AUDIT, "audit")

        await log_store.clear("cmd_1")

        assert (await log_store.read("cmd_1", LogStream.EXECUTION)).entries == []
        entry = await log_store.append("cmd_1", LogStream.AUDIT, "fresh")
        assert entry.seq == 0

    @pytest.mark.asyncio
    async def test_clear_unknown_command_is_noop(self, log_store: LogStore) -> None:
        await log_store.clear("cmd_none")


class TestRendering:
    @pytest.mark.asyncio
    async def test_render_audit_line_includes_actor(self, log_store: LogStore) -> None:
        entry = await log_store.append("cmd_1", LogStream.AUDIT, "Locked by root", actor="root")

        line = render_audit_line(entry)

        assert line.startswith(entry.timestamp.isoformat())
        assert line.endswith("[root]    Locked by root")

    @pytest.mark.asyncio
    async def test_entries_as_text_joins_messages(self, log_store: LogStore) -> None:
        await log_store.append("cmd_1", LogStream.EXECUTION, "a")
        await log_store.append("cmd_1", LogStream.EXECUTION, "b")

        page = await log_store.read("cmd_1", LogStream.EXECUTION)

        assert entries_as_text(page.entries) == "a\nb"
