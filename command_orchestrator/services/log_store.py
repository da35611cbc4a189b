"""
Append-only log storage for commands.

Each command owns two independent JSON Lines partitions (execution and
audit) under ``<data>/logs/<command_id>/<stream>.jsonl``. Readers poll with a
sequence cursor; the orchestrator never pushes log updates.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

from command_orchestrator.exceptions import StorageError
from command_orchestrator.models.command import utc_now
from command_orchestrator.models.log import LogEntry, LogPage, LogStream

logger = logging.getLogger(__name__)


class LogStore:
    """Ordered, append-only execution and audit logs keyed by command id."""

    def __init__(self, logs_dir: Path) -> None:
        """
        Initialize the log store.

        Args:
            logs_dir: Root directory for per-command log partitions
        """
        self.logs_dir = logs_dir
        self._lock = asyncio.Lock()
        # Next sequence number per (command_id, stream); lazily loaded from disk
        self._next_seq: dict[tuple[str, LogStream], int] = {}
        # (last returned seq, byte offset after it) per stream, for resumed polls
        self._read_offsets: dict[tuple[str, LogStream], tuple[int, int]] = {}

    def _path(self, command_id: str, stream: LogStream) -> Path:
        return self.logs_dir / command_id / f"{stream.value}.jsonl"

    def _scan(
        self,
        command_id: str,
        stream: LogStream,
        start: int = 0,
        after: int | None = None,
        limit: int | None = None,
    ) -> list[LogEntry] | None:
        """
        Parse entries from byte offset ``start``.

        Returns None when ``start`` no longer points at the entry following
        ``after`` (the stream was cleared and rewritten since).
        """
        path = self._path(command_id, stream)
        if not path.exists():
            return []

        resumed = start > 0
        entries: list[LogEntry] = []
        offset = start
        end_of_last = start
        try:
            with path.open("rb") as f:
                f.seek(start)
                for raw in f:
                    if limit is not None and len(entries) >= limit:
                        break
                    # A trailing line without its newline is still being written
                    if not raw.endswith(b"\n"):
                        break
                    offset += len(raw)
                    if not raw.strip():
                        continue
                    try:
                        entry = LogEntry.model_validate_json(raw)
                    except ValueError:
                        if resumed and not entries:
                            return None
                        logger.warning(
                            "Skipping unreadable log line",
                            extra={"command_id": command_id, "stream": stream.value},
                        )
                        continue
                    if resumed and not entries and (after is None or entry.seq != after + 1):
                        return None
                    if after is not None and entry.seq <= after:
                        continue
                    entries.append(entry)
                    end_of_last = offset
        except OSError as e:
            context = {"command_id": command_id, "stream": stream.value, "error": str(e)}
            logger.error("Failed to read log stream", extra=context)
            msg = f"Failed to read {stream.value} log of '{command_id}'"
            raise StorageError(msg, context=context) from e

        if entries:
            self._read_offsets[(command_id, stream)] = (entries[-1].seq, end_of_last)
        return entries

    def _read_page(
        self, command_id: str, stream: LogStream, after: int | None, limit: int | None
    ) -> list[LogEntry]:
        cached = self._read_offsets.get((command_id, stream))
        if after is not None and cached is not None and cached[0] == after:
            entries = self._scan(command_id, stream, cached[1], after, limit)
            if entries is not None:
                return entries
        return self._scan(command_id, stream, 0, after, limit) or []

    def _seq_for(self, command_id: str, stream: LogStream) -> int:
        key = (command_id, stream)
        if key not in self._next_seq:
            entries = self._scan(command_id, stream) or []
            self._next_seq[key] = entries[-1].seq + 1 if entries else 0
        return self._next_seq[key]

    async def append(
        self,
        command_id: str,
        stream: LogStream,
        message: str,
        *,
        actor: str | None = None,
    ) -> LogEntry:
        """
        Append a message to a command's log stream.

        The message is stored verbatim, including ANSI escape sequences.

        Raises:
            StorageError: If the entry cannot be written
        """
        async with self._lock:
            seq = self._seq_for(command_id, stream)
            entry = LogEntry(
                seq=seq,
                timestamp=utc_now(),
                stream=stream,
                message=message,
                actor=actor,
            )
            path = self._path(command_id, stream)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as f:
                    f.write(entry.model_dump_json() + "\n")
                    f.flush()
            except OSError as e:
                context = {
                    "command_id": command_id,
                    "stream": stream.value,
                    "path": str(path),
                    "error": str(e),
                    "error_type": type(e).__name__,
                }
                logger.error("Failed to append log entry", extra=context)
                msg = f"Failed to append to {stream.value} log of '{command_id}'"
                raise StorageError(msg, context=context) from e
            self._next_seq[(command_id, stream)] = seq + 1

        if stream == LogStream.AUDIT:
            logger.info(
                "Audit entry appended",
                extra={"command_id": command_id, "audit_message": message, "actor": actor},
            )
        return entry

    async def read(
        self,
        command_id: str,
        stream: LogStream,
        *,
        after: int | None = None,
        limit: int | None = None,
    ) -> LogPage:
        """
        Read a command's log stream in insertion order.

        Parsing runs in a worker thread. A poll whose ``after`` is the cursor
        returned by the previous page resumes from the byte offset where that
        page ended instead of re-reading the whole stream.

        Args:
            command_id: Command identifier
            stream: Which partition to read
            after: Return only entries with a sequence number greater than this
            limit: Maximum number of entries to return

        Returns:
            LogPage with entries and the cursor to use for the next poll
        """
        entries = await asyncio.to_thread(self._read_page, command_id, stream, after, limit)

        if entries:
            next_cursor = entries[-1].seq
        elif after is not None:
            next_cursor = after
        else:
            next_cursor = -1

        return LogPage(
            command_id=command_id,
            stream=stream,
            entries=entries,
            next_cursor=next_cursor,
        )

    async def clear(self, command_id: str) -> None:
        """Discard both log streams of a command."""
        async with self._lock:
            for stream in LogStream:
                self._next_seq.pop((command_id, stream), None)
                self._read_offsets.pop((command_id, stream), None)
            command_dir = self.logs_dir / command_id
            if not command_dir.exists():
                return
            try:
                shutil.rmtree(command_dir)
            except OSError as e:
                msg = f"Failed to clear logs of '{command_id}'"
                raise StorageError(msg, context={"command_id": command_id, "error": str(e)}) from e

        logger.info("Cleared command logs", extra={"command_id": command_id})


def render_audit_line(entry: LogEntry) -> str:
    """Render an audit entry as a single human-readable line."""
    who = f" [{entry.actor}]" if entry.actor else ""
    return f"{entry.timestamp.isoformat()}{who}    {entry.message}"


def entries_as_text(entries: list[LogEntry]) -> str:
    """Join execution log messages into the raw text a terminal would show."""
    return "\n".join(entry.message for entry in entries)
