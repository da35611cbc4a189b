"""Models for command log streams."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class LogStream(str, Enum):
    """Independent log partitions kept per command."""

    EXECUTION = "execution"  # Raw tool/subprocess output
    AUDIT = "audit"  # One line per lifecycle transition


class LogEntry(BaseModel):
    """Single append-only log record."""

    seq: int = Field(..., description="Per-stream sequence number, starting at 0")
    timestamp: datetime
    stream: LogStream
    message: str
    actor: str | None = Field(None, description="Who triggered the entry (audit only)")


class LogPage(BaseModel):
    """Ordered slice of a log stream for polling readers."""

    command_id: str
    stream: LogStream
    entries: list[LogEntry] = Field(default_factory=list)
    next_cursor: int = Field(
        ...,
        description="Last returned sequence number (use as `after`; -1 if nothing yet)",
    )
