"""Models for orchestrated commands."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


class CommandStatus(str, Enum):
    """Coarse run state of a command."""

    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"
    DONE = "done"


class Stage(str, Enum):
    """Pipeline position of a command (see services.stages for ordering)."""

    BEGIN = "begin"
    CHECKED_REMOTE = "checked_remote"
    FORKED = "forked"
    CLONED_OR_PULLED = "cloned_or_pulled"
    CHECKED_OUT = "checked_out"
    TOOL_EXECUTED = "tool_executed"
    CHANGES_ADDED = "changes_added"
    CHANGES_COMMITTED = "changes_committed"
    CHANGES_PUSHED = "changes_pushed"
    COMMIT_ID_RESOLVED = "commit_id_resolved"
    END = "end"


class CommandKind(str, Enum):
    """Tool sub-command to run against the repository."""

    CHECK = "check"
    TEST = "test"


class RepoRef(BaseModel):
    """Target repository of a command."""

    owner: str = Field(..., description="Repository owner (user or organization)")
    name: str = Field(..., description="Repository name")
    url: str | None = Field(
        None,
        description="Clone URL (defaults to https://github.com/{owner}/{name}.git)",
    )

    @field_validator("owner", "name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v or v in {".", ".."} or not _NAME_PATTERN.match(v):
            msg = f"Invalid repository owner/name: {v!r}"
            raise ValueError(msg)
        return v

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def clone_url(self) -> str:
        return self.url or f"https://github.com/{self.owner}/{self.name}.git"


class CommandOptions(BaseModel):
    """Tool options captured at creation time."""

    force: bool = Field(False, description="Ignore the tool's cache")
    num: int = Field(0, ge=0, description="Limit the number of files to process (0 = all)")
    concurrent: bool = Field(False, description="Process files concurrently")
    enable_symbol_reference: bool = Field(
        False, description="Collect symbols to examine references across the project"
    )
    lang: str | None = Field(None, description="Language for generated text")
    fix: bool = Field(False, description="Replace code with the fixed version (check only)")
    test_library: str | None = Field(None, description="Test library to use (test only)")


class CommandConfig(BaseModel):
    """Job configuration, fixed at creation and changeable only via update."""

    repo: RepoRef
    command: CommandKind = CommandKind.CHECK
    target_paths: list[str] = Field(default_factory=list)
    options: CommandOptions = Field(default_factory=CommandOptions)

    @field_validator("target_paths")
    @classmethod
    def normalize_paths(cls, v: list[str]) -> list[str]:
        normalized: list[str] = []
        for path in v:
            cleaned = path.strip().strip("/")
            if not cleaned:
                continue
            if "\x00" in cleaned or ".." in cleaned.split("/"):
                msg = f"Invalid target path: {path!r}"
                raise ValueError(msg)
            if cleaned not in normalized:
                normalized.append(cleaned)
        return normalized

    @model_validator(mode="after")
    def check_kind_options(self) -> CommandConfig:
        if self.command != CommandKind.CHECK and self.options.fix:
            msg = "'fix' is only supported by the check command"
            raise ValueError(msg)
        if self.command != CommandKind.TEST and self.options.test_library:
            msg = "'test_library' is only supported by the test command"
            raise ValueError(msg)
        return self


class Command(BaseModel):
    """Durable record of one orchestrated job."""

    id: str = Field(default_factory=lambda: f"cmd_{uuid4().hex[:16]}")
    status: CommandStatus = CommandStatus.PENDING
    stage: Stage = Stage.BEGIN
    has_changes: bool = False
    locked: bool = False
    config: CommandConfig
    fork_url: str | None = None
    fork_html_url: str | None = None
    commit_id: str | None = None
    commit_url: str | None = None
    error: str | None = Field(None, description="Cause of the last failure")
    failed_stage: Stage | None = Field(None, description="Stage whose operation failed last")
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def reset(self) -> None:
        """Return to the initial pipeline position, dropping run results."""
        self.status = CommandStatus.PENDING
        self.stage = Stage.BEGIN
        self.has_changes = False
        self.fork_url = None
        self.fork_html_url = None
        self.commit_id = None
        self.commit_url = None
        self.error = None
        self.failed_stage = None


class CommandCreateRequest(CommandConfig):
    """Request to create a command."""


class CommandUpdateRequest(CommandConfig):
    """Request to replace a command's configuration."""


class CommandBasic(BaseModel):
    """Summary of a command for list views."""

    id: str
    status: CommandStatus
    stage: Stage
    locked: bool
    repo: str = Field(..., description="owner/name of the target repository")
    command: CommandKind
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_command(cls, command: Command) -> CommandBasic:
        return cls(
            id=command.id,
            status=command.status,
            stage=command.stage,
            locked=command.locked,
            repo=command.config.repo.full_name,
            command=command.config.command,
            created_at=command.created_at,
            updated_at=command.updated_at,
        )


class CommandDetail(Command):
    """
    Full command view including the rendered tool command line.

    ``stage`` is the last stage that completed. When ``status`` is failed,
    ``failed_stage`` names the stage whose operation failed, and a resume
    starts there: a tool timeout reads ``stage=checked_out`` with
    ``failed_stage=tool_executed``.
    """

    command_line: str = Field(..., description="Equivalent tool command line")
