"""Models for the command orchestrator."""

from command_orchestrator.models.command import (
    Command,
    CommandBasic,
    CommandConfig,
    CommandCreateRequest,
    CommandDetail,
    CommandKind,
    CommandOptions,
    CommandStatus,
    CommandUpdateRequest,
    RepoRef,
    Stage,
)
from command_orchestrator.models.log import LogEntry, LogPage, LogStream
from command_orchestrator.models.report import CheckIssue, CheckReport, Report, TestReport

__all__ = [
    "CheckIssue",
    "CheckReport",
    "Command",
    "CommandBasic",
    "CommandConfig",
    "CommandCreateRequest",
    "CommandDetail",
    "CommandKind",
    "CommandOptions",
    "CommandStatus",
    "CommandUpdateRequest",
    "LogEntry",
    "LogPage",
    "LogStream",
    "RepoRef",
    "Report",
    "Stage",
    "TestReport",
]
