"""
Custom exception classes with context for the command orchestrator.

All exceptions inherit from OrchestratorError and support attaching
contextual information for better debugging and logging.
"""

from __future__ import annotations


class OrchestratorError(Exception):
    """
    Base exception for the command orchestrator.

    Attributes:
        message: Human-readable error message
        context: Optional dictionary with additional context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, object] | None = None):
        """
        Initialize exception with message and optional context.

        Args:
            message: Human-readable error message
            context: Optional dictionary with contextual information
                    (operation name, command id, stage, error details, etc.)
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}


class InvalidConfigError(OrchestratorError):
    """
    Command configuration is invalid.

    Raised by create/update when required target fields are missing or a
    target path was never discovered for the repository.

    Example:
        raise InvalidConfigError(
            "Target path not available",
            context={"repo": "octo/demo", "path": "src/unknown"}
        )
    """


class InvalidStateError(OrchestratorError):
    """
    Operation not permitted in the command's current status.

    Example:
        raise InvalidStateError(
            "Cannot restart a running command",
            context={"command_id": "cmd_1a2b", "status": "running"}
        )
    """


class LockedError(OrchestratorError):
    """Operation blocked by the command's administrative lock."""


class NotFoundError(OrchestratorError):
    """No such command, artifact, or report."""


class PermissionDeniedError(OrchestratorError):
    """Actor lacks the role required for the operation."""


class ExternalOperationError(OrchestratorError):
    """
    A stage's external operation (git, hosting, tool) failed.

    Recorded as the cause of a failed command; retried only by an explicit resume.
    """


class GitError(ExternalOperationError):
    """
    Git operation failed.

    Raised when git commands (clone, pull, checkout, commit, push) fail.

    Example:
        raise GitError(
            "Failed to push changes",
            context={
                "operation": "push",
                "remote": "origin",
                "branch": "feature/batchai",
            }
        )
    """


class HostingError(ExternalOperationError):
    """Git hosting API call (remote check, fork) failed."""


class ToolError(ExternalOperationError):
    """
    Code-modification tool failed.

    Example:
        raise ToolError(
            "Tool exited with non-zero status",
            context={"exit_code": 2, "working_tree": "/workspace/cmd_1a2b/demo"}
        )
    """


class OperationTimeoutError(OrchestratorError):
    """External operation exceeded its time budget."""


class OperationCancelledError(OrchestratorError):
    """External operation was killed through its cancellation handle."""


class StorageError(OrchestratorError):
    """
    Persistence of a command record, log entry, report or artifact failed.

    Fatal to the current runner task; the command keeps its last persisted state.
    """


class ConfigurationError(OrchestratorError):
    """
    Configuration error.

    Raised when configuration loading, validation, or parsing fails.
    """
