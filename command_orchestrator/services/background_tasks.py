"""Background task utilities with error tracking.

Provides safe wrappers for background tasks that ensure exceptions
are logged and tracked, preventing silent failures.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundTaskError:
    """Record of a failed background task."""

    def __init__(
        self,
        task_name: str,
        error: BaseException,
        timestamp: datetime | None = None,
    ):
        self.task_name = task_name
        self.error = error
        self.timestamp = timestamp or datetime.now(UTC)
        self.error_type = type(error).__name__
        self.error_message = str(error)


class BackgroundTaskTracker:
    """Track background task results for monitoring."""

    def __init__(self, max_history: int = 100):
        self.max_history = max_history
        self.successful_tasks: list[tuple[str, datetime]] = []
        self.failed_tasks: list[BackgroundTaskError] = []
        self._lock = asyncio.Lock()

    async def record_success(self, task_name: str) -> None:
        """Record successful task completion."""
        async with self._lock:
            self.successful_tasks.append((task_name, datetime.now(UTC)))
            if len(self.successful_tasks) > self.max_history:
                self.successful_tasks = self.successful_tasks[-self.max_history :]

    async def record_failure(self, task_name: str, error: BaseException) -> None:
        """Record failed task."""
        task_error = BackgroundTaskError(task_name, error)
        async with self._lock:
            self.failed_tasks.append(task_error)
            if len(self.failed_tasks) > self.max_history:
                self.failed_tasks = self.failed_tasks[-self.max_history :]

    async def get_status(self) -> dict[str, Any]:
        """Get current status of background tasks."""
        async with self._lock:
            return {
                "successful_tasks": len(self.successful_tasks),
                "failed_tasks": len(self.failed_tasks),
                "recent_failures": [
                    {
                        "task": f.task_name,
                        "error": f.error_message,
                        "type": f.error_type,
                        "timestamp": f.timestamp.isoformat(),
                    }
                    for f in self.failed_tasks[-5:]  # Last 5 failures
                ],
            }


_task_tracker: BackgroundTaskTracker | None = None


def get_task_tracker() -> BackgroundTaskTracker:
    """Get or create the global task tracker."""
    global _task_tracker
    if _task_tracker is None:
        _task_tracker = BackgroundTaskTracker()
    return _task_tracker


def reset_task_tracker() -> None:
    """Drop the global tracker (used by tests and application shutdown)."""
    global _task_tracker
    _task_tracker = None


async def safe_background_task(
    task_name: str,
    factory: Callable[[], Awaitable[Any]],
    tracker: BackgroundTaskTracker | None = None,
) -> bool:
    """
    Execute a background task safely, logging any errors.

    This wrapper ensures that:
    - All exceptions are logged with context
    - Task results are tracked for monitoring
    - Errors don't silently disappear

    Args:
        task_name: Name of the task for logging/tracking
        factory: Callable returning the awaitable to run
        tracker: Tracker to record into (defaults to the global one)

    Returns:
        True if the task completed, False if it raised
    """
    tracker = tracker or get_task_tracker()

    try:
        logger.debug(
            "Starting background task",
            extra={"task_name": task_name},
        )
        await factory()
    except Exception as e:
        logger.error(
            "Background task failed",
            exc_info=True,
            extra={
                "task_name": task_name,
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
        await tracker.record_failure(task_name, e)
        return False

    logger.debug(
        "Background task completed",
        extra={"task_name": task_name},
    )
    await tracker.record_success(task_name)
    return True
