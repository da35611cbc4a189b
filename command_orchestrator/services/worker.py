"""
Worker pool for asynchronous command execution.

Runs scheduled commands in the background with a bounded number of
concurrent runs. Excess work waits in first-scheduled, first-run order.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from command_orchestrator.services.background_tasks import (
    BackgroundTaskTracker,
    get_task_tracker,
    safe_background_task,
)

logger = logging.getLogger(__name__)

RunHandler = Callable[[str, asyncio.Event], Awaitable[None]]


class CommandWorkerPool:
    """
    Executes command runs on a fixed number of workers.

    Design:
    - Fire-and-forget scheduling (the caller never waits for the run)
    - At most one run per command id: an id already queued is not queued
      twice, and an id scheduled while its run is still finishing is queued
      again once that run returns
    - Every run gets a cancel event that ``request_stop`` sets
    - Each run is wrapped by ``safe_background_task`` so failures are logged
      and tracked instead of killing the worker
    """

    def __init__(
        self,
        handler: RunHandler,
        max_concurrent: int = 2,
        tracker: BackgroundTaskTracker | None = None,
    ):
        """
        Initialize the pool (workers start with ``start()``).

        Args:
            handler: Coroutine function run as ``handler(command_id, cancel_event)``
            max_concurrent: Maximum number of simultaneous runs
            tracker: Background task tracker (defaults to the global one)
        """
        if max_concurrent < 1:
            msg = "max_concurrent must be at least 1"
            raise ValueError(msg)
        self.handler = handler
        self.max_concurrent = max_concurrent
        self.tracker = tracker or get_task_tracker()
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._queued: dict[str, asyncio.Event] = {}
        self._active: dict[str, asyncio.Event] = {}
        self._rerun: set[str] = set()
        self._workers: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self) -> None:
        """Start the worker tasks."""
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._work(i), name=f"command-worker-{i}")
            for i in range(self.max_concurrent)
        ]
        logger.info("Worker pool started", extra={"workers": self.max_concurrent})

    async def shutdown(self, grace_seconds: float = 10.0) -> None:
        """
        Stop the pool.

        Queued runs are dropped (their commands stay persisted and are picked
        up again by recovery). Active runs are asked to stop and given
        ``grace_seconds`` to reach a stage boundary before their workers are
        cancelled.
        """
        if not self._workers:
            return

        dropped = 0
        while True:
            try:
                command_id = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if command_id is not None:
                self._queued.pop(command_id, None)
                dropped += 1
            self._queue.task_done()
        self._rerun.clear()

        for event in self._active.values():
            event.set()
        for _ in self._workers:
            self._queue.put_nowait(None)

        _, pending = await asyncio.wait(self._workers, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        logger.info(
            "Worker pool stopped",
            extra={"dropped_queued": dropped, "cancelled_workers": len(pending)},
        )
        self._workers = []

    def schedule(self, command_id: str) -> bool:
        """
        Queue a run of ``command_id``.

        Returns:
            False if the command is already waiting in the queue
        """
        if command_id in self._queued:
            logger.info("Command already queued", extra={"command_id": command_id})
            return False
        if command_id in self._active:
            self._rerun.add(command_id)
            logger.info(
                "Command run still finishing, queued again after it",
                extra={"command_id": command_id},
            )
            return True
        self._enqueue(command_id)
        return True

    def _enqueue(self, command_id: str) -> None:
        self._queued[command_id] = asyncio.Event()
        self._queue.put_nowait(command_id)
        logger.debug(
            "Command queued",
            extra={"command_id": command_id, "queued": len(self._queued)},
        )

    def request_stop(self, command_id: str) -> bool:
        """
        Signal the queued or active run of ``command_id`` to stop.

        Returns:
            True if a run was signalled, False if none is queued or active
        """
        event = self._active.get(command_id) or self._queued.get(command_id)
        if event is None:
            return False
        event.set()
        self._rerun.discard(command_id)
        logger.info("Stop requested", extra={"command_id": command_id})
        return True

    def is_busy(self, command_id: str) -> bool:
        return command_id in self._queued or command_id in self._active

    def active_count(self) -> int:
        return len(self._active)

    def queued_count(self) -> int:
        return len(self._queued)

    async def wait_idle(self) -> None:
        """Wait until every queued and active run has finished."""
        await self._queue.join()

    async def _work(self, worker_id: int) -> None:
        while True:
            command_id = await self._queue.get()
            try:
                if command_id is None:
                    return
                event = self._queued.pop(command_id)
                self._active[command_id] = event
                logger.debug(
                    "Worker picked up command",
                    extra={"worker": worker_id, "command_id": command_id},
                )
                try:
                    await safe_background_task(
                        f"run_command:{command_id}",
                        lambda: self.handler(command_id, event),
                        self.tracker,
                    )
                finally:
                    del self._active[command_id]
                    if command_id in self._rerun:
                        self._rerun.discard(command_id)
                        self._enqueue(command_id)
            finally:
                self._queue.task_done()
