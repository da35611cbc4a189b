"""Tests for the command worker pool."""

from __future__ import annotations

import asyncio

import pytest

from command_orchestrator.services.background_tasks import BackgroundTaskTracker
from command_orchestrator.services.worker import CommandWorkerPool


class RecordingHandler:
    """Run handler that records calls and can be held open."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0
        self.release = asyncio.Event()
        self.hold = False

    async def __call__(self, command_id: str, cancel_event: asyncio.Event) -> None:
        self.calls.append(command_id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.hold:
                release = asyncio.create_task(self.release.wait())
                cancel = asyncio.create_task(cancel_event.wait())
                await asyncio.wait({release, cancel}, return_when=asyncio.FIRST_COMPLETED)
                release.cancel()
                cancel.cancel()
            else:
                await asyncio.sleep(0)
        finally:
            self.active -= 1


@pytest.fixture
def tracker() -> BackgroundTaskTracker:
    return BackgroundTaskTracker()


async def _until(predicate, timeout: float = 5.0) -> None:  # type: ignore[no-untyped-def]
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


class TestScheduling:
    def test_rejects_empty_pool(self) -> None:
        with pytest.raises(ValueError):
            CommandWorkerPool(RecordingHandler(), max_concurrent=0)

    @pytest.mark.asyncio
    async def test_runs_in_schedule_order(self, tracker: BackgroundTaskTracker) -> None:
        handler = RecordingHandler()
        pool = CommandWorkerPool(handler, max_concurrent=1, tracker=tracker)
        for command_id in ("a", "b", "c"):
            pool.schedule(command_id)

        pool.start()
        await asyncio.wait_for(pool.wait_idle(), 5)
        await pool.shutdown()

        assert handler.calls == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_queued_id_is_not_queued_twice(self, tracker: BackgroundTaskTracker) -> None:
        handler = RecordingHandler()
        pool = CommandWorkerPool(handler, max_concurrent=1, tracker=tracker)

        assert pool.schedule("a") is True
        assert pool.schedule("a") is False
        assert pool.queued_count() == 1

        pool.start()
        await asyncio.wait_for(pool.wait_idle(), 5)
        await pool.shutdown()
        assert handler.calls == ["a"]

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, tracker: BackgroundTaskTracker) -> None:
        handler = RecordingHandler()
        handler.hold = True
        pool = CommandWorkerPool(handler, max_concurrent=2, tracker=tracker)
        pool.start()
        for command_id in ("a", "b", "c", "d"):
            pool.schedule(command_id)

        await _until(lambda: pool.active_count() == 2)
        assert pool.queued_count() == 2
        assert pool.is_busy("d")

        handler.release.set()
        await asyncio.wait_for(pool.wait_idle(), 5)
        await pool.shutdown()

        assert handler.peak == 2
        assert sorted(handler.calls) == ["a", "b", "c", "d"]

    @pytest.mark.asyncio
    async def test_scheduling_an_active_id_runs_it_again(
        self, tracker: BackgroundTaskTracker
    ) -> None:
        handler = RecordingHandler()
        handler.hold = True
        pool = CommandWorkerPool(handler, max_concurrent=1, tracker=tracker)
        pool.start()
        pool.schedule("a")
        await _until(lambda: pool.active_count() == 1)

        assert pool.schedule("a") is True

        handler.release.set()
        await _until(lambda: len(handler.calls) == 2)
        await asyncio.wait_for(pool.wait_idle(), 5)
        await pool.shutdown()

        assert handler.calls == ["a", "a"]


class TestStopAndFailures:
    @pytest.mark.asyncio
    async def test_request_stop_signals_active_run(self, tracker: BackgroundTaskTracker) -> None:
        handler = RecordingHandler()
        handler.hold = True
        pool = CommandWorkerPool(handler, max_concurrent=1, tracker=tracker)
        pool.start()
        pool.schedule("a")
        await _until(lambda: pool.active_count() == 1)

        assert pool.request_stop("a") is True
        await asyncio.wait_for(pool.wait_idle(), 5)

        assert pool.request_stop("a") is False
        assert not pool.is_busy("a")
        await pool.shutdown()

    @pytest.mark.asyncio
    async def test_failing_run_is_tracked_and_pool_survives(
        self, tracker: BackgroundTaskTracker
    ) -> None:
        calls: list[str] = []

        async def handler(command_id: str, cancel_event: asyncio.Event) -> None:
            calls.append(command_id)
            if command_id == "bad":
                raise RuntimeError("boom")

        pool = CommandWorkerPool(handler, max_concurrent=1, tracker=tracker)
        pool.start()
        pool.schedule("bad")
        pool.schedule("good")
        await asyncio.wait_for(pool.wait_idle(), 5)
        await pool.shutdown()

        assert calls == ["bad", "good"]
        status = await tracker.get_status()
        assert status["failed_tasks"] == 1
        assert status["successful_tasks"] == 1
        assert status["recent_failures"][0]["task"] == "run_command:bad"

    @pytest.mark.asyncio
    async def test_shutdown_stops_active_runs_and_drops_queue(
        self, tracker: BackgroundTaskTracker
    ) -> None:
        handler = RecordingHandler()
        handler.hold = True
        pool = CommandWorkerPool(handler, max_concurrent=1, tracker=tracker)
        pool.start()
        pool.schedule("a")
        pool.schedule("b")
        await _until(lambda: pool.active_count() == 1)

        await pool.shutdown(grace_seconds=5)

        assert handler.calls == ["a"]
        assert pool.running is False
        assert pool.queued_count() == 0
