"""Tests for the per-process drain loop guard."""

import asyncio

import pytest

from shiori.v1.infra.jobs.lifecycle import WorkerLifecycle, WorkerState


class CountingHandler:
    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.counts: dict[int, int] = {}

    async def handle(self, payload, context):
        self.counts[payload["n"]] = self.counts.get(payload["n"], 0) + 1
        await asyncio.sleep(self.delay)


def batch(start: int, stop: int):
    return [{"type": "count", "ownerId": "u1", "payload": {"n": i}} for i in range(start, stop)]


@pytest.fixture
def handler(registry) -> CountingHandler:
    handler = CountingHandler(delay=0.005)
    registry.register("count", handler)
    return handler


@pytest.fixture
def lifecycle(dispatcher) -> WorkerLifecycle:
    return WorkerLifecycle(dispatcher)


class TestEnsureRunning:
    """Test the at-most-one-loop guarantee."""

    @pytest.mark.asyncio
    async def test_starts_once(self, lifecycle, job_service, handler):
        await job_service.enqueue_batch(batch(0, 5))

        results = [lifecycle.ensure_running() for _ in range(5)]

        assert results == [True, False, False, False, False]
        assert lifecycle.state is WorkerState.RUNNING

        report = await lifecycle.wait_idle()

        assert lifecycle.state is WorkerState.IDLE
        assert report.succeeded == 5
        assert lifecycle.last_report is report

    @pytest.mark.asyncio
    async def test_concurrent_triggers_process_each_job_once(
        self, lifecycle, job_service, job_store, handler
    ):
        await job_service.enqueue_batch(batch(0, 20))

        async def trigger():
            await asyncio.sleep(0)
            return lifecycle.ensure_running()

        started = await asyncio.gather(*(trigger() for _ in range(10)))
        await lifecycle.wait_idle()

        assert started.count(True) == 1
        assert handler.counts == {i: 1 for i in range(20)}
        stats = await job_store.stats()
        assert stats["by_status"]["done"] == 20
        assert stats["queue_depth"] == 0

    @pytest.mark.asyncio
    async def test_jobs_enqueued_while_running_are_drained(
        self, lifecycle, job_service, handler
    ):
        await job_service.enqueue_batch(batch(0, 6))
        assert lifecycle.ensure_running() is True

        # Interleave more enqueues with the running loop
        for start in range(6, 18, 3):
            await asyncio.sleep(0.002)
            await job_service.enqueue_batch(batch(start, start + 3))
            lifecycle.ensure_running()

        await lifecycle.wait_idle()

        assert handler.counts == {i: 1 for i in range(18)}

    @pytest.mark.asyncio
    async def test_restarts_after_idle(self, lifecycle, job_service, handler):
        await job_service.enqueue_batch(batch(0, 2))
        assert lifecycle.ensure_running() is True
        await lifecycle.wait_idle()

        await job_service.enqueue_batch(batch(2, 4))
        assert lifecycle.ensure_running() is True
        report = await lifecycle.wait_idle()

        assert report.succeeded == 2
        assert handler.counts == {i: 1 for i in range(4)}

    @pytest.mark.asyncio
    async def test_empty_queue_goes_idle(self, lifecycle):
        assert lifecycle.ensure_running() is True

        report = await lifecycle.wait_idle()

        assert report.claimed == 0
        assert lifecycle.is_running is False

    @pytest.mark.asyncio
    async def test_first_launch_freezes_registry(self, lifecycle, registry, handler):
        assert registry.is_frozen() is False

        lifecycle.ensure_running()

        assert registry.is_frozen() is True
        with pytest.raises(RuntimeError, match="frozen"):
            registry.register("count", CountingHandler())
        await lifecycle.wait_idle()

    @pytest.mark.asyncio
    async def test_wait_idle_without_loop(self, lifecycle):
        assert await lifecycle.wait_idle() is None


class TestShutdown:
    """Test graceful stop."""

    @pytest.mark.asyncio
    async def test_shutdown_stops_after_current_cycle(
        self, lifecycle, job_service, job_store, registry
    ):
        slow = CountingHandler(delay=0.05)
        registry.register("slow", slow)
        await job_service.enqueue_batch(
            [{"type": "slow", "ownerId": "u1", "payload": {"n": i}} for i in range(9)]
        )

        lifecycle.ensure_running()
        await asyncio.sleep(0.01)
        await lifecycle.shutdown(timeout=5)

        assert lifecycle.state is WorkerState.IDLE
        stats = await job_store.stats()
        # First batch of three finished, nothing left running
        assert stats["by_status"]["done"] == 3
        assert stats["by_status"]["running"] == 0
        assert stats["by_status"]["pending"] == 6

    @pytest.mark.asyncio
    async def test_shutdown_cancels_overrunning_loop(
        self, lifecycle, job_service, registry
    ):
        stuck = CountingHandler(delay=10)
        registry.register("stuck", stuck)
        await job_service.enqueue({"type": "stuck", "ownerId": "u1", "payload": {"n": 0}})

        lifecycle.ensure_running()
        await asyncio.sleep(0.05)
        await lifecycle.shutdown(timeout=0.1)

        assert lifecycle.state is WorkerState.IDLE

    @pytest.mark.asyncio
    async def test_shutdown_without_loop(self, lifecycle):
        await lifecycle.shutdown()
        assert lifecycle.state is WorkerState.IDLE
