"""
Tests for the multi-cadence scheduler and its overlap guard.
"""
import asyncio

import pytest

from infra.metrics import MetricsRecorder
from infra.scheduler import Scheduler


async def _never(_seconds):
    await asyncio.Event().wait()


async def _settle(rounds=5):
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestRegistration:
    def test_duplicate_job_rejected(self):
        scheduler = Scheduler()

        async def job():
            return None

        scheduler.register("scan", job, 60)
        with pytest.raises(ValueError):
            scheduler.register("scan", job, 60)

    def test_non_positive_interval_rejected(self):
        async def job():
            return None

        with pytest.raises(ValueError):
            Scheduler().register("scan", job, 0)

    def test_jitter_clamped(self):
        scheduler = Scheduler(jitter_pct=50, rng=lambda: 1.0)

        async def job():
            return None

        state = scheduler.register("scan", job, 60)

        assert scheduler.jitter_pct == 20.0
        assert scheduler.next_interval(state) == pytest.approx(72.0)

    def test_no_jitter_keeps_interval(self):
        scheduler = Scheduler()

        async def job():
            return None

        assert scheduler.next_interval(scheduler.register("scan", job, 60)) == 60


class TestRunJob:
    async def test_result_recorded(self):
        scheduler = Scheduler()

        async def job():
            return "3 candidates"

        scheduler.register("scan", job, 60)
        assert await scheduler.run_job("scan")

        status = scheduler.status()["scan"]
        assert status["runs"] == 1
        assert status["status"] == "idle"
        assert status["last_result"] == "3 candidates"

    async def test_overlapping_tick_is_skipped(self):
        """A tick while the previous run is in flight is dropped and counted"""
        metrics = MetricsRecorder(enabled=False)
        scheduler = Scheduler(metrics=metrics)
        release = asyncio.Event()
        calls = []

        async def slow():
            calls.append(1)
            await release.wait()

        scheduler.register("monitor", slow, 10)
        first = asyncio.create_task(scheduler.run_job("monitor"))
        await _settle()

        assert await scheduler.run_job("monitor") is False

        release.set()
        assert await first
        assert len(calls) == 1
        assert scheduler.jobs["monitor"].overlap_skips == 1
        assert metrics.overlap_skips["monitor"] == 1
        assert metrics.job_runs["monitor"] == 1

    async def test_failure_marks_error_and_recovers(self):
        metrics = MetricsRecorder(enabled=False)
        scheduler = Scheduler(metrics=metrics)
        outcomes = [RuntimeError("rpc down"), None]

        async def flaky():
            outcome = outcomes.pop(0)
            if outcome is not None:
                raise outcome

        scheduler.register("rebalance", flaky, 60)

        await scheduler.run_job("rebalance")
        state = scheduler.jobs["rebalance"]
        assert state.status == "error"
        assert state.last_error == "RuntimeError: rpc down"
        assert metrics.job_failures["rebalance"] == 1

        await scheduler.run_job("rebalance")
        assert state.status == "idle"
        assert state.last_error is None
        assert state.runs == 2


class TestLifecycle:
    async def test_run_on_start_fires_immediately(self):
        scheduler = Scheduler(sleep=_never)
        calls = []

        async def scan():
            calls.append("scan")

        async def cleanup():
            calls.append("cleanup")

        scheduler.register("scan", scan, 60, run_on_start=True)
        scheduler.register("cleanup", cleanup, 3600)
        scheduler.start()
        await _settle()

        assert calls == ["scan"]
        await scheduler.stop(drain_timeout=1)

    async def test_loop_ticks_after_sleep(self):
        intervals = []

        async def fake_sleep(seconds):
            intervals.append(seconds)
            if len(intervals) > 2:
                await asyncio.Event().wait()
            for _ in range(3):
                await asyncio.sleep(0)

        scheduler = Scheduler(sleep=fake_sleep)
        calls = []

        async def job():
            calls.append(1)

        scheduler.register("health", job, 30)
        scheduler.start()
        await _settle(30)

        assert len(calls) == 2
        assert intervals[:2] == [30, 30]
        await scheduler.stop(drain_timeout=1)

    async def test_stop_drains_in_flight_run(self):
        scheduler = Scheduler(sleep=_never)
        finished = []

        async def job():
            await asyncio.sleep(0.01)
            finished.append(True)

        scheduler.register("scan", job, 60, run_on_start=True)
        scheduler.start()
        await _settle()

        await scheduler.stop(drain_timeout=1)

        assert finished == [True]
        assert scheduler.jobs["scan"].stopped

    async def test_stop_cancels_runs_past_drain_timeout(self):
        scheduler = Scheduler(sleep=_never)

        async def stuck():
            await asyncio.Event().wait()

        scheduler.register("scan", stuck, 60, run_on_start=True)
        scheduler.start()
        await _settle()

        await scheduler.stop(drain_timeout=0.01)

        assert scheduler.jobs["scan"].status == "idle"
