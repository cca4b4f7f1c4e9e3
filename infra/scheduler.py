"""
Multi-cadence job scheduler.

Each registered job gets its own loop task. A tick whose previous run is
still in flight is skipped and counted, never queued. Job bodies may return
a short summary string, which becomes the job's ``last_result``; exceptions
mark the job ``error`` and the loop keeps ticking.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Optional[str]]]

MAX_JITTER_PCT = 20.0


@dataclass
class JobState:
    name: str
    func: JobFunc
    interval_seconds: float
    run_on_start: bool = False
    status: str = "idle"                # idle | running | error
    runs: int = 0
    errors: int = 0
    overlap_skips: int = 0
    last_started: Optional[float] = None
    last_duration: Optional[float] = None
    last_result: Optional[str] = None
    last_error: Optional[str] = None
    stopped: bool = False

    @property
    def in_flight(self) -> bool:
        return self.status == "running"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "errors": self.errors,
            "overlap_skips": self.overlap_skips,
            "last_duration": self.last_duration,
            "last_result": self.last_result,
            "last_error": self.last_error,
            "stopped": self.stopped,
        }


class Scheduler:
    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter_pct: float = 0.0,
        metrics=None,
        rng: Callable[[], float] = random.random,
    ):
        self.clock = clock
        self.sleep = sleep
        self.jitter_pct = max(0.0, min(float(jitter_pct), MAX_JITTER_PCT))
        self.metrics = metrics
        self.rng = rng
        self.jobs: Dict[str, JobState] = {}
        self._loops: Dict[str, asyncio.Task] = {}
        self._inflight: Set[asyncio.Task] = set()

    def register(self, name: str, func: JobFunc, interval_seconds: float, run_on_start: bool = False) -> JobState:
        if name in self.jobs:
            raise ValueError(f"job {name} already registered")
        if interval_seconds <= 0:
            raise ValueError(f"job {name} needs a positive interval, got {interval_seconds}")
        state = JobState(name=name, func=func, interval_seconds=float(interval_seconds), run_on_start=run_on_start)
        self.jobs[name] = state
        logger.info("Registered job %s every %ss%s", name, interval_seconds, " (runs at start)" if run_on_start else "")
        return state

    def next_interval(self, state: JobState) -> float:
        if not self.jitter_pct:
            return state.interval_seconds
        spread = self.jitter_pct / 100.0
        return state.interval_seconds * (1.0 + (self.rng() * 2.0 - 1.0) * spread)

    async def run_job(self, name: str) -> bool:
        """Run one tick now. Returns False if the tick was skipped by the overlap guard."""
        state = self.jobs[name]
        if not self._claim(state):
            return False
        await self._execute(state)
        return True

    def _claim(self, state: JobState) -> bool:
        if state.in_flight:
            state.overlap_skips += 1
            logger.warning("Job %s still running; skipping tick (%d skipped so far)", state.name, state.overlap_skips)
            if self.metrics is not None:
                self.metrics.record_overlap_skip(state.name)
            return False
        state.status = "running"
        return True

    async def _execute(self, state: JobState) -> None:
        started = self.clock()
        state.last_started = started
        outcome = "ok"
        try:
            result = await state.func()
            state.last_result = result if result is not None else "ok"
            state.last_error = None
            state.status = "idle"
        except asyncio.CancelledError:
            state.status = "idle"
            raise
        except Exception as e:
            outcome = "error"
            state.errors += 1
            state.status = "error"
            state.last_error = f"{type(e).__name__}: {e}"
            logger.exception("Job %s failed", state.name)
        finally:
            state.runs += 1
            state.last_duration = self.clock() - started
            if self.metrics is not None:
                self.metrics.record_job(state.name, outcome, state.last_duration)

    def _spawn(self, state: JobState) -> None:
        if not self._claim(state):
            return
        task = asyncio.create_task(self._execute(state), name=f"job:{state.name}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _loop(self, state: JobState) -> None:
        if state.run_on_start:
            self._spawn(state)
        while not state.stopped:
            await self.sleep(self.next_interval(state))
            if state.stopped:
                break
            self._spawn(state)

    def start(self) -> None:
        for name, state in self.jobs.items():
            if name in self._loops:
                continue
            state.stopped = False
            self._loops[name] = asyncio.create_task(self._loop(state), name=f"loop:{name}")
        logger.info("Scheduler started %d jobs", len(self._loops))

    def stop_job(self, name: str) -> None:
        state = self.jobs[name]
        state.stopped = True
        task = self._loops.pop(name, None)
        if task is not None:
            task.cancel()

    async def stop(self, drain_timeout: float = 30.0) -> None:
        """Cancel every job loop, then let in-flight ticks finish within ``drain_timeout``."""
        loops = list(self._loops.values())
        for name in list(self._loops):
            self.stop_job(name)
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)

        if self._inflight:
            done, pending = await asyncio.wait(set(self._inflight), timeout=drain_timeout)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("Cancelled %d job runs still in flight after %ss", len(pending), drain_timeout)
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Scheduler stopped")

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {name: state.to_dict() for name, state in self.jobs.items()}
