"""Periodic job coordination.

Each job has a minimum re-run interval and a single-flight latch, both held
in an explicit `SchedulerState` owned by one `Coordinator`. A trigger that
arrives too early or while the job is still running is dropped, not queued.
Different jobs may run concurrently.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .timefilter import now_ms

log = logging.getLogger("scheduler")

RAN = "ran"
SKIPPED_INTERVAL = "skipped_interval"
SKIPPED_RUNNING = "skipped_running"
FAILED = "failed"

MINUTE_MS = 60_000

GENERATE = "generate"
RESOLVE = "resolve"
ANALYZE = "analyze"
BACKTEST = "backtest"

DEFAULT_INTERVALS_MS: Dict[str, int] = {
    GENERATE: 15 * MINUTE_MS,
    RESOLVE: 5 * MINUTE_MS,
    ANALYZE: 6 * 60 * MINUTE_MS,
    BACKTEST: 7 * 24 * 60 * MINUTE_MS,
}

JobFn = Callable[[], Awaitable[Any]]


@dataclass
class JobState:
    last_run_ms: Optional[int] = None
    running: bool = False


@dataclass
class SchedulerState:
    jobs: Dict[str, JobState] = field(default_factory=dict)

    def job(self, name: str) -> JobState:
        return self.jobs.setdefault(name, JobState())


@dataclass(frozen=True)
class TriggerResult:
    job: str
    status: str
    result: Any = None
    error: Optional[str] = None


@dataclass
class _Job:
    name: str
    fn: JobFn
    min_interval_ms: int


class Coordinator:
    def __init__(self, state: Optional[SchedulerState] = None, clock: Callable[[], int] = now_ms):
        self.state = state if state is not None else SchedulerState()
        self.clock = clock
        self._jobs: Dict[str, _Job] = {}

    def register(self, name: str, fn: JobFn, min_interval_ms: Optional[int] = None) -> None:
        interval = min_interval_ms if min_interval_ms is not None else DEFAULT_INTERVALS_MS.get(name, 0)
        self._jobs[name] = _Job(name=name, fn=fn, min_interval_ms=int(interval))
        self.state.job(name)

    @property
    def job_names(self) -> List[str]:
        return list(self._jobs)

    def is_due(self, name: str, now: Optional[int] = None) -> bool:
        job = self._jobs[name]
        st = self.state.job(name)
        if st.last_run_ms is None:
            return True
        now = now if now is not None else self.clock()
        return now - st.last_run_ms >= job.min_interval_ms

    async def trigger(self, name: str) -> TriggerResult:
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(f"Unknown job: {name}")
        st = self.state.job(name)
        if st.running:
            log.info("job_skipped job=%s reason=running", name)
            return TriggerResult(name, SKIPPED_RUNNING)
        now = self.clock()
        if not self.is_due(name, now):
            log.debug("job_skipped job=%s reason=interval last_run_ms=%s", name, st.last_run_ms)
            return TriggerResult(name, SKIPPED_INTERVAL)

        # latch and stamp before the first await
        st.running = True
        st.last_run_ms = now
        log.info("job_start job=%s", name)
        try:
            result = await job.fn()
        except Exception as e:
            log.exception("job_failed job=%s err=%s", name, e)
            return TriggerResult(name, FAILED, error=repr(e))
        finally:
            st.running = False
        log.info("job_done job=%s elapsed_ms=%d", name, self.clock() - now)
        return TriggerResult(name, RAN, result=result)

    async def run_due(self) -> List[TriggerResult]:
        due = self._due_names()
        if not due:
            return []
        return list(await asyncio.gather(*[self.trigger(n) for n in due]))

    def _due_names(self) -> List[str]:
        now = self.clock()
        return [n for n in self._jobs if self.is_due(n, now) and not self.state.job(n).running]

    async def serve(self, tick_s: float = 30.0, *, max_ticks: Optional[int] = None) -> None:
        """Tick loop; due jobs run as background tasks so a slow job never delays the others."""
        tasks: Set[asyncio.Task] = set()
        ticks = 0
        log.info("scheduler_start jobs=%s tick_s=%.1f", ",".join(self._jobs), tick_s)
        try:
            while max_ticks is None or ticks < max_ticks:
                for name in self._due_names():
                    t = asyncio.create_task(self.trigger(name))
                    tasks.add(t)
                    t.add_done_callback(tasks.discard)
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                await asyncio.sleep(tick_s)
        finally:
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
