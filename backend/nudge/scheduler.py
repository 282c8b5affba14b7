"""Periodic background jobs: outcome sweeps, daily aggregation, cleanup, rollout check."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger("nudge.scheduler")


@dataclass
class JobStatus:
    name: str
    interval_s: float
    runs: int = 0
    failures: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_result: Any = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "interval_s": self.interval_s,
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


@dataclass
class _Job:
    name: str
    interval_s: float
    func: Callable[[], Awaitable[Any]]
    status: JobStatus = field(init=False)

    def __post_init__(self) -> None:
        self.status = JobStatus(self.name, self.interval_s)


class BackgroundScheduler:
    """One asyncio task per job; each run retries a bounded number of times."""

    def __init__(
        self,
        *,
        max_retries: int = 3,
        retry_delay_s: float = 5.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._max_retries = max(1, max_retries)
        self._retry_delay_s = retry_delay_s
        self._clock = clock
        self._jobs: Dict[str, _Job] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    def add_job(self, name: str, interval_s: float, func: Callable[[], Awaitable[Any]]) -> None:
        if interval_s <= 0:
            raise ValueError(f"job interval must be positive: {name}")
        if name in self._jobs:
            raise ValueError(f"duplicate job: {name}")
        self._jobs[name] = _Job(name, float(interval_s), func)

    @property
    def running(self) -> bool:
        return any(not worker.done() for worker in self._workers.values())

    def start(self) -> None:
        for name, job in self._jobs.items():
            worker = self._workers.get(name)
            if worker is not None and not worker.done():
                continue
            self._workers[name] = asyncio.create_task(self._loop(job), name=f"nudge-job-{name}")
        logger.info("Background scheduler started with %d jobs", len(self._jobs))

    async def stop(self) -> None:
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()
        logger.info("Background scheduler stopped")

    async def run_now(self, name: str) -> Any:
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        return await self._run_with_retries(job)

    def status(self) -> List[dict]:
        return [job.status.to_dict() for job in self._jobs.values()]

    async def _loop(self, job: _Job) -> None:
        while True:
            await asyncio.sleep(job.interval_s)
            try:
                await self._run_with_retries(job)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Left for the next scheduled run.
                logger.error("Job %s failed after %d attempts: %s", job.name, self._max_retries, exc)

    async def _run_with_retries(self, job: _Job) -> Any:
        status = job.status
        for attempt in range(1, self._max_retries + 1):
            status.last_run_at = self._clock()
            try:
                result = await job.func()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                status.failures += 1
                status.last_error = str(exc)
                logger.warning("Job %s attempt %d/%d failed: %s", job.name, attempt, self._max_retries, exc)
                if attempt >= self._max_retries:
                    raise
                if self._retry_delay_s > 0:
                    await asyncio.sleep(self._retry_delay_s)
                continue
            status.runs += 1
            status.last_error = None
            status.last_result = result
            return result
        return None


def register_engine_jobs(scheduler: BackgroundScheduler, *, outcomes, usage, decision_logger, rollout, settings) -> None:
    """Wire the engine's periodic work into ``scheduler``."""

    async def _sweep_short():
        return await outcomes.run_sweep("short")

    async def _sweep_medium():
        return await outcomes.run_sweep("medium")

    async def _sweep_long():
        return await outcomes.run_sweep("long")

    async def _daily_aggregation():
        yesterday = (datetime.now() - timedelta(days=1)).date()
        return await usage.aggregate_daily(yesterday, settings.daily_goal_minutes)

    async def _cleanup():
        now = datetime.now()
        retention = settings.data_retention_days
        return {
            "sessions": await usage.cleanup(retention, now),
            "decisions": await decision_logger.cleanup(now, retention),
            "outcomes": await outcomes.cleanup(retention),
        }

    async def _rollout_check():
        return await rollout.check_rollback(datetime.now())

    scheduler.add_job("outcome_short", settings.short_sweep_interval_s, _sweep_short)
    scheduler.add_job("outcome_medium", settings.medium_sweep_interval_s, _sweep_medium)
    scheduler.add_job("outcome_long", settings.long_sweep_interval_s, _sweep_long)
    scheduler.add_job("daily_aggregation", settings.daily_job_interval_s, _daily_aggregation)
    scheduler.add_job("cleanup", settings.daily_job_interval_s, _cleanup)
    scheduler.add_job("rollout_check", settings.daily_job_interval_s, _rollout_check)
