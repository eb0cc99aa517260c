"""
core/scheduler.py
-----------------
Tiny recurring-job scheduler on top of asyncio.

Each job runs in its own loop task: run, sleep ``interval``, repeat.  A
failing run is retried up to ``retries`` times with exponential backoff and
then abandoned until the next tick; the loop itself never dies.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

JobFn = Callable[[], Awaitable[Any]]


@dataclass
class Job:
    name: str
    interval: float
    fn: JobFn
    retries: int = 2
    backoff: float = 1.0
    runs: int = 0
    failures: int = 0
    last_run: Optional[float] = None
    last_error: Optional[str] = None
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class JobScheduler:
    def __init__(self, *, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 logger: Optional[logging.Logger] = None) -> None:
        self._jobs: Dict[str, Job] = {}
        self._sleep = sleep
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.running = False

    def every(self, name: str, interval: float, fn: JobFn, *,
              retries: int = 2, backoff: float = 1.0) -> Job:
        if name in self._jobs:
            raise ValueError(f"job {name!r} already registered")
        job = Job(name=name, interval=interval, fn=fn, retries=retries, backoff=backoff)
        self._jobs[name] = job
        if self.running:
            job.task = asyncio.create_task(self._loop(job))
        return job

    async def run_once(self, name: str) -> bool:
        """Run one job now (with its retry policy); True when it succeeded."""
        job = self._jobs[name]
        for attempt in range(job.retries + 1):
            try:
                await job.fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                job.failures += 1
                job.last_error = f"{exc.__class__.__name__}: {exc}"
                self.logger.warning("Job %s attempt %d/%d failed: %s",
                                    name, attempt + 1, job.retries + 1, job.last_error)
                if attempt < job.retries:
                    await self._sleep(job.backoff * 2 ** attempt)
                continue
            job.runs += 1
            job.last_run = time.time()
            return True
        self.logger.error("❌ Job %s gave up after %d attempts", name, job.retries + 1)
        return False

    async def _loop(self, job: Job) -> None:
        while True:
            await self.run_once(job.name)
            await self._sleep(job.interval)

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        for job in self._jobs.values():
            job.task = asyncio.create_task(self._loop(job))
        self.logger.info("✅ Scheduler started with %d jobs", len(self._jobs))

    async def stop(self) -> None:
        self.running = False
        tasks = [j.task for j in self._jobs.values() if j.task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for job in self._jobs.values():
            job.task = None
        self.logger.info("Scheduler stopped")

    def get_job_stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {
                "interval": job.interval,
                "runs": job.runs,
                "failures": job.failures,
                "last_run": job.last_run,
                "last_error": job.last_error,
                "running": job.task is not None and not job.task.done(),
            }
            for name, job in self._jobs.items()
        }
