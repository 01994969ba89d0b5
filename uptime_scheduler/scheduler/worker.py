"""Worker pool that consumes monitor-check jobs from the shared queue."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from redis.exceptions import RedisError

from ..config import SchedulerConfig
from ..models import CheckResult, ScheduledJob
from ..store import MonitorStore, ResultSink
from .interval import compute_next_run, retry_backoff
from .local import CheckRunner
from .queue import RedisJobQueue

logger = structlog.get_logger(__name__)

COMPLETED = "completed"
SKIPPED = "skipped"
RETRYING = "retrying"
FAILED = "failed"


class WorkerPool:
    """Pulls jobs up to the concurrency ceiling under the queue's shared rate limit.

    The broker is the only scheduling state: each job carries just the
    monitor id, and the monitor is re-read when the job runs.
    """

    def __init__(
        self,
        queue: RedisJobQueue,
        store: MonitorStore,
        sink: ResultSink,
        check_runner: CheckRunner,
        config: SchedulerConfig,
    ):
        self.queue = queue
        self.store = store
        self.sink = sink
        self.check_runner = check_runner
        self.config = config
        self.concurrency = config.worker_concurrency
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self.in_flight = 0
        self.processed: Dict[str, int] = {COMPLETED: 0, SKIPPED: 0, RETRYING: 0, FAILED: 0}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self):
        if self._tasks:
            logger.warning("Worker pool already running")
            return
        self._stopping.clear()
        self._tasks = [asyncio.create_task(self._consume(i), name=f"check-worker-{i}")
                       for i in range(self.concurrency)]
        self._tasks.append(asyncio.create_task(self._maintain(), name="check-worker-maintenance"))
        logger.info("Worker pool started", concurrency=self.concurrency, queue=self.queue.name,
                    rate_limit_max=self.config.rate_limit_max,
                    rate_limit_window_ms=self.config.rate_limit_window_ms)

    async def stop(self):
        """Stop taking jobs and wait for the in-flight ones to finish."""
        if not self._tasks:
            return
        self._stopping.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped", processed=self.processed)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _consume(self, index: int) -> None:
        poll = self.config.poll_interval_seconds
        while not self._stopping.is_set():
            try:
                wait_ms = await self.queue.acquire_rate_limit()
                if wait_ms > 0:
                    logger.debug("Rate limit reached", worker=index, wait_ms=wait_ms)
                    await self._sleep(wait_ms / 1000)
                    continue
                job = await self.queue.reserve()
                if job is None:
                    await self.queue.refund_rate_limit()
                    await self._sleep(poll)
                    continue
                await self.process(job)
            except RedisError as e:
                logger.error("Queue error", worker=index, error=str(e))
                await self._sleep(poll)

    async def _maintain(self) -> None:
        """Promote due delayed jobs and reclaim stalled ones."""
        poll = self.config.poll_interval_seconds
        while not self._stopping.is_set():
            try:
                await self.run_maintenance()
            except RedisError as e:
                logger.error("Queue maintenance error", error=str(e))
            await self._sleep(poll)

    async def run_maintenance(self, now: Optional[int] = None) -> int:
        promoted = await self.queue.promote_due(now)
        for job in await self.queue.recover_stalled(now):
            await self._handle_failure(job, "job stalled", interval=None)
        return promoted

    async def process(self, job: ScheduledJob) -> str:
        """Run one job; the monitor's next job is always scheduled unless it was stopped."""
        self.in_flight += 1
        try:
            outcome = await self._process(job)
        finally:
            self.in_flight -= 1
        self.processed[outcome] += 1
        return outcome

    async def _process(self, job: ScheduledJob) -> str:
        monitor_id = job.monitor_id
        logger.debug("Processing monitor check", monitor_id=monitor_id, job_id=job.job_id, attempts=job.attempts)

        monitor = await self.store.find_monitor(monitor_id)
        if monitor is None or not monitor.active:
            logger.warning("Monitor not found or inactive", monitor_id=monitor_id)
            await self.queue.complete(job, SKIPPED)
            return SKIPPED

        started = datetime.now(timezone.utc)
        try:
            result = await self.check_runner(monitor)
        except RedisError:
            raise
        except Exception as e:
            logger.exception("Monitor check raised", monitor_id=monitor_id, job_id=job.job_id)
            return await self._handle_failure(job, str(e) or type(e).__name__, interval=monitor.interval)

        await self._record(result)
        if not result.is_up and result.retryable:
            return await self._handle_failure(job, result.message, interval=monitor.interval)

        delay_ms = compute_next_run(monitor, started, 0)
        if await self.queue.complete(job, result.status, next_delay_ms=delay_ms) is None:
            logger.info("Monitor stopped during check, not rescheduling", monitor_id=monitor_id)
        return COMPLETED

    async def _record(self, result: CheckResult) -> None:
        try:
            await self.sink.record(result)
        except Exception as e:
            logger.error("Failed to record check result", monitor_id=result.monitor_id, error=str(e))

    async def _handle_failure(self, job: ScheduledJob, error: str, interval: Optional[int]) -> str:
        """Retry with exponential backoff; once attempts are exhausted fall back to the interval."""
        attempts = job.attempts + 1
        if attempts < self.config.max_attempts:
            delay_ms = retry_backoff(attempts, self.config.backoff_base_ms)
            logger.warning("Retrying monitor check", monitor_id=job.monitor_id, attempt=attempts,
                           delay_ms=delay_ms, error=error)
            if await self.queue.requeue(job, delay_ms, attempts) is None:
                logger.info("Monitor stopped during check, not retrying", monitor_id=job.monitor_id)
            return RETRYING

        if interval is None:
            monitor = await self.store.find_monitor(job.monitor_id)
            if monitor is None or not monitor.active:
                await self.queue.fail(job, error)
                return FAILED
            interval = monitor.interval
        logger.error("Retries exhausted, resuming regular interval", monitor_id=job.monitor_id,
                     attempts=attempts, interval_seconds=interval)
        await self.queue.fail(job, error, next_delay_ms=interval * 1000)
        return FAILED

    def get_stats(self) -> Dict[str, Any]:
        return {
            "concurrency": self.concurrency,
            "in_flight": self.in_flight,
            "processed": dict(self.processed),
        }
