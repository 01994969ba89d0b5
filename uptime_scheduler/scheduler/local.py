"""Single-process scheduler: one APScheduler timer per active monitor."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from ..config import SchedulerConfig
from ..models import DOWN, CheckResult, MonitorDescriptor
from ..store import MonitorStore, ResultSink
from .interval import compute_next_run

logger = structlog.get_logger(__name__)

CheckRunner = Callable[[MonitorDescriptor], Awaitable[CheckResult]]


class MonitorState(str, Enum):
    STOPPED = "stopped"
    SCHEDULED = "scheduled"
    RUNNING = "running"


@dataclass
class MonitorTimer:
    """Scheduling state of one monitor in this process."""

    monitor_id: int
    interval: int
    state: MonitorState = MonitorState.STOPPED
    stop_requested: bool = False
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    runs: int = 0

    @property
    def job_id(self) -> str:
        return f"monitor-{self.monitor_id}"


class LocalScheduler:
    """Runs checks in-process.

    Each monitor moves Stopped -> Scheduled -> Running -> Scheduled ...
    A stop while Running lets the check finish and records its result, but
    nothing is scheduled afterwards.
    """

    def __init__(
        self,
        store: MonitorStore,
        sink: ResultSink,
        check_runner: CheckRunner,
        config: SchedulerConfig,
        scheduler: Optional[AsyncIOScheduler] = None,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.sink = sink
        self.check_runner = check_runner
        self.config = config
        self.scheduler = scheduler or AsyncIOScheduler(
            timezone=timezone.utc,
            job_defaults={"misfire_grace_time": None, "coalesce": True, "max_instances": 1},
        )
        self.rng = rng
        self.timers: Dict[int, MonitorTimer] = {}
        self.running = False
        self._in_flight: set[asyncio.Task] = set()
        self._shutting_down = False

    async def start(self):
        """Start the timer loop."""
        if self.running:
            logger.warning("Local scheduler already running")
            return
        self.scheduler.start()
        self.running = True
        logger.info("Local scheduler started")

    async def start_all_monitors(self) -> int:
        monitors = await self.store.find_active_monitors()
        for monitor in monitors:
            self._activate(monitor, delay_ms=None)
        logger.info("Scheduled monitors", count=len(monitors), mode="traditional")
        return len(monitors)

    async def start_monitor(self, monitor_id: int, delay_ms: Optional[int] = 0) -> bool:
        monitor = await self.store.find_monitor(monitor_id)
        if monitor is None or not monitor.active:
            logger.warning("Monitor not found or inactive", monitor_id=monitor_id)
            return False
        self._activate(monitor, delay_ms=delay_ms)
        return True

    async def stop_monitor(self, monitor_id: int) -> bool:
        """Cancel the monitor's timer. Safe to call on a stopped monitor."""
        timer = self.timers.get(monitor_id)
        if timer is None:
            return False

        if timer.state == MonitorState.RUNNING:
            timer.stop_requested = True
            logger.info("Monitor will stop after the running check", monitor_id=monitor_id)
            return True

        self._remove_job(timer)
        timer.state = MonitorState.STOPPED
        del self.timers[monitor_id]
        logger.info("Stopped monitor", monitor_id=monitor_id)
        return True

    def _activate(self, monitor: MonitorDescriptor, delay_ms: Optional[int]) -> None:
        timer = self.timers.get(monitor.id)
        if timer is not None and timer.state in (MonitorState.SCHEDULED, MonitorState.RUNNING):
            # Already has its one outstanding timer; an explicit start pulls a pending run forward.
            timer.stop_requested = False
            timer.interval = monitor.interval
            if timer.state == MonitorState.SCHEDULED and delay_ms is not None:
                self._schedule(timer, delay_ms, name=monitor.label)
            return

        timer = MonitorTimer(monitor_id=monitor.id, interval=monitor.interval)
        self.timers[monitor.id] = timer
        if delay_ms is None:
            delay_ms = compute_next_run(monitor, None, jitter_window_ms=self.config.jitter_window_ms, rng=self.rng)
        self._schedule(timer, delay_ms, name=monitor.label)

    def _schedule(self, timer: MonitorTimer, delay_ms: int, name: Optional[str] = None) -> None:
        run_date = datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)
        self.scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=run_date),
            id=timer.job_id,
            args=(timer.monitor_id,),
            name=name or timer.job_id,
            replace_existing=True,
        )
        timer.state = MonitorState.SCHEDULED
        timer.next_run_at = run_date
        logger.debug("Scheduled check", monitor_id=timer.monitor_id, delay_ms=delay_ms)

    def _remove_job(self, timer: MonitorTimer) -> None:
        try:
            self.scheduler.remove_job(timer.job_id)
        except JobLookupError:
            pass

    async def _fire(self, monitor_id: int) -> None:
        """Timer callback: run one check, record it, schedule the next one."""
        timer = self.timers.get(monitor_id)
        if timer is None or timer.state != MonitorState.SCHEDULED:
            return

        timer.state = MonitorState.RUNNING
        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)
        try:
            await self._run_once(timer)
        finally:
            if task is not None:
                self._in_flight.discard(task)

    async def _run_once(self, timer: MonitorTimer) -> None:
        monitor_id = timer.monitor_id
        started = datetime.now(timezone.utc)
        monitor: Optional[MonitorDescriptor] = None
        load_failed = False
        try:
            monitor = await self.store.find_monitor(monitor_id)
        except Exception as e:
            # Store outage: keep the cadence and try again next interval.
            logger.error("Failed to load monitor", monitor_id=monitor_id, error=str(e))
            load_failed = True

        if not load_failed and (monitor is None or not monitor.active):
            logger.info("Monitor deleted or deactivated, stopping", monitor_id=monitor_id)
            self._drop(timer)
            return

        if monitor is not None:
            timer.interval = monitor.interval
            try:
                result = await self.check_runner(monitor)
            except Exception as e:
                logger.exception("Check raised out of the executor", monitor_id=monitor_id)
                result = CheckResult(monitor_id=monitor_id, status=DOWN, message=str(e) or type(e).__name__,
                                     error_kind=type(e).__name__)
            timer.last_run_at = started
            timer.runs += 1
            await self._record(result)

        if timer.stop_requested or self._shutting_down:
            self._drop(timer)
            return

        basis = monitor or MonitorDescriptor(id=monitor_id, interval=timer.interval)
        delay_ms = compute_next_run(basis, started, 0)
        self._schedule(timer, delay_ms, name=basis.label)

    async def _record(self, result: CheckResult) -> None:
        try:
            await self.sink.record(result)
        except Exception as e:
            logger.error("Failed to record check result", monitor_id=result.monitor_id, error=str(e))

    def _drop(self, timer: MonitorTimer) -> None:
        timer.state = MonitorState.STOPPED
        if self.timers.get(timer.monitor_id) is timer:
            self._remove_job(timer)
            del self.timers[timer.monitor_id]

    def state_of(self, monitor_id: int) -> MonitorState:
        timer = self.timers.get(monitor_id)
        return timer.state if timer else MonitorState.STOPPED

    @property
    def active_count(self) -> int:
        return len(self.timers)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "mode": "traditional",
            "redis": False,
            "active_monitors": self.active_count,
            "running_checks": sum(1 for t in self.timers.values() if t.state == MonitorState.RUNNING),
        }

    async def shutdown(self):
        """Cancel future checks and wait for the running ones to finish."""
        if not self.running:
            return
        self._shutting_down = True
        for timer in list(self.timers.values()):
            if timer.state == MonitorState.SCHEDULED:
                self._remove_job(timer)
                self._drop(timer)

        if self._in_flight:
            logger.info("Waiting for running checks", count=len(self._in_flight))
            await asyncio.gather(*self._in_flight, return_exceptions=True)

        self.scheduler.shutdown(wait=False)
        self.timers.clear()
        self.running = False
        logger.info("Local scheduler stopped")
