"""Job submission side of distributed mode."""

from __future__ import annotations

import random
from typing import Any, Dict, Optional

import structlog

from ..config import SchedulerConfig
from ..store import MonitorStore
from .interval import compute_next_run
from .queue import RedisJobQueue, connect_queue

logger = structlog.get_logger(__name__)


class DistributedScheduler:
    """Submits monitor checks to the shared queue; workers do the rest."""

    def __init__(
        self,
        queue: RedisJobQueue,
        store: MonitorStore,
        config: SchedulerConfig,
        rng: Optional[random.Random] = None,
    ):
        self.queue = queue
        self.store = store
        self.config = config
        self.rng = rng

    @classmethod
    async def create(cls, config: SchedulerConfig, store: MonitorStore) -> "DistributedScheduler":
        """Connect to the broker; raises InfrastructureError when it is unreachable."""
        queue = await connect_queue(config)
        return cls(queue, store, config)

    async def start_all_monitors(self) -> int:
        """Reset the queue and enqueue one jittered job per active monitor.

        The reset cancels every pending job, so this only runs at process-wide startup.
        """
        logger.info("Starting all active monitors via queue", queue=self.queue.name)
        monitors = await self.store.find_active_monitors()
        await self.queue.obliterate()

        scheduled = 0
        for monitor in monitors:
            delay_ms = compute_next_run(monitor, None, jitter_window_ms=self.config.jitter_window_ms, rng=self.rng)
            if await self.queue.add(monitor.id, delay_ms) is not None:
                scheduled += 1

        logger.info("Scheduled monitors", count=scheduled, mode="queue")
        return scheduled

    async def start_monitor(self, monitor_id: int) -> bool:
        """Run the monitor now; other monitors' jobs are untouched."""
        monitor = await self.store.find_monitor(monitor_id)
        if monitor is None or not monitor.active:
            logger.warning("Monitor not found or inactive", monitor_id=monitor_id)
            return False

        if await self.queue.replace_pending(monitor_id, 0) is None:
            logger.info("Monitor check already running", monitor_id=monitor_id)
        else:
            logger.info("Started monitor via queue", monitor_id=monitor_id)
        return True

    async def stop_monitor(self, monitor_id: int) -> bool:
        removed = await self.queue.remove_monitor_jobs(monitor_id)
        logger.info("Stopped monitoring via queue", monitor_id=monitor_id, removed_jobs=removed)
        return True

    async def get_stats(self) -> Dict[str, Any]:
        counts = await self.queue.counts()
        return {"mode": "queue", "redis": True, **counts}

    async def ping(self) -> bool:
        return await self.queue.ping()

    async def close(self) -> None:
        await self.queue.close()
