"""Single entry point that picks the local or distributed scheduler."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from redis.exceptions import RedisError

from ..config import SchedulerConfig
from ..errors import InfrastructureError
from ..store import MonitorStore, ResultSink
from .distributed import DistributedScheduler
from .local import CheckRunner, LocalScheduler
from .worker import WorkerPool

logger = structlog.get_logger(__name__)

QUEUE_MODE = "queue"
TRADITIONAL_MODE = "traditional"

DistributedFactory = Callable[[], Awaitable[DistributedScheduler]]


class SchedulingFacade:
    """Start/stop/stats surface that behaves the same in both modes.

    Distributed mode is attempted once at initialization; any failure there
    falls back to local mode for the rest of the process lifetime.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        store: MonitorStore,
        sink: ResultSink,
        check_runner: CheckRunner,
        distributed_factory: Optional[DistributedFactory] = None,
        local_factory: Optional[Callable[[], LocalScheduler]] = None,
        on_shutdown: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.config = config
        self.store = store
        self.sink = sink
        self.check_runner = check_runner
        self._distributed_factory = distributed_factory or (lambda: DistributedScheduler.create(config, store))
        self._local_factory = local_factory or (lambda: LocalScheduler(store, sink, check_runner, config))
        self._on_shutdown = on_shutdown

        self.queue_mode = config.queue_mode
        self.distributed: Optional[DistributedScheduler] = None
        self.workers: Optional[WorkerPool] = None
        self.local: Optional[LocalScheduler] = None
        self.fallback_reason: Optional[str] = None
        self.initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def mode(self) -> str:
        return QUEUE_MODE if self.distributed is not None else TRADITIONAL_MODE

    async def initialize(self) -> None:
        async with self._init_lock:
            if self.initialized:
                return
            await self._initialize()
            self.initialized = True

    async def _initialize(self) -> None:
        if self.queue_mode:
            try:
                logger.info("Initializing Redis queue system")
                self.distributed = await self._distributed_factory()
                if self.config.run_workers_in_process:
                    self.workers = WorkerPool(self.distributed.queue, self.store, self.sink,
                                              self.check_runner, self.config)
                    await self.workers.start()
                logger.info("Redis queue system initialized")
                return
            except (InfrastructureError, RedisError, OSError, ValueError) as e:
                logger.error("Failed to initialize queue system", error=str(e), error_kind=type(e).__name__)
                logger.warning("Falling back to traditional in-process scheduling")
                self.fallback_reason = str(e)
                self.queue_mode = False
                await self._discard_distributed()

        self.local = self._local_factory()
        await self.local.start()

    async def _discard_distributed(self) -> None:
        if self.workers is not None:
            await self.workers.stop()
            self.workers = None
        if self.distributed is not None:
            await self.distributed.close()
            self.distributed = None

    async def start_all_monitors(self) -> int:
        await self.initialize()
        if self.distributed is not None:
            return await self.distributed.start_all_monitors()
        return await self.local.start_all_monitors()

    async def start_monitor(self, monitor_id: int) -> bool:
        await self.initialize()
        if self.distributed is not None:
            return await self.distributed.start_monitor(monitor_id)
        return await self.local.start_monitor(monitor_id)

    async def stop_monitor(self, monitor_id: int) -> bool:
        await self.initialize()
        if self.distributed is not None:
            return await self.distributed.stop_monitor(monitor_id)
        return await self.local.stop_monitor(monitor_id)

    async def get_stats(self) -> Dict[str, Any]:
        await self.initialize()
        if self.distributed is not None:
            stats = await self.distributed.get_stats()
            if self.workers is not None:
                stats["workers"] = self.workers.get_stats()
            return stats
        return self.local.get_stats()

    async def health_check(self) -> Dict[str, Any]:
        await self.initialize()
        if not self.queue_mode:
            detail: Dict[str, Any] = {}
            if self.fallback_reason:
                detail["fallback_reason"] = self.fallback_reason
            return {"status": "disabled", "mode": TRADITIONAL_MODE, "detail": detail}

        try:
            await self.distributed.ping()
            stats = await self.get_stats()
        except (RedisError, OSError) as e:
            return {"status": "unhealthy", "mode": QUEUE_MODE, "detail": {"error": str(e)}}
        return {"status": "healthy", "mode": QUEUE_MODE, "detail": stats}

    async def shutdown(self) -> None:
        """Drain in-flight checks, then release broker connections and the browser."""
        logger.info("Shutting down scheduling", mode=self.mode)
        await self._discard_distributed()
        if self.local is not None:
            await self.local.shutdown()
        if self._on_shutdown is not None:
            await self._on_shutdown()
