"""Scheduling substrates and the facade that selects between them."""

from .distributed import DistributedScheduler
from .facade import QUEUE_MODE, TRADITIONAL_MODE, SchedulingFacade
from .interval import compute_next_run, initial_jitter, retry_backoff
from .local import LocalScheduler, MonitorState
from .queue import RedisJobQueue, connect_queue
from .worker import WorkerPool

__all__ = [
    "DistributedScheduler",
    "LocalScheduler",
    "MonitorState",
    "QUEUE_MODE",
    "RedisJobQueue",
    "SchedulingFacade",
    "TRADITIONAL_MODE",
    "WorkerPool",
    "compute_next_run",
    "connect_queue",
    "initial_jitter",
    "retry_backoff",
]
