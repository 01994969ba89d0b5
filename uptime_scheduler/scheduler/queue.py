"""Redis-backed delayed job queue for monitor checks.

Key layout under ``<queue_name>:``

- ``delayed``   sorted set, job id -> earliest run time (ms)
- ``wait``      list of job ids ready to run
- ``active``    sorted set, job id -> visibility deadline (ms)
- ``job:<id>``  hash with the job payload
- ``monitor:<monitor_id>``  id of the one outstanding job for that monitor
- ``completed`` / ``failed``  capped lists of finished job records
- ``counters``  hash of completed/failed totals
- ``limiter``   shared rate-limit counter for the current window

The ``monitor:<id>`` slot is what keeps at most one job per monitor
outstanding: a job is only created when the slot is free, or handed over
from the job that currently owns it. Every move between these keys is one
WATCH/MULTI transaction, so a dropped connection never leaves a slot
pointing at a job that no longer exists.
"""

from __future__ import annotations

import json
import time
from typing import Any, Optional

import redis.asyncio
import structlog
from redis.exceptions import RedisError, WatchError

from ..config import SchedulerConfig
from ..errors import InfrastructureError
from ..models import ScheduledJob

logger = structlog.get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def _as_str(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class RedisJobQueue:
    """Broker operations shared by the scheduler and the workers."""

    def __init__(
        self,
        client: Any,
        name: str = "monitor-checks",
        visibility_timeout_ms: int = 300_000,
        keep_completed: int = 100,
        keep_failed: int = 50,
        rate_limit_max: int = 1000,
        rate_limit_window_ms: int = 60_000,
    ):
        self.client = client
        self.name = name
        self.visibility_timeout_ms = visibility_timeout_ms
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.rate_limit_max = rate_limit_max
        self.rate_limit_window_ms = rate_limit_window_ms

    @classmethod
    def from_config(cls, client: Any, config: SchedulerConfig) -> "RedisJobQueue":
        return cls(
            client,
            name=config.queue_name,
            visibility_timeout_ms=config.job_visibility_timeout_seconds * 1000,
            keep_completed=config.keep_completed,
            keep_failed=config.keep_failed,
            rate_limit_max=config.rate_limit_max,
            rate_limit_window_ms=config.rate_limit_window_ms,
        )

    # Keys

    def key(self, suffix: str) -> str:
        return f"{self.name}:{suffix}"

    def job_key(self, job_id: str) -> str:
        return self.key(f"job:{job_id}")

    def slot_key(self, monitor_id: int) -> str:
        return self.key(f"monitor:{monitor_id}")

    # Connection

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        try:
            await self.client.aclose()
        except RedisError as e:
            logger.warning("Error closing Redis connection", error=str(e))

    # Submission

    def _new_job(self, monitor_id: int, delay_ms: int, attempts: int = 0) -> ScheduledJob:
        created = now_ms()
        return ScheduledJob(
            job_id=f"monitor-{monitor_id}-{created}",
            monitor_id=monitor_id,
            run_at_ms=created + max(int(delay_ms), 0),
            attempts=attempts,
            created_at_ms=created,
        )

    def _enqueue(self, pipe: Any, job: ScheduledJob) -> None:
        """Queue the commands that store ``job`` and give it the monitor's slot."""
        pipe.set(self.slot_key(job.monitor_id), job.job_id)
        pipe.hset(self.job_key(job.job_id), mapping=job.to_mapping())
        if job.run_at_ms > job.created_at_ms:
            pipe.zadd(self.key("delayed"), {job.job_id: job.run_at_ms})
        else:
            pipe.rpush(self.key("wait"), job.job_id)

    async def _live_owner(self, client: Any, monitor_id: int) -> Optional[str]:
        """Job id held in the monitor's slot, or None when the slot is free or stale."""
        owner = await client.get(self.slot_key(monitor_id))
        if owner is None:
            return None
        owner = _as_str(owner)
        if not await client.exists(self.job_key(owner)):
            logger.warning("Ignoring stale monitor slot", monitor_id=monitor_id, job_id=owner)
            return None
        return owner

    async def _monitor_jobs(self, client: Any, monitor_id: int, *lists: str) -> list[str]:
        job_ids = []
        for name in lists:
            if name == "wait":
                job_ids += [_as_str(j) for j in await client.lrange(self.key("wait"), 0, -1)]
            else:
                job_ids += [_as_str(j) for j in await client.zrange(self.key(name), 0, -1)]
        owned = []
        for job_id in job_ids:
            owner = await client.hget(self.job_key(job_id), "monitor_id")
            if owner is not None and int(_as_str(owner)) == monitor_id:
                owned.append(job_id)
        return owned

    async def add(self, monitor_id: int, delay_ms: int, attempts: int = 0) -> Optional[ScheduledJob]:
        """Create the monitor's next job; None when another job already owns the slot."""
        slot = self.slot_key(monitor_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(slot)
                    if await self._live_owner(pipe, monitor_id) is not None:
                        logger.debug("Monitor already has an outstanding job", monitor_id=monitor_id)
                        return None
                    job = self._new_job(monitor_id, delay_ms, attempts)
                    pipe.multi()
                    self._enqueue(pipe, job)
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        logger.debug("Scheduled check", monitor_id=monitor_id, job_id=job.job_id, delay_ms=delay_ms,
                     attempts=attempts)
        return job

    async def replace_pending(self, monitor_id: int, delay_ms: int) -> Optional[ScheduledJob]:
        """Swap the monitor's pending job for a new one in a single transaction.

        When a worker is running the monitor's check nothing is queued: the
        running job keeps (or takes back) the slot and schedules the next run.
        """
        slot = self.slot_key(monitor_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(slot, self.key("wait"), self.key("delayed"), self.key("active"))
                    running = await self._monitor_jobs(pipe, monitor_id, "active")
                    pending = await self._monitor_jobs(pipe, monitor_id, "wait", "delayed")
                    job = None if running else self._new_job(monitor_id, delay_ms)
                    pipe.multi()
                    for job_id in pending:
                        self._unlink(pipe, job_id)
                    if job is not None:
                        self._enqueue(pipe, job)
                    else:
                        pipe.set(slot, running[0])
                    await pipe.execute()
                    return job
                except WatchError:
                    continue

    async def obliterate(self) -> int:
        """Delete every key of this queue. Only safe before any worker is running."""
        keys = [k async for k in self.client.scan_iter(match=f"{self.name}:*")]
        if keys:
            await self.client.delete(*keys)
        logger.info("Obliterated queue", queue=self.name, keys=len(keys))
        return len(keys)

    # Consumption

    async def promote_due(self, now: Optional[int] = None, batch: int = 100) -> int:
        """Move delayed jobs whose time has come onto the wait list."""
        now = now_ms() if now is None else now
        delayed = self.key("delayed")
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(delayed)
                due = [_as_str(j) for j in await pipe.zrangebyscore(delayed, "-inf", now, start=0, num=batch)]
                if not due:
                    return 0
                pipe.multi()
                pipe.zrem(delayed, *due)
                pipe.rpush(self.key("wait"), *due)
                await pipe.execute()
            except WatchError:
                # Another worker moved them first; the next poll picks up the rest.
                return 0
        return len(due)

    async def reserve(self, now: Optional[int] = None) -> Optional[ScheduledJob]:
        """Move the next ready job from the wait list to active until its visibility deadline."""
        now = now_ms() if now is None else now
        wait = self.key("wait")
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(wait)
                    raw_id = await pipe.lindex(wait, 0)
                    if raw_id is None:
                        return None
                    job_id = _as_str(raw_id)
                    data = await pipe.hgetall(self.job_key(job_id))
                    pipe.multi()
                    pipe.lpop(wait)
                    if data:
                        pipe.zadd(self.key("active"), {job_id: now + self.visibility_timeout_ms})
                    await pipe.execute()
                except WatchError:
                    continue
                # An id without a payload was removed by stop_monitor; skip it.
                if data:
                    return ScheduledJob.from_mapping({_as_str(k): _as_str(v) for k, v in data.items()})

    async def recover_stalled(self, now: Optional[int] = None) -> list[ScheduledJob]:
        """Claim active jobs whose worker stopped reporting before the deadline.

        Claimed jobs stay active with a fresh deadline until the caller retires
        them, so a broker error while retrying only delays the next recovery.
        """
        now = now_ms() if now is None else now
        active = self.key("active")
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(active)
                expired = [_as_str(j) for j in await pipe.zrangebyscore(active, "-inf", now)]
                if not expired:
                    return []
                stalled, orphans = [], []
                for job_id in expired:
                    data = await pipe.hgetall(self.job_key(job_id))
                    if data:
                        stalled.append(ScheduledJob.from_mapping({_as_str(k): _as_str(v) for k, v in data.items()}))
                    else:
                        orphans.append(job_id)
                pipe.multi()
                if stalled:
                    pipe.zadd(active, {job.job_id: now + self.visibility_timeout_ms for job in stalled})
                if orphans:
                    pipe.zrem(active, *orphans)
                await pipe.execute()
            except WatchError:
                return []
        for job in stalled:
            logger.warning("Monitor check stalled", monitor_id=job.monitor_id, job_id=job.job_id)
        return stalled

    def _unlink(self, pipe: Any, job_id: str) -> None:
        pipe.lrem(self.key("wait"), 0, job_id)
        pipe.zrem(self.key("delayed"), job_id)
        pipe.zrem(self.key("active"), job_id)
        pipe.delete(self.job_key(job_id))

    def _record(self, pipe: Any, list_name: str, keep: int, record: dict[str, Any]) -> None:
        pipe.hincrby(self.key("counters"), list_name, 1)
        if keep > 0:
            pipe.lpush(self.key(list_name), json.dumps(record, sort_keys=True))
            pipe.ltrim(self.key(list_name), 0, keep - 1)

    async def _finish(
        self,
        job: ScheduledJob,
        next_delay_ms: Optional[int],
        attempts: int = 0,
        history: Optional[tuple[str, int, dict[str, Any]]] = None,
    ) -> Optional[ScheduledJob]:
        """Retire ``job`` and hand its slot to the successor in one transaction.

        No successor is created when the slot no longer belongs to ``job``:
        the monitor was stopped or restarted while the check ran. Without
        ``next_delay_ms`` the slot is released.
        """
        slot = self.slot_key(job.monitor_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(slot)
                    owner = await pipe.get(slot)
                    owns_slot = owner is not None and _as_str(owner) == job.job_id
                    successor = None
                    if owns_slot and next_delay_ms is not None:
                        successor = self._new_job(job.monitor_id, next_delay_ms, attempts)
                    pipe.multi()
                    self._unlink(pipe, job.job_id)
                    if history is not None:
                        self._record(pipe, *history)
                    if successor is not None:
                        self._enqueue(pipe, successor)
                    elif owns_slot:
                        pipe.delete(slot)
                    await pipe.execute()
                    return successor
                except WatchError:
                    continue

    async def complete(self, job: ScheduledJob, outcome: str,
                       next_delay_ms: Optional[int] = None) -> Optional[ScheduledJob]:
        successor = await self._finish(job, next_delay_ms, history=("completed", self.keep_completed, {
            "job_id": job.job_id, "monitor_id": job.monitor_id, "outcome": outcome, "finished_at_ms": now_ms(),
        }))
        logger.debug("Monitor check completed", monitor_id=job.monitor_id, job_id=job.job_id, outcome=outcome)
        return successor

    async def fail(self, job: ScheduledJob, error: str,
                   next_delay_ms: Optional[int] = None) -> Optional[ScheduledJob]:
        successor = await self._finish(job, next_delay_ms, history=("failed", self.keep_failed, {
            "job_id": job.job_id, "monitor_id": job.monitor_id, "attempts": job.attempts + 1,
            "error": error[:500], "finished_at_ms": now_ms(),
        }))
        logger.error("Monitor check failed", monitor_id=job.monitor_id, job_id=job.job_id, error=error)
        return successor

    async def requeue(self, job: ScheduledJob, delay_ms: int, attempts: int) -> Optional[ScheduledJob]:
        """Replace ``job`` with a retry attempt, keeping the monitor's slot."""
        return await self._finish(job, delay_ms, attempts=attempts)

    async def remove_monitor_jobs(self, monitor_id: int) -> int:
        """Remove the monitor's waiting or delayed jobs and free its slot.

        An active job is left to finish; without the slot it schedules no successor.
        """
        slot = self.slot_key(monitor_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(slot, self.key("wait"), self.key("delayed"))
                    removed = await self._monitor_jobs(pipe, monitor_id, "wait", "delayed")
                    pipe.multi()
                    for job_id in removed:
                        self._unlink(pipe, job_id)
                    pipe.delete(slot)
                    await pipe.execute()
                    return len(removed)
                except WatchError:
                    continue

    async def has_outstanding(self, monitor_id: int) -> bool:
        return await self._live_owner(self.client, monitor_id) is not None

    # Rate limiting

    async def acquire_rate_limit(self) -> int:
        """Take one slot of the shared window; returns ms to wait when the window is full."""
        key = self.key("limiter")
        count = await self.client.incr(key)
        if count == 1:
            await self.client.pexpire(key, self.rate_limit_window_ms)
        if count <= self.rate_limit_max:
            return 0
        ttl = await self.client.pttl(key)
        if ttl is None or ttl < 0:
            await self.client.pexpire(key, self.rate_limit_window_ms)
            ttl = self.rate_limit_window_ms
        return max(int(ttl), 1)

    async def refund_rate_limit(self) -> None:
        """Give back a slot taken for a dequeue that found no job."""
        key = self.key("limiter")
        if await self.client.decr(key) < 0:
            await self.client.delete(key)

    # Stats

    async def counts(self) -> dict[str, int]:
        counters = await self.client.hgetall(self.key("counters"))
        counters = {_as_str(k): int(_as_str(v)) for k, v in (counters or {}).items()}
        return {
            "waiting": int(await self.client.llen(self.key("wait"))),
            "delayed": int(await self.client.zcard(self.key("delayed"))),
            "active": int(await self.client.zcard(self.key("active"))),
            "completed": counters.get("completed", 0),
            "failed": counters.get("failed", 0),
        }


async def connect_queue(config: SchedulerConfig) -> RedisJobQueue:
    """Open a broker connection and verify it answers; raises InfrastructureError otherwise."""
    client = redis.asyncio.Redis(**config.redis.connection_kwargs())
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        try:
            await client.aclose()
        except (RedisError, OSError):
            logger.warning("Error closing failed Redis connection")
        raise InfrastructureError(
            f"Redis unreachable at {config.redis.host}:{config.redis.port}: {type(e).__name__}: {e}"
        ) from e
    logger.info("Connected to job broker", host=config.redis.host, port=config.redis.port, db=config.redis.db)
    return RedisJobQueue.from_config(client, config)
