"""Shared fixtures: in-memory Redis, fake Playwright objects and scheduler config."""

from __future__ import annotations

import fnmatch
import random
from pathlib import Path
from typing import Any

import pytest
from redis.exceptions import WatchError

from uptime_scheduler.config import SchedulerConfig
from uptime_scheduler.models import UP, CheckResult, MonitorDescriptor
from uptime_scheduler.store import InMemoryMonitorStore, InMemoryResultSink


class FakeRedis:
    """In-memory stand-in for the subset of redis.asyncio.Redis the queue uses."""

    def __init__(self):
        self._data: dict[str, Any] = {}
        self._hashes: dict[str, dict[str, str]] = {}
        self._sorted_sets: dict[str, dict[str, float]] = {}
        self._lists: dict[str, list[str]] = {}
        self._ttl_ms: dict[str, int] = {}
        self.closed = False

    def _all_keys(self) -> set[str]:
        return set(self._data) | set(self._hashes) | set(self._sorted_sets) | set(self._lists)

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        self.closed = True

    # Strings

    async def set(self, key: str, value: Any, nx: bool = False, px: int | None = None) -> bool | None:
        if nx and key in self._data:
            return None
        self._data[key] = str(value)
        if px is not None:
            self._ttl_ms[key] = px
        return True

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def incr(self, key: str) -> int:
        value = int(self._data.get(key, 0)) + 1
        self._data[key] = str(value)
        return value

    async def decr(self, key: str) -> int:
        value = int(self._data.get(key, 0)) - 1
        self._data[key] = str(value)
        return value

    async def pexpire(self, key: str, ms: int) -> bool:
        self._ttl_ms[key] = ms
        return True

    async def pttl(self, key: str) -> int:
        if key not in self._all_keys():
            return -2
        return self._ttl_ms.get(key, -1)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            found = False
            for store in (self._data, self._hashes, self._sorted_sets, self._lists):
                if key in store:
                    del store[key]
                    found = True
            self._ttl_ms.pop(key, None)
            removed += int(found)
        return removed

    async def exists(self, *keys: str) -> int:
        all_keys = self._all_keys()
        return sum(1 for k in keys if k in all_keys)

    async def scan_iter(self, match: str = "*"):
        for key in sorted(self._all_keys()):
            if fnmatch.fnmatchcase(key, match):
                yield key

    # Hashes

    async def hset(self, key: str, mapping: dict[str, Any] | None = None, **kwargs: Any) -> int:
        h = self._hashes.setdefault(key, {})
        items = dict(mapping or {})
        items.update(kwargs)
        added = sum(1 for f in items if f not in h)
        h.update({f: str(v) for f, v in items.items()})
        return added

    async def hget(self, key: str, field: str) -> str | None:
        return self._hashes.get(key, {}).get(field)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self._hashes.get(key, {}))

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        h = self._hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)
        return int(h[field])

    # Sorted sets

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        z = self._sorted_sets.setdefault(key, {})
        added = sum(1 for m in mapping if m not in z)
        z.update({m: float(s) for m, s in mapping.items()})
        return added

    async def zrem(self, key: str, *members: str) -> int:
        z = self._sorted_sets.get(key, {})
        removed = 0
        for m in members:
            if m in z:
                del z[m]
                removed += 1
        if key in self._sorted_sets and not z:
            del self._sorted_sets[key]
        return removed

    async def zscore(self, key: str, member: str) -> float | None:
        return self._sorted_sets.get(key, {}).get(member)

    async def zcard(self, key: str) -> int:
        return len(self._sorted_sets.get(key, {}))

    def _sorted(self, key: str) -> list[tuple[str, float]]:
        return sorted(self._sorted_sets.get(key, {}).items(), key=lambda kv: (kv[1], kv[0]))

    async def zrange(self, key: str, start: int, end: int) -> list[str]:
        members = [m for m, _ in self._sorted(key)]
        return members[start:] if end == -1 else members[start:end + 1]

    async def zrangebyscore(self, key: str, min: Any, max: Any, start: int | None = None,
                            num: int | None = None) -> list[str]:
        lo, hi = float(min), float(max)
        members = [m for m, s in self._sorted(key) if lo <= s <= hi]
        if start is not None and num is not None:
            members = members[start:start + num]
        return members

    # Lists

    async def rpush(self, key: str, *values: str) -> int:
        lst = self._lists.setdefault(key, [])
        lst.extend(str(v) for v in values)
        return len(lst)

    async def lpush(self, key: str, *values: str) -> int:
        lst = self._lists.setdefault(key, [])
        for v in values:
            lst.insert(0, str(v))
        return len(lst)

    async def lpop(self, key: str) -> str | None:
        lst = self._lists.get(key)
        if not lst:
            return None
        value = lst.pop(0)
        if not lst:
            del self._lists[key]
        return value

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        lst = self._lists.get(key, [])
        return list(lst[start:]) if end == -1 else list(lst[start:end + 1])

    async def lrem(self, key: str, count: int, value: str) -> int:
        lst = self._lists.get(key, [])
        kept = [v for v in lst if v != value]
        removed = len(lst) - len(kept)
        if kept:
            self._lists[key] = kept
        else:
            self._lists.pop(key, None)
        return removed

    async def ltrim(self, key: str, start: int, end: int) -> bool:
        lst = self._lists.get(key, [])
        self._lists[key] = lst[start:] if end == -1 else lst[start:end + 1]
        return True

    async def llen(self, key: str) -> int:
        return len(self._lists.get(key, []))

    async def lindex(self, key: str, index: int) -> str | None:
        lst = self._lists.get(key, [])
        return lst[index] if -len(lst) <= index < len(lst) else None

    # Transactions

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)

    def _snapshot(self, key: str) -> tuple:
        return (
            self._data.get(key),
            dict(self._hashes.get(key, {})),
            dict(self._sorted_sets.get(key, {})),
            list(self._lists.get(key, [])),
        )


class FakePipeline:
    """WATCH/MULTI/EXEC over FakeRedis.

    Commands issued while watching run immediately; after ``multi()`` they
    are queued and applied together by ``execute()``, or not at all when a
    watched key changed or ``fail_with`` is set.
    """

    def __init__(self, client: FakeRedis):
        self.client = client
        self.watched: dict[str, tuple] = {}
        self.queued: list[tuple[Any, tuple, dict]] = []
        self.explicit = False
        self.fail_with: Exception | None = None

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.reset()

    async def reset(self) -> None:
        self.watched = {}
        self.queued = []
        self.explicit = False

    async def watch(self, *keys: str) -> bool:
        for key in keys:
            self.watched[key] = self.client._snapshot(key)
        return True

    def multi(self) -> None:
        self.explicit = True

    def __getattr__(self, name: str) -> Any:
        command = getattr(self.client, name)
        if self.watched and not self.explicit:
            return command

        def queue(*args: Any, **kwargs: Any) -> "FakePipeline":
            self.queued.append((command, args, kwargs))
            return self

        return queue

    async def execute(self) -> list[Any]:
        try:
            for key, snapshot in self.watched.items():
                if self.client._snapshot(key) != snapshot:
                    raise WatchError("Watched variable changed.")
            if self.fail_with is not None:
                raise self.fail_with
            return [await command(*args, **kwargs) for command, args, kwargs in self.queued]
        finally:
            await self.reset()


# Fake Playwright objects


class FakeResponse:
    def __init__(self, status: int = 200, response_end: float = 123.4):
        self.status = status
        self.request = type("FakeRequest", (), {"timing": {"responseEnd": response_end}})()


class FakeVideo:
    def __init__(self, content: bytes = b"webm-bytes"):
        self.content = content
        self.saved_to: str | None = None
        self.deleted = False

    async def save_as(self, path: str) -> None:
        Path(path).write_bytes(self.content)
        self.saved_to = path

    async def delete(self) -> None:
        self.deleted = True


class FakeMouse:
    def __init__(self, page: "FakePage"):
        self.page = page

    async def wheel(self, dx: float, dy: float) -> None:
        self.page.actions.append(("wheel", dy))


class FakeLocator:
    def __init__(self, page: "FakePage", selector: str):
        self.page = page
        self.selector = selector

    async def press_sequentially(self, text: str) -> None:
        self.page.actions.append(("type", self.selector, text))


class FakePage:
    def __init__(self, response: Any = None, goto_error: Exception | None = None, video: FakeVideo | None = None,
                 failing_selectors: tuple[str, ...] = ()):
        self.response = response if response is not None else FakeResponse()
        self.goto_error = goto_error
        self.video = video
        self.failing_selectors = failing_selectors
        self.actions: list[tuple] = []
        self.closed = False
        self.default_timeout: float | None = None
        self.mouse = FakeMouse(self)

    def set_default_timeout(self, timeout: float) -> None:
        self.default_timeout = timeout

    async def goto(self, url: str, wait_until: str | None = None, timeout: float | None = None):
        self.actions.append(("goto", url, wait_until, timeout))
        if self.goto_error is not None:
            raise self.goto_error
        return self.response

    async def wait_for_timeout(self, ms: float) -> None:
        self.actions.append(("wait", ms))

    async def click(self, selector: str) -> None:
        from playwright.async_api import TimeoutError as PlaywrightTimeoutError

        if selector in self.failing_selectors:
            raise PlaywrightTimeoutError(f"Timeout waiting for {selector}")
        self.actions.append(("click", selector))

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def screenshot(self, path: str, full_page: bool = False) -> None:
        Path(path).write_bytes(b"png-bytes")
        self.actions.append(("screenshot", path))

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, page: FakePage, options: dict[str, Any]):
        self.page = page
        self.options = options
        self.closed = False

    async def new_page(self) -> FakePage:
        return self.page

    async def close(self) -> None:
        self.closed = True
        self.page.closed = True


class FakeBrowser:
    def __init__(self, page_factory):
        self.page_factory = page_factory
        self.contexts: list[FakeContext] = []
        self.connected = True
        self.closed = False
        self.version = "120.0.0.0"

    def is_connected(self) -> bool:
        return self.connected

    async def new_context(self, **options: Any) -> FakeContext:
        context = FakeContext(self.page_factory(), options)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        self.closed = True
        self.connected = False


class FakeChromium:
    def __init__(self, page_factory):
        self.page_factory = page_factory
        self.launched: list[FakeBrowser] = []
        self.launch_kwargs: list[dict[str, Any]] = []
        self.connected_to: list[str] = []
        self.remote_browsers: list[FakeBrowser] = []
        self.launch_error: Exception | None = None

    async def launch(self, **kwargs: Any) -> FakeBrowser:
        if self.launch_error is not None:
            raise self.launch_error
        browser = FakeBrowser(self.page_factory)
        self.launched.append(browser)
        self.launch_kwargs.append(kwargs)
        return browser

    async def connect(self, url: str) -> FakeBrowser:
        browser = FakeBrowser(self.page_factory)
        self.connected_to.append(url)
        self.remote_browsers.append(browser)
        return browser


class FakePlaywright:
    def __init__(self, page_factory=None):
        self.page_factory = page_factory or (lambda: FakePage(video=FakeVideo()))
        self.chromium = FakeChromium(lambda: self.page_factory())
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def config(tmp_path: Path) -> SchedulerConfig:
    return SchedulerConfig(
        artifact_secret="test-secret",
        screenshot_dir=str(tmp_path / "screenshots"),
        video_dir=str(tmp_path / "videos"),
        results_file=str(tmp_path / "results.jsonl"),
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


def make_monitor(monitor_id: int, interval: int = 60, **kwargs: Any) -> MonitorDescriptor:
    kwargs.setdefault("url", f"https://example.com/{monitor_id}")
    return MonitorDescriptor(id=monitor_id, interval=interval, **kwargs)


@pytest.fixture
def store() -> InMemoryMonitorStore:
    return InMemoryMonitorStore([make_monitor(1), make_monitor(2, interval=120)])


@pytest.fixture
def sink() -> InMemoryResultSink:
    return InMemoryResultSink()


class RecordingRunner:
    """Check runner that returns queued results and remembers what it ran."""

    def __init__(self, default_status: str = UP):
        self.default_status = default_status
        self.calls: list[int] = []
        self.queued: list[Any] = []

    def queue(self, *outcomes: Any) -> None:
        self.queued.extend(outcomes)

    async def __call__(self, monitor: MonitorDescriptor) -> CheckResult:
        self.calls.append(monitor.id)
        if self.queued:
            outcome = self.queued.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return CheckResult(monitor_id=monitor.id, status=self.default_status, message="200", ping_ms=10.0)


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()
