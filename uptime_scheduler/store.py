"""Collaborator interfaces consumed by the scheduler, with file and in-memory implementations."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Protocol

import structlog
import yaml

from .errors import ConfigurationError
from .models import CheckResult, MonitorDescriptor

logger = structlog.get_logger(__name__)


class MonitorStore(Protocol):
    """Read access to the monitor configuration store."""

    async def find_active_monitors(self) -> list[MonitorDescriptor]: ...

    async def find_monitor(self, monitor_id: int) -> MonitorDescriptor | None: ...


class ResultSink(Protocol):
    """Receives every check result; persistence and notification live behind it."""

    async def record(self, result: CheckResult) -> None: ...


@dataclass(frozen=True)
class RemoteBrowser:
    id: int
    name: str
    url: str
    user_id: int | None = None


class RemoteBrowserStore(Protocol):
    async def get(self, remote_browser_id: int, user_id: int | None) -> RemoteBrowser: ...


class InMemoryMonitorStore:
    """Monitor store backed by a dict; used by tests and embedded setups."""

    def __init__(self, monitors: Iterable[MonitorDescriptor] = ()):
        self.monitors: dict[int, MonitorDescriptor] = {m.id: m for m in monitors}

    def put(self, monitor: MonitorDescriptor) -> None:
        self.monitors[monitor.id] = monitor

    def remove(self, monitor_id: int) -> None:
        self.monitors.pop(monitor_id, None)

    async def find_active_monitors(self) -> list[MonitorDescriptor]:
        return [m for m in self.monitors.values() if m.active]

    async def find_monitor(self, monitor_id: int) -> MonitorDescriptor | None:
        return self.monitors.get(monitor_id)


class YamlMonitorStore:
    """Loads monitor definitions from a YAML or JSON file on every read."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _read(self) -> Any:
        if not self.path.exists():
            logger.warning("Monitors file does not exist", path=str(self.path))
            return {}
        with open(self.path, 'r') as f:
            if self.path.suffix.lower() == '.json':
                return json.load(f)
            return yaml.safe_load(f)

    def _load(self) -> dict[int, MonitorDescriptor]:
        data = self._read()
        records = data.get("monitors", []) if isinstance(data, dict) else (data or [])
        monitors: dict[int, MonitorDescriptor] = {}
        for record in records:
            try:
                monitor = MonitorDescriptor.from_record(record)
            except (ValueError, TypeError) as e:
                logger.error("Invalid monitor definition", record=record, error=str(e))
                continue
            monitors[monitor.id] = monitor
        return monitors

    async def find_active_monitors(self) -> list[MonitorDescriptor]:
        monitors = await asyncio.to_thread(self._load)
        return [m for m in monitors.values() if m.active]

    async def find_monitor(self, monitor_id: int) -> MonitorDescriptor | None:
        monitors = await asyncio.to_thread(self._load)
        return monitors.get(monitor_id)

    def remote_browsers(self) -> "InMemoryRemoteBrowserStore":
        """Remote browser endpoints listed under the file's `remote_browsers` key."""
        data = self._read()
        records = data.get("remote_browsers", []) if isinstance(data, dict) else []
        return InMemoryRemoteBrowserStore(
            RemoteBrowser(
                id=int(r["id"]),
                name=str(r.get("name") or ""),
                url=str(r["url"]),
                user_id=int(r["user_id"]) if r.get("user_id") is not None else None,
            )
            for r in records
        )


class InMemoryResultSink:
    """Keeps results in a list."""

    def __init__(self):
        self.results: list[CheckResult] = []

    async def record(self, result: CheckResult) -> None:
        self.results.append(result)

    def for_monitor(self, monitor_id: int) -> list[CheckResult]:
        return [r for r in self.results if r.monitor_id == monitor_id]


class JsonlResultSink:
    """Appends each result as one JSON line."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'a', encoding='utf-8') as f:
            f.write(line + "\n")

    async def record(self, result: CheckResult) -> None:
        line = json.dumps(result.to_dict(), ensure_ascii=False, sort_keys=True)
        async with self._lock:
            await asyncio.to_thread(self._append, line)


class InMemoryRemoteBrowserStore:
    """Remote browser endpoints scoped to the owning account."""

    def __init__(self, browsers: Iterable[RemoteBrowser] = ()):
        self.browsers: dict[int, RemoteBrowser] = {b.id: b for b in browsers}

    async def get(self, remote_browser_id: int, user_id: int | None) -> RemoteBrowser:
        browser = self.browsers.get(remote_browser_id)
        if browser is None or (browser.user_id is not None and browser.user_id != user_id):
            raise ConfigurationError(f"Remote browser {remote_browser_id} not found")
        return browser

