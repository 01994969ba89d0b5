"""Data model for monitors, scheduled jobs and check results."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

UP = "up"
DOWN = "down"
PENDING = "pending"


@dataclass(frozen=True)
class MonitorDescriptor:
    """Read-only view of a monitor as stored by the configuration store."""

    id: int
    interval: int = 60
    active: bool = True
    type: str = "real-browser"
    name: str = ""
    url: str = ""
    user_id: int | None = None
    remote_browser: int | None = None
    record_video: bool = True
    test_commands: list[dict[str, Any]] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.name or f"monitor-{self.id}"

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "MonitorDescriptor":
        """Build a descriptor from a persisted row, tolerating the row's loose types."""
        if "id" not in record:
            raise ValueError("Monitor record has no id")

        interval = int(record.get("interval") or 60)
        if interval < 1:
            raise ValueError(f"Monitor {record['id']} interval must be >= 1, got {interval}")

        known = {
            "id", "interval", "active", "type", "name", "url", "user_id",
            "remote_browser", "record_video", "test_commands",
        }
        params = dict(record.get("params") or {})
        params.update({k: v for k, v in record.items() if k not in known and k != "params"})

        remote_browser = record.get("remote_browser")
        user_id = record.get("user_id")
        return cls(
            id=int(record["id"]),
            interval=interval,
            active=_as_bool(record.get("active", True)),
            type=str(record.get("type") or "real-browser"),
            name=str(record.get("name") or ""),
            url=str(record.get("url") or ""),
            user_id=int(user_id) if user_id is not None else None,
            remote_browser=int(remote_browser) if remote_browser else None,
            record_video=_as_bool(record.get("record_video", True)),
            test_commands=parse_test_commands(record.get("test_commands")),
            params=params,
        )


@dataclass
class ScheduledJob:
    """One pending future check for a monitor."""

    job_id: str
    monitor_id: int
    run_at_ms: int
    attempts: int = 0
    created_at_ms: int = 0

    def to_mapping(self) -> dict[str, str]:
        return {
            "job_id": self.job_id,
            "monitor_id": str(self.monitor_id),
            "run_at_ms": str(self.run_at_ms),
            "attempts": str(self.attempts),
            "created_at_ms": str(self.created_at_ms),
        }

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "ScheduledJob":
        return cls(
            job_id=str(data["job_id"]),
            monitor_id=int(data["monitor_id"]),
            run_at_ms=int(data.get("run_at_ms") or 0),
            attempts=int(data.get("attempts") or 0),
            created_at_ms=int(data.get("created_at_ms") or 0),
        )


@dataclass
class CheckResult:
    """Outcome of one executed check."""

    monitor_id: int
    status: str
    message: str = ""
    ping_ms: float | None = None
    screenshot_path: str | None = None
    video_path: str | None = None
    retryable: bool = False
    error_kind: str | None = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def is_up(self) -> bool:
        return self.status == UP

    def to_dict(self) -> dict[str, Any]:
        """Convert the check result to a dictionary."""
        return {
            "monitor_id": self.monitor_id,
            "status": self.status,
            "message": self.message,
            "ping_ms": self.ping_ms,
            "screenshot_path": self.screenshot_path,
            "video_path": self.video_path,
            "retryable": self.retryable,
            "error_kind": self.error_kind,
            "timestamp": self.timestamp,
        }


def parse_test_commands(raw: Any) -> list[dict[str, Any]]:
    """Accept a list of command dicts or the JSON text stored in the monitor row."""
    if raw is None or raw == "":
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"test_commands is not valid JSON: {e}") from e
    if not isinstance(raw, list):
        raise ValueError("test_commands must be a list")
    commands = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict) or "action" not in item:
            raise ValueError(f"test_commands[{i}] must be an object with an action")
        commands.append(dict(item))
    return commands


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)
