"""Configuration management for the check scheduler."""

import os
import secrets
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Connection settings for the job broker."""
    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[str] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database index")
    socket_timeout: float = Field(default=5.0, description="Socket timeout in seconds")

    def connection_kwargs(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "password": self.password or None,
            "db": self.db,
            "socket_timeout": self.socket_timeout,
            "socket_connect_timeout": self.socket_timeout,
            "decode_responses": True,
        }


class SchedulerConfig(BaseModel):
    """Main configuration for the scheduling and execution engine."""

    log_level: str = Field(default="INFO", description="Logging level")

    # Mode selection
    queue_mode: bool = Field(default=False, description="Use the distributed job queue")
    redis: RedisConfig = Field(default_factory=RedisConfig)
    queue_name: str = Field(default="monitor-checks", description="Name of the check queue")
    run_workers_in_process: bool = Field(default=True, description="Start a worker pool inside the API process")

    # Worker pool
    worker_concurrency: int = Field(default=50, ge=1, description="Max concurrently executing jobs per worker process")
    rate_limit_max: int = Field(default=1000, ge=1, description="Max jobs started per rate-limit window, across all workers")
    rate_limit_window_ms: int = Field(default=60_000, ge=1, description="Rate-limit window in milliseconds")
    poll_interval_seconds: float = Field(default=1.0, gt=0, description="Idle wait between dequeue attempts")
    job_visibility_timeout_seconds: int = Field(default=300, ge=1, description="Active job is considered stalled after this")

    # Retry policy
    max_attempts: int = Field(default=3, ge=1, description="Attempts per job before it is abandoned")
    backoff_base_ms: int = Field(default=2000, ge=0, description="First retry delay; doubles per attempt")
    keep_completed: int = Field(default=100, ge=0, description="Completed job records to retain")
    keep_failed: int = Field(default=50, ge=0, description="Failed job records to retain")

    # Scheduling
    jitter_window_ms: int = Field(default=10_000, ge=0, description="Upper bound of the start-up jitter")
    check_timeout_seconds: float = Field(default=120.0, gt=0, description="Hard wall-clock limit per check")

    # Browser checks
    chrome_executable: str = Field(default="", description="Browser executable; empty means auto-detect")
    allow_all_chrome_exec: bool = Field(default=False, description="Skip the executable allow-list")
    navigation_timeout_ms: int = Field(default=30_000, ge=1, description="Navigation timeout for browser checks")
    video_width: int = Field(default=1280, description="Recorded video width")
    video_height: int = Field(default=720, description="Recorded video height")
    screenshot_dir: str = Field(default="data/screenshots", description="Directory for screenshots")
    video_dir: str = Field(default="data/videos", description="Directory for recorded videos")
    artifact_secret: str = Field(default_factory=lambda: secrets.token_hex(32), description="HMAC key for artifact names")

    # Collaborators
    monitors_file: str = Field(default="config/monitors.yaml", description="Monitor definitions for the file store")
    results_file: str = Field(default="data/results.jsonl", description="Where check results are appended")


_ENV_OVERRIDES = {
    "LOG_LEVEL": ("log_level", str),
    "ENABLE_QUEUE_MODE": ("queue_mode", "bool"),
    "QUEUE_CONCURRENCY": ("worker_concurrency", int),
    "QUEUE_RATE_LIMIT_MAX": ("rate_limit_max", int),
    "QUEUE_RATE_LIMIT_WINDOW_MS": ("rate_limit_window_ms", int),
    "QUEUE_RUN_WORKERS": ("run_workers_in_process", "bool"),
    "ALLOW_ALL_CHROME_EXEC": ("allow_all_chrome_exec", "bool"),
    "CHROME_EXECUTABLE": ("chrome_executable", str),
    "SCREENSHOT_DIR": ("screenshot_dir", str),
    "VIDEO_DIR": ("video_dir", str),
    "ARTIFACT_SECRET": ("artifact_secret", str),
    "MONITORS_FILE": ("monitors_file", str),
    "RESULTS_FILE": ("results_file", str),
}

_REDIS_ENV_OVERRIDES = {
    "REDIS_HOST": ("host", str),
    "REDIS_PORT": ("port", int),
    "REDIS_PASSWORD": ("password", str),
    "REDIS_DB": ("db", int),
}


def _convert(value: str, kind: Any) -> Any:
    if kind == "bool":
        return value.strip().lower() in ("true", "1", "yes")
    return kind(value)


def load_config(config_path: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> SchedulerConfig:
    """Load configuration from file, then apply environment variable overrides."""
    env = os.environ if env is None else env
    if config_path is None:
        config_path = env.get("SCHEDULER_CONFIG", "config/scheduler.yaml")

    config_data: Dict[str, Any] = {}
    if os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

    for var, (key, kind) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value is not None and value != "":
            config_data[key] = _convert(value, kind)

    redis_data = dict(config_data.get("redis") or {})
    for var, (key, kind) in _REDIS_ENV_OVERRIDES.items():
        value = env.get(var)
        if value is not None and value != "":
            redis_data[key] = _convert(value, kind)
    config_data["redis"] = redis_data

    return SchedulerConfig(**config_data)


def get_config() -> SchedulerConfig:
    """Get the configuration for the current process environment."""
    return load_config()
