from __future__ import annotations

import asyncio

import pytest

from conftest import make_monitor
from uptime_scheduler.checks import CheckContext, get_check_executor, register_check_type, run_check
from uptime_scheduler.checks.base import is_browser_infra_error
from uptime_scheduler.config import SchedulerConfig
from uptime_scheduler.errors import ConfigurationError, TransientExecutionError
from uptime_scheduler.models import DOWN, UP, CheckResult


class StubCheck:
    def __init__(self, name: str, behaviour):
        self.name = name
        self.behaviour = behaviour

    async def check(self, monitor, ctx):
        return await self.behaviour(monitor)


def test_real_browser_is_registered() -> None:
    assert get_check_executor("real-browser").name == "real-browser"


@pytest.mark.asyncio
async def test_unknown_type_is_non_retryable_down(config: SchedulerConfig) -> None:
    result = await run_check(make_monitor(1, type="carrier-pigeon"), CheckContext(config=config))
    assert result.status == DOWN
    assert "Unsupported monitor type" in result.message
    assert not result.retryable


@pytest.mark.asyncio
async def test_timeout_becomes_retryable_down(config: SchedulerConfig) -> None:
    async def slow(monitor):
        await asyncio.sleep(5)

    register_check_type(StubCheck("test-slow", slow))
    ctx = CheckContext(config=config.model_copy(update={"check_timeout_seconds": 0.05}))

    result = await run_check(make_monitor(1, type="test-slow"), ctx)

    assert result.status == DOWN
    assert result.retryable
    assert result.message == "Check timed out after 0.05s"


@pytest.mark.asyncio
@pytest.mark.parametrize("exc,retryable", [
    (TransientExecutionError("dns flake"), True),
    (KeyError("surprise"), True),
    (ConfigurationError("bad settings"), False),
])
async def test_errors_never_escape(config: SchedulerConfig, exc: Exception, retryable: bool) -> None:
    async def boom(monitor):
        raise exc

    register_check_type(StubCheck("test-boom", boom))
    result = await run_check(make_monitor(1, type="test-boom"), CheckContext(config=config))

    assert result.status == DOWN
    assert result.retryable is retryable
    assert result.error_kind == type(exc).__name__


@pytest.mark.asyncio
async def test_result_passes_through(config: SchedulerConfig) -> None:
    async def ok(monitor):
        return CheckResult(monitor_id=monitor.id, status=UP, message="200")

    register_check_type(StubCheck("test-ok", ok))
    result = await run_check(make_monitor(3, type="test-ok"), CheckContext(config=config))
    assert result.is_up and result.monitor_id == 3


@pytest.mark.parametrize("message,expected", [
    ("Target page, context or browser has been closed", True),
    ("Page crashed", True),
    ("Connection closed while reading from the driver", True),
    ("net::ERR_NAME_NOT_RESOLVED", False),
    ("Timeout 30000ms exceeded.", False),
])
def test_is_browser_infra_error(message: str, expected: bool) -> None:
    assert is_browser_infra_error(RuntimeError(message)) is expected
