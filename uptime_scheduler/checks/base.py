"""Check-type registry and the error boundary every check runs behind."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import structlog
from playwright.async_api import Error as PlaywrightError

from ..config import SchedulerConfig
from ..errors import ConfigurationError, ResourceError, TransientExecutionError
from ..models import DOWN, CheckResult, MonitorDescriptor
from ..store import RemoteBrowserStore

if TYPE_CHECKING:
    from .browser_manager import SharedBrowserManager

logger = structlog.get_logger(__name__)


@dataclass
class CheckContext:
    """Process-wide dependencies handed to every check executor."""

    config: SchedulerConfig
    browser_manager: "SharedBrowserManager | None" = None
    remote_browsers: RemoteBrowserStore | None = None


class CheckExecutor(Protocol):
    name: str

    async def check(self, monitor: MonitorDescriptor, ctx: CheckContext) -> CheckResult: ...


_CHECK_TYPES: dict[str, CheckExecutor] = {}


def register_check_type(executor: CheckExecutor, name: str | None = None) -> None:
    """Register the executor for a check type, replacing any previous one."""
    _CHECK_TYPES[name or executor.name] = executor


def get_check_executor(check_type: str) -> CheckExecutor:
    try:
        return _CHECK_TYPES[check_type]
    except KeyError:
        raise ConfigurationError(f"Unsupported monitor type: {check_type}") from None


def registered_check_types() -> list[str]:
    return sorted(_CHECK_TYPES)


def is_browser_infra_error(exc: BaseException) -> bool:
    """True when the failure points at our browser process rather than the target site."""
    name = type(exc).__name__
    msg = str(exc or "").lower()

    if name == "TargetClosedError":
        return True
    if "target page, context or browser has been closed" in msg:
        return True
    if "browser has been closed" in msg:
        return True
    if "page crashed" in msg or "target crashed" in msg:
        return True
    # Playwright driver transport died, usually a Chromium crash or OOM.
    if "connection closed while reading from the driver" in msg:
        return True
    if "connection closed while writing to the driver" in msg:
        return True
    if "pipe closed by peer" in msg:
        return True
    return False


def _down(monitor: MonitorDescriptor, message: str, exc: BaseException, retryable: bool) -> CheckResult:
    return CheckResult(
        monitor_id=monitor.id,
        status=DOWN,
        message=message[:2000],
        retryable=retryable,
        error_kind=type(exc).__name__,
    )


async def run_check(monitor: MonitorDescriptor, ctx: CheckContext) -> CheckResult:
    """Execute one check and always return a result; check errors never escape."""
    timeout = ctx.config.check_timeout_seconds
    try:
        executor = get_check_executor(monitor.type)
        return await asyncio.wait_for(executor.check(monitor, ctx), timeout=timeout)
    except ConfigurationError as e:
        logger.error("Check configuration error", monitor_id=monitor.id, error=str(e))
        return _down(monitor, str(e), e, retryable=False)
    except asyncio.TimeoutError as e:
        logger.warning("Check timed out", monitor_id=monitor.id, timeout_seconds=timeout)
        return _down(monitor, f"Check timed out after {timeout:g}s", e, retryable=True)
    except (TransientExecutionError, ResourceError, PlaywrightError) as e:
        logger.warning("Check failed", monitor_id=monitor.id, error=str(e), error_kind=type(e).__name__)
        return _down(monitor, str(e) or type(e).__name__, e, retryable=True)
    except Exception as e:
        logger.exception("Unexpected check error", monitor_id=monitor.id)
        return _down(monitor, str(e) or type(e).__name__, e, retryable=True)
