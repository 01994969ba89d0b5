"""Wiring shared by the API process and stand-alone workers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from .checks import CheckContext, ExecutableResolver, SharedBrowserManager, build_executable_policy, run_check
from .config import SchedulerConfig
from .models import CheckResult, MonitorDescriptor
from .scheduler import SchedulingFacade
from .store import JsonlResultSink, YamlMonitorStore

_LEVELS = {"DEBUG": 10, "INFO": 20, "WARNING": 30, "ERROR": 40, "CRITICAL": 50}


def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level.upper(), 20)),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass
class Runtime:
    config: SchedulerConfig
    store: YamlMonitorStore
    sink: JsonlResultSink
    context: CheckContext

    async def run_check(self, monitor: MonitorDescriptor) -> CheckResult:
        return await run_check(monitor, self.context)

    async def close(self) -> None:
        if self.context.browser_manager is not None:
            await self.context.browser_manager.close()


def build_runtime(config: SchedulerConfig, store: Optional[YamlMonitorStore] = None) -> Runtime:
    store = store or YamlMonitorStore(config.monitors_file)
    policy = build_executable_policy(allow_all_flag=config.allow_all_chrome_exec)
    browser_manager = SharedBrowserManager(ExecutableResolver(policy), executable=config.chrome_executable)
    context = CheckContext(
        config=config,
        browser_manager=browser_manager,
        remote_browsers=store.remote_browsers(),
    )
    return Runtime(config=config, store=store, sink=JsonlResultSink(config.results_file), context=context)


def build_facade(runtime: Runtime) -> SchedulingFacade:
    return SchedulingFacade(
        runtime.config,
        runtime.store,
        runtime.sink,
        runtime.run_check,
        on_shutdown=runtime.close,
    )
