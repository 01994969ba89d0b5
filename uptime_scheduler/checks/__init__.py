"""Check executors, keyed by monitor type."""

from .base import (
    CheckContext,
    CheckExecutor,
    get_check_executor,
    is_browser_infra_error,
    register_check_type,
    registered_check_types,
    run_check,
)
from .browser_manager import BrowserSession, SharedBrowserManager
from .executables import ExecutablePolicy, ExecutableResolver, build_executable_policy
from .real_browser import RealBrowserCheck, validate_target_url

register_check_type(RealBrowserCheck())

__all__ = [
    "BrowserSession",
    "CheckContext",
    "CheckExecutor",
    "ExecutablePolicy",
    "ExecutableResolver",
    "RealBrowserCheck",
    "SharedBrowserManager",
    "build_executable_policy",
    "get_check_executor",
    "is_browser_infra_error",
    "register_check_type",
    "registered_check_types",
    "run_check",
    "validate_target_url",
]
