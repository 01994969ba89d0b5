"""Browser executable allow-list and auto-detection.

A monitor owner can point browser checks at an executable, so only known
browser locations are accepted unless the operator opts out explicitly.
"""

from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

import structlog

from ..errors import ConfigurationError

logger = structlog.get_logger(__name__)

# Selects the browser bundled with Playwright.
PLAYWRIGHT_CHROMIUM = "#playwright_chromium"

ALLOW_ALL_ENV = "ALLOW_ALL_CHROME_EXEC"

_LINUX_EXECUTABLES = (
    "chromium",
    "chromium-browser",
    "google-chrome",
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/bin/google-chrome",
    "/snap/bin/chromium",
)

_DARWIN_EXECUTABLES = (
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
)


@dataclass(frozen=True)
class ExecutablePolicy:
    allowed: tuple[str, ...]
    allow_all: bool = False


def _windows_executables(env: Mapping[str, str]) -> tuple[str, ...]:
    local = env.get("LOCALAPPDATA", "")
    program_files = env.get("PROGRAMFILES", "")
    program_files_x86 = env.get("ProgramFiles(x86)", "")
    paths = [
        local + "\\Google\\Chrome\\Application\\chrome.exe",
        program_files + "\\Google\\Chrome\\Application\\chrome.exe",
        program_files_x86 + "\\Google\\Chrome\\Application\\chrome.exe",
        local + "\\Chromium\\Application\\chrome.exe",
        program_files + "\\Chromium\\Application\\chrome.exe",
        program_files_x86 + "\\Chromium\\Application\\chrome.exe",
        program_files_x86 + "\\Microsoft\\Edge\\Application\\msedge.exe",
    ]
    for code in range(ord("A"), ord("Z") + 1):
        drive = chr(code)
        paths.append(drive + ":\\Program Files\\Google\\Chrome\\Application\\chrome.exe")
        paths.append(drive + ":\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe")
    return tuple(paths)


def default_allow_list(platform: str, env: Mapping[str, str]) -> tuple[str, ...]:
    if platform == "win32":
        return _windows_executables(env)
    if platform.startswith("linux"):
        return _LINUX_EXECUTABLES
    if platform == "darwin":
        return _DARWIN_EXECUTABLES
    return ()


def build_executable_policy(
    allow_all_flag: bool = False,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ExecutablePolicy:
    """Compute the allow-list once at startup; the result is passed to the validators."""
    env = os.environ if env is None else env
    platform = platform or sys.platform
    allow_all = bool(allow_all_flag) or env.get(ALLOW_ALL_ENV) == "1"
    return ExecutablePolicy(allowed=default_allow_list(platform, env), allow_all=allow_all)


def is_allowed_executable(executable_path: str, policy: ExecutablePolicy) -> bool:
    if policy.allow_all:
        return True
    return executable_path in policy.allowed


class ExecutableResolver:
    """Turns the configured executable setting into a launchable path."""

    def __init__(self, policy: ExecutablePolicy, which: Callable[[str], Optional[str]] = shutil.which):
        self.policy = policy
        self._which = which
        self._last_detected: Optional[str] = None

    def find(self) -> str:
        """Return the first allow-listed executable present on this host."""
        if self._last_detected and self._which(self._last_detected):
            return self._last_detected

        for executable in self.policy.allowed:
            if self._which(executable):
                self._last_detected = executable
                logger.info("Detected browser executable", executable=executable)
                return executable

        raise ConfigurationError(
            "Chromium not found, please specify the Chromium executable path in the settings."
        )

    def prepare(self, executable_path: Optional[str]) -> Optional[str]:
        """None means "use the Playwright bundled browser"."""
        if isinstance(executable_path, str) and executable_path.lower() == PLAYWRIGHT_CHROMIUM:
            return None
        if not executable_path:
            return self.find()
        if not is_allowed_executable(executable_path, self.policy):
            raise ConfigurationError(
                "This Chromium executable path is not allowed by default. If you are sure this is safe, "
                f"set {ALLOW_ALL_ENV}=1 to allow it."
            )
        return executable_path
