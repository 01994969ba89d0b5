"""Best-effort playback of scripted test commands against a page."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

logger = structlog.get_logger(__name__)


class UnknownCommandError(ValueError):
    pass


async def execute_command(page: Page, command: dict[str, Any], screenshot_path: Callable[[], Path]) -> None:
    """Execute a single test command."""
    action = command.get("action")

    if action == "wait":
        await page.wait_for_timeout(float(command.get("duration") or 1000))
    elif action == "click":
        if command.get("selector"):
            await page.click(command["selector"])
    elif action == "type":
        if command.get("selector") and command.get("text"):
            await page.locator(command["selector"]).press_sequentially(str(command["text"]))
    elif action == "scroll":
        pixels = int(command.get("pixels") or 300)
        direction = command.get("direction", "down")
        if direction == "down":
            await page.mouse.wheel(0, pixels)
        elif direction == "up":
            await page.mouse.wheel(0, -pixels)
    elif action == "screenshot":
        path = screenshot_path()
        await page.screenshot(path=str(path))
    else:
        raise UnknownCommandError(f"Unknown test command: {action}")


async def play_commands(
    page: Page,
    commands: list[dict[str, Any]],
    monitor_id: int,
    screenshot_path: Callable[[int], Path],
) -> int:
    """Run commands in order; a failing command is logged and skipped.

    Returns the number of commands that completed.
    """
    logger.debug("Executing test commands", monitor_id=monitor_id, count=len(commands))
    completed = 0
    for index, command in enumerate(commands):
        try:
            await execute_command(page, command, lambda: screenshot_path(index))
            completed += 1
        except (PlaywrightError, UnknownCommandError, ValueError, TypeError, OSError) as e:
            logger.warning("Test command failed", monitor_id=monitor_id, index=index,
                           action=command.get("action"), error=str(e))
    return completed
