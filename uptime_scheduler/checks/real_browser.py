"""Browser-based check: render the target in a real browser and capture artifacts."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, Response, Video
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..errors import ConfigurationError
from ..models import DOWN, UP, CheckResult, MonitorDescriptor
from .artifacts import artifact_paths, artifact_token, ensure_dirs, verify_artifact
from .base import CheckContext, is_browser_infra_error
from .commands import play_commands

logger = structlog.get_logger(__name__)

ALLOWED_SCHEMES = ("http", "https")


def validate_target_url(url: str) -> str:
    """Only http(s) targets; anything else could read local resources."""
    scheme = urlsplit(url or "").scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise ConfigurationError("Invalid url protocol, only http and https are allowed.")
    return url


def _ping_ms(response: Response) -> float | None:
    timing = response.request.timing or {}
    response_end = timing.get("responseEnd")
    if response_end is None or response_end < 0:
        return None
    return round(float(response_end), 3)


class RealBrowserCheck:
    name = "real-browser"

    async def check(self, monitor: MonitorDescriptor, ctx: CheckContext) -> CheckResult:
        validate_target_url(monitor.url)

        if ctx.browser_manager is None:
            raise ConfigurationError("Browser checks are not available in this process")

        remote = None
        if monitor.remote_browser:
            if ctx.remote_browsers is None:
                raise ConfigurationError(f"Remote browser {monitor.remote_browser} not found")
            remote = await ctx.remote_browsers.get(monitor.remote_browser, monitor.user_id)

        config = ctx.config
        run_key = str(int(time.time() * 1000))
        paths = artifact_paths(
            config.artifact_secret, monitor.id, run_key,
            config.screenshot_dir, config.video_dir, record_video=monitor.record_video,
        )
        ensure_dirs(config.screenshot_dir, *([config.video_dir] if paths.video else []))

        context_options: dict[str, Any] = {}
        if paths.video is not None:
            context_options["record_video_dir"] = config.video_dir
            context_options["record_video_size"] = {"width": config.video_width, "height": config.video_height}

        def command_screenshot(index: int) -> Path:
            token = artifact_token(config.artifact_secret, monitor.id, f"{run_key}-{index}")
            return Path(config.screenshot_dir) / f"{token}.png"

        nav_error: PlaywrightError | None = None
        response: Response | None = None
        screenshot_ok = False
        video_ok = False
        video = None
        generation = 0

        try:
            async with ctx.browser_manager.session(monitor.id, remote=remote, **context_options) as session:
                generation = session.browser_generation
                page = await session.context.new_page()
                page.set_default_timeout(config.navigation_timeout_ms)
                if paths.video is not None:
                    video = page.video

                try:
                    response = await page.goto(
                        monitor.url, wait_until="networkidle", timeout=config.navigation_timeout_ms
                    )
                except PlaywrightError as e:
                    nav_error = e

                if nav_error is None and monitor.test_commands:
                    await play_commands(page, monitor.test_commands, monitor.id, command_screenshot)

                screenshot_ok = await self._capture_screenshot(page, paths.screenshot, monitor)
                if screenshot_ok:
                    session.artifacts.append(str(paths.screenshot))
                if paths.video is not None:
                    video_ok = await self._finalize_video(page, video, paths.video, monitor)
                    if video_ok:
                        session.artifacts.append(str(paths.video))
                else:
                    await page.close()
        finally:
            # The raw recording outlives the closed context, timeouts included.
            if video is not None:
                await self._discard_recording(video, monitor)

        if nav_error is not None and is_browser_infra_error(nav_error) and remote is None:
            await ctx.browser_manager.reset(generation)

        return self._derive_result(
            monitor, response, nav_error,
            screenshot=str(paths.screenshot) if screenshot_ok else None,
            video=str(paths.video) if video_ok else None,
            timeout_ms=config.navigation_timeout_ms,
        )

    async def _capture_screenshot(self, page: Page, path: Path, monitor: MonitorDescriptor) -> bool:
        try:
            await page.screenshot(path=str(path))
        except PlaywrightError as e:
            logger.warning("Screenshot failed", monitor_id=monitor.id, error=str(e))
            return False
        return verify_artifact(path, monitor.id, "screenshot")

    async def _finalize_video(self, page: Page, video: Video | None, path: Path, monitor: MonitorDescriptor) -> bool:
        """Closing the page flushes the recording; then copy it to its signed name."""
        try:
            await page.close()
            if video is None:
                logger.warning("No video recorded", monitor_id=monitor.id)
                return False
            await video.save_as(str(path))
        except (PlaywrightError, OSError) as e:
            logger.warning("Failed to save video", monitor_id=monitor.id, error=str(e))
            return False
        return verify_artifact(path, monitor.id, "video")

    async def _discard_recording(self, video: Video, monitor: MonitorDescriptor) -> None:
        try:
            await video.delete()
        except PlaywrightError as e:
            logger.warning("Failed to delete raw video recording", monitor_id=monitor.id, error=str(e))

    def _derive_result(
        self,
        monitor: MonitorDescriptor,
        response: Response | None,
        nav_error: PlaywrightError | None,
        screenshot: str | None,
        video: str | None,
        timeout_ms: int,
    ) -> CheckResult:
        result = CheckResult(monitor_id=monitor.id, status=DOWN, screenshot_path=screenshot, video_path=video)

        if nav_error is not None:
            result.retryable = True
            result.error_kind = type(nav_error).__name__
            if isinstance(nav_error, PlaywrightTimeoutError):
                result.message = f"Navigation timeout of {timeout_ms} ms exceeded"
            else:
                result.message = str(nav_error)[:2000]
            return result

        if response is None:
            result.message = "No response from navigation"
            return result

        status = response.status
        result.message = str(status)
        if 200 <= status < 400:
            result.status = UP
            result.ping_ms = _ping_ms(response)
        logger.debug("Browser check finished", monitor_id=monitor.id, status=result.status, http_status=status)
        return result
