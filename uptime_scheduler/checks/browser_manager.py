"""Lifecycle of the shared browser process used by browser checks."""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import structlog
from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from ..errors import ResourceError
from ..store import RemoteBrowser
from .executables import ExecutableResolver

logger = structlog.get_logger(__name__)

LAUNCH_ARGS = [
    "--enable-video-capture-use-gpu",
    "--enable-web-rtc-hw-encoding",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]

_MIN_SHM_BYTES = 512 * 1024 * 1024


def _launch_args() -> list[str]:
    args = list(LAUNCH_ARGS)
    shm_bytes = 0
    try:
        st = os.statvfs("/dev/shm")
        shm_bytes = int(st.f_frsize) * int(st.f_blocks)
    except (OSError, AttributeError):
        shm_bytes = 0
    if shm_bytes < _MIN_SHM_BYTES:
        # Renderers crash when shared memory is constrained (containers, CI).
        args.append("--disable-dev-shm-usage")
    return args


async def _start_playwright() -> Playwright:
    return await async_playwright().start()


@dataclass
class BrowserSession:
    """One isolated browsing context owned by a single check."""

    monitor_id: int
    context: BrowserContext
    remote: bool = False
    browser_generation: int = 0
    artifacts: list[str] = field(default_factory=list)
    closed: bool = False


class SharedBrowserManager:
    """Sole owner of the per-process browser.

    The browser is launched lazily, reused while connected and relaunched
    when found disconnected. Callers only ever see short-lived sessions.
    """

    def __init__(
        self,
        resolver: ExecutableResolver,
        executable: str = "",
        headless: bool = True,
        playwright_factory: Callable[[], Awaitable[Playwright]] = _start_playwright,
    ):
        self.resolver = resolver
        self.executable = executable
        self.headless = headless
        self._playwright_factory = playwright_factory
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()
        self.launch_count = 0
        self.open_sessions = 0

    @property
    def connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def _ensure_playwright(self) -> Playwright:
        if self._playwright is None:
            self._playwright = await self._playwright_factory()
        return self._playwright

    async def _get_browser(self) -> Browser:
        async with self._lock:
            if self._browser is not None:
                if self._browser.is_connected():
                    return self._browser
                logger.warning("Shared browser disconnected, relaunching")
                await self._close_browser()

            # ConfigurationError from the resolver propagates untouched.
            executable_path = self.resolver.prepare(self.executable)
            playwright = await self._ensure_playwright()
            launch_kwargs: dict[str, Any] = {"headless": self.headless, "args": _launch_args()}
            if executable_path:
                launch_kwargs["executable_path"] = executable_path
            try:
                self._browser = await playwright.chromium.launch(**launch_kwargs)
            except PlaywrightError as e:
                raise ResourceError(f"Browser launch failed: {e}") from e

            self.launch_count += 1
            logger.info("Launched shared browser", executable=executable_path or "bundled",
                        version=self._browser.version)
            return self._browser

    async def _connect_remote(self, remote: RemoteBrowser) -> Browser:
        playwright = await self._ensure_playwright()
        logger.debug("Using remote browser", remote_browser=remote.name, remote_browser_id=remote.id)
        try:
            return await playwright.chromium.connect(remote.url)
        except PlaywrightError as e:
            raise ResourceError(f"Remote browser {remote.id} unreachable: {e}") from e

    @asynccontextmanager
    async def session(
        self,
        monitor_id: int,
        remote: RemoteBrowser | None = None,
        **context_options: Any,
    ) -> AsyncIterator[BrowserSession]:
        """Open an isolated context; it is closed on every exit path."""
        if remote is not None:
            browser, generation = await self._connect_remote(remote), 0
        else:
            browser = await self._get_browser()
            generation = self.launch_count
        try:
            context = await browser.new_context(**context_options)
            session = BrowserSession(monitor_id=monitor_id, context=context, remote=remote is not None,
                                     browser_generation=generation)
            self.open_sessions += 1
            try:
                yield session
            finally:
                self.open_sessions -= 1
                session.closed = True
                try:
                    await context.close()
                except PlaywrightError as e:
                    logger.warning("Failed to close browser context", monitor_id=monitor_id, error=str(e))
        finally:
            if remote is not None:
                try:
                    await browser.close()
                except PlaywrightError as e:
                    logger.warning("Failed to close remote browser connection", monitor_id=monitor_id,
                                   error=str(e))

    async def _close_browser(self) -> None:
        browser, self._browser = self._browser, None
        if browser is None:
            return
        try:
            await browser.close()
        except PlaywrightError as e:
            logger.warning("Error closing shared browser", error=str(e))

    async def reset(self, generation: Optional[int] = None) -> None:
        """Close the shared browser; the next session relaunches it.

        With ``generation`` only that launch of the browser is closed, so
        checks failing together on one broken browser reset it once.
        """
        async with self._lock:
            if generation is not None and generation != self.launch_count:
                logger.debug("Shared browser already replaced, not resetting", generation=generation)
                return
            await self._close_browser()

    async def close(self) -> None:
        """Release the browser and the Playwright driver."""
        await self.reset()
        if self._playwright is not None:
            playwright, self._playwright = self._playwright, None
            await playwright.stop()
        logger.info("Shared browser manager closed")

    async def test_executable(self, executable_path: str) -> str:
        """Launch the given executable once and return its version."""
        prepared = self.resolver.prepare(executable_path)
        playwright = await self._ensure_playwright()
        logger.info("Testing browser executable", executable=prepared or "bundled")
        launch_kwargs: dict[str, Any] = {"headless": True}
        if prepared:
            launch_kwargs["executable_path"] = prepared
        browser = await playwright.chromium.launch(**launch_kwargs)
        try:
            return browser.version
        finally:
            await browser.close()

    async def test_remote_browser(self, url: str) -> bool:
        playwright = await self._ensure_playwright()
        browser = await playwright.chromium.connect(url)
        try:
            logger.info("Remote browser reachable", url=url, version=browser.version)
            return True
        finally:
            await browser.close()
