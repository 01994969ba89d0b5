from __future__ import annotations

import pytest
from playwright.async_api import Error as PlaywrightError

from conftest import FakePlaywright
from uptime_scheduler.checks.browser_manager import LAUNCH_ARGS, SharedBrowserManager
from uptime_scheduler.checks.executables import PLAYWRIGHT_CHROMIUM, ExecutablePolicy, ExecutableResolver
from uptime_scheduler.errors import ConfigurationError, ResourceError
from uptime_scheduler.store import RemoteBrowser


def make_manager(playwright: FakePlaywright, executable: str = PLAYWRIGHT_CHROMIUM,
                 policy: ExecutablePolicy | None = None) -> SharedBrowserManager:
    async def factory():
        return playwright

    resolver = ExecutableResolver(policy or ExecutablePolicy(allowed=("/usr/bin/chromium",)), which=lambda _: None)
    return SharedBrowserManager(resolver, executable=executable, playwright_factory=factory)


@pytest.mark.asyncio
async def test_browser_is_launched_once_and_shared() -> None:
    playwright = FakePlaywright()
    manager = make_manager(playwright)

    async with manager.session(1) as first:
        assert manager.open_sessions == 1
    async with manager.session(2) as second:
        pass

    assert manager.launch_count == 1
    assert len(playwright.chromium.launched) == 1
    assert first.context is not second.context
    assert first.closed and second.closed
    assert first.context.closed and second.context.closed
    assert manager.open_sessions == 0

    kwargs = playwright.chromium.launch_kwargs[0]
    assert "executable_path" not in kwargs
    assert kwargs["headless"] is True
    assert all(arg in kwargs["args"] for arg in LAUNCH_ARGS)


@pytest.mark.asyncio
async def test_disconnected_browser_is_relaunched() -> None:
    playwright = FakePlaywright()
    manager = make_manager(playwright)

    async with manager.session(1):
        pass
    playwright.chromium.launched[0].connected = False
    assert not manager.connected

    async with manager.session(1):
        pass
    assert manager.launch_count == 2
    assert manager.connected


@pytest.mark.asyncio
async def test_context_closed_when_body_raises() -> None:
    playwright = FakePlaywright()
    manager = make_manager(playwright)

    with pytest.raises(RuntimeError):
        async with manager.session(1) as session:
            raise RuntimeError("boom")
    assert session.context.closed
    assert manager.open_sessions == 0


@pytest.mark.asyncio
async def test_configured_executable_is_passed_to_launch() -> None:
    playwright = FakePlaywright()
    manager = make_manager(playwright, executable="/usr/bin/chromium")
    async with manager.session(1):
        pass
    assert playwright.chromium.launch_kwargs[0]["executable_path"] == "/usr/bin/chromium"


@pytest.mark.asyncio
async def test_disallowed_executable_is_configuration_error() -> None:
    playwright = FakePlaywright()
    manager = make_manager(playwright, executable="/tmp/evil")
    with pytest.raises(ConfigurationError):
        async with manager.session(1):
            pass
    assert playwright.chromium.launched == []


@pytest.mark.asyncio
async def test_launch_failure_is_resource_error() -> None:
    playwright = FakePlaywright()
    playwright.chromium.launch_error = PlaywrightError("Executable doesn't exist")
    manager = make_manager(playwright)
    with pytest.raises(ResourceError, match="Browser launch failed"):
        async with manager.session(1):
            pass


@pytest.mark.asyncio
async def test_remote_session_does_not_touch_shared_browser() -> None:
    playwright = FakePlaywright()
    manager = make_manager(playwright)
    remote = RemoteBrowser(id=3, name="grid", url="ws://grid:3000")

    async with manager.session(1, remote=remote) as session:
        assert session.remote

    assert playwright.chromium.launched == []
    assert playwright.chromium.connected_to == ["ws://grid:3000"]
    assert playwright.chromium.remote_browsers[0].closed


@pytest.mark.asyncio
async def test_reset_and_close() -> None:
    playwright = FakePlaywright()
    manager = make_manager(playwright)
    async with manager.session(1):
        pass
    browser = playwright.chromium.launched[0]

    await manager.reset()
    assert browser.closed
    assert not manager.connected

    await manager.close()
    assert playwright.stopped


@pytest.mark.asyncio
async def test_test_executable_returns_version() -> None:
    playwright = FakePlaywright()
    manager = make_manager(playwright)
    assert await manager.test_executable(PLAYWRIGHT_CHROMIUM) == "120.0.0.0"
    assert playwright.chromium.launched[0].closed


@pytest.mark.asyncio
async def test_test_remote_browser() -> None:
    playwright = FakePlaywright()
    manager = make_manager(playwright)
    assert await manager.test_remote_browser("ws://grid:3000") is True
    assert playwright.chromium.remote_browsers[0].closed


@pytest.mark.asyncio
async def test_reset_for_replaced_browser_is_ignored() -> None:
    playwright = FakePlaywright()
    manager = make_manager(playwright)

    async with manager.session(1) as first:
        assert first.browser_generation == 1
    await manager.reset(first.browser_generation)
    async with manager.session(2) as second:
        assert second.browser_generation == 2

    # A second check that failed on the first browser must not close the new one.
    await manager.reset(first.browser_generation)
    assert manager.connected
    assert not playwright.chromium.launched[1].closed

    await manager.reset(second.browser_generation)
    assert not manager.connected
