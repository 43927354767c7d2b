"""Unit tests for ProfilePool with a fake Playwright driver."""

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError

from cafe_core.automation.browser_pool import CONTEXT_OPTIONS, ProfilePool
from cafe_core.automation.naver_cafe import NaverCafeClient


def _context() -> MagicMock:
    context = MagicMock()
    context.pages = []
    context.close = AsyncMock()
    context.new_page = AsyncMock()

    async def storage_state(path):
        Path(path).write_text("{}", encoding="utf-8")

    context.storage_state = AsyncMock(side_effect=storage_state)
    return context


class FakeDriver:
    """async_playwright() stand-in recording launches."""

    def __init__(self):
        self.started = 0
        self.stop = AsyncMock()
        self.browsers: list[MagicMock] = []
        self.chromium = MagicMock()
        self.chromium.launch = AsyncMock(side_effect=self._launch)

    async def _launch(self, **kwargs):
        browser = MagicMock()
        browser.launch_kwargs = kwargs
        browser.is_connected = MagicMock(return_value=True)
        browser.close = AsyncMock()
        browser.new_context = AsyncMock(side_effect=lambda **kw: _context())
        self.browsers.append(browser)
        return browser

    async def start(self):
        self.started += 1
        return self


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def pool(tmp_path, driver) -> ProfilePool:
    return ProfilePool(
        profiles_path=str(tmp_path / "profiles"),
        screenshots_path=str(tmp_path / "screenshots"),
        artifacts_path=str(tmp_path / "artifacts"),
        playwright_factory=lambda: driver,
    )


class TestContexts:
    """Tests for context creation and caching."""

    @pytest.mark.asyncio
    async def test_context_is_cached_per_profile(self, pool, driver):
        first = await pool.get_context("profile-1")
        again = await pool.get_context("profile-1")
        other = await pool.get_context("profile-2")

        assert first is again
        assert other is not first
        assert driver.started == 1
        assert len(driver.browsers) == 1
        assert driver.browsers[0].launch_kwargs["headless"] is True

    @pytest.mark.asyncio
    async def test_new_profile_has_no_state(self, pool, driver):
        await pool.get_context("profile-1")

        kwargs = driver.browsers[0].new_context.await_args.kwargs
        assert kwargs["storage_state"] is None
        assert kwargs["locale"] == CONTEXT_OPTIONS["locale"]
        assert kwargs["timezone_id"] == "Asia/Seoul"

    @pytest.mark.asyncio
    async def test_saved_state_is_restored(self, pool, driver):
        state = pool.state_path("profile-1")
        state.parent.mkdir(parents=True)
        state.write_text("{}", encoding="utf-8")

        await pool.get_context("profile-1")

        assert driver.browsers[0].new_context.await_args.kwargs["storage_state"] == str(state)

    @pytest.mark.asyncio
    async def test_headed_request_recreates_context(self, pool, driver):
        headless_context = await pool.get_context("profile-1")
        headed_context = await pool.get_context("profile-1", headed=True)

        assert headed_context is not headless_context
        headless_context.storage_state.assert_awaited_once()
        headless_context.close.assert_awaited_once()
        assert [b.launch_kwargs["headless"] for b in driver.browsers] == [True, False]
        assert driver.browsers[1].launch_kwargs["slow_mo"] == 100

    @pytest.mark.asyncio
    async def test_disconnected_browser_is_relaunched(self, pool, driver):
        await pool.get_context("profile-1")
        driver.browsers[0].is_connected.return_value = False

        await pool.get_context("profile-2")

        assert len(driver.browsers) == 2
        assert driver.started == 1


class TestSaveAndClose:
    """Tests for saving and closing contexts."""

    @pytest.mark.asyncio
    async def test_save_context_writes_state(self, pool):
        await pool.get_context("profile-1")

        path = await pool.save_context("profile-1")

        assert path == str(pool.state_path("profile-1"))
        assert Path(path).exists()

    @pytest.mark.asyncio
    async def test_save_unknown_profile(self, pool):
        assert await pool.save_context("missing") is None

    @pytest.mark.asyncio
    async def test_close_context_saves_and_evicts(self, pool):
        context = await pool.get_context("profile-1")

        await pool.close_context("profile-1")

        assert not pool.has_context("profile-1")
        context.storage_state.assert_awaited_once()
        context.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_all_keeps_going_after_errors(self, pool, driver):
        broken = await pool.get_context("profile-1")
        broken.storage_state.side_effect = PlaywrightError("Target closed")
        healthy = await pool.get_context("profile-2")

        await pool.close_all()

        broken.close.assert_awaited_once()
        healthy.close.assert_awaited_once()
        driver.browsers[0].close.assert_awaited_once()
        driver.stop.assert_awaited_once()
        assert not pool.has_context("profile-1")
        assert not pool.has_context("profile-2")


class TestClient:
    """Tests for the scoped client."""

    @pytest.mark.asyncio
    async def test_client_closes_only_its_page(self, pool):
        async with pool.client("profile-1") as client:
            assert isinstance(client, NaverCafeClient)
            assert client.selector_timeout_ms == pool.selector_timeout_ms
            page = MagicMock()
            page.is_closed = MagicMock(return_value=False)
            page.close = AsyncMock()
            client._page = page

        page.close.assert_awaited_once()
        assert pool.has_context("profile-1")


class TestDiagnostics:
    """Tests for screenshots and HTML snapshots."""

    @pytest.mark.asyncio
    async def test_no_page_no_artifact(self, pool):
        await pool.get_context("profile-1")

        assert await pool.save_screenshot("profile-1", "publish failure") is None
        assert await pool.save_html_snapshot("missing", "publish failure") is None

    @pytest.mark.asyncio
    async def test_screenshot_and_html(self, pool, tmp_path):
        context = await pool.get_context("profile-1")
        page = MagicMock()
        page.screenshot = AsyncMock()
        page.content = AsyncMock(return_value="<html>게시판</html>")
        context.pages = [page]

        shot = await pool.save_screenshot("profile-1", "create post/7")
        html = await pool.save_html_snapshot("profile-1", "create post/7")

        assert shot.startswith(str(tmp_path / "screenshots"))
        assert Path(shot).name.startswith("create_post_7-")
        assert page.screenshot.await_args.kwargs == {"path": shot, "full_page": True}
        assert Path(html).read_text(encoding="utf-8") == "<html>게시판</html>"
