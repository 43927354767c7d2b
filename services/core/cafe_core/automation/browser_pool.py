"""Per-process pool of persistent browser profiles.

One Playwright driver per process, with a headless Chromium and (for DEBUG
runs) a headed one launched lazily. Each profile maps to one browser
context whose storage state lives at <profiles_path>/<profile_dir>/state.json.
The context map is private; callers go through acquire/save/close methods.
"""

import logging
import re
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from cafe_core.automation.naver_cafe import NaverCafeClient

logger = logging.getLogger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
]
HEADED_SLOW_MO_MS = 100

CONTEXT_OPTIONS = {
    "viewport": {"width": 1280, "height": 800},
    "user_agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "locale": "ko-KR",
    "timezone_id": "Asia/Seoul",
}

STATE_FILENAME = "state.json"


def _safe_label(label: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", label).strip("_") or "artifact"


class ProfilePool:
    """Cache of browser contexts keyed by profile directory."""

    def __init__(
        self,
        profiles_path: str,
        screenshots_path: str,
        artifacts_path: str,
        headless: bool = True,
        selector_timeout_ms: int = 5000,
        navigation_timeout_ms: int = 30000,
        playwright_factory: Callable[[], Any] = async_playwright,
    ):
        self.profiles_path = Path(profiles_path)
        self.screenshots_path = Path(screenshots_path)
        self.artifacts_path = Path(artifacts_path)
        self.headless = headless
        self.selector_timeout_ms = selector_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms
        self._playwright_factory = playwright_factory

        self._playwright: Optional[Any] = None
        self._browsers: dict[bool, Any] = {}
        self._contexts: dict[str, Any] = {}
        self._context_headed: dict[str, bool] = {}

    # -------------------------------------------------------------------------
    # Engine
    # -------------------------------------------------------------------------

    async def _browser(self, headed: bool) -> Any:
        browser = self._browsers.get(headed)
        if browser is not None and browser.is_connected():
            return browser

        if self._playwright is None:
            self._playwright = await self._playwright_factory().start()

        browser = await self._playwright.chromium.launch(
            headless=not headed,
            args=LAUNCH_ARGS,
            slow_mo=HEADED_SLOW_MO_MS if headed else 0,
        )
        self._browsers[headed] = browser
        logger.info("Browser launched", extra={"headed": headed})
        return browser

    def state_path(self, profile_dir: str) -> Path:
        return self.profiles_path / profile_dir / STATE_FILENAME

    # -------------------------------------------------------------------------
    # Contexts
    # -------------------------------------------------------------------------

    def has_context(self, profile_dir: str) -> bool:
        return profile_dir in self._contexts

    async def get_context(self, profile_dir: str, headed: bool = False) -> Any:
        """Cached context for a profile, created (with saved state) on first use.

        A DEBUG run needs a visible browser, so asking for a different mode
        than the cached context's saves and recreates it.
        """
        headed = headed or not self.headless

        context = self._contexts.get(profile_dir)
        if context is not None:
            if self._context_headed.get(profile_dir) == headed:
                return context
            await self.close_context(profile_dir)

        state_file = self.state_path(profile_dir)
        browser = await self._browser(headed)
        context = await browser.new_context(
            storage_state=str(state_file) if state_file.exists() else None,
            **CONTEXT_OPTIONS,
        )
        self._contexts[profile_dir] = context
        self._context_headed[profile_dir] = headed

        logger.info(
            "Browser context created",
            extra={"profile_dir": profile_dir, "restored": state_file.exists(), "headed": headed},
        )
        return context

    async def save_context(self, profile_dir: str) -> Optional[str]:
        """Write the context's cookies and storage to disk.

        Returns:
            The state file path, or None if the profile has no context.
        """
        context = self._contexts.get(profile_dir)
        if context is None:
            return None

        state_file = self.state_path(profile_dir)
        state_file.parent.mkdir(parents=True, exist_ok=True)
        await context.storage_state(path=str(state_file))
        logger.debug("Browser context saved", extra={"profile_dir": profile_dir})
        return str(state_file)

    async def close_context(self, profile_dir: str) -> None:
        """Save, close and evict one profile's context."""
        context = self._contexts.get(profile_dir)
        if context is None:
            return

        try:
            await self.save_context(profile_dir)
        finally:
            self._contexts.pop(profile_dir, None)
            self._context_headed.pop(profile_dir, None)
            await context.close()
        logger.info("Browser context closed", extra={"profile_dir": profile_dir})

    async def close_all(self) -> None:
        """Close every context, then the browsers and the driver."""
        for profile_dir in list(self._contexts):
            try:
                await self.close_context(profile_dir)
            except PlaywrightError:
                logger.error("Failed to close browser context", exc_info=True, extra={"profile_dir": profile_dir})

        for browser in list(self._browsers.values()):
            await browser.close()
        self._browsers.clear()

        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Browser pool closed")

    @asynccontextmanager
    async def client(self, profile_dir: str, headed: bool = False) -> AsyncIterator[NaverCafeClient]:
        """Scoped client for one profile; releases only its page on exit."""
        context = await self.get_context(profile_dir, headed=headed)
        client = NaverCafeClient(
            context,
            selector_timeout_ms=self.selector_timeout_ms,
            navigation_timeout_ms=self.navigation_timeout_ms,
        )
        try:
            yield client
        finally:
            await client.close()

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def _first_page(self, profile_dir: str) -> Optional[Any]:
        context = self._contexts.get(profile_dir)
        if context is None or not context.pages:
            return None
        return context.pages[0]

    async def save_screenshot(self, profile_dir: str, label: str) -> Optional[str]:
        """Full-page screenshot of the profile's first page."""
        page = self._first_page(profile_dir)
        if page is None:
            return None

        self.screenshots_path.mkdir(parents=True, exist_ok=True)
        path = self.screenshots_path / f"{_safe_label(label)}-{int(time.time() * 1000)}.png"
        await page.screenshot(path=str(path), full_page=True)
        logger.info("Screenshot saved", extra={"profile_dir": profile_dir, "path": str(path)})
        return str(path)

    async def save_html_snapshot(self, profile_dir: str, label: str) -> Optional[str]:
        """HTML of the profile's first page, for selector debugging."""
        page = self._first_page(profile_dir)
        if page is None:
            return None

        self.artifacts_path.mkdir(parents=True, exist_ok=True)
        path = self.artifacts_path / f"{_safe_label(label)}-{int(time.time() * 1000)}.html"
        path.write_text(await page.content(), encoding="utf-8")
        logger.info("HTML snapshot saved", extra={"profile_dir": profile_dir, "path": str(path)})
        return str(path)
