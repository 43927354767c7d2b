"""Naver Cafe client on top of a Playwright browser context.

Methods report outcomes as result objects (LoginResult, PublishResult)
instead of raising; callers decide what a failed outcome means for the job.
Navigation and selector waits are always bounded by a timeout.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import urljoin

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from cafe_core.automation import selectors
from cafe_core.domain.errors import ErrorCode
from cafe_core.infrastructure.login_signals import ABORT, DONE

logger = logging.getLogger(__name__)

NAVER_MAIN_URL = "https://www.naver.com"
NAVER_MAIN_URL_GLOB = "https://www.naver.com/**"
CAFE_BASE_URL = "https://cafe.naver.com"
LOGIN_URL = "https://nid.naver.com/nidlogin.login"

ARTICLE_ID_PATTERNS = (
    re.compile(r"articleid=(\d+)", re.IGNORECASE),
    re.compile(r"/articles/(\d+)"),
)


def my_posts_url(cafe_id: str) -> str:
    return f"{CAFE_BASE_URL}/ca-fe/cafes/{cafe_id}/articles/mine"


def write_url(cafe_id: str, board_id: str) -> str:
    return f"{CAFE_BASE_URL}/ca-fe/cafes/{cafe_id}/menus/{board_id}/articles/write"


def parse_article_id(url: str) -> Optional[str]:
    for pattern in ARTICLE_ID_PATTERNS:
        match = pattern.search(url or "")
        if match:
            return match.group(1)
    return None


class LoginStatus(str):
    SUCCESS = "SUCCESS"
    CHALLENGE = "CHALLENGE"
    FAILED = "FAILED"


@dataclass
class LoginResult:
    status: str
    message: Optional[str] = None
    challenge: Optional[str] = None  # captcha, otp or new_device

    @property
    def ok(self) -> bool:
        return self.status == LoginStatus.SUCCESS


@dataclass
class PostDraft:
    cafe_id: str
    board_id: str
    title: str
    content: str
    image_paths: list[str] = field(default_factory=list)
    price: Optional[int] = None
    trade_method: Optional[str] = None  # DIRECT, DELIVERY or BOTH
    trade_location: Optional[str] = None


@dataclass
class PublishResult:
    success: bool
    article_url: Optional[str] = None
    article_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class SyncedPost:
    cafe_id: str
    article_id: str
    article_url: str
    title: str
    board_id: str = ""


class NaverCafeClient:
    """Login, publishing and post listing against one browser context.

    The client owns only its page; closing it never touches the context or
    the persisted profile.
    """

    CHALLENGE_KEYS = (
        ("captcha", "LOGIN_CAPTCHA"),
        ("otp", "LOGIN_OTP"),
        ("new_device", "LOGIN_DEVICE_CONFIRM"),
    )

    def __init__(
        self,
        context: Any,
        selector_timeout_ms: int = selectors.DEFAULT_FIND_TIMEOUT_MS,
        navigation_timeout_ms: int = 30000,
    ):
        self.context = context
        self.selector_timeout_ms = selector_timeout_ms
        self.navigation_timeout_ms = navigation_timeout_ms
        self._page: Optional[Any] = None

    async def _get_page(self) -> Any:
        if self._page is None or self._page.is_closed():
            self._page = await self.context.new_page()
        return self._page

    async def _goto(self, url: str, wait_until: str = "domcontentloaded") -> Any:
        page = await self._get_page()
        await page.goto(url, wait_until=wait_until, timeout=self.navigation_timeout_ms)
        return page

    # -------------------------------------------------------------------------
    # Authentication
    # -------------------------------------------------------------------------

    async def is_logged_in(self) -> bool:
        """Probe naver.com: logged out iff the login link is present."""
        try:
            page = await self._goto(NAVER_MAIN_URL)
            login_links = await selectors.find_elements(page, "MAIN_LOGIN_LINK")
            return not login_links
        except PlaywrightError:
            logger.warning("Login probe failed", exc_info=True)
            return False

    async def login(self, login_id: str, password: str) -> LoginResult:
        """Fill the credential form and classify what the site answered."""
        try:
            page = await self._goto(LOGIN_URL)

            id_input = await selectors.wait_for_element(page, "LOGIN_ID_INPUT", self.selector_timeout_ms)
            pw_input = await selectors.find_element(page, "LOGIN_PW_INPUT", self.selector_timeout_ms)
            if id_input is None or pw_input is None:
                return LoginResult(LoginStatus.FAILED, "Login form not found")

            await id_input.fill(login_id)
            await pw_input.fill(password)

            submit = await selectors.find_element(page, "LOGIN_SUBMIT", self.selector_timeout_ms)
            if submit is not None:
                await submit.click()
            else:
                await pw_input.press("Enter")

            try:
                await page.wait_for_url(NAVER_MAIN_URL_GLOB, timeout=self.selector_timeout_ms * 2)
                return LoginResult(LoginStatus.SUCCESS)
            except PlaywrightTimeoutError:
                pass

            return await self._classify_login_page(page)
        except PlaywrightError as exc:
            return LoginResult(LoginStatus.FAILED, f"Login flow error: {exc}")

    async def _classify_login_page(self, page: Any) -> LoginResult:
        for challenge, key in self.CHALLENGE_KEYS:
            if await selectors.find_elements(page, key):
                return LoginResult(
                    LoginStatus.CHALLENGE,
                    f"Login requires manual verification ({challenge})",
                    challenge=challenge,
                )

        errors = await selectors.find_elements(page, "LOGIN_ERROR")
        if errors:
            text = (await errors[0].text_content() or "").strip()
            return LoginResult(LoginStatus.FAILED, text or "Login rejected")

        if await self.is_logged_in():
            return LoginResult(LoginStatus.SUCCESS)
        return LoginResult(LoginStatus.FAILED, "Login did not complete")

    async def wait_for_manual_login(
        self,
        timeout_seconds: float,
        poll_seconds: float = 2.0,
        signal: Optional[Callable[[], Optional[str]]] = None,
    ) -> bool:
        """Wait for an operator to finish login in the same browser.

        Ends when the page lands on naver.com, when `signal` returns
        "done" (re-check now) or "abort", or when the timeout elapses.
        """
        page = await self._get_page()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("Manual login wait timed out", extra={"timeout_seconds": timeout_seconds})
                return False

            action = signal() if signal else None
            if action == ABORT:
                logger.info("Manual login aborted by operator")
                return False
            if action == DONE:
                return await self.is_logged_in()

            try:
                await page.wait_for_url(
                    NAVER_MAIN_URL_GLOB,
                    timeout=int(min(poll_seconds, remaining) * 1000),
                )
                return await self.is_logged_in()
            except PlaywrightTimeoutError:
                continue

    async def fetch_nickname(self) -> Optional[str]:
        """Nickname shown on naver.com for the logged-in account."""
        page = await self._goto(NAVER_MAIN_URL)
        element = await selectors.find_element(page, "MAIN_NICKNAME", self.selector_timeout_ms)
        if element is None:
            return None
        text = (await element.text_content() or "").strip()
        return text or None

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def create_post(self, draft: PostDraft) -> PublishResult:
        """Open the editor, fill the article and submit it."""
        try:
            page = await self._goto(write_url(draft.cafe_id, draft.board_id), wait_until="networkidle")

            title_input = await selectors.wait_for_element(page, "WRITE_TITLE")
            if title_input is None:
                return PublishResult(False, error="Title field not found", error_code=ErrorCode.UI_CHANGED)
            await title_input.fill(draft.title)

            if not await self._fill_body(page, draft.content):
                return PublishResult(False, error="Editor body not found", error_code=ErrorCode.UI_CHANGED)

            if draft.image_paths and not await self._attach_images(page, draft.image_paths):
                return PublishResult(False, error="Image upload failed", error_code=ErrorCode.UPLOAD_FAILED)

            await self._fill_trade_fields(page, draft)

            submit = await selectors.find_element(page, "WRITE_SUBMIT_BUTTON", self.selector_timeout_ms)
            if submit is None:
                return PublishResult(False, error="Submit button not found", error_code=ErrorCode.UI_CHANGED)
            await submit.click()

            try:
                await page.wait_for_url(
                    re.compile(r".*(/articles/\d+|articleid=\d+).*", re.IGNORECASE),
                    timeout=self.navigation_timeout_ms,
                )
            except PlaywrightTimeoutError:
                return PublishResult(
                    False,
                    error="Article page did not open after submit",
                    error_code=ErrorCode.PUBLISH_FAILED,
                )

            article_url = page.url
            logger.info("Article published", extra={"article_url": article_url, "cafe_id": draft.cafe_id})
            return PublishResult(True, article_url=article_url, article_id=parse_article_id(article_url))
        except PlaywrightTimeoutError as exc:
            return PublishResult(False, error=f"Timed out while publishing: {exc}", error_code=ErrorCode.TIMEOUT)
        except PlaywrightError as exc:
            return PublishResult(False, error=f"Browser error while publishing: {exc}", error_code=ErrorCode.UNKNOWN)

    async def _fill_body(self, page: Any, content: str) -> bool:
        body = await selectors.find_in_frame(
            page, "WRITE_EDITOR_FRAME", "WRITE_EDITOR_BODY", timeout_ms=1000
        )
        if body is None:
            body = await selectors.find_element(page, "WRITE_EDITOR_BODY", self.selector_timeout_ms)
        if body is None:
            return False

        await body.click()
        # SmartEditor ignores fill(); type line by line so paragraphs survive
        for index, line in enumerate(content.split("\n")):
            if index:
                await page.keyboard.press("Enter")
            if line:
                await page.keyboard.type(line)
        return True

    async def _attach_images(self, page: Any, image_paths: list[str]) -> bool:
        button = await selectors.find_element(page, "WRITE_IMAGE_BUTTON", self.selector_timeout_ms)
        if button is not None:
            try:
                async with page.expect_file_chooser(timeout=self.selector_timeout_ms) as chooser_info:
                    await button.click()
                chooser = await chooser_info.value
                await chooser.set_files(image_paths)
                return await self._wait_uploads_done(page)
            except PlaywrightTimeoutError:
                logger.info("No file chooser opened, falling back to file input")

        file_input = await selectors.find_element(page, "WRITE_FILE_INPUT", self.selector_timeout_ms)
        if file_input is None:
            return False
        await file_input.set_input_files(image_paths)
        return await self._wait_uploads_done(page)

    async def _wait_uploads_done(self, page: Any) -> bool:
        spinner = ", ".join(selectors.candidates("LOADING_SPINNER"))
        try:
            await page.wait_for_selector(spinner, state="detached", timeout=self.navigation_timeout_ms)
        except PlaywrightTimeoutError:
            return False
        return True

    async def _fill_trade_fields(self, page: Any, draft: PostDraft) -> None:
        # Trade fields exist only on marketplace boards
        if draft.price is not None:
            price_input = await selectors.find_element(page, "WRITE_PRICE_INPUT", 1000)
            if price_input is not None:
                await price_input.fill(str(draft.price))

        if draft.trade_method in ("DIRECT", "BOTH"):
            direct = await selectors.find_element(page, "WRITE_TRADE_DIRECT", 1000)
            if direct is not None:
                await direct.click()
        if draft.trade_method in ("DELIVERY", "BOTH"):
            delivery = await selectors.find_element(page, "WRITE_TRADE_DELIVERY", 1000)
            if delivery is not None:
                await delivery.click()

        if draft.trade_location:
            location = await selectors.find_element(page, "WRITE_TRADE_LOCATION", 1000)
            if location is not None:
                await location.fill(draft.trade_location)

    # -------------------------------------------------------------------------
    # Listing
    # -------------------------------------------------------------------------

    async def sync_my_posts(self, cafe_id: str) -> list[SyncedPost]:
        """Articles authored by the logged-in account in one cafe."""
        page = await self._goto(my_posts_url(cafe_id), wait_until="networkidle")

        if await selectors.wait_for_element(page, "MY_POSTS_LIST") is None:
            logger.info("My posts list not found", extra={"cafe_id": cafe_id})
            return []

        posts = []
        for item in await selectors.find_elements(page, "MY_POSTS_ITEM"):
            link, _ = await selectors.first_match(item, selectors.candidates("MY_POSTS_TITLE_LINK"))
            if link is None:
                continue

            href = await link.get_attribute("href") or ""
            article_id = parse_article_id(href)
            if not article_id:
                continue

            title = (await link.text_content() or "").strip()
            posts.append(
                SyncedPost(
                    cafe_id=cafe_id,
                    article_id=article_id,
                    article_url=urljoin(CAFE_BASE_URL, href),
                    title=title,
                )
            )

        logger.info("Synced my posts", extra={"cafe_id": cafe_id, "count": len(posts)})
        return posts

    async def close(self) -> None:
        if self._page is not None and not self._page.is_closed():
            await self._page.close()
        self._page = None
