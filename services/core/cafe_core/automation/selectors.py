"""Selector registry for Naver Cafe pages.

Naver changes class names and markup often, so every logical UI target is an
ordered tuple of candidate selectors. Lookups try the candidates in priority
order and return the first match. Fix drift by editing SELECTORS, not the
code that uses it.
"""

import asyncio
import logging
from typing import Any, Iterable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.2
DEFAULT_FIND_TIMEOUT_MS = 5000
DEFAULT_WAIT_TIMEOUT_MS = 10000


SELECTORS: dict[str, tuple[str, ...]] = {
    # -------------------------------------------------------------------------
    # naver.com main page
    # -------------------------------------------------------------------------
    "MAIN_LOGIN_LINK": (
        ".MyView-module__link_login___HpHMW",
        'a[class*="link_login"]',
        'a[href*="nidlogin.login"]',
    ),
    "MAIN_NICKNAME": (
        ".MyView-module__nickname___fcxwI",
        '[class*="MyView-module__nickname"]',
        '[class*="nickname"]',
        ".user_name",
    ),
    # -------------------------------------------------------------------------
    # Login page (nid.naver.com)
    # -------------------------------------------------------------------------
    "LOGIN_ID_INPUT": (
        "input#id",
        'input[name="id"]',
        'input[autocomplete="username"]',
    ),
    "LOGIN_PW_INPUT": (
        "input#pw",
        'input[name="pw"]',
        'input[type="password"]',
    ),
    "LOGIN_SUBMIT": (
        "button#log\\.login",
        "button.btn_login",
        'button[type="submit"]',
    ),
    "LOGIN_ERROR": (
        "#err_common .error_message",
        "#err_common",
        ".error_message",
    ),
    "LOGIN_CAPTCHA": (
        "#captcha",
        "#captchaimg",
        'input[name="captcha"]',
        '[class*="captcha"]',
    ),
    "LOGIN_OTP": (
        'input[name="otp"]',
        "#otp",
        '[class*="otp_area"]',
        '[class*="two_step"]',
    ),
    "LOGIN_DEVICE_CONFIRM": (
        "#new\\.save",
        "#new\\.dontsave",
        '[class*="new_device"]',
        'form[action*="deviceConfirm"]',
    ),
    # -------------------------------------------------------------------------
    # Article editor
    # -------------------------------------------------------------------------
    "WRITE_TITLE": (
        # New editor (textarea)
        "textarea.textarea_input",
        'textarea[placeholder*="제목"]',
        ".editor_title textarea",
        ".ArticleWriteTitle textarea",
        # Old editor (input)
        "input.input_title",
        'input[placeholder*="제목"]',
        'input[name="subject"]',
        ".ArticleWriteTitle input",
        '[class*="titleArea"] input',
        '[class*="title_area"] input',
        '[class*="title"] input[type="text"]',
        "#subject",
        ".write_title input",
        '[class*="Title"] input',
        '[class*="Title"] textarea',
    ),
    "WRITE_EDITOR_FRAME": (
        "iframe.se-frame",
        'iframe[src*="smarteditor"]',
        ".se-container iframe",
        ".se-component-content iframe",
        "#editorArea iframe",
        'iframe[id*="editor"]',
    ),
    "WRITE_EDITOR_BODY": (
        ".se-component.se-text .se-text-paragraph",
        ".se-content",
        ".se-component-content",
        '[contenteditable="true"]',
        ".ProseMirror",
        '[class*="editor"] [contenteditable="true"]',
    ),
    "WRITE_IMAGE_BUTTON": (
        'button[data-name="image"]',
        'button[data-log="image"]',
        ".se-toolbar-item-image",
        '[class*="image_btn"]',
        '[aria-label*="사진"]',
        '[aria-label*="이미지"]',
        '.se-toolbar button[class*="image"]',
        ".tool_image",
    ),
    "WRITE_FILE_INPUT": (
        'input[type="file"][accept*="image"]',
        'input[type="file"][multiple]',
        'input[type="file"]',
        '.se-image-uploader input[type="file"]',
    ),
    "WRITE_PRICE_INPUT": (
        'input[placeholder*="판매 가격"]',
        'input[placeholder*="가격"]',
        '[class*="ProductPrice"] input',
        '[class*="price"] input[type="text"]',
    ),
    "WRITE_TRADE_DIRECT": (
        'label:has-text("직거래")',
        'input[value="DIRECT"]',
        '[class*="trade"] button:has-text("직거래")',
    ),
    "WRITE_TRADE_DELIVERY": (
        'label:has-text("택배거래")',
        'input[value="DELIVERY"]',
        '[class*="trade"] button:has-text("택배")',
    ),
    "WRITE_TRADE_LOCATION": (
        'input[placeholder*="거래 지역"]',
        'input[placeholder*="지역"]',
        '[class*="TradeRegion"] input',
        '[class*="location"] input[type="text"]',
    ),
    # Green "등록" button, never the temporary-save one
    "WRITE_SUBMIT_BUTTON": (
        "a.BaseButton--skinGreen",
        'a[class*="skinGreen"]',
        '[class*="BaseButton--skinGreen"]',
        "button.BaseButton--green",
        "button.BaseButton--skinGreen",
        '[role="button"]:has(span.BaseButton__txt)',
        ".BaseButton:has(span.BaseButton__txt)",
        '[class*="submitBtn"]',
        "#writeFormBtn",
    ),
    # -------------------------------------------------------------------------
    # "My posts" page
    # -------------------------------------------------------------------------
    "MY_POSTS_LIST": (
        ".article-board",
        '[class*="ArticleList"]',
        ".board-list",
        "table.board",
    ),
    "MY_POSTS_ITEM": (
        ".article-board .inner_list",
        '[class*="ArticleItem"]',
        'li[class*="article"]',
        'tr[class*="article"]',
        "tr[data-article-id]",
    ),
    "MY_POSTS_TITLE_LINK": (
        ".article a",
        "a.article",
        'a[class*="article"]',
        ".board-list a.title",
        "td.title a",
    ),
    # -------------------------------------------------------------------------
    # Article deletion
    # -------------------------------------------------------------------------
    "DELETE_BUTTON": (
        'button:has-text("삭제")',
        'a:has-text("삭제")',
        '[class*="delete"]',
        '[class*="Delete"]',
        ".article_btn .del",
        '[aria-label*="삭제"]',
    ),
    "DELETE_CONFIRM": (
        'button:has-text("확인")',
        'button:has-text("삭제")',
        ".btn_confirm",
        '[class*="confirm"]',
        "button.BaseButton--confirm",
    ),
    # -------------------------------------------------------------------------
    # Shared
    # -------------------------------------------------------------------------
    "LOADING_SPINNER": (
        ".loading",
        '[class*="spinner"]',
        '[class*="Spinner"]',
        ".se-loading",
    ),
    "ERROR_MESSAGE": (
        ".error_message",
        ".err_msg",
        '[class*="error"]',
        '[role="alert"]',
    ),
}


def candidates(key: str) -> tuple[str, ...]:
    """Candidate selectors for a logical target, in priority order."""
    try:
        return SELECTORS[key]
    except KeyError:
        raise KeyError(f"Unknown selector key: {key}") from None


async def first_match(root: Any, selectors: Iterable[str]) -> tuple[Optional[Any], Optional[str]]:
    """One pass over the candidates against a page, frame or element."""
    for selector in selectors:
        try:
            element = await root.query_selector(selector)
        except PlaywrightError:
            # Unsupported syntax or a navigation in progress
            continue
        if element:
            return element, selector
    return None, None


async def find_element(
    page: Any,
    key: str,
    timeout_ms: int = DEFAULT_FIND_TIMEOUT_MS,
) -> Optional[Any]:
    """Poll the candidates of `key` until one matches or the timeout elapses.

    Returns:
        The element of the highest-priority matching candidate, or None
        once the whole window passed without any match.
    """
    selectors = candidates(key)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000.0

    while True:
        element, selector = await first_match(page, selectors)
        if element is not None:
            logger.debug("Selector matched", extra={"selector_key": key, "selector": selector})
            return element

        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(POLL_INTERVAL_SECONDS, remaining))

    logger.warning(
        "No selector matched for %s",
        key,
        extra={"selector_key": key, "candidates": list(selectors), "timeout_ms": timeout_ms},
    )
    return None


async def find_elements(page: Any, key: str) -> list[Any]:
    """All elements of the first candidate that matches anything (no polling)."""
    for selector in candidates(key):
        try:
            elements = await page.query_selector_all(selector)
        except PlaywrightError:
            continue
        if elements:
            logger.debug(
                "Selector matched elements",
                extra={"selector_key": key, "selector": selector, "count": len(elements)},
            )
            return list(elements)
    return []


async def wait_for_element(
    page: Any,
    key: str,
    timeout_ms: int = DEFAULT_WAIT_TIMEOUT_MS,
) -> Optional[Any]:
    """Wait once on the union of all candidates, then resolve the best match."""
    selectors = candidates(key)
    try:
        await page.wait_for_selector(", ".join(selectors), timeout=timeout_ms)
    except PlaywrightTimeoutError:
        logger.warning(
            "Timed out waiting for %s",
            key,
            extra={"selector_key": key, "candidates": list(selectors), "timeout_ms": timeout_ms},
        )
        return None
    return await find_element(page, key, timeout_ms=1000)


async def find_in_frame(
    page: Any,
    frame_key: str,
    content_key: str,
    timeout_ms: int = DEFAULT_FIND_TIMEOUT_MS,
) -> Optional[Any]:
    """Resolve a frame among the frame candidates, then content inside it."""
    frame_selectors = candidates(frame_key)
    content_selectors = candidates(content_key)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_ms / 1000.0

    while True:
        for frame_selector in frame_selectors:
            try:
                frame_element = await page.query_selector(frame_selector)
                frame = await frame_element.content_frame() if frame_element else None
            except PlaywrightError:
                continue
            if frame is None:
                continue

            element, selector = await first_match(frame, content_selectors)
            if element is not None:
                logger.debug(
                    "Frame selector matched",
                    extra={"frame_selector": frame_selector, "selector": selector},
                )
                return element

        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        await asyncio.sleep(min(POLL_INTERVAL_SECONDS, remaining))

    logger.warning(
        "No frame content matched for %s > %s",
        frame_key,
        content_key,
        extra={"frame_candidates": list(frame_selectors), "candidates": list(content_selectors)},
    )
    return None


async def selector_report(page: Any, keys: Optional[Iterable[str]] = None) -> dict[str, Optional[str]]:
    """Which candidate currently matches for each key (debugging UI drift)."""
    report: dict[str, Optional[str]] = {}
    for key in keys or SELECTORS.keys():
        _, selector = await first_match(page, candidates(key))
        report[key] = selector
    return report
