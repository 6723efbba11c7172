"""Playwright browser worker used to render section and post pages."""

from __future__ import annotations

import logging
import random
from typing import Any, Dict, List, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from pages_worker.core.languages import locale_cookie_value
from pages_worker.core.urls import BASE_DOMAIN
from pages_worker.models import CrawlRequest

logger = logging.getLogger(__name__)

NAVIGATION_TIMEOUT_MS = 60000

MOBILE_USER_AGENTS = (
    "Mozilla/5.0 (Linux; Android 13; SM-A536B) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.6099.144 Mobile Safari/537.36",
    "Mozilla/5.0 (Linux; Android 12; Pixel 6) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/119.0.6045.193 Mobile Safari/537.36",
    "Mozilla/5.0 (Linux; Android 11; Redmi Note 9 Pro) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/118.0.5993.111 Mobile Safari/537.36",
)
DESKTOP_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/119.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/118.0.0.0 Safari/537.36",
)

# Media and tracking requests that are never needed to read page content.
BLOCKED_URL_PATTERNS = (
    ".woff",
    ".webp",
    ".mov",
    ".mpeg",
    ".mpg",
    ".mp4",
    ".woff2",
    ".ttf",
    ".ico",
    "scontent-",
    "scontent.fplu",
    "safe_image.php",
    "static_map.php",
    "ajax/bz",
)

HIDE_WEBDRIVER_SCRIPT = "Object.defineProperty(navigator, 'webdriver', { get: () => undefined });"


def pick_user_agent(mobile: bool) -> str:
    return random.choice(MOBILE_USER_AGENTS if mobile else DESKTOP_USER_AGENTS)


def _block_heavy_requests(route, request) -> None:
    if any(pattern in request.url for pattern in BLOCKED_URL_PATTERNS):
        route.abort()
    else:
        route.continue_()


class RenderedPage:
    """Read-only view over a loaded Playwright page."""

    def __init__(self, page, context) -> None:
        self._page = page
        self._context = context

    @property
    def url(self) -> str:
        return self._page.url

    def content(self) -> str:
        return self._page.content()

    def has_selector(self, selector: str) -> bool:
        return self._page.query_selector(selector) is not None

    def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        try:
            self._page.wait_for_selector(selector, timeout=timeout_ms, state="attached")
            return True
        except PlaywrightTimeoutError:
            return False

    def cookies(self) -> List[Dict[str, Any]]:
        return self._context.cookies()

    def close(self) -> None:
        self._context.close()


class BrowserWorker:
    """One Chromium instance owned by a single crawler thread.

    Playwright's sync API is bound to the thread that started it, so every
    worker thread creates, retires and closes its own browser.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        proxy_url: Optional[str] = None,
        language: str = "en-US",
        use_stealth: bool = False,
        navigation_timeout_ms: int = NAVIGATION_TIMEOUT_MS,
    ) -> None:
        self.headless = headless
        self.proxy_url = proxy_url
        self.language = language
        self.use_stealth = use_stealth
        self.navigation_timeout_ms = navigation_timeout_ms
        self._playwright = None
        self._browser = None

    def _ensure_browser(self) -> None:
        if self._playwright is None:
            self._playwright = sync_playwright().start()
        if self._browser is None:
            launch_options: Dict[str, Any] = {"headless": self.headless, "args": ["--disable-setuid-sandbox"]}
            if self.proxy_url:
                launch_options["proxy"] = {"server": self.proxy_url}
            self._browser = self._playwright.chromium.launch(**launch_options)

    def open(self, request: CrawlRequest, session=None, *, page_timeout_secs: int) -> RenderedPage:
        """Navigate to ``request.url`` with the viewport and identity the request asks for."""
        self._ensure_browser()

        use_mobile = bool(request.user_data.use_mobile)
        user_agent = pick_user_agent(use_mobile)
        request.user_data.user_agent = user_agent

        context = self._browser.new_context(
            user_agent=user_agent,
            viewport={"width": 360 if use_mobile else 1920, "height": 740 if use_mobile else 1080},
            is_mobile=use_mobile,
            has_touch=use_mobile,
            device_scale_factor=4 if use_mobile else 1,
        )
        cookies = [
            {"name": "locale", "value": locale_cookie_value(self.language), "domain": f".{BASE_DOMAIN}", "path": "/"}
        ]
        if session is not None and session.cookies:
            cookies.extend(session.cookies)
        context.add_cookies(cookies)
        if self.use_stealth:
            context.add_init_script(HIDE_WEBDRIVER_SCRIPT)
        context.route("**/*", _block_heavy_requests)

        page = context.new_page()
        page.set_default_timeout(page_timeout_secs * 1000)
        try:
            page.goto(request.url, wait_until="networkidle", timeout=self.navigation_timeout_ms)
        except PlaywrightError as exc:
            logger.error("Navigation failed for %s (%s): %s", request.url, request.to_payload()["userData"], exc)
            context.close()
            self.retire()
            raise
        return RenderedPage(page, context)

    def retire(self) -> None:
        """Drop the current browser so the next request starts a fresh instance."""
        if self._browser is not None:
            try:
                self._browser.close()
            except PlaywrightError as exc:
                logger.debug("Ignoring error while closing retired browser: %s", exc)
            self._browser = None
            logger.info("Retired browser instance")

    def close(self) -> None:
        self.retire()
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None

    def __enter__(self) -> "BrowserWorker":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        self.close()
