"""
Browser Session Manager

Owns the Playwright browser for one audit job and hands out one isolated
context per page visit. Navigation is bounded by a per-visit timeout and the
page and its context are closed on every exit path, so a failure on one page
never leaks into the next.

Timeout: 25s navigation + 10s network idle (configurable)
Output: PageVisit (loaded page handle, navigation signals and load filmstrip)
"""
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from playwright.async_api import Browser, Page
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from core.config import get_settings
from core.logging import get_logger

from .exceptions import NavigationError
from .page_capture import (
    STAGE_DOM_CONTENT_LOADED,
    STAGE_FULLY_LOADED,
    STAGE_NETWORK_IDLE,
    capture_filmstrip_frame,
)
from .schemas import FilmstripFrame
from .types import VIEWPORTS, DeviceType

logger = get_logger(__name__, domain="site_audit")

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-first-run",
    "--no-zygote",
]

DOM_SUMMARY_SCRIPT = """
() => {
    const meta = document.querySelector('meta[name="description"]');
    const canonical = document.querySelector('link[rel="canonical"]');
    return {
        title: document.title || '',
        metaDescription: meta ? meta.content : '',
        h1s: [...document.querySelectorAll('h1')].map((el) => (el.textContent || '').trim()),
        canonical: canonical ? canonical.href : '',
        lang: document.documentElement.lang || '',
    };
}
"""

MAX_CONSOLE_TEXT = 500
MAX_RESOURCE_URL = 300
FULLY_LOADED_DELAY_MS = 1000


@dataclass
class PageVisit:
    """A loaded, network-settled page plus what was observed while loading it"""

    page: Page
    url: str
    device: DeviceType
    status_code: Optional[int] = None
    final_url: Optional[str] = None
    ttfb_ms: int = 0
    headers: Dict[str, str] = field(default_factory=dict)
    console_errors: List[str] = field(default_factory=list)
    broken_resources: List[str] = field(default_factory=list)
    filmstrip: List[FilmstripFrame] = field(default_factory=list)

    async def content(self) -> str:
        return await self.page.content()

    async def dom_summary(self) -> Dict[str, Any]:
        return await self.page.evaluate(DOM_SUMMARY_SCRIPT)


class BrowserSessionManager:
    """
    Async context manager around a headless Chromium instance

    Usage:
        async with BrowserSessionManager() as browser:
            async with browser.visit(url, DeviceType.MOBILE) as visit:
                ...
    """

    def __init__(
        self,
        page_timeout_ms: Optional[int] = None,
        network_idle_timeout_ms: Optional[int] = None,
        headless: Optional[bool] = None,
        capture_filmstrip: Optional[bool] = None,
    ):
        settings = get_settings()
        self.page_timeout_ms = page_timeout_ms or settings.audit_page_timeout_ms
        self.network_idle_timeout_ms = network_idle_timeout_ms or settings.audit_network_idle_timeout_ms
        self.headless = settings.browser_headless if headless is None else headless
        self.capture_filmstrip = settings.audit_page_screenshots if capture_filmstrip is None else capture_filmstrip
        self.filmstrip_quality = settings.audit_filmstrip_quality
        self.screenshot_timeout_ms = settings.audit_screenshot_timeout_ms
        self._playwright = None
        self._browser: Optional[Browser] = None

    async def __aenter__(self):
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
        except PlaywrightError:
            await self._playwright.stop()
            self._playwright = None
            raise
        logger.info("Playwright browser launched")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._browser:
            await self._browser.close()
            self._browser = None
            logger.debug("Browser closed")
        if self._playwright:
            await self._playwright.stop()
            self._playwright = None
            logger.debug("Playwright stopped")

    def _context_options(self, device: DeviceType) -> Dict[str, Any]:
        viewport = VIEWPORTS[device]
        options = {
            "viewport": {"width": viewport.width, "height": viewport.height},
            "ignore_https_errors": True,
        }
        if viewport.user_agent:
            options.update(
                user_agent=viewport.user_agent,
                is_mobile=viewport.is_mobile,
                has_touch=viewport.has_touch,
            )
        return options

    @asynccontextmanager
    async def visit(self, url: str, device: DeviceType = DeviceType.DESKTOP) -> AsyncIterator[PageVisit]:
        """
        Load ``url`` in a fresh context and yield the settled page

        Raises:
            NavigationError: on timeout, network failure or an error status
        """
        if self._browser is None:
            raise NavigationError(url, "browser session is not open")

        context = None
        page = None
        try:
            context = await self._browser.new_context(**self._context_options(device))
            page = await context.new_page()
            page.set_default_timeout(self.page_timeout_ms)

            visit = PageVisit(page=page, url=url, device=device)

            def on_console(message):
                if message.type == "error":
                    visit.console_errors.append(message.text[:MAX_CONSOLE_TEXT])

            def on_response(response):
                if response.status >= 400:
                    visit.broken_resources.append(f"{response.status} {response.url[:MAX_RESOURCE_URL]}")

            page.on("console", on_console)
            page.on("response", on_response)

            started = time.monotonic()
            try:
                response = await page.goto(url, wait_until="domcontentloaded", timeout=self.page_timeout_ms)
            except PlaywrightTimeoutError as e:
                raise NavigationError(url, f"timed out after {self.page_timeout_ms}ms") from e
            except PlaywrightError as e:
                raise NavigationError(url, str(e).splitlines()[0] if str(e) else "navigation failed") from e
            visit.ttfb_ms = int((time.monotonic() - started) * 1000)

            if response is not None:
                visit.status_code = response.status
                visit.final_url = response.url
                visit.headers = await response.all_headers()
                if response.status >= 400:
                    raise NavigationError(url, f"HTTP {response.status}", status_code=response.status)

            await self._film(visit, STAGE_DOM_CONTENT_LOADED)

            try:
                await page.wait_for_load_state("networkidle", timeout=self.network_idle_timeout_ms)
            except PlaywrightTimeoutError:
                # Long-polling pages never go idle; the DOM is already usable
                logger.debug(f"Network idle not reached for {url}")

            await self._film(visit, STAGE_NETWORK_IDLE)
            if self.capture_filmstrip:
                await page.wait_for_timeout(FULLY_LOADED_DELAY_MS)
                await self._film(visit, STAGE_FULLY_LOADED)

            yield visit
        finally:
            await self._close_quietly(page, context, url)

    async def _film(self, visit: PageVisit, stage: str) -> None:
        if not self.capture_filmstrip:
            return
        frame = await capture_filmstrip_frame(visit.page, stage, self.filmstrip_quality, self.screenshot_timeout_ms)
        if frame is not None:
            visit.filmstrip.append(frame)

    @staticmethod
    async def _close_quietly(page, context, url: str) -> None:
        for handle in (page, context):
            if handle is None:
                continue
            try:
                await handle.close()
            except PlaywrightError as e:
                logger.debug(f"Close failed after visiting {url}: {e}")
