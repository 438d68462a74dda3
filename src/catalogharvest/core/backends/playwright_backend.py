"""
Playwright Backend implementation for browser rendering.

Provides async browser-based fetching with:
- JavaScript rendering for catalogs that build pages client-side
- A single reused page per backend (items are fetched one at a time)
- Attachment downloads through the browser context's request API
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

from .base import (
    Backend,
    BackendError,
    BinaryResult,
    BlockedError,
    FetchResult,
    RenderError,
    RequestSpec,
)
from .http_backend import BLOCKED_INDICATORS, BLOCKED_STATUS_CODES, DEFAULT_USER_AGENT

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright

logger = logging.getLogger(__name__)


class NavigationTimeout(RenderError):
    """Page didn't load in time."""
    pass


class PlaywrightBackend(Backend):
    """Playwright-based headless Chromium backend."""

    def __init__(
        self,
        headless: bool = True,
        timeout: float = 30.0,
        user_agent: str | None = None,
        viewport_width: int = 1920,
        viewport_height: int = 1080,
    ):
        """Initialize Playwright backend.

        Args:
            headless: Run browser in headless mode
            timeout: Default timeout in seconds
            user_agent: Custom user agent string
            viewport_width: Browser viewport width
            viewport_height: Browser viewport height
        """
        self.headless = headless
        self.timeout = timeout
        self.timeout_ms = int(timeout * 1000)
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height

        # Playwright objects (initialized on first use)
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None

    @property
    def name(self) -> str:
        return "playwright"

    @property
    def supports_javascript(self) -> bool:
        return True

    async def open(self) -> None:
        """Launch the browser up front so launch failures surface early."""
        await self._ensure_context()

    async def _ensure_browser(self) -> None:
        """Initialize browser if not already running."""
        if self._browser is not None and self._browser.is_connected():
            return

        from playwright.async_api import async_playwright

        self._playwright = await async_playwright().start()

        try:
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=["--disable-blink-features=AutomationControlled", "--disable-dev-shm-usage"],
            )
        except Exception as e:
            await self._playwright.stop()
            self._playwright = None
            raise BackendError(
                "Failed to launch chromium browser. Run: playwright install chromium",
                cause=e,
            ) from e

        logger.info(f"Launched chromium browser (headless={self.headless})")

    async def _ensure_context(self) -> "BrowserContext":
        """Get or create the browser context."""
        await self._ensure_browser()

        if self._context is None:
            assert self._browser is not None
            self._context = await self._browser.new_context(
                viewport={"width": self.viewport_width, "height": self.viewport_height},
                user_agent=self.user_agent,
            )

        return self._context

    async def _get_page(self) -> "Page":
        """Get or create a page."""
        context = await self._ensure_context()

        if self._page is None or self._page.is_closed():
            self._page = await context.new_page()
            self._page.set_default_timeout(self.timeout_ms)

        return self._page

    async def fetch(self, request: RequestSpec) -> FetchResult:
        """Navigate to a URL and return the rendered markup."""
        page = await self._get_page()
        started = time.monotonic()

        try:
            response = await page.goto(
                request.url,
                timeout=int(request.timeout * 1000),
                wait_until="domcontentloaded",
            )
        except Exception as e:
            if "timeout" in str(e).lower():
                raise NavigationTimeout(
                    f"Navigation timeout: {request.url}",
                    url=request.url,
                    cause=e,
                ) from e
            raise RenderError(f"Browser error: {e}", url=request.url, cause=e) from e

        if response is None:
            raise NavigationTimeout(f"No response from {request.url}", url=request.url)

        html = await page.content()
        status_code = response.status

        if status_code in BLOCKED_STATUS_CODES:
            raise BlockedError(
                f"Request blocked with status {status_code}",
                url=request.url,
                status_code=status_code,
            )

        if len(html) < 50000:
            html_lower = html.lower()
            for indicator in BLOCKED_INDICATORS:
                if indicator in html_lower:
                    raise BlockedError(
                        f"Bot detection triggered: '{indicator}' found",
                        url=request.url,
                        status_code=status_code,
                    )

        return FetchResult(
            url=request.url,
            final_url=page.url,
            status_code=status_code,
            html=html,
            headers=dict(response.headers),
            elapsed_ms=(time.monotonic() - started) * 1000,
        )

    async def fetch_bytes(self, request: RequestSpec) -> BinaryResult:
        """Download an attachment through the browser context's cookies."""
        context = await self._ensure_context()

        try:
            response = await context.request.get(
                request.url,
                timeout=int(request.timeout * 1000),
            )
            content = await response.body()
        except Exception as e:
            raise RenderError(f"Download failed: {e}", url=request.url, cause=e) from e

        return BinaryResult(
            url=request.url,
            final_url=response.url,
            status_code=response.status,
            content=content,
            headers=dict(response.headers),
        )

    async def close(self) -> None:
        """Close browser and clean up resources."""
        if self._page and not self._page.is_closed():
            await self._page.close()
        self._page = None

        if self._context:
            await self._context.close()
            self._context = None

        if self._browser:
            await self._browser.close()
            self._browser = None

        if self._playwright:
            await self._playwright.stop()
            self._playwright = None

        logger.info("Playwright backend closed")

    async def __aenter__(self) -> "PlaywrightBackend":
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
