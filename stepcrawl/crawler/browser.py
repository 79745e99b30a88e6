"""
Browser page sessions.

The crawler only needs a small capability from a browser: navigate to a url and
wait for the network to settle, evaluate a DOM query, read the current location,
and close. Anything implementing BrowserSession can stand in for Playwright.
"""

import logging
from typing import Any, Optional

from playwright.async_api import async_playwright, Browser as PlaywrightBrowserHandle
from playwright.async_api import BrowserContext, Page, Playwright


# DOM queries evaluated in the page
TITLE_QUERY = "() => document.title"
BODY_HTML_QUERY = "() => document.body ? document.body.innerHTML : ''"
LINK_HREFS_QUERY = "() => Array.from(document.querySelectorAll('a')).map((a) => a.getAttribute('href'))"
LOCATION_QUERY = "() => document.location.href"


class BrowserSession:
    """Abstract page session."""

    async def navigate(self, url: str):
        """Load the url, returning once network activity has settled."""
        raise NotImplementedError

    async def evaluate(self, query: str) -> Any:
        """Evaluate a DOM query in the loaded page."""
        raise NotImplementedError

    def current_url(self) -> str:
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


class Browser:
    """Abstract source of independent page sessions."""

    async def start(self):
        pass

    async def open(self) -> BrowserSession:
        raise NotImplementedError

    async def close(self):
        pass

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class PlaywrightSession(BrowserSession):
    """One isolated browser context with a single page."""

    def __init__(self, context: BrowserContext, page: Page, navigation_timeout: int):
        self.context = context
        self.page = page
        self.navigation_timeout = navigation_timeout

    async def navigate(self, url: str):
        # Network idle is a reasonable sign that client side rendering and ajax calls are done
        await self.page.goto(url, wait_until='networkidle', timeout=self.navigation_timeout * 1000)

    async def evaluate(self, query: str) -> Any:
        return await self.page.evaluate(query)

    def current_url(self) -> str:
        return self.page.url

    async def close(self):
        await self.context.close()


class PlaywrightBrowser(Browser):
    """Headless Chromium shared by all sessions of one execution engine."""

    def __init__(self, user_agent: str, navigation_timeout: int = 60, headless: bool = True):
        self.user_agent = user_agent
        self.navigation_timeout = navigation_timeout
        self.headless = headless
        self.logger = logging.getLogger(__name__)

        self._playwright: Optional[Playwright] = None
        self._browser: Optional[PlaywrightBrowserHandle] = None

    async def start(self):
        if self._browser is not None:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=[
                "--disable-gpu",
                "--no-sandbox",
                "--disable-dev-shm-usage",
            ],
        )
        self.logger.info("Chromium browser started")

    async def open(self) -> BrowserSession:
        if self._browser is None:
            raise RuntimeError("PlaywrightBrowser not started")
        context = await self._browser.new_context(
            user_agent=self.user_agent,
            ignore_https_errors=True,
        )
        try:
            page = await context.new_page()
        except Exception:
            await context.close()
            raise
        return PlaywrightSession(context, page, self.navigation_timeout)

    async def close(self):
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
            self.logger.info("Chromium browser closed")
