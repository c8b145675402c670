"""Headless browser rendering for JavaScript-built listing pages."""

import asyncio
import logging
from typing import Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    ElementHandle as PlaywrightElementHandle,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from price_tracker.config import settings
from price_tracker.errors import PageTimeoutError, RenderError
from price_tracker.ingest.base import ElementHandle, PageHandle, RenderSession, Renderer

logger = logging.getLogger(__name__)


# Browser launch args that keep Chromium stable inside containers
BROWSER_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-infobars",
    "--disable-extensions",
]

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class PlaywrightElement(ElementHandle):
    def __init__(self, element: PlaywrightElementHandle):
        self._element = element

    async def attribute(self, name: str) -> Optional[str]:
        try:
            return await self._element.get_attribute(name)
        except PlaywrightError as e:
            raise RenderError(f"Failed to read attribute {name!r}: {e}") from e


class PlaywrightPage(PageHandle):
    """A single browser tab."""

    def __init__(self, page: Page):
        self._page = page

    async def wait_for_selector(self, selector: str, timeout: float) -> None:
        try:
            await self._page.wait_for_selector(selector, timeout=timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise PageTimeoutError(f"selector {selector!r} on {self._page.url}", timeout) from e
        except PlaywrightError as e:
            raise RenderError(f"Waiting for {selector!r} failed: {e}") from e

    async def query_all(self, selector: str) -> list[ElementHandle]:
        try:
            elements = await self._page.query_selector_all(selector)
        except PlaywrightError as e:
            raise RenderError(f"Query {selector!r} failed: {e}") from e
        return [PlaywrightElement(element) for element in elements]

    async def close(self) -> None:
        try:
            await self._page.close()
        except PlaywrightError as e:
            # Page already gone along with its browser
            logger.debug(f"Error closing page: {e}")


class PlaywrightSession(RenderSession):
    """One Chromium browser with a single context; pages are independent tabs."""

    def __init__(self, browser: Browser, context: BrowserContext):
        self._browser = browser
        self._context = context

    async def open_page(self, url: str, timeout: float) -> PageHandle:
        try:
            page = await self._context.new_page()
        except PlaywrightError as e:
            raise RenderError(f"Failed to open page for {url}: {e}") from e

        try:
            await page.goto(url, timeout=timeout * 1000, wait_until="domcontentloaded")
        except PlaywrightTimeoutError as e:
            await _close_quietly(page)
            raise PageTimeoutError(f"navigation to {url}", timeout) from e
        except PlaywrightError as e:
            await _close_quietly(page)
            raise RenderError(f"Navigation to {url} failed: {e}") from e

        return PlaywrightPage(page)

    def is_alive(self) -> bool:
        return self._browser.is_connected()

    async def close(self) -> None:
        try:
            await self._context.close()
        except PlaywrightError as e:
            logger.debug(f"Error closing browser context: {e}")
        try:
            await self._browser.close()
        except PlaywrightError as e:
            logger.debug(f"Error closing browser: {e}")


class PlaywrightRenderer(Renderer):
    """Playwright driver process; every session is its own Chromium instance."""

    def __init__(self, headless: Optional[bool] = None):
        self.headless = settings.headless if headless is None else headless
        self._playwright: Optional[Playwright] = None

    async def start(self) -> None:
        if self._playwright is not None:
            return
        try:
            self._playwright = await async_playwright().start()
        except Exception as e:
            raise RenderError(f"Playwright driver unavailable: {e}") from e
        logger.info("Playwright driver started")

    async def open_session(self) -> RenderSession:
        if self._playwright is None:
            raise RenderError("Renderer not started")
        try:
            browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=BROWSER_ARGS,
            )
            context = await browser.new_context(
                user_agent=USER_AGENT,
                viewport={"width": 1366, "height": 900},
                locale="pt-BR",
            )
        except PlaywrightError as e:
            raise RenderError(f"Failed to launch browser: {e}") from e

        logger.debug("Launched browser session")
        return PlaywrightSession(browser, context)

    async def close(self) -> None:
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.error(f"Error stopping playwright: {e}")
            self._playwright = None


async def _close_quietly(page: Page) -> None:
    try:
        await page.close()
    except PlaywrightError:
        pass


class SessionSupervisor:
    """
    Owns the browser session shared by one batch of search entries.

    The session is opened lazily. When it crashes, the next caller gets a
    fresh session instead of an error, so a crash only takes down the pages
    that were open on the dead browser. Restarts are bounded per batch.
    """

    def __init__(
        self,
        renderer: Renderer,
        max_restarts: Optional[int] = None,
        label: str = "batch",
    ):
        self.renderer = renderer
        self.max_restarts = (
            settings.render_max_session_restarts if max_restarts is None else max_restarts
        )
        self.label = label
        self.restarts = 0
        self._session: Optional[RenderSession] = None
        self._lock = asyncio.Lock()

    async def get(self) -> RenderSession:
        """
        Return a live session, launching or replacing it as needed.

        Raises:
            RenderError: If the restart budget is exhausted or launching fails
        """
        async with self._lock:
            if self._session is not None and self._session.is_alive():
                return self._session

            if self._session is not None:
                if self.restarts >= self.max_restarts:
                    raise RenderError(
                        f"{self.label}: browser session died and restart budget "
                        f"({self.max_restarts}) is exhausted"
                    )
                self.restarts += 1
                logger.warning(
                    f"{self.label}: browser session died, restarting "
                    f"({self.restarts}/{self.max_restarts})"
                )
                await self._discard()

            self._session = await self.renderer.open_session()
            return self._session

    async def _discard(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            try:
                await session.close()
            except Exception as e:
                logger.debug(f"{self.label}: error closing dead session: {e}")

    async def close(self) -> None:
        async with self._lock:
            await self._discard()
