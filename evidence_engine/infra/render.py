"""
render.py - headless rendering of JavaScript-heavy pages with Playwright.

The browser is only launched the first time a dynamic source asks for a
render, so runs without such sources never pay for Chromium.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Playwright,
    TimeoutError as PlaywrightTimeout,
    async_playwright,
)

from ..interfaces import Renderer

logger = logging.getLogger(__name__)

RENDER_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
HIDE_WEBDRIVER = "Object.defineProperty(navigator, 'webdriver', { get: () => undefined });"


class PlaywrightRenderer(Renderer):
    """
    Returns the post-JavaScript HTML of a page from one shared Chromium context.

    Failures of any kind come back as ``None``; the dynamic connector then
    works from the plain HTTP body instead.
    """

    def __init__(
        self,
        *,
        headless: bool = True,
        timeout_ms: float = 30_000,
        wait_until: str = "networkidle",
        user_agent: str = RENDER_UA,
        launch_options: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.wait_until = wait_until
        self.user_agent = user_agent
        self.launch_options = launch_options or {}

        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._launching = asyncio.Lock()

    async def _ensure_context(self) -> BrowserContext:
        async with self._launching:
            if self._context is None:
                self._pw = await async_playwright().start()
                self._browser = await self._pw.chromium.launch(
                    headless=self.headless, **self.launch_options
                )
                self._context = await self._browser.new_context(
                    user_agent=self.user_agent, ignore_https_errors=True
                )
                await self._context.add_init_script(HIDE_WEBDRIVER)
                logger.info("Launched Chromium for rendering (headless=%s)", self.headless)
        return self._context

    async def close(self) -> None:
        was_running = self._pw is not None
        for closer in (self._context, self._browser):
            if closer is not None:
                await closer.close()
        if self._pw is not None:
            await self._pw.stop()
        self._pw, self._browser, self._context = None, None, None
        if was_running:
            logger.info("Chromium renderer shut down")

    async def render(self, url: str) -> Optional[str]:
        try:
            context = await self._ensure_context()
            page = await context.new_page()
        except PlaywrightError as e:
            logger.warning(f"Rendering unavailable, skipping {url}: {e}")
            return None

        page.set_default_timeout(self.timeout_ms)
        try:
            await page.goto(url, wait_until=self.wait_until)
            return await page.content()
        except PlaywrightTimeout:
            logger.debug("Render of %s timed out after %sms", url, self.timeout_ms)
        except PlaywrightError as e:
            logger.debug("Render of %s failed: %s", url, e)
        finally:
            await page.close()
        return None
