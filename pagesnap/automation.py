"""Narrow browser-automation interface plus its Playwright implementation.

The page processor, consent helpers and link annotator only ever talk to
:class:`AutomationPage`, so tests can drive them with lightweight fakes.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from .settings import BrowserSettings

LOGGER = logging.getLogger(__name__)

__all__ = [
    "AutomationPage",
    "AutomationSession",
    "SessionLauncher",
    "PlaywrightPage",
    "PlaywrightSession",
    "PlaywrightLauncher",
]


class AutomationPage(Protocol):
    """The handful of page capabilities the capture pipeline needs."""

    async def goto(self, url: str, *, timeout_ms: int) -> None: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    async def wait(self, ms: int) -> None: ...

    async def press(self, key: str) -> None: ...

    async def screenshot(self, path: Path) -> None: ...

    async def close(self) -> None: ...


class AutomationSession(Protocol):
    """One live browser scoped to a single job."""

    async def new_page(self, *, viewport_width: int, viewport_height: int) -> AutomationPage: ...

    async def close(self) -> None: ...


class SessionLauncher(Protocol):
    async def launch(self, job_id: str) -> AutomationSession: ...


class PlaywrightPage:
    """Adapter from a Playwright ``Page`` to :class:`AutomationPage`."""

    def __init__(self, page: Page) -> None:
        self._page = page

    async def goto(self, url: str, *, timeout_ms: int) -> None:
        await self._page.goto(url, wait_until="networkidle", timeout=timeout_ms)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self._page.evaluate(script)
        return await self._page.evaluate(script, arg)

    async def wait(self, ms: int) -> None:
        await self._page.wait_for_timeout(ms)

    async def press(self, key: str) -> None:
        await self._page.keyboard.press(key)

    async def screenshot(self, path: Path) -> None:
        await self._page.screenshot(path=str(path), full_page=True, type="png")

    async def close(self) -> None:
        if not self._page.is_closed():
            await self._page.close()


class PlaywrightSession:
    """A dedicated browser + context for one job."""

    def __init__(self, job_id: str, browser: Browser, context: BrowserContext) -> None:
        self.job_id = job_id
        self._browser = browser
        self._context = context

    async def new_page(self, *, viewport_width: int, viewport_height: int) -> PlaywrightPage:
        page = await self._context.new_page()
        await page.set_viewport_size({"width": viewport_width, "height": viewport_height})
        return PlaywrightPage(page)

    async def close(self) -> None:
        try:
            await self._context.close()
        finally:
            await self._browser.close()
        LOGGER.info("Browser session closed for job %s", self.job_id)


class PlaywrightLauncher:
    """Starts one shared Playwright driver and a separate browser per job."""

    def __init__(self, settings: BrowserSettings) -> None:
        self._settings = settings
        self._playwright: Playwright | None = None
        self._lock = asyncio.Lock()

    async def _driver(self) -> Playwright:
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            return self._playwright

    async def launch(self, job_id: str) -> PlaywrightSession:
        playwright = await self._driver()
        browser = await _launch_browser(playwright, self._settings.channel, headless=self._settings.headless)
        try:
            context = await _build_context(browser, self._settings)
            await _mask_automation(context)
        except Exception:
            await browser.close()
            raise
        LOGGER.info("Browser session opened for job %s", job_id)
        return PlaywrightSession(job_id, browser, context)

    async def shutdown(self) -> None:
        async with self._lock:
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


_CHANNEL_ALIASES = {
    "cft": "chrome",
    "chrome-for-testing": "chrome",
}


async def _launch_browser(playwright: Playwright, channel: str, *, headless: bool) -> Browser:
    normalized = _normalize_channel(channel)
    if normalized != channel:
        LOGGER.warning(
            "Playwright channel '%s' is not supported; falling back to '%s'",
            channel,
            normalized,
        )
    LOGGER.debug("launching chromium", extra={"channel": normalized})
    if normalized == "chromium":
        return await playwright.chromium.launch(headless=headless)
    return await playwright.chromium.launch(channel=normalized, headless=headless)


async def _build_context(browser: Browser, settings: BrowserSettings) -> BrowserContext:
    options: dict[str, Any] = {
        "viewport": {"width": settings.viewport_width, "height": settings.viewport_height},
        "user_agent": settings.user_agent,
        "locale": "en-US",
    }
    return await browser.new_context(**options)


async def _mask_automation(context: BrowserContext) -> None:
    await context.add_init_script(
        """
        Object.defineProperty(navigator, 'webdriver', {
            get: () => undefined,
        });
        """
    )


def _normalize_channel(channel: str) -> str:
    if not channel:
        return "chromium"
    lowered = channel.strip().lower()
    return _CHANNEL_ALIASES.get(lowered, lowered)
