"""
Playwright browser lifecycle: one lazily started browser process per worker.
"""

import asyncio
from pathlib import Path
from typing import Optional, Union

from playwright.async_api import async_playwright, Browser, BrowserContext, Playwright

from autofulfill import config
from autofulfill.events import event_broker, EventType


class BrowserManager:
    """Owns the Playwright driver and the shared browser process."""

    LAUNCH_ARGS = [
        "--no-sandbox",
        "--disable-setuid-sandbox",
        "--disable-dev-shm-usage",
        "--disable-gpu",
        "--window-size=1920,1080",
        # Basic fingerprint reduction
        "--disable-blink-features=AutomationControlled",
        "--disable-infobars",
        "--no-first-run",
        "--no-default-browser-check",
    ]

    def __init__(self, headless: bool = config.HEADLESS):
        self.headless = headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._start_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def get_browser(self) -> Browser:
        """Return the shared browser, launching it on first use."""
        async with self._start_lock:
            if self.is_running:
                return self._browser

            await event_broker.emit(
                EventType.STEP,
                "browser_init",
                details={"message": "Launching Chromium", "headless": self.headless}
            )

            if self._playwright is None:
                self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=self.LAUNCH_ARGS,
            )

            await event_broker.emit(
                EventType.STEP,
                "browser_ready",
                details={"message": "Browser launched"}
            )
            return self._browser

    async def new_context(self, storage_state: Optional[Union[str, Path]] = None) -> BrowserContext:
        """Create a browsing context, optionally restoring cookies/local storage."""
        browser = await self.get_browser()
        context = await browser.new_context(
            storage_state=str(storage_state) if storage_state else None,
            viewport={"width": 1920, "height": 1080},
            locale="ja-JP",
        )

        # Remove navigator.webdriver flag
        await context.add_init_script("""
            Object.defineProperty(navigator, 'webdriver', {
                get: () => undefined
            });
        """)
        return context

    async def shutdown(self) -> None:
        """Close the browser and stop Playwright."""
        await event_broker.emit(
            EventType.STEP,
            "browser_shutdown",
            details={"message": "Shutting down browser"}
        )

        if self._browser:
            try:
                await self._browser.close()
            except Exception as e:
                await event_broker.emit(EventType.ERROR, "browser_close_failed", details={"error": str(e)})
            self._browser = None

        if self._playwright:
            try:
                await self._playwright.stop()
            except Exception as e:
                await event_broker.emit(EventType.ERROR, "playwright_stop_failed", details={"error": str(e)})
            self._playwright = None
