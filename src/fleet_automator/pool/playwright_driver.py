# src/fleet_automator/pool/playwright_driver.py

"""
Playwright-backed session hosts.

One async Playwright instance is started lazily and shared; every resource key
gets its own Chromium process with the key's proxy applied at launch, so all
contexts created from it leave through the same egress identity.
"""

from __future__ import annotations

import asyncio
import logging

from playwright.async_api import Browser, Playwright, async_playwright

from ..config import Settings

logger = logging.getLogger(__name__)


class PlaywrightHostLauncher:
    def __init__(self, settings: Settings, *, headless: bool | None = None) -> None:
        self._settings = settings
        self._headless = settings.headless if headless is None else headless
        self._playwright: Playwright | None = None
        self._lock = asyncio.Lock()

    async def _ensure_playwright(self) -> Playwright:
        async with self._lock:
            if self._playwright is None:
                self._playwright = await async_playwright().start()
                logger.info("Playwright driver started")
            return self._playwright

    async def launch(self, resource_key: str, proxy: dict[str, str] | None) -> Browser:
        pw = await self._ensure_playwright()
        kwargs: dict[str, object] = {
            "headless": self._headless,
            "args": list(self._settings.browser_args),
        }
        if proxy:
            kwargs["proxy"] = proxy

        browser = await pw.chromium.launch(**kwargs)
        logger.info(
            "Chromium launched key=%s headless=%s proxy=%s",
            resource_key,
            self._headless,
            (proxy or {}).get("server", "none"),
        )
        return browser

    async def stop(self) -> None:
        async with self._lock:
            if self._playwright is None:
                return
            try:
                await self._playwright.stop()
                logger.info("Playwright driver stopped")
            finally:
                self._playwright = None
