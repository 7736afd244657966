# src/fleet_automator/gate/manual_surface.py

from __future__ import annotations

"""
Headed browser windows for manual intervention.

Each surface is a dedicated Chromium (never a shared host) with the account's
proxy. The operator solves the challenge or logs in; every time the page turns
into a logged-in page the auth state is persisted. With auto_close_on_success
the window closes itself after that first successful capture.
"""

import asyncio
import contextlib
import logging
from typing import Any

from ..config import Settings
from ..core.models import Account
from ..core.ports import AccountRepo, ChallengeDetector
from ..pool.playwright_driver import PlaywrightHostLauncher
from ..pool.resource_pool import parse_proxy

logger = logging.getLogger(__name__)


class PlaywrightSurface:
    def __init__(
            self,
            *,
            account: Account,
            browser: Any,
            context: Any,
            page: Any,
            repo: AccountRepo,
            detector: ChallengeDetector,
            auto_close_on_success: bool,
            poll_seconds: float,
    ) -> None:
        self.account = account
        self._browser = browser
        self._context = context
        self._page = page
        self._repo = repo
        self._detector = detector
        self._auto_close = auto_close_on_success
        self._poll_seconds = max(0.01, poll_seconds)
        self.closed: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._poller: asyncio.Task[None] | None = None
        self._closer: asyncio.Task[None] | None = None

        browser.on("disconnected", lambda _b: self._mark_closed())
        page.on("close", lambda _p: self._schedule_close())

    def start(self) -> None:
        self._poller = asyncio.create_task(self._poll_login(), name=f"surface-poll:{self.account.id}")

    def _mark_closed(self) -> None:
        if not self.closed.done():
            self.closed.set_result(None)
            logger.info("[%s] Manual surface closed", self.account.username)

    def _schedule_close(self) -> None:
        if not self.closed.done() and self._closer is None:
            self._closer = asyncio.get_running_loop().create_task(
                self.close(), name=f"surface-close:{self.account.id}"
            )

    async def _poll_login(self) -> None:
        was_logged_in = False
        while not self.closed.done():
            await asyncio.sleep(self._poll_seconds)
            if self._page.is_closed():
                break
            result = await self._detector.detect(self._page)
            if not result.conclusive:
                # Mid-navigation; decide on the next clean snapshot.
                continue
            logged_in = not result.detected and self._page.url.startswith("http")
            if logged_in and not was_logged_in:
                await self._capture_auth_state()
                if self._auto_close:
                    logger.info("[%s] Login detected; closing manual surface", self.account.username)
                    await self.close()
                    return
            was_logged_in = logged_in

    async def _capture_auth_state(self) -> None:
        try:
            state = await self._context.storage_state()
        except Exception as e:
            logger.warning("[%s] Reading auth state from surface failed: %r", self.account.username, e)
            return
        if not state or not state.get("cookies"):
            return
        try:
            self._repo.update_auth_state(self.account.id, state)
            logger.info("[%s] Auth state saved from manual surface", self.account.username)
        except Exception:
            logger.exception("[%s] update_auth_state failed", self.account.username)

    async def close(self) -> None:
        poller = self._poller
        if poller is not None and poller is not asyncio.current_task() and not poller.done():
            poller.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poller
        try:
            if self._browser.is_connected():
                await self._browser.close()
        finally:
            self._mark_closed()


class PlaywrightSurfaceFactory:
    def __init__(self, repo: AccountRepo, detector: ChallengeDetector, settings: Settings) -> None:
        self._repo = repo
        self._detector = detector
        self._settings = settings
        self._launcher = PlaywrightHostLauncher(settings, headless=False)

    async def open(self, account: Account, *, auto_close_on_success: bool) -> PlaywrightSurface:
        browser = await self._launcher.launch(f"surface:{account.id}", parse_proxy(account.proxy))
        try:
            options: dict[str, Any] = dict(self._settings.context_options())
            if account.auth_state:
                options["storage_state"] = account.auth_state
            context = await browser.new_context(**options)
            page = await context.new_page()
            if account.entry_url:
                await page.goto(
                    account.entry_url,
                    wait_until="domcontentloaded",
                    timeout=self._settings.navigation_timeout_seconds * 1000,
                )
        except Exception:
            with contextlib.suppress(Exception):
                await browser.close()
            raise

        surface = PlaywrightSurface(
            account=account,
            browser=browser,
            context=context,
            page=page,
            repo=self._repo,
            detector=self._detector,
            auto_close_on_success=auto_close_on_success,
            poll_seconds=self._settings.surface_poll_seconds,
        )
        surface.start()
        logger.info(
            "[%s] Manual surface opened (auto_close=%s)", account.username, auto_close_on_success
        )
        return surface

    async def stop(self) -> None:
        await self._launcher.stop()
