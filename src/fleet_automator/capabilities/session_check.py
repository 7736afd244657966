# src/fleet_automator/capabilities/session_check.py

from __future__ import annotations

"""
Built-in capability: verify that an account's stored session is still valid.

Opens the account's entry URL in the task context and runs the detector on the
rendered page. A login form means the session is gone (AuthenticationRejected);
any challenge or ban page raises ChallengeDetected. Both are escalated by the
orchestrator. On success the loop persists the fresh auth state.
"""

import logging
import time
from typing import Any

from playwright.async_api import Error as PlaywrightError

from ..core.errors import AuthenticationRejected, ChallengeDetected, TransientTaskError
from ..core.models import Account, CapabilityResult, CapabilitySettings, ChallengeKind, ResultStatus
from ..core.ports import AccountRepo, ChallengeDetector, SessionContext

logger = logging.getLogger(__name__)

NAME = "session_check"
PRIORITY = 1
INTERVAL_SECONDS = 10.0
# Each account is checked about every 3 minutes.
CHECK_EVERY_SECONDS = 180.0


class SessionCheck:
    def __init__(
            self,
            repo: AccountRepo,
            detector: ChallengeDetector,
            *,
            navigation_timeout_seconds: float = 30.0,
    ) -> None:
        self._repo = repo
        self._detector = detector
        self._timeout_ms = max(1.0, navigation_timeout_seconds) * 1000

    async def __call__(
            self,
            context: SessionContext,
            account: Account,
            settings: CapabilitySettings | None,
    ) -> CapabilityResult:
        if not account.entry_url:
            return CapabilityResult(status=ResultStatus.SKIPPED, detail="no entry url")

        page: Any = await context.new_page()
        try:
            try:
                await page.goto(account.entry_url, wait_until="domcontentloaded", timeout=self._timeout_ms)
            except PlaywrightError as e:
                raise TransientTaskError(f"navigation to {account.entry_url} failed: {e}") from e

            result = await self._detector.detect(page)
            if not result.conclusive:
                raise TransientTaskError(f"page at {account.entry_url} could not be inspected")
            if result.detected:
                if result.kind == ChallengeKind.LOGIN_FORM:
                    raise AuthenticationRejected(f"session expired for {account.username}")
                raise ChallengeDetected(result.kind, result.detail)

            title = await page.title()
        finally:
            await page.close()

        self._repo.update_account_info(account.id, {"last_session_check": time.time(), "page_title": title})
        logger.debug("[%s] Session valid (%s)", account.username, title)
        return CapabilityResult(status=ResultStatus.OK)
