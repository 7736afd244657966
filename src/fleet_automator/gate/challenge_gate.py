# src/fleet_automator/gate/challenge_gate.py

from __future__ import annotations

"""
Challenge gate: suspends accounts that hit a challenge or a rejected login.

escalate() marks the account suspended, drops its stale auth state and opens one
manual-intervention surface. When that surface closes, on_resolved() lifts the
suspension. Loops only ask is_suspended(); they never learn the cause.

Guard states per account:
- in progress: a surface is being opened (set before the first await)
- active: a surface is open (tracked in _surfaces)
"""

import asyncio
import logging
from dataclasses import replace

from ..core.models import ChallengeKind
from ..core.ports import AccountRepo, ManualSurface, ManualSurfaceFactory

logger = logging.getLogger(__name__)


class ChallengeGate:
    def __init__(self, repo: AccountRepo, surfaces: ManualSurfaceFactory) -> None:
        self._repo = repo
        self._factory = surfaces
        self._suspended: set[int] = set()
        self._in_progress: set[int] = set()
        self._surfaces: dict[int, ManualSurface] = {}
        self._watchers: dict[int, asyncio.Task[None]] = {}
        self._openings: dict[int, asyncio.Future[None]] = {}
        self._closed = False

    def is_suspended(self, account_id: int) -> bool:
        return account_id in self._suspended

    @property
    def suspended_count(self) -> int:
        return len(self._suspended)

    @property
    def open_surfaces(self) -> int:
        return len(self._surfaces)

    async def escalate(
            self,
            account_id: int,
            *,
            reason: ChallengeKind | str = ChallengeKind.LOGIN_FORM,
            auto_close_on_success: bool = True,
    ) -> bool:
        """
        Suspend the account and open a manual surface for it.

        Returns False (no-op) when the gate is closed, the account is already
        suspended or a surface is being opened for it.
        """
        if self._closed:
            logger.debug("Gate closed; escalation for account=%s ignored", account_id)
            return False
        if account_id in self._suspended or account_id in self._in_progress:
            logger.debug("Escalation for account=%s already handled", account_id)
            return False

        self._in_progress.add(account_id)
        self._suspended.add(account_id)
        logger.warning("Account %s suspended (%s); opening manual surface", account_id, reason)

        opening: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._openings[account_id] = opening
        surface: ManualSurface | None = None
        try:
            surface = await self._open_surface(account_id, auto_close_on_success)
        finally:
            self._in_progress.discard(account_id)
            if surface is None:
                # Lift the suspension so the next loop cycle can escalate again.
                self._suspended.discard(account_id)
            else:
                self._surfaces[account_id] = surface
            del self._openings[account_id]
            opening.set_result(None)

        if surface is None or self._closed:
            # A surface opened after close_all() started is closed by it.
            return False
        self._watchers[account_id] = asyncio.create_task(
            self._watch(account_id, surface), name=f"surface:{account_id}"
        )
        return True

    async def _open_surface(self, account_id: int, auto_close_on_success: bool) -> ManualSurface | None:
        try:
            account = self._repo.get_account(account_id)
            if account is None:
                raise LookupError(f"account {account_id} not found")

            if account.auth_state:
                self._repo.update_auth_state(account_id, None)
                account = replace(account, auth_state=None)
                logger.info("Dropped stale auth state for account=%s", account_id)

            return await self._factory.open(account, auto_close_on_success=auto_close_on_success)
        except Exception:
            logger.exception("Opening manual surface failed for account=%s", account_id)
            return None

    def on_resolved(self, account_id: int) -> None:
        self._surfaces.pop(account_id, None)
        self._watchers.pop(account_id, None)
        self._in_progress.discard(account_id)
        if account_id in self._suspended:
            self._suspended.discard(account_id)
            logger.info("Account %s resumed (manual surface closed)", account_id)

    async def _watch(self, account_id: int, surface: ManualSurface) -> None:
        try:
            await surface.closed
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Manual surface for account=%s ended with error: %r", account_id, e)
        # Only resolve if this surface is still the one we track.
        if self._surfaces.get(account_id) is surface:
            self.on_resolved(account_id)

    async def close_all(self) -> int:
        """
        Close every open surface. Used at shutdown; returns how many were closed.

        The gate stays closed afterwards: surfaces still being opened are waited
        for and closed too, and later escalations are ignored.
        """
        self._closed = True
        openings = list(self._openings.values())
        if openings:
            logger.info("Waiting for %d manual surface(s) still opening", len(openings))
            await asyncio.gather(*openings)

        surfaces = list(self._surfaces.items())
        closed = 0
        for account_id, surface in surfaces:
            try:
                await surface.close()
                closed += 1
            except Exception as e:
                logger.warning("Closing manual surface for account=%s failed: %r", account_id, e)

        watchers = list(self._watchers.values())
        for task in watchers:
            task.cancel()
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)

        self._watchers.clear()
        self._surfaces.clear()
        self._in_progress.clear()
        self._suspended.clear()
        return closed
