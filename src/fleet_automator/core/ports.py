# src/fleet_automator/core/ports.py

from __future__ import annotations

"""
Ports (interfaces) used by the core.

The scheduler depends on Protocols instead of concrete implementations.
This keeps storage, browser drivers and capability bodies swappable and makes
testing possible without a real browser.
"""

import asyncio
from typing import Any, Awaitable, Protocol

from .models import Account, CapabilityResult, CapabilitySettings, DetectionResult


class AccountRepo(Protocol):
    """Account/persistence collaborator. Storage format is not the core's concern."""

    def get_account(self, account_id: int) -> Account | None: ...
    def list_eligible_accounts(self) -> list[Account]: ...
    def get_capability_settings(
            self, account_id: int, capability: str
    ) -> CapabilitySettings | None: ...
    def update_auth_state(self, account_id: int, state: dict[str, Any] | None) -> None: ...
    def update_account_info(self, account_id: int, fields: dict[str, Any]) -> None: ...


class SessionContext(Protocol):
    """Isolated per-task session (a Playwright BrowserContext in production)."""

    async def new_page(self) -> Any: ...
    async def storage_state(self) -> dict[str, Any]: ...
    async def close(self) -> None: ...


class HostHandle(Protocol):
    """Shared, expensive automation process (a Playwright Browser in production)."""

    async def new_context(self, **options: Any) -> SessionContext: ...
    async def close(self) -> None: ...
    def is_connected(self) -> bool: ...


class HostLauncher(Protocol):
    async def launch(self, resource_key: str, proxy: dict[str, str] | None) -> HostHandle: ...
    async def stop(self) -> None: ...


class CapabilityBody(Protocol):
    """
    One automation capability for one account.

    The orchestrator only depends on this shape; page-specific logic lives in
    the implementation.
    """

    def __call__(
            self,
            context: SessionContext,
            account: Account,
            settings: CapabilitySettings | None,
    ) -> Awaitable[CapabilityResult]: ...


class ChallengeDetector(Protocol):
    async def detect(self, page: Any) -> DetectionResult: ...


class ManualSurface(Protocol):
    """
    Human-visible session opened for an operator.

    `closed` resolves exactly once, when the surface goes away for any reason.
    """

    closed: asyncio.Future[None]

    async def close(self) -> None: ...


class ManualSurfaceFactory(Protocol):
    async def open(self, account: Account, *, auto_close_on_success: bool) -> ManualSurface: ...
