# src/fleet_automator/core/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ResultStatus(StrEnum):
    """Outcome a capability body reports for one account."""

    OK = "ok"
    SKIPPED = "skipped"
    LOGIN_FAILED = "login_failed"
    CHALLENGE = "challenge"
    ERROR = "error"

    @classmethod
    def from_raw(cls, raw: str | None) -> ResultStatus:
        if not raw:
            return cls.OK
        try:
            return cls(raw)
        except ValueError:
            return cls.ERROR


class ChallengeKind(StrEnum):
    NONE = "none"
    CLOUDFLARE = "cloudflare"
    HCAPTCHA = "hcaptcha"
    RECAPTCHA = "recaptcha"
    BAN = "ban"
    LOGIN_FORM = "login_form"
    # The page could not be inspected (navigation in progress, context gone).
    UNREADABLE = "unreadable"


@dataclass(slots=True)
class Account:
    id: int
    username: str
    password: str | None
    proxy: str | None
    entry_url: str | None

    active: bool = True
    paused: bool = False

    # Playwright storage_state payload: {"cookies": [...], "origins": [...]}
    auth_state: dict[str, Any] | None = None
    info: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class CapabilitySettings:
    enabled: bool
    template: str | None = None


@dataclass(slots=True, frozen=True)
class CapabilityResult:
    """
    What a capability body hands back to the orchestrator.

    next_due_seconds:
    - None -> the loop falls back to its own conservative default
    - value -> the account is not eligible again for that long
    """

    status: ResultStatus = ResultStatus.OK
    next_due_seconds: float | None = None
    detail: str | None = None


@dataclass(slots=True, frozen=True)
class DetectionResult:
    detected: bool
    kind: ChallengeKind = ChallengeKind.NONE
    detail: str | None = None

    @property
    def conclusive(self) -> bool:
        """False when the page could not be read; neither clean nor challenged."""
        return self.kind != ChallengeKind.UNREADABLE


NOT_DETECTED = DetectionResult(detected=False)
UNREADABLE = DetectionResult(detected=False, kind=ChallengeKind.UNREADABLE, detail="page snapshot unavailable")
