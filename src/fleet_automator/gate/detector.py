# src/fleet_automator/gate/detector.py

"""Deterministic challenge/ban classification of a rendered page."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from ..core.models import NOT_DETECTED, UNREADABLE, ChallengeKind, DetectionResult

logger = logging.getLogger(__name__)

_CLOUDFLARE_TITLE_PATTERNS: tuple[str, ...] = (
    "just a moment",
    "checking your browser",
    "attention required",
)
_CLOUDFLARE_SOURCE_PATTERNS: tuple[str, ...] = (
    "challenges.cloudflare.com",
    "cdn-cgi/challenge-platform",
)
_HCAPTCHA_SOURCE_PATTERNS: tuple[str, ...] = ("hcaptcha.com",)
_RECAPTCHA_SOURCE_PATTERNS: tuple[str, ...] = (
    "google.com/recaptcha",
    "recaptcha/api",
    "gstatic.com/recaptcha",
)
_BAN_PATTERNS: tuple[str, ...] = (
    "access denied",
    "you have been banned",
    "account banned",
    "account suspended",
    "your ip has been blocked",
    "zablokován",
    "zakázán",
)

# Collected in one round-trip; selectors mirror the common widget markup.
_SNAPSHOT_JS = """
() => {
  const q = (s) => document.querySelector(s) !== null;
  return {
    title: document.title || "",
    body: (document.body && document.body.innerText || "").slice(0, 4000),
    frames: Array.from(document.querySelectorAll("iframe")).map(f => f.src || ""),
    scripts: Array.from(document.scripts).map(s => s.src || ""),
    cf_marker: q("#challenge-running") || q("#challenge-form"),
    hcaptcha_marker: q(".h-captcha") || q("[data-hcaptcha-widget-id]"),
    recaptcha_marker: q(".g-recaptcha"),
    login_form: q("input[type=password]"),
  };
}
"""


@dataclass(slots=True)
class PageSnapshot:
    title: str = ""
    body: str = ""
    frames: list[str] = field(default_factory=list)
    scripts: list[str] = field(default_factory=list)
    cf_marker: bool = False
    hcaptcha_marker: bool = False
    recaptcha_marker: bool = False
    login_form: bool = False

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> PageSnapshot:
        return cls(
            title=str(raw.get("title") or ""),
            body=str(raw.get("body") or ""),
            frames=[str(x) for x in raw.get("frames") or []],
            scripts=[str(x) for x in raw.get("scripts") or []],
            cf_marker=bool(raw.get("cf_marker")),
            hcaptcha_marker=bool(raw.get("hcaptcha_marker")),
            recaptcha_marker=bool(raw.get("recaptcha_marker")),
            login_form=bool(raw.get("login_form")),
        )


def classify_snapshot(snap: PageSnapshot) -> DetectionResult:
    """
    Classify a page snapshot. Order matters: interstitials first, then widget
    captchas, then ban pages, then a bare login form.
    """
    title = snap.title.lower()
    sources = "\n".join(snap.frames + snap.scripts).lower()
    body = snap.body.lower()

    pattern = _first_match(title, _CLOUDFLARE_TITLE_PATTERNS) or _first_match(
        sources, _CLOUDFLARE_SOURCE_PATTERNS
    )
    if snap.cf_marker or pattern is not None:
        return DetectionResult(True, ChallengeKind.CLOUDFLARE, pattern or "challenge marker")

    pattern = _first_match(sources, _HCAPTCHA_SOURCE_PATTERNS)
    if snap.hcaptcha_marker or pattern is not None:
        return DetectionResult(True, ChallengeKind.HCAPTCHA, pattern or "widget marker")

    pattern = _first_match(sources, _RECAPTCHA_SOURCE_PATTERNS)
    if snap.recaptcha_marker or pattern is not None:
        return DetectionResult(True, ChallengeKind.RECAPTCHA, pattern or "widget marker")

    pattern = _first_match(f"{title}\n{body}", _BAN_PATTERNS)
    if pattern is not None:
        return DetectionResult(True, ChallengeKind.BAN, pattern)

    if snap.login_form:
        return DetectionResult(True, ChallengeKind.LOGIN_FORM, "password input present")

    return NOT_DETECTED


class PageChallengeDetector:
    async def detect(self, page: Any) -> DetectionResult:
        try:
            raw = await page.evaluate(_SNAPSHOT_JS)
        except Exception as e:
            logger.debug("Page snapshot failed: %r", e)
            return UNREADABLE
        if not isinstance(raw, dict):
            return UNREADABLE
        return classify_snapshot(PageSnapshot.from_raw(raw))


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
