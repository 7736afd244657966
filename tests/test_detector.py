# tests/test_detector.py

from __future__ import annotations

import pytest

from fleet_automator.core.models import ChallengeKind
from fleet_automator.gate.detector import PageChallengeDetector, PageSnapshot, classify_snapshot


@pytest.mark.parametrize(
    ("snap", "kind"),
    [
        (PageSnapshot(title="Just a moment..."), ChallengeKind.CLOUDFLARE),
        (PageSnapshot(scripts=["https://challenges.cloudflare.com/turnstile/v0/api.js"]), ChallengeKind.CLOUDFLARE),
        (PageSnapshot(cf_marker=True), ChallengeKind.CLOUDFLARE),
        (PageSnapshot(frames=["https://newassets.hcaptcha.com/captcha/v1/frame"]), ChallengeKind.HCAPTCHA),
        (PageSnapshot(recaptcha_marker=True), ChallengeKind.RECAPTCHA),
        (PageSnapshot(body="Your account suspended until further notice"), ChallengeKind.BAN),
        (PageSnapshot(title="Přihlášení", login_form=True), ChallengeKind.LOGIN_FORM),
    ],
)
def test_classify_snapshot_kinds(snap: PageSnapshot, kind: ChallengeKind) -> None:
    result = classify_snapshot(snap)
    assert result.detected
    assert result.kind == kind
    assert result.detail


def test_interstitial_wins_over_login_form() -> None:
    snap = PageSnapshot(title="Attention Required! | Cloudflare", login_form=True)
    assert classify_snapshot(snap).kind == ChallengeKind.CLOUDFLARE


def test_plain_page_is_not_detected() -> None:
    result = classify_snapshot(PageSnapshot(title="Village overview", body="Wood 1200 Clay 800"))
    assert not result.detected
    assert result.kind == ChallengeKind.NONE


def test_snapshot_from_raw_tolerates_missing_fields() -> None:
    snap = PageSnapshot.from_raw({"title": None, "frames": ["a"], "login_form": 1})
    assert snap.title == ""
    assert snap.frames == ["a"]
    assert snap.scripts == []
    assert snap.login_form is True


class _Page:
    def __init__(self, raw=None, error: Exception | None = None) -> None:
        self.raw = raw
        self.error = error

    async def evaluate(self, script: str):
        if self.error is not None:
            raise self.error
        return self.raw


@pytest.mark.asyncio
async def test_detector_evaluates_page() -> None:
    detector = PageChallengeDetector()

    result = await detector.detect(_Page({"title": "", "body": "", "hcaptcha_marker": True}))
    assert result.kind == ChallengeKind.HCAPTCHA

    unreadable = await detector.detect(_Page(error=RuntimeError("execution context was destroyed")))
    assert not unreadable.detected and not unreadable.conclusive
    assert unreadable.kind == ChallengeKind.UNREADABLE
    assert not (await detector.detect(_Page(raw="not a dict"))).conclusive
    assert result.conclusive
