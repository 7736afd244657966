# tests/test_config.py

from __future__ import annotations

from pathlib import Path

import pytest

from fleet_automator.config import Settings


def test_defaults_without_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("FLEET_DATA_DIR", "FLEET_HEADLESS", "FLEET_MAX_CONCURRENT_TASKS", "FLEET_BROWSER_ARGS"):
        monkeypatch.delenv(name, raising=False)

    s = Settings.from_env()

    assert s.data_dir == Path(".local/fleet")
    assert s.accounts_db_path == Path(".local/fleet/accounts.sqlite3")
    assert s.headless is True
    assert s.max_concurrent_tasks == 100
    assert s.browser_args == ("--disable-blink-features=AutomationControlled",)


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("FLEET_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("FLEET_HEADLESS", "no")
    monkeypatch.setenv("FLEET_MAX_CONCURRENT_TASKS", "0")
    monkeypatch.setenv("FLEET_BATCH_SIZE", "not-a-number")
    monkeypatch.setenv("FLEET_DRAIN_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("FLEET_BROWSER_ARGS", "--mute-audio, --no-first-run")
    monkeypatch.setenv("FLEET_LOCALE", "en-US")

    s = Settings.from_env()

    assert s.data_dir == tmp_path
    assert s.accounts_db_path == tmp_path / "accounts.sqlite3"
    assert s.headless is False
    assert s.max_concurrent_tasks == 1
    assert s.batch_size == 5
    assert s.drain_timeout_seconds == 12.5
    assert s.browser_args == ("--mute-audio", "--no-first-run")
    assert s.locale == "en-US"


def test_context_options() -> None:
    s = Settings(viewport_width=800, viewport_height=600, timezone_id="UTC")
    opts = s.context_options()

    assert opts["viewport"] == {"width": 800, "height": 600}
    assert opts["timezone_id"] == "UTC"
    assert opts["user_agent"] == s.user_agent
