# src/fleet_automator/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Tests build Settings directly instead of going through the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List

from dotenv import load_dotenv

ENV_PREFIX = "FLEET"

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


# Real environment variables win over .env values.
load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    parts = [p.strip() for p in raw.replace(",", " ").split() if p.strip()]
    return parts


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str = "fleet"
    log_level: str = "INFO"

    # ---- Local data paths (ignored by git) ----
    data_dir: Path = Path(".local/fleet")
    accounts_db_path: Path = Path(".local/fleet/accounts.sqlite3")
    shutdown_flag_path: Path = Path(".shutdown")

    # ---- Scheduling ----
    max_concurrent_tasks: int = 100
    batch_size: int = 5
    drain_timeout_seconds: float = 30.0
    task_timeout_seconds: float = 300.0
    stats_interval_seconds: float = 30.0

    # ---- Session hosts ----
    headless: bool = True
    browser_args: tuple[str, ...] = ("--disable-blink-features=AutomationControlled",)
    viewport_width: int = 1280
    viewport_height: int = 720
    user_agent: str = DEFAULT_USER_AGENT
    locale: str = "cs-CZ"
    timezone_id: str = "Europe/Prague"
    max_contexts_per_host: int = 500
    host_backoff_base_seconds: float = 5.0
    host_backoff_cap_seconds: float = 300.0

    # ---- Manual intervention ----
    surface_poll_seconds: float = 2.0
    navigation_timeout_seconds: float = 30.0

    def context_options(self) -> dict[str, object]:
        """Options shared by every isolated session context."""
        return {
            "viewport": {"width": self.viewport_width, "height": self.viewport_height},
            "user_agent": self.user_agent,
            "locale": self.locale,
            "timezone_id": self.timezone_id,
        }

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "fleet") or "fleet"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/fleet"))
        accounts_db_path = _env_path(_k("ACCOUNTS_DB_PATH"), data_dir / "accounts.sqlite3")
        shutdown_flag_path = _env_path(_k("SHUTDOWN_FLAG_PATH"), Path(".shutdown"))

        browser_args = tuple(
            _env_list(_k("BROWSER_ARGS"), ["--disable-blink-features=AutomationControlled"])
        )

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            accounts_db_path=accounts_db_path,
            shutdown_flag_path=shutdown_flag_path,
            max_concurrent_tasks=max(1, _env_int(_k("MAX_CONCURRENT_TASKS"), 100)),
            batch_size=max(1, _env_int(_k("BATCH_SIZE"), 5)),
            drain_timeout_seconds=_env_float(_k("DRAIN_TIMEOUT_SECONDS"), 30.0),
            task_timeout_seconds=_env_float(_k("TASK_TIMEOUT_SECONDS"), 300.0),
            stats_interval_seconds=_env_float(_k("STATS_INTERVAL_SECONDS"), 30.0),
            headless=_env_bool(_k("HEADLESS"), True),
            browser_args=browser_args,
            viewport_width=_env_int(_k("VIEWPORT_WIDTH"), 1280),
            viewport_height=_env_int(_k("VIEWPORT_HEIGHT"), 720),
            user_agent=_env(_k("USER_AGENT"), DEFAULT_USER_AGENT),
            locale=_env(_k("LOCALE"), "cs-CZ"),
            timezone_id=_env(_k("TIMEZONE_ID"), "Europe/Prague"),
            max_contexts_per_host=_env_int(_k("MAX_CONTEXTS_PER_HOST"), 500),
            host_backoff_base_seconds=_env_float(_k("HOST_BACKOFF_BASE_SECONDS"), 5.0),
            host_backoff_cap_seconds=_env_float(_k("HOST_BACKOFF_CAP_SECONDS"), 300.0),
            surface_poll_seconds=_env_float(_k("SURFACE_POLL_SECONDS"), 2.0),
            navigation_timeout_seconds=_env_float(_k("NAVIGATION_TIMEOUT_SECONDS"), 30.0),
        )


SETTINGS = Settings.from_env()

# ---- Optional local overrides (never committed) ----
# Prefer .env; use config_local.py only for safe overrides.
try:
    import config_local as _config_local  # type: ignore
except ImportError:
    _config_local = None

if _config_local is not None:
    # Simple overrides for selected names. Keep it explicit.
    if hasattr(_config_local, "HEADLESS"):
        object.__setattr__(SETTINGS, "headless", bool(_config_local.HEADLESS))  # type: ignore[misc]
    if hasattr(_config_local, "MAX_CONCURRENT_TASKS"):
        object.__setattr__(  # type: ignore[misc]
            SETTINGS, "max_concurrent_tasks", max(1, int(_config_local.MAX_CONCURRENT_TASKS))
        )


def get_settings() -> Settings:
    return SETTINGS
