# src/fleet_automator/logging_setup.py

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path

LOG_FILE_NAME = "fleet.log"
# The daemon runs for weeks; the file is rotated instead of growing forever.
_LOG_FILE_MAX_BYTES = 20 * 1024 * 1024
_LOG_FILE_BACKUPS = 5

# Per-account task chatter: one line per account per cycle at DEBUG.
_PER_ACCOUNT_LOGGERS = (
    "fleet_automator.orchestrator.loops",
    "fleet_automator.pool.resource_pool",
    "fleet_automator.capabilities.",
)


class _ConsoleNoiseFilter(logging.Filter):
    """
    Keep the console readable with hundreds of accounts cycling:
    - fleet_automator logs pass, except per-account DEBUG lines (file only)
    - Python warnings (captured as 'py.warnings') only at ERROR+
    - asyncio/playwright only at WARNING+ (unretrieved task errors, driver exits)
    - any other third-party logger only at ERROR+
    """

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name

        if name.startswith("fleet_automator."):
            if name.startswith(_PER_ACCOUNT_LOGGERS):
                return record.levelno >= logging.INFO
            return True

        if name == "py.warnings":
            return record.levelno >= logging.ERROR

        if name.startswith(("asyncio", "playwright")):
            return record.levelno >= logging.WARNING

        return record.levelno >= logging.ERROR


def setup_logging(
    *,
    log_dir: str | Path = ".local/fleet",
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> Path:
    """
    Console gets the filtered operator view; the rotating file under log_dir
    keeps everything. Call once at startup. Returns the log file path.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(fmt)
    console.addFilter(_ConsoleNoiseFilter())
    root.addHandler(console)

    file_handler = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=_LOG_FILE_MAX_BYTES,
        backupCount=_LOG_FILE_BACKUPS,
        encoding="utf-8",
    )
    file_handler.setLevel(file_level)
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    logging.captureWarnings(True)
    return log_file
