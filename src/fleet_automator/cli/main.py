# src/fleet_automator/cli/main.py

"""
CLI entrypoint.

`fleet-automator` (or `fleet-automator run`) initializes logging, builds the
runtime and runs the capability loops until:
- SIGINT/SIGTERM is received, or
- the shutdown flag file appears.
Either starts the ordered shutdown; a second signal forces exit code 1.

Any other first argument is an account administration command (see `help`).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path

from ..cli.bootstrap import Runtime, build_runtime, open_store
from ..cli.commands import registry
from ..config import Settings, get_settings
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)

EXIT_CLEAN = 0
EXIT_FAULTED = 1

# Loops get this long to exit after shutdown before they are cancelled.
_LOOP_EXIT_GRACE_SECONDS = 5.0


async def watch_flag_file(path: Path, requested: asyncio.Event, *, poll_seconds: float = 1.0) -> None:
    """Set `requested` once the flag file exists (the file is consumed)."""
    while not requested.is_set():
        if path.exists():
            logger.info("Shutdown flag %s found", path)
            with contextlib.suppress(OSError):
                path.unlink()
            requested.set()
            return
        await asyncio.sleep(poll_seconds)


class SignalState:
    """First signal requests shutdown, the second one forces the exit."""

    def __init__(self) -> None:
        self.requested = asyncio.Event()
        self.forced = asyncio.Event()

    def on_signal(self, signame: str) -> None:
        if not self.requested.is_set():
            logger.info("%s received, shutting down (repeat to force)...", signame)
            self.requested.set()
            return
        logger.warning("%s received again, forcing exit", signame)
        self.forced.set()


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, state: SignalState) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, state.on_signal, sig.name)
        except (NotImplementedError, RuntimeError):
            # Some platforms/loops do not support signal handlers.
            logger.debug("Signal handler for %s not installed", sig.name)


async def serve(runtime: Runtime, state: SignalState | None = None) -> int:
    """Run until shutdown is requested; return the process exit code."""
    state = state or SignalState()
    settings = runtime.settings

    with contextlib.suppress(OSError):
        settings.shutdown_flag_path.unlink()

    run_task = asyncio.create_task(runtime.orchestrator.run(), name="orchestrator")
    flag_task = asyncio.create_task(
        watch_flag_file(settings.shutdown_flag_path, state.requested), name="shutdown-flag"
    )
    requested_task = asyncio.create_task(state.requested.wait())
    forced_task = asyncio.create_task(state.forced.wait())
    faulted = False

    try:
        await asyncio.wait({run_task, requested_task}, return_when=asyncio.FIRST_COMPLETED)
        if run_task.done() and not state.requested.is_set():
            faulted = True
            exc = None if run_task.cancelled() else run_task.exception()
            logger.error("Orchestrator exited unexpectedly: %r", exc)

        shutdown_task = asyncio.ensure_future(runtime.coordinator.shutdown())
        await asyncio.wait({shutdown_task, forced_task}, return_when=asyncio.FIRST_COMPLETED)
        if not shutdown_task.done():
            logger.error("Forced exit before shutdown completed")
            return EXIT_FAULTED
        report = shutdown_task.result()

        await asyncio.wait({run_task}, timeout=_LOOP_EXIT_GRACE_SECONDS)
        if not run_task.done():
            logger.warning("Capability loops still busy; cancelling")
            run_task.cancel()
            await asyncio.gather(run_task, return_exceptions=True)

        if state.forced.is_set() or faulted or not report.clean:
            return EXIT_FAULTED
        return EXIT_CLEAN
    finally:
        for task in (flag_task, requested_task, forced_task):
            task.cancel()
        try:
            await runtime.surfaces.stop()
        except Exception:
            logger.exception("Stopping the manual surface driver failed")


async def _amain(settings: Settings) -> int:
    runtime = build_runtime(settings=settings)
    state = SignalState()
    _install_signal_handlers(asyncio.get_running_loop(), state)
    return await serve(runtime, state)


def run_command(argv: list[str], settings: Settings) -> int:
    store = open_store(settings)
    print(registry.handle(store, argv))
    return EXIT_CLEAN


def main(argv: list[str] | None = None) -> None:
    settings = get_settings()
    args = list(sys.argv[1:] if argv is None else argv)

    # choose console log level from settings.log_level
    console_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    setup_logging(log_dir=settings.data_dir, console_level=console_level)

    if args and args[0].lower() != "run":
        sys.exit(run_command(args, settings))

    logger.info("Starting %s...", settings.app_name)
    code = asyncio.run(_amain(settings))
    logger.info("Bye (exit code %d).", code)
    sys.exit(code)


if __name__ == "__main__":
    main()
