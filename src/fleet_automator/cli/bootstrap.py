# src/fleet_automator/cli/bootstrap.py

"""
CLI bootstrap helpers.

This module is the "composition root":
- loads settings once,
- ensures local (gitignored) directories exist,
- wires concrete implementations (SQLite store, Playwright hosts and surfaces,
  detector, capabilities) into the orchestrator and the shutdown coordinator.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from ..capabilities.registry import load_capabilities
from ..config import Settings, get_settings
from ..gate.challenge_gate import ChallengeGate
from ..gate.detector import PageChallengeDetector
from ..gate.manual_surface import PlaywrightSurfaceFactory
from ..orchestrator.loops import CapabilitySpec, Orchestrator
from ..orchestrator.shutdown import ShutdownCoordinator
from ..pool.playwright_driver import PlaywrightHostLauncher
from ..pool.resource_pool import ResourcePool
from ..scheduling.task_queue import TaskQueue
from ..storage.account_store import AccountStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    store: AccountStore
    queue: TaskQueue
    pool: ResourcePool
    surfaces: PlaywrightSurfaceFactory
    gate: ChallengeGate
    orchestrator: Orchestrator
    coordinator: ShutdownCoordinator


def _ensure_local_dirs(settings: Settings) -> None:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.accounts_db_path.parent.mkdir(parents=True, exist_ok=True)


def open_store(settings: Settings | None = None) -> AccountStore:
    if settings is None:
        settings = get_settings()
    _ensure_local_dirs(settings)
    return AccountStore(settings.accounts_db_path)


def build_runtime(
        *,
        settings: Settings | None = None,
        capabilities: Sequence[CapabilitySpec] | None = None,
) -> Runtime:
    """
    Wire the whole automator from settings.

    capabilities defaults to the built-ins plus installed plugins.
    """
    if settings is None:
        settings = get_settings()

    store = open_store(settings)
    detector = PageChallengeDetector()

    queue = TaskQueue(settings.max_concurrent_tasks)
    pool = ResourcePool(store, PlaywrightHostLauncher(settings), settings)
    surfaces = PlaywrightSurfaceFactory(store, detector, settings)
    gate = ChallengeGate(store, surfaces)

    if capabilities is None:
        capabilities = load_capabilities(store, detector, settings)

    orchestrator = Orchestrator(store, queue, pool, gate, capabilities, settings=settings)
    coordinator = ShutdownCoordinator(
        orchestrator,
        queue,
        pool,
        gate,
        drain_timeout_seconds=settings.drain_timeout_seconds,
    )
    logger.info(
        "Runtime ready: %d capabilities (%s), max_concurrent=%d",
        len(capabilities),
        ", ".join(c.name for c in capabilities),
        settings.max_concurrent_tasks,
    )
    return Runtime(
        settings=settings,
        store=store,
        queue=queue,
        pool=pool,
        surfaces=surfaces,
        gate=gate,
        orchestrator=orchestrator,
        coordinator=coordinator,
    )
