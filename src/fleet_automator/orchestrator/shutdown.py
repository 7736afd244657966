# src/fleet_automator/orchestrator/shutdown.py

from __future__ import annotations

"""
Ordered shutdown.

1. stop the capability loops (they finish their current batch)
2. wait for the queue to drain, bounded
3. on timeout, discard pending tasks
4. close every context and host (auth state is NOT persisted here)
5. close every still-open manual surface

Each step runs even if an earlier one failed. Calling shutdown() again returns
the same report.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from ..gate.challenge_gate import ChallengeGate
from ..pool.resource_pool import ResourcePool
from ..scheduling.task_queue import TaskQueue
from .loops import Orchestrator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ShutdownReport:
    drained: bool = False
    discarded: int = 0
    surfaces_closed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return self.drained and not self.errors


class ShutdownCoordinator:
    def __init__(
            self,
            orchestrator: Orchestrator,
            queue: TaskQueue,
            pool: ResourcePool,
            gate: ChallengeGate,
            *,
            drain_timeout_seconds: float = 30.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._queue = queue
        self._pool = pool
        self._gate = gate
        self._drain_timeout = max(0.0, float(drain_timeout_seconds))
        self._task: asyncio.Task[ShutdownReport] | None = None

    @property
    def started(self) -> bool:
        return self._task is not None

    async def shutdown(self) -> ShutdownReport:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="shutdown")
        # Shielded: a caller being cancelled must not abort teardown halfway.
        return await asyncio.shield(self._task)

    async def _run(self) -> ShutdownReport:
        report = ShutdownReport()
        logger.info("Shutdown started (drain timeout %.0fs)", self._drain_timeout)

        try:
            self._orchestrator.stop()
        except Exception as e:
            self._fail(report, "stop loops", e)

        try:
            report.drained = await self._queue.drain_and_wait(self._drain_timeout)
        except Exception as e:
            self._fail(report, "drain queue", e)

        if not report.drained:
            try:
                report.discarded = self._queue.clear_pending()
                logger.warning("Drain incomplete; %d pending tasks discarded", report.discarded)
            except Exception as e:
                self._fail(report, "clear pending", e)

        try:
            await self._pool.shutdown_all()
        except Exception as e:
            self._fail(report, "shutdown pool", e)

        try:
            report.surfaces_closed = await self._gate.close_all()
        except Exception as e:
            self._fail(report, "close surfaces", e)

        logger.info(
            "Shutdown finished: drained=%s discarded=%d surfaces_closed=%d errors=%d",
            report.drained,
            report.discarded,
            report.surfaces_closed,
            len(report.errors),
        )
        return report

    @staticmethod
    def _fail(report: ShutdownReport, step: str, exc: BaseException) -> None:
        logger.error("Shutdown step '%s' failed: %r", step, exc, exc_info=exc)
        report.errors.append(f"{step}: {exc!r}")
