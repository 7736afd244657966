# src/fleet_automator/orchestrator/loops.py

from __future__ import annotations

"""
Capability loops.

One polling loop per capability. Every cycle it:
- enumerates eligible accounts (active, not suspended, capability enabled, due),
- submits one queue task per account at the loop's fixed priority, in batches,
- waits for the batch, pauses a little (randomized), then the next batch,
- sleeps a randomized interval before the next cycle.

Each task body reports when the account is next due; the loop never computes
due times itself. Login failures and challenges are handed to the gate instead
of being retried inline.

To stop the loops, call stop(); they finish their current batch and exit.
"""

import asyncio
import contextlib
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Callable, Sequence

from ..config import Settings
from ..core.errors import (
    AuthenticationRejected,
    ChallengeDetected,
    ResourceAcquisitionError,
    TransientTaskError,
)
from ..core.models import Account, CapabilityResult, ChallengeKind, ResultStatus
from ..core.ports import AccountRepo, CapabilityBody
from ..core.timing import random_range, randomize_interval, seconds_until_next_slot
from ..gate.challenge_gate import ChallengeGate
from ..pool.resource_pool import ResourcePool, SessionLease
from ..scheduling.due_times import DueTimeTable
from ..scheduling.task_queue import TaskQueue

logger = logging.getLogger(__name__)

# A loop with nothing to do never spins faster than this.
_MIN_IDLE_SLEEP_SECONDS = 1.0


@dataclass(slots=True, frozen=True)
class CapabilitySpec:
    """
    Static description of one independently scheduled capability.

    default_next_due_seconds:
    - None  -> continuous capability: no per-account timing, cycles over all
               eligible accounts with only inter-batch pacing
    - value -> timed capability: fallback when the body reports no interval
    """

    name: str
    body: CapabilityBody
    priority: int = 5
    interval_seconds: float = 60.0
    batch_size: int | None = None
    batch_pause_seconds: tuple[float, float] = (1.0, 3.0)
    default_next_due_seconds: float | None = 3600.0
    min_next_due_seconds: float = 0.0
    requires_settings: bool = True
    persist_auth_on_success: bool = False
    task_timeout_seconds: float | None = None
    run_at_hours: tuple[int, ...] = ()

    @property
    def timed(self) -> bool:
        return self.default_next_due_seconds is not None

    def next_due_seconds(self, result: CapabilityResult) -> float | None:
        """Delay until the account is due again, or None for continuous capabilities."""
        if not self.timed:
            return None
        if result.next_due_seconds is None:
            return self.default_next_due_seconds
        return max(float(result.next_due_seconds), self.min_next_due_seconds)


class Orchestrator:
    def __init__(
            self,
            repo: AccountRepo,
            queue: TaskQueue,
            pool: ResourcePool,
            gate: ChallengeGate,
            capabilities: Sequence[CapabilitySpec],
            *,
            due_times: DueTimeTable | None = None,
            settings: Settings | None = None,
            rng: random.Random | None = None,
            wall_clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        names = [c.name for c in capabilities]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate capability names: {names}")

        self._repo = repo
        self._queue = queue
        self._pool = pool
        self._gate = gate
        self.capabilities = tuple(capabilities)
        self.due_times = due_times or DueTimeTable()
        self._settings = settings or Settings()
        self._rng = rng or random.Random()
        self._wall_clock = wall_clock

        self._stop = asyncio.Event()
        self._loops: list[asyncio.Task[None]] = []

    # ---- lifecycle ----

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Stopping capability loops")
        self._stop.set()

    async def run(self) -> None:
        """Run every capability loop (plus the stats monitor) until stop()."""
        if self._loops:
            raise RuntimeError("Orchestrator is already running")

        self._stop.clear()
        self._loops = [
            asyncio.create_task(self._capability_loop(spec), name=f"loop:{spec.name}")
            for spec in self.capabilities
        ]
        if self._settings.stats_interval_seconds > 0:
            self._loops.append(asyncio.create_task(self._stats_loop(), name="loop:stats"))

        logger.info("Orchestrator started with %d capabilities", len(self.capabilities))
        try:
            await asyncio.gather(*self._loops)
        finally:
            for task in self._loops:
                if not task.done():
                    task.cancel()
            self._loops = []
            logger.info("Orchestrator stopped")

    # ---- one cycle ----

    def eligible_accounts(self, spec: CapabilitySpec) -> list[Account]:
        accounts = self._repo.list_eligible_accounts()
        now = self.due_times.now()

        out: list[Account] = []
        for account in accounts:
            if self._gate.is_suspended(account.id):
                continue
            if spec.requires_settings:
                cs = self._repo.get_capability_settings(account.id, spec.name)
                if cs is None or not cs.enabled:
                    continue
            if spec.timed and not self.due_times.is_due(account.id, spec.name, now):
                continue
            out.append(account)
        return out

    async def run_pass(self, spec: CapabilitySpec) -> int:
        """Submit one task per eligible account, batch by batch. Returns how many were submitted."""
        try:
            accounts = self.eligible_accounts(spec)
        except Exception:
            logger.exception("[%s] Listing eligible accounts failed; skipping cycle", spec.name)
            return 0

        if not accounts:
            logger.debug("[%s] No eligible accounts", spec.name)
            return 0

        batch_size = max(1, spec.batch_size or self._settings.batch_size)
        submitted = 0

        for start in range(0, len(accounts), batch_size):
            if not self.running:
                logger.info("[%s] Stop requested; %d accounts left unscheduled", spec.name, len(accounts) - start)
                break

            batch = accounts[start:start + batch_size]
            futures = [
                self._queue.submit(
                    partial(self.run_for_account, spec, account.id),
                    priority=spec.priority,
                    label=f"{spec.name}:{account.id}",
                )
                for account in batch
            ]
            submitted += len(futures)
            await asyncio.gather(*futures, return_exceptions=True)

            if start + batch_size < len(accounts) and self.running:
                low, high = spec.batch_pause_seconds
                await self._sleep(random_range(low, high, rng=self._rng))

        logger.debug("[%s] Pass finished, %d tasks", spec.name, submitted)
        return submitted

    # ---- task boundary ----

    async def run_for_account(self, spec: CapabilitySpec, account_id: int) -> CapabilityResult | None:
        """
        Run one capability for one account.

        Every task-level error stops here: it is logged against the account and
        the account is retried on the loop's next natural cycle.
        """
        if self._gate.is_suspended(account_id):
            logger.debug("[%s] account=%s suspended since scheduling; skipped", spec.name, account_id)
            return None

        lease: SessionLease | None = None
        result: CapabilityResult | None = None
        escalate_reason: ChallengeKind | str | None = None

        try:
            lease = await self._pool.acquire_context(account_id)
            settings = self._repo.get_capability_settings(account_id, spec.name)
            timeout = spec.task_timeout_seconds or self._settings.task_timeout_seconds
            result = await asyncio.wait_for(
                spec.body(lease.context, lease.account, settings),
                timeout=timeout,
            )

            if result.status == ResultStatus.LOGIN_FAILED:
                escalate_reason = ChallengeKind.LOGIN_FORM
            elif result.status == ResultStatus.CHALLENGE:
                escalate_reason = result.detail or "challenge"
            elif result.status == ResultStatus.OK and spec.persist_auth_on_success:
                await self._pool.persist_auth_state(lease.context, account_id)

        except AuthenticationRejected as e:
            logger.warning("[%s] account=%s login rejected: %s", spec.name, account_id, e)
            escalate_reason = ChallengeKind.LOGIN_FORM
        except ChallengeDetected as e:
            logger.warning("[%s] account=%s challenge detected: %s", spec.name, account_id, e.kind)
            escalate_reason = e.kind
        except asyncio.TimeoutError:
            logger.warning("[%s] account=%s timed out", spec.name, account_id)
        except ResourceAcquisitionError as e:
            logger.warning("[%s] account=%s no session available: %s", spec.name, account_id, e)
        except TransientTaskError as e:
            logger.warning("[%s] account=%s transient failure: %s", spec.name, account_id, e)
        except Exception:
            logger.exception("[%s] account=%s failed", spec.name, account_id)
        finally:
            if lease is not None:
                await self._pool.release_context(lease.context, lease.resource_key)

        # The headless context is already released when the surface opens.
        if escalate_reason is not None:
            await self._gate.escalate(
                account_id,
                reason=escalate_reason,
                auto_close_on_success=escalate_reason != ChallengeKind.BAN,
            )
            return result

        if result is None:
            return None

        if result.status == ResultStatus.ERROR:
            logger.warning("[%s] account=%s reported error: %s", spec.name, account_id, result.detail)
            return result

        delay = spec.next_due_seconds(result)
        if delay is not None:
            self.due_times.set_next(account_id, spec.name, delay)
            logger.debug("[%s] account=%s next due in %.0fs", spec.name, account_id, delay)
        return result

    # ---- loops ----

    async def _capability_loop(self, spec: CapabilitySpec) -> None:
        logger.info(
            "[%s] Loop started (priority=%d, %s)",
            spec.name,
            spec.priority,
            "timed" if spec.timed else "continuous",
        )
        while self.running:
            try:
                submitted = await self.run_pass(spec)
            except Exception:
                logger.exception("[%s] Loop cycle failed", spec.name)
                submitted = 0

            if not self.running:
                break

            delay = self._next_cycle_delay(spec)
            if submitted == 0:
                delay = max(delay, _MIN_IDLE_SLEEP_SECONDS)
            await self._sleep(delay)

        logger.info("[%s] Loop exited", spec.name)

    def _next_cycle_delay(self, spec: CapabilitySpec) -> float:
        if spec.run_at_hours:
            return seconds_until_next_slot(self._wall_clock(), spec.run_at_hours)
        if not spec.timed:
            return max(0.0, spec.interval_seconds)
        return randomize_interval(spec.interval_seconds, rng=self._rng)

    async def _stats_loop(self) -> None:
        while self.running:
            await self._sleep(self._settings.stats_interval_seconds)
            if self.running:
                self.log_stats()

    def log_stats(self) -> None:
        q = self._queue.stats()
        p = self._pool.stats()
        logger.info(
            "Stats: queue running=%d/%d queued=%d completed=%d failed=%d | "
            "hosts=%d contexts=%d | suspended=%d surfaces=%d",
            q.running,
            q.max_concurrent,
            q.queued,
            q.completed,
            q.failed,
            p.host_count,
            p.active_context_count,
            self._gate.suspended_count,
            self._gate.open_surfaces,
        )

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when stop() is called."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
