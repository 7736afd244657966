# tests/test_orchestrator.py

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from dataclasses import replace

import pytest

from fleet_automator.capabilities.registry import builtin_capabilities
from fleet_automator.core.errors import AuthenticationRejected, ChallengeDetected, TransientTaskError
from fleet_automator.core.models import CapabilityResult, ChallengeKind, ResultStatus
from fleet_automator.orchestrator.loops import CapabilitySpec, Orchestrator
from fleet_automator.scheduling.due_times import DueTimeTable

from .fakes import FakeAccountRepo, FakeDetector, FakeSurfaceFactory


class RecordingBody:
    """Capability body returning a fixed result and recording who it ran for."""

    def __init__(self, result: CapabilityResult | None = None, errors: dict[int, Exception] | None = None):
        self.result = result or CapabilityResult()
        self.errors = errors or {}
        self.calls: list[int] = []

    async def __call__(self, context, account, settings):
        self.calls.append(account.id)
        await asyncio.sleep(0)
        if account.id in self.errors:
            raise self.errors[account.id]
        return self.result


def _spec(body, **kwargs) -> CapabilitySpec:
    kwargs.setdefault("name", "farm")
    kwargs.setdefault("requires_settings", False)
    kwargs.setdefault("batch_pause_seconds", (0.0, 0.0))
    kwargs.setdefault("default_next_due_seconds", 600.0)
    return CapabilitySpec(body=body, **kwargs)


@pytest.fixture()
def now() -> list[float]:
    return [1_000.0]


@pytest.fixture()
def orchestrator_factory(repo, queue, pool, gate, settings, now):
    def build(*specs: CapabilitySpec) -> Orchestrator:
        return Orchestrator(
            repo,
            queue,
            pool,
            gate,
            list(specs),
            due_times=DueTimeTable(clock=lambda: now[0]),
            settings=settings,
        )

    return build


def test_duplicate_capability_names_rejected(orchestrator_factory) -> None:
    body = RecordingBody()
    with pytest.raises(ValueError):
        orchestrator_factory(_spec(body), _spec(body))


@pytest.mark.asyncio
async def test_account_without_due_time_runs_on_first_pass(orchestrator_factory, pool) -> None:
    body = RecordingBody()
    orch = orchestrator_factory(_spec(body))

    submitted = await orch.run_pass(orch.capabilities[0])

    assert submitted == 4
    assert sorted(body.calls) == [1, 2, 3, 4]
    assert pool.stats().active_context_count == 0
    # Default next-due fallback was written for everyone.
    assert all(orch.due_times.due_at(i, "farm") == 1_600.0 for i in (1, 2, 3, 4))


@pytest.mark.asyncio
async def test_not_yet_due_accounts_are_skipped(orchestrator_factory, now) -> None:
    body = RecordingBody(CapabilityResult(next_due_seconds=120.0))
    orch = orchestrator_factory(_spec(body))
    spec = orch.capabilities[0]

    await orch.run_pass(spec)
    body.calls.clear()

    assert await orch.run_pass(spec) == 0
    assert body.calls == []

    now[0] += 121.0
    assert await orch.run_pass(spec) == 4


@pytest.mark.asyncio
async def test_reported_interval_respects_minimum(orchestrator_factory) -> None:
    body = RecordingBody(CapabilityResult(next_due_seconds=5.0))
    orch = orchestrator_factory(_spec(body, min_next_due_seconds=60.0))

    await orch.run_pass(orch.capabilities[0])

    assert orch.due_times.due_at(1, "farm") == 1_060.0


@pytest.mark.asyncio
async def test_disabled_and_suspended_accounts_are_not_eligible(
        orchestrator_factory, repo: FakeAccountRepo, gate
) -> None:
    repo.enable(1, "farm")
    repo.enable(2, "farm")
    repo.enable(3, "farm", enabled=False)
    repo.accounts[2].paused = True
    await gate.escalate(1)

    orch = orchestrator_factory(_spec(RecordingBody(), requires_settings=True))

    assert orch.eligible_accounts(orch.capabilities[0]) == []

    repo.enable(4, "farm")
    assert [a.id for a in orch.eligible_accounts(orch.capabilities[0])] == [4]


@pytest.mark.asyncio
async def test_failure_for_one_account_does_not_stop_the_batch(orchestrator_factory, pool) -> None:
    body = RecordingBody(errors={1: TransientTaskError("navigation failed"), 3: RuntimeError("boom")})
    orch = orchestrator_factory(_spec(body))

    assert await orch.run_pass(orch.capabilities[0]) == 4

    assert sorted(body.calls) == [1, 2, 3, 4]
    assert orch.due_times.due_at(1, "farm") is None
    assert orch.due_times.due_at(3, "farm") is None
    assert orch.due_times.due_at(2, "farm") == 1_600.0
    assert pool.stats().active_context_count == 0


@pytest.mark.asyncio
async def test_login_rejection_is_escalated_not_retried(
        orchestrator_factory, gate, surfaces: FakeSurfaceFactory, pool
) -> None:
    body = RecordingBody(errors={2: AuthenticationRejected("password form shown")})
    orch = orchestrator_factory(_spec(body))
    spec = orch.capabilities[0]

    await orch.run_pass(spec)

    assert gate.is_suspended(2)
    assert [s.account.id for s in surfaces.opened] == [2]
    assert surfaces.opened[0].auto_close_on_success is True
    assert pool.stats().active_context_count == 0
    assert orch.due_times.due_at(2, "farm") is None

    # Suspended: the next pass leaves it alone.
    orch.due_times.forget(1)
    body.calls.clear()
    await orch.run_pass(spec)
    assert 2 not in body.calls


@pytest.mark.asyncio
async def test_challenge_exception_and_statuses_escalate(orchestrator_factory, gate, surfaces) -> None:
    body = RecordingBody(errors={1: ChallengeDetected(ChallengeKind.BAN, "account banned")})
    orch = orchestrator_factory(_spec(body, name="a"))
    await orch.run_pass(orch.capabilities[0])

    assert gate.is_suspended(1)
    assert surfaces.opened[0].auto_close_on_success is False

    status_body = RecordingBody(CapabilityResult(status=ResultStatus.LOGIN_FAILED))
    orch2 = orchestrator_factory(_spec(status_body, name="b"))
    await orch2.run_pass(orch2.capabilities[0])

    assert all(gate.is_suspended(i) for i in (1, 2, 3, 4))
    # Account 1 was already suspended: one surface each, no duplicates.
    assert sorted(s.account.id for s in surfaces.opened) == [1, 2, 3, 4]


@pytest.mark.asyncio
async def test_auth_state_persisted_only_on_success(orchestrator_factory, repo: FakeAccountRepo) -> None:
    class CookieBody(RecordingBody):
        async def __call__(self, context, account, settings):
            context.cookies.append({"name": "sid", "value": f"acc{account.id}"})
            return await super().__call__(context, account, settings)

    body = CookieBody(errors={2: TransientTaskError("timeout")})
    orch = orchestrator_factory(_spec(body, persist_auth_on_success=True))

    await orch.run_pass(orch.capabilities[0])

    assert sorted(account_id for account_id, _ in repo.auth_updates) == [1, 3, 4]


@pytest.mark.asyncio
async def test_body_timeout_is_contained(orchestrator_factory, pool) -> None:
    class SlowBody(RecordingBody):
        async def __call__(self, context, account, settings):
            if account.id == 1:
                await asyncio.sleep(10)
            return await super().__call__(context, account, settings)

    body = SlowBody()
    orch = orchestrator_factory(_spec(body, task_timeout_seconds=0.05))

    await asyncio.wait_for(orch.run_pass(orch.capabilities[0]), timeout=2.0)

    assert sorted(body.calls) == [2, 3, 4]
    assert orch.due_times.due_at(1, "farm") is None
    assert pool.stats().active_context_count == 0


@pytest.mark.asyncio
async def test_continuous_capability_writes_no_due_times(orchestrator_factory) -> None:
    body = RecordingBody(CapabilityResult(next_due_seconds=300.0))
    orch = orchestrator_factory(_spec(body, default_next_due_seconds=None))
    spec = orch.capabilities[0]

    assert await orch.run_pass(spec) == 4
    assert await orch.run_pass(spec) == 4
    assert len(orch.due_times) == 0


@pytest.mark.asyncio
async def test_listing_failure_only_skips_the_cycle(orchestrator_factory, repo: FakeAccountRepo) -> None:
    body = RecordingBody()
    orch = orchestrator_factory(_spec(body))
    repo.fail_listing = True

    assert await orch.run_pass(orch.capabilities[0]) == 0

    repo.fail_listing = False
    assert await orch.run_pass(orch.capabilities[0]) == 4


@pytest.mark.asyncio
async def test_stop_between_batches(orchestrator_factory, settings) -> None:
    orch: Orchestrator

    class StoppingBody(RecordingBody):
        async def __call__(self, context, account, settings):
            orch.stop()
            return await super().__call__(context, account, settings)

    body = StoppingBody()
    orch = orchestrator_factory(_spec(body, batch_size=1))

    assert await orch.run_pass(orch.capabilities[0]) == 1
    assert body.calls == [1]


@pytest.mark.asyncio
async def test_run_loops_until_stopped(orchestrator_factory) -> None:
    fast = RecordingBody()
    timed = RecordingBody()
    orch = orchestrator_factory(
        _spec(fast, name="check", priority=1, default_next_due_seconds=None, interval_seconds=0.01),
        _spec(timed, name="farm", priority=3, interval_seconds=60.0),
    )

    runner = asyncio.create_task(orch.run())
    await asyncio.sleep(0.1)
    orch.stop()
    await asyncio.wait_for(runner, timeout=2.0)

    # Continuous loop cycled repeatedly; the timed one ran once and then slept.
    assert len(fast.calls) > 4
    assert sorted(timed.calls) == [1, 2, 3, 4]
    assert not orch.running


@pytest.mark.asyncio
async def test_priorities_win_free_slots(repo, pool, gate, settings) -> None:
    from fleet_automator.scheduling.task_queue import TaskQueue

    order: list[str] = []

    def body_for(name: str):
        async def body(context, account, cs):
            order.append(name)
            await asyncio.sleep(0.01)
            return CapabilityResult()
        return body

    queue = TaskQueue(max_concurrent=1)
    orch = Orchestrator(
        repo,
        queue,
        pool,
        gate,
        [
            _spec(body_for("low"), name="low", priority=5),
            _spec(body_for("high"), name="high", priority=1),
        ],
        settings=replace(settings, batch_size=4),
    )

    await asyncio.gather(*(orch.run_pass(s) for s in orch.capabilities))

    # Both passes submit in the same tick; every high task runs before any low one.
    assert order == ["high"] * 4 + ["low"] * 4


@pytest.mark.asyncio
async def test_session_check_reruns_do_not_rewrite_auth_state(orchestrator_factory, repo, now, settings) -> None:
    for account in repo.accounts.values():
        account.auth_state = {"cookies": [{"name": "sid", "value": f"acc{account.id}"}], "origins": []}
    (spec,) = builtin_capabilities(repo, FakeDetector(), settings)
    orch = orchestrator_factory(spec)

    assert await orch.run_pass(spec) == 4
    # Checked accounts are not due again right away.
    assert await orch.run_pass(spec) == 0
    now[0] += spec.default_next_due_seconds + 1
    assert await orch.run_pass(spec) == 4

    assert len(repo.info_updates) == 8
    assert repo.auth_updates == []


@pytest.mark.asyncio
async def test_wall_clock_capability_waits_for_next_slot(repo, queue, pool, gate, settings) -> None:
    body = RecordingBody()
    # First cycle ends just before 04:00, later ones at 10:00 (next slot 16:00).
    clock = iter([datetime(2026, 1, 1, 3, 59, 59, 950_000)])

    def wall_clock() -> datetime:
        return next(clock, datetime(2026, 1, 1, 10, 0))

    orch = Orchestrator(
        repo,
        queue,
        pool,
        gate,
        [_spec(body, name="daily", default_next_due_seconds=None, run_at_hours=(4, 16))],
        settings=settings,
        wall_clock=wall_clock,
    )

    runner = asyncio.create_task(orch.run())
    await asyncio.sleep(0.3)
    orch.stop()
    await asyncio.wait_for(runner, timeout=2.0)

    # Startup pass, then the 04:00 pass; 16:00 is hours away.
    assert sorted(body.calls) == [1, 1, 2, 2, 3, 3, 4, 4]


@pytest.mark.asyncio
async def test_stats_loop_logs_periodically(
        repo, queue, pool, gate, settings, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO, logger="fleet_automator.orchestrator.loops")
    settings = replace(settings, stats_interval_seconds=0.02)
    body = RecordingBody()
    orch = Orchestrator(repo, queue, pool, gate, [_spec(body, interval_seconds=60.0)], settings=settings)

    runner = asyncio.create_task(orch.run())
    await asyncio.sleep(0.15)
    orch.stop()
    await asyncio.wait_for(runner, timeout=2.0)

    stats = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Stats:")]
    assert len(stats) >= 2
    assert "running=0/10" in stats[-1]
    assert "completed=4" in stats[-1]
