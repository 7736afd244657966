# tests/conftest.py

from __future__ import annotations

from pathlib import Path

import pytest

from fleet_automator.config import Settings
from fleet_automator.gate.challenge_gate import ChallengeGate
from fleet_automator.pool.resource_pool import ResourcePool
from fleet_automator.scheduling.task_queue import TaskQueue

from .fakes import FakeAccountRepo, FakeLauncher, FakeSurfaceFactory, make_account


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """
    Settings built directly (not from the environment) so tests stay
    deterministic; every path lives under tmp_path.
    """
    return Settings(
        data_dir=tmp_path,
        accounts_db_path=tmp_path / "accounts.sqlite3",
        shutdown_flag_path=tmp_path / ".shutdown",
        max_concurrent_tasks=10,
        batch_size=2,
        drain_timeout_seconds=1.0,
        task_timeout_seconds=5.0,
        stats_interval_seconds=0.0,
        max_contexts_per_host=0,
        host_backoff_base_seconds=5.0,
        host_backoff_cap_seconds=60.0,
    )


@pytest.fixture()
def repo() -> FakeAccountRepo:
    return FakeAccountRepo(
        [
            make_account(1, proxy="10.0.0.1:8080"),
            make_account(2, proxy="10.0.0.1:8080"),
            make_account(3, proxy="http://bob:pw@10.0.0.2:3128"),
            make_account(4),
        ]
    )


@pytest.fixture()
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture()
def pool(repo: FakeAccountRepo, launcher: FakeLauncher, settings: Settings) -> ResourcePool:
    return ResourcePool(repo, launcher, settings)


@pytest.fixture()
def surfaces() -> FakeSurfaceFactory:
    return FakeSurfaceFactory()


@pytest.fixture()
def gate(repo: FakeAccountRepo, surfaces: FakeSurfaceFactory) -> ChallengeGate:
    return ChallengeGate(repo, surfaces)


@pytest.fixture()
def queue() -> TaskQueue:
    return TaskQueue(max_concurrent=10)
