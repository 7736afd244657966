# src/fleet_automator/scheduling/due_times.py

from __future__ import annotations

import time
from typing import Callable


class DueTimeTable:
    """
    Next-eligible time per (account, capability).

    A missing entry means "due now". The table is in-memory only; after a restart
    every account is immediately eligible and the table refills as tasks finish.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._due: dict[tuple[int, str], float] = {}

    def __len__(self) -> int:
        return len(self._due)

    def now(self) -> float:
        return self._clock()

    def due_at(self, account_id: int, capability: str) -> float | None:
        return self._due.get((account_id, capability))

    def is_due(self, account_id: int, capability: str, now: float | None = None) -> bool:
        due = self._due.get((account_id, capability))
        if due is None:
            return True
        return (self._clock() if now is None else now) >= due

    def set_due_at(self, account_id: int, capability: str, ts: float) -> None:
        self._due[(account_id, capability)] = float(ts)

    def set_next(self, account_id: int, capability: str, delay_seconds: float) -> float:
        due = self._clock() + max(0.0, float(delay_seconds))
        self._due[(account_id, capability)] = due
        return due

    def forget(self, account_id: int, capability: str | None = None) -> None:
        if capability is not None:
            self._due.pop((account_id, capability), None)
            return
        for key in [k for k in self._due if k[0] == account_id]:
            del self._due[key]
