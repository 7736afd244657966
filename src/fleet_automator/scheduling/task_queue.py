# src/fleet_automator/scheduling/task_queue.py

from __future__ import annotations

"""
Priority task queue with a global concurrency ceiling.

- submit() never blocks; it returns a future settled when the operation finishes.
- Lower priority number = more urgent; FIFO among equal priorities.
- Dispatch runs on the next event-loop turn, so everything submitted in the same
  tick competes by priority only.
- Operation errors settle the future and are counted; they never break dispatch.
- The queue never enforces a timeout and never cancels a running operation.
"""

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


@dataclass(slots=True, order=True)
class QueuedTask:
    priority: int
    seq: int
    operation: Operation = field(compare=False)
    label: str = field(compare=False)
    submitted_at: float = field(compare=False)
    future: asyncio.Future[Any] = field(compare=False)


@dataclass(slots=True, frozen=True)
class QueueStats:
    queued: int
    running: int
    completed: int
    failed: int
    max_concurrent: int

    @property
    def utilization(self) -> float:
        if self.max_concurrent <= 0:
            return 0.0
        return self.running / self.max_concurrent


class TaskQueue:
    def __init__(self, max_concurrent: int = 100) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = int(max_concurrent)

        self._pending: list[QueuedTask] = []
        self._seq = itertools.count()
        self._running = 0
        self._completed = 0
        self._failed = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._dispatch_scheduled = False
        self._idle = asyncio.Event()
        self._idle.set()

    # ---- public API ----

    def submit(self, operation: Operation, priority: int = 5, label: str = "task") -> asyncio.Future[Any]:
        loop = asyncio.get_running_loop()
        fut: asyncio.Future[Any] = loop.create_future()
        item = QueuedTask(
            priority=int(priority),
            seq=next(self._seq),
            operation=operation,
            label=label,
            submitted_at=time.monotonic(),
            future=fut,
        )
        heapq.heappush(self._pending, item)
        self._idle.clear()
        self._schedule_dispatch(loop)
        return fut

    async def drain_and_wait(self, timeout_seconds: float) -> bool:
        """Wait until nothing runs and nothing is pending. False on timeout."""
        if self._is_idle():
            return True

        logger.info(
            "Waiting for %d running / %d queued tasks (timeout %.1fs)",
            self._running,
            len(self._pending),
            timeout_seconds,
        )
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=max(0.0, timeout_seconds))
        except asyncio.TimeoutError:
            logger.warning(
                "Drain timed out: %d running, %d queued",
                self._running,
                len(self._pending),
            )
            return False
        return True

    def clear_pending(self) -> int:
        """Drop tasks that have not started yet; their futures are cancelled."""
        dropped = self._pending
        self._pending = []
        for item in dropped:
            if not item.future.done():
                item.future.cancel()
        if dropped:
            logger.info("Discarded %d pending tasks", len(dropped))
        self._update_idle()
        return len(dropped)

    def stats(self) -> QueueStats:
        return QueueStats(
            queued=len(self._pending),
            running=self._running,
            completed=self._completed,
            failed=self._failed,
            max_concurrent=self.max_concurrent,
        )

    # ---- dispatch ----

    def _schedule_dispatch(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._dispatch_scheduled:
            return
        self._dispatch_scheduled = True
        loop.call_soon(self._dispatch)

    def _dispatch(self) -> None:
        self._dispatch_scheduled = False
        while self._running < self.max_concurrent and self._pending:
            item = heapq.heappop(self._pending)
            if item.future.cancelled():
                continue
            self._running += 1
            task = asyncio.create_task(self._run(item), name=f"queue:{item.label}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        self._update_idle()

    async def _run(self, item: QueuedTask) -> None:
        started = time.monotonic()
        waited = started - item.submitted_at
        logger.debug("Start %s (p=%d, waited %.2fs)", item.label, item.priority, waited)
        try:
            result = await item.operation()
        except asyncio.CancelledError:
            # Only happens when the event loop itself is torn down.
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as exc:
            self._failed += 1
            logger.warning(
                "Task %s failed after %.1fs: %r",
                item.label,
                time.monotonic() - started,
                exc,
            )
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            self._completed += 1
            logger.debug("Done %s in %.1fs", item.label, time.monotonic() - started)
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._running -= 1
            self._dispatch()

    def _is_idle(self) -> bool:
        return self._running == 0 and not self._pending

    def _update_idle(self) -> None:
        if self._is_idle():
            self._idle.set()
        else:
            self._idle.clear()
