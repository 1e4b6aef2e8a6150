# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Poller: independent periodic loops driving the queue.

Loops (each a named asyncio task with its own interval and wake event):
- pending: lease tasks due now and dispatch them
- scheduled: lease tasks whose schedule has just become due and dispatch them
- retry: move eligible FAILED tasks back to PENDING
- reclaim: (opt-in) move SENDING tasks with an expired lease back to PENDING
- cleanup: close idle or orphaned transport connections

The loops share no in-memory state; they meet only in the task table
through conditional updates, so any of them can be disabled or run in
another process.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config import PollerConfig
    from .dispatcher import Dispatcher
    from .entities import EmailTasksTable
    from .lease import LeaseManager
    from .prometheus import QueueMetrics

logger = logging.getLogger(__name__)

Tick = Callable[[], Awaitable[int]]


class QueueScheduler:
    """Runs the pending, scheduled, retry, reclaim and cleanup loops.

    Tick methods can also be called directly (tests, ``run-now`` command);
    each returns the number of tasks it handled.
    """

    def __init__(
        self,
        tasks: EmailTasksTable,
        lease: LeaseManager,
        dispatcher: Dispatcher,
        config: PollerConfig,
        *,
        metrics: QueueMetrics | None = None,
    ):
        self.tasks = tasks
        self.lease = lease
        self.dispatcher = dispatcher
        self.config = config
        self.metrics = metrics
        self._stop = asyncio.Event()
        self._wake: dict[str, asyncio.Event] = {}
        self._loops: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._loops)

    # ------------------------------------------------------------------ ticks
    async def run_pending_tick(self, *, now_ts: int | None = None) -> int:
        """Lease and dispatch one batch of tasks due now."""
        leased = await self.lease.lease(self.config.batch_size, now_ts=now_ts)
        if leased:
            sent, failed = await self.dispatcher.dispatch_batch(leased, now_ts=now_ts)
            logger.debug("Pending tick: leased=%d sent=%d failed=%d", len(leased), sent, failed)
        await self._refresh_pending_gauge()
        return len(leased)

    async def run_scheduled_tick(self, *, now_ts: int | None = None) -> int:
        """Lease and dispatch one batch of scheduled tasks that became due."""
        leased = await self.lease.lease(self.config.batch_size, scheduled=True, now_ts=now_ts)
        if leased:
            sent, failed = await self.dispatcher.dispatch_batch(leased, now_ts=now_ts)
            logger.debug("Scheduled tick: leased=%d sent=%d failed=%d", len(leased), sent, failed)
        return len(leased)

    async def run_retry_sweep(self, *, now_ts: int | None = None) -> int:
        """Move FAILED tasks with retries left and an elapsed backoff to PENDING."""
        now = int(time.time()) if now_ts is None else now_ts
        released = 0
        for row in await self.tasks.retry_candidates(now_ts=now, limit=self.config.batch_size):
            if await self.tasks.release_for_retry(row["pk"], now_ts=now):
                released += 1
                logger.info(
                    "Task %s back to PENDING for retry %d/%d",
                    row["queue_id"], row["retry_count"] + 1, row["max_retry"],
                )
                if self.metrics is not None:
                    self.metrics.inc_retried("sweep")
        if released:
            self.wake("pending")
        return released

    async def run_reclaim_sweep(self, *, now_ts: int | None = None) -> int:
        """Reclaim expired leases back to PENDING."""
        reclaimed = await self.lease.reclaim_expired(self.config.batch_size, now_ts=now_ts)
        if reclaimed:
            self.wake("pending")
        return reclaimed

    async def run_cleanup_tick(self) -> int:
        """Let the transport close idle or orphaned connections."""
        await self.dispatcher.transport.cleanup()
        return 0

    async def run_now(self) -> dict[str, int]:
        """Run every tick once, in state-machine order."""
        result = {"retried": await self.run_retry_sweep()}
        if self.config.reclaim_enabled:
            result["reclaimed"] = await self.run_reclaim_sweep()
        result["pending"] = await self.run_pending_tick()
        result["scheduled"] = await self.run_scheduled_tick()
        return result

    async def _refresh_pending_gauge(self) -> None:
        if self.metrics is None:
            return
        try:
            count = await self.tasks.count_by_status("PENDING")
        except Exception:
            logger.exception("Failed to refresh pending gauge")
            return
        self.metrics.set_pending(count)

    # ------------------------------------------------------------------ loops
    def start(self) -> None:
        """Spawn the loop tasks. Must be called from a running event loop."""
        if self.running:
            return
        self._stop.clear()
        cfg = self.config
        loops: list[tuple[str, float, Tick]] = [
            ("pending", cfg.pending_interval, self.run_pending_tick),
            ("scheduled", cfg.scheduled_interval, self.run_scheduled_tick),
            ("retry", cfg.retry_interval, self.run_retry_sweep),
            ("cleanup", cfg.cleanup_interval, self.run_cleanup_tick),
        ]
        if cfg.reclaim_enabled:
            loops.append(("reclaim", cfg.reclaim_interval, self.run_reclaim_sweep))
        for name, interval, tick in loops:
            self._wake[name] = asyncio.Event()
            # Only lease loops keep going while they fill whole batches
            drain = name in ("pending", "scheduled")
            self._loops.append(
                asyncio.create_task(self._loop(name, interval, tick, drain), name=f"mail-queue-{name}-loop")
            )
        logger.info("Queue scheduler started with loops: %s", ", ".join(n for n, _, _ in loops))

    async def stop(self) -> None:
        """Signal every loop to finish its current tick and wait for them."""
        self._stop.set()
        for event in self._wake.values():
            event.set()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()
        self._wake.clear()
        logger.info("Queue scheduler stopped")

    def wake(self, name: str | None = None) -> None:
        """Wake one loop (or every loop) before its interval elapses."""
        for loop_name, event in self._wake.items():
            if name is None or loop_name == name:
                event.set()

    async def _loop(self, name: str, interval: float, tick: Tick, drain: bool) -> None:
        logger.debug("%s loop started (interval=%ss)", name, interval)
        while not self._stop.is_set():
            try:
                handled = await tick()
            except Exception as exc:
                logger.exception("Unhandled error in %s loop: %s", name, exc)
                handled = 0
            if drain and handled >= self.config.batch_size:
                await asyncio.sleep(0)
                continue
            await self._wait(name, interval)

    async def _wait(self, name: str, timeout: float) -> None:
        if self._stop.is_set():
            return
        event = self._wake[name]
        if timeout is None or math.isinf(timeout):
            await event.wait()
        else:
            try:
                await asyncio.wait_for(event.wait(), timeout=max(0.0, float(timeout)))
            except asyncio.TimeoutError:
                return
        event.clear()


__all__ = ["QueueScheduler"]
