# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Lease manager: claims PENDING tasks for exactly one worker.

Leasing is a two-step read-then-claim. The read picks candidates in
``priority, created_ts`` order; the claim is a conditional UPDATE
(``WHERE status = 'PENDING'``) whose rowcount decides the winner. A worker
that loses the race sees zero affected rows and skips the task silently.
"""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from typing import TYPE_CHECKING

from .models import EmailTask

if TYPE_CHECKING:
    from .entities import EmailTasksTable
    from .prometheus import QueueMetrics

logger = logging.getLogger(__name__)


def make_owner_token() -> str:
    """Identity of a lease holder: host, process and a per-instance suffix."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


class LeaseManager:
    """Claims and reclaims task leases.

    Attributes:
        tasks: The email tasks table.
        owner: Token written to ``lease_owner`` for every task this instance claims.
        lease_timeout: Seconds until a lease may be reclaimed by the reclaim sweep.
    """

    def __init__(
        self,
        tasks: EmailTasksTable,
        *,
        owner: str | None = None,
        lease_timeout: int = 600,
        metrics: QueueMetrics | None = None,
    ):
        self.tasks = tasks
        self.owner = owner or make_owner_token()
        self.lease_timeout = lease_timeout
        self.metrics = metrics

    async def lease(
        self, batch_size: int, *, scheduled: bool = False, now_ts: int | None = None
    ) -> list[EmailTask]:
        """Claim up to ``batch_size`` due tasks.

        Args:
            batch_size: Maximum tasks to return.
            scheduled: Select only tasks whose ``schedule_ts`` has become due,
                instead of tasks that are due now (no schedule or past schedule).
            now_ts: Reference epoch; defaults to the current time.

        Returns:
            Claimed tasks in SENDING state, in priority then age order.
        """
        if batch_size <= 0:
            return []
        now = int(time.time()) if now_ts is None else now_ts
        rows = await self.tasks.candidates(limit=batch_size, now_ts=now, scheduled=scheduled)
        expires = now + self.lease_timeout

        leased: list[EmailTask] = []
        for row in rows:
            won = await self.tasks.claim(
                row["pk"], owner=self.owner, lease_expires_ts=expires, now_ts=now
            )
            if not won:
                logger.debug("Task %s already leased by another worker", row["queue_id"])
                if self.metrics is not None:
                    self.metrics.inc_lease_conflict()
                continue
            row.update(
                status="SENDING",
                lease_owner=self.owner,
                lease_expires_ts=expires,
                updated_ts=now,
            )
            leased.append(EmailTask.from_row(row))
        return leased

    async def reclaim_expired(self, batch_size: int, *, now_ts: int | None = None) -> int:
        """Move SENDING tasks whose lease expired back to PENDING.

        A reclaimed task may already have been delivered by a worker that
        died before recording the outcome, so reclaiming trades a possible
        duplicate send for never leaving a task stuck.

        Returns:
            Number of tasks reclaimed.
        """
        now = int(time.time()) if now_ts is None else now_ts
        reclaimed = 0
        for row in await self.tasks.expired_leases(now_ts=now, limit=batch_size):
            if await self.tasks.reclaim(row["pk"], now_ts=now):
                logger.warning(
                    "Reclaimed task %s from expired lease held by %s",
                    row["queue_id"],
                    row["lease_owner"],
                )
                reclaimed += 1
        if reclaimed and self.metrics is not None:
            self.metrics.inc_reclaimed(reclaimed)
        return reclaimed


__all__ = ["LeaseManager", "make_owner_token"]
