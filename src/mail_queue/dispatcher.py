# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Dispatcher: sends leased tasks and records the outcome.

Before each transport call the dispatcher renews its lease with a
conditional UPDATE. A lease that expired or was reclaimed by another worker
is never sent, so a slow batch cannot deliver a task twice.

Each transport call is bounded by ``send_timeout``. Any exception raised by
the transport becomes a failed attempt for that task only; the rest of the
batch is processed normally. On failure the retry policy classifies the
error and decides ``next_retry_ts``; the table consumes one attempt. Every
attempt is appended to the send log.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from .transport import SendResult

if TYPE_CHECKING:
    from .entities import EmailTasksTable, SendLogTable
    from .models import EmailTask
    from .prometheus import QueueMetrics
    from .retry import RetryStrategy
    from .transport import Transport

logger = logging.getLogger(__name__)



class Dispatcher:
    """Delivers leased tasks through a transport.

    Attributes:
        tasks: The email tasks table.
        transport: Delivery collaborator.
        retry: Retry policy deciding backoff and eligibility.
        owner: Lease owner token; outcomes are only recorded for own leases.
        send_timeout: Upper bound in seconds for one transport call.
        lease_timeout: Seconds the lease is extended by right before a send.
        send_log: Attempt log; None disables it.
    """

    def __init__(
        self,
        tasks: EmailTasksTable,
        transport: Transport,
        retry: RetryStrategy,
        *,
        owner: str,
        send_timeout: float = 30.0,
        lease_timeout: int = 600,
        send_log: SendLogTable | None = None,
        metrics: QueueMetrics | None = None,
    ):
        if lease_timeout <= send_timeout:
            raise ValueError(
                f"lease_timeout ({lease_timeout}s) must exceed send_timeout ({send_timeout}s)"
            )
        self.tasks = tasks
        self.transport = transport
        self.retry = retry
        self.owner = owner
        self.send_timeout = send_timeout
        self.lease_timeout = lease_timeout
        self.send_log = send_log
        self.metrics = metrics

    async def _attempt(self, task: EmailTask) -> SendResult:
        try:
            # Same task as the caller: SMTPPool keys connections per task
            async with asyncio.timeout(self.send_timeout):
                result = await self.transport.send(task)
        except asyncio.TimeoutError:
            return SendResult.failed(f"Send timed out after {self.send_timeout:g}s", permanent=False)
        except Exception as exc:
            is_temporary, smtp_code = self.retry.classify_error(exc)
            message = str(exc) or type(exc).__name__
            if smtp_code and str(smtp_code) not in message:
                message = f"{smtp_code} {message}"
            return SendResult.failed(message, permanent=not is_temporary)
        if result is None:
            return SendResult.ok()
        return result

    async def _still_leased(self, task: EmailTask, now: int) -> bool:
        """Renew the lease for a full ``lease_timeout`` from now, if still ours."""
        renewed = await self.tasks.renew_lease(
            task.pk, owner=self.owner, lease_expires_ts=now + self.lease_timeout, now_ts=now
        )
        if not renewed:
            logger.debug("Task %s: lease expired or taken over, not sending", task.queue_id)
            if self.metrics is not None:
                self.metrics.inc_lease_conflict()
        return renewed

    async def _log_attempt(
        self, task: EmailTask, result: SendResult, *, duration_ms: int, now: int
    ) -> None:
        if self.send_log is None:
            return
        try:
            await self.send_log.log(
                {
                    "queue_id": task.queue_id,
                    "recipient_email": task.recipient_email,
                    "attempt": task.retry_count + 1,
                    "status": "SENT" if result.success else "FAILED",
                    "error_message": None if result.success else result.error,
                    "server": self.transport.server,
                    "duration_ms": duration_ms,
                    "lease_owner": self.owner,
                    "created_ts": now,
                }
            )
        except Exception:
            logger.exception("Failed to log send attempt for task %s", task.queue_id)

    async def dispatch(self, task: EmailTask, *, now_ts: int | None = None) -> bool:
        """Send one leased task and record SENT or FAILED.

        Returns:
            True when the task was delivered. False when the send failed or
            when the lease was no longer held and nothing was sent.
        """
        now = int(time.time()) if now_ts is None else now_ts
        if not await self._still_leased(task, now):
            return False

        started = time.monotonic()
        result = await self._attempt(task)
        duration_ms = int((time.monotonic() - started) * 1000)
        if now_ts is None:
            now = int(time.time())

        if result.success:
            recorded = await self.tasks.mark_sent(task.pk, owner=self.owner, now_ts=now)
            await self._log_attempt(task, result, duration_ms=duration_ms, now=now)
            if recorded:
                logger.info("Task %s sent to %s", task.queue_id, task.recipient_email)
                if self.metrics is not None:
                    self.metrics.inc_sent()
            else:
                logger.debug("Task %s: lease lost before recording success", task.queue_id)
            return True

        error = result.error or "Unknown transport error"
        temporary = (
            self.retry.classify_message(error) if result.permanent is None else not result.permanent
        )
        retry_count = min(task.retry_count + 1, task.max_retry)
        next_retry_ts = self.retry.next_retry_ts(
            retry_count, task.max_retry, now, temporary=temporary
        )
        recorded = await self.tasks.mark_failed(
            task.pk,
            owner=self.owner,
            error=error,
            next_retry_ts=next_retry_ts,
            now_ts=now,
        )
        await self._log_attempt(task, result, duration_ms=duration_ms, now=now)
        if not recorded:
            logger.debug("Task %s: lease lost before recording failure", task.queue_id)
            return False
        if self.metrics is not None:
            self.metrics.inc_failed(permanent=not temporary)
        if next_retry_ts is None:
            logger.warning(
                "Task %s failed permanently (attempt %d/%d): %s",
                task.queue_id, retry_count, task.max_retry, error,
            )
        else:
            logger.info(
                "Task %s failed (attempt %d/%d), retry after %d: %s",
                task.queue_id, retry_count, task.max_retry, next_retry_ts, error,
            )
        return False

    async def dispatch_batch(
        self, tasks: list[EmailTask], *, now_ts: int | None = None
    ) -> tuple[int, int]:
        """Dispatch tasks one after another. Returns (sent, not sent).

        A storage error while recording one task is logged and does not
        abort the rest of the batch.
        """
        sent = failed = 0
        for task in tasks:
            try:
                if await self.dispatch(task, now_ts=now_ts):
                    sent += 1
                else:
                    failed += 1
            except Exception:
                logger.exception("Unexpected error dispatching task %s", task.queue_id)
                failed += 1
        return sent, failed


__all__ = ["Dispatcher"]
