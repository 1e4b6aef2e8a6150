# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email queue service: the control API and the owner of every component.

``EmailQueue`` wires storage, rate limiting, templates, leasing, dispatch
and the poll loops together, and exposes the operations callers use:

- ``enqueue`` / ``enqueue_scheduled``: validate, rate-limit, persist as PENDING
- ``cancel``: PENDING -> FAILED, False once a task is leased or finished
- ``retry``: FAILED -> PENDING while retries remain, False otherwise
- ``count_pending`` / ``count_failed`` / ``get_task`` / ``get_attempts`` /
  ``list_tasks``: introspection
- ``purge_sent``: housekeeping for delivered tasks

Example:
    queue = EmailQueue(load_config())
    await queue.start()
    queue_id = await queue.enqueue({"recipient_email": "a@example.com",
                                    "subject": "Hi", "content": "Hello"})
    await queue.stop()
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from .config import QueueConfig
from .dispatcher import Dispatcher
from .exceptions import MailQueueError, RateLimitExceeded, TaskNotFoundError, TaskValidationError
from .lease import LeaseManager, make_owner_token
from .models import EmailTask, EmailTaskSpec, TaskStatus
from .poller import QueueScheduler
from .prometheus import QueueMetrics
from .queue_db import QueueDb
from .rate_limit import CounterStore, MemoryCounterStore, RateLimiter, SqlCounterStore
from .retry import RetryStrategy
from .templates import TemplateRenderer
from .transport import SmtpTransport

if TYPE_CHECKING:
    from .transport import Transport

CANCEL_REASON = "task cancelled"


class EmailQueue:
    """Durable email queue.

    Attributes:
        config: Root configuration.
        db: Queue database with the task, counter, template and code tables.
        metrics: Prometheus collector.
        limiter: Enqueue rate limiter.
        retry_strategy: Backoff and error classification.
        lease: Lease manager for this instance.
        dispatcher: Transport caller.
        scheduler: Poll loops.
    """

    def __init__(
        self,
        config: QueueConfig | None = None,
        *,
        transport: Transport | None = None,
        db: QueueDb | None = None,
        counter_store: CounterStore | None = None,
        retry_strategy: RetryStrategy | None = None,
        metrics: QueueMetrics | None = None,
        owner: str | None = None,
    ):
        self.config = config or QueueConfig()
        self.logger = logging.getLogger("mail_queue")
        self.db = db or QueueDb(self.config.storage.db_path)
        self.metrics = metrics or QueueMetrics()
        self.transport: Transport = transport or SmtpTransport(self.config.smtp)
        self.retry_strategy = retry_strategy or RetryStrategy.from_config(self.config.retry)

        rl = self.config.rate_limit
        if counter_store is None:
            counter_store = MemoryCounterStore() if rl.backend == "memory" else SqlCounterStore(self.db.rate_counters)
        self.limiter = RateLimiter(
            counter_store,
            window_seconds=rl.window_seconds,
            per_recipient=rl.per_recipient,
            per_origin=rl.per_origin,
            metrics=self.metrics,
        )
        self.templates = TemplateRenderer(self.db.templates)

        owner = owner or make_owner_token()
        poller = self.config.poller
        self.lease = LeaseManager(
            self.db.tasks, owner=owner, lease_timeout=poller.lease_timeout, metrics=self.metrics
        )
        self.dispatcher = Dispatcher(
            self.db.tasks,
            self.transport,
            self.retry_strategy,
            owner=owner,
            send_timeout=poller.send_timeout,
            lease_timeout=poller.lease_timeout,
            send_log=self.db.send_log,
            metrics=self.metrics,
        )
        self.scheduler = QueueScheduler(
            self.db.tasks, self.lease, self.dispatcher, poller, metrics=self.metrics
        )
        self._initialized = False

    @property
    def tasks(self):
        return self.db.tasks

    @staticmethod
    def _utc_now_epoch() -> int:
        return int(time.time())

    # --------------------------------------------------------------- lifecycle
    async def init(self) -> None:
        """Create or migrate the schema. Idempotent."""
        if self._initialized:
            return
        await self.db.init_db()
        self._initialized = True

    async def start(self) -> None:
        """Initialize storage and, if configured, start the poll loops."""
        await self.init()
        if self.config.scheduler_active:
            self.scheduler.start()

    async def stop(self) -> None:
        """Stop the poll loops and release transport and storage resources."""
        await self.scheduler.stop()
        await self.transport.close()
        await self.db.close()
        self._initialized = False

    # ----------------------------------------------------------------- enqueue
    def _validate(self, spec: EmailTaskSpec | dict[str, Any]) -> EmailTaskSpec:
        if isinstance(spec, EmailTaskSpec):
            return spec
        try:
            return EmailTaskSpec.model_validate(spec)
        except ValidationError as exc:
            errors = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}"
                for err in exc.errors()
            )
            raise TaskValidationError(errors) from exc

    async def enqueue(self, spec: EmailTaskSpec | dict[str, Any]) -> str:
        """Validate and persist a new task, return its queue id.

        Raises:
            TaskValidationError: Invalid request or template; nothing stored.
            RateLimitExceeded: A rate window is exhausted; nothing stored.
        """
        spec = self._validate(spec)

        subject, content = spec.subject, spec.content
        if spec.template_code:
            subject, content = await self.templates.render(spec.template_code, spec.variables)

        if self.config.rate_limit.enabled:
            rejected = await self.limiter.check(spec.recipient_email, spec.origin)
            if rejected:
                raise RateLimitExceeded(rejected)

        queue_id = str(uuid.uuid4())
        priority = spec.priority if spec.priority is not None else self.config.default_priority
        max_retry = spec.max_retry if spec.max_retry is not None else self.retry_strategy.max_retries
        await self.db.tasks.add(
            {
                "queue_id": queue_id,
                "template_code": spec.template_code,
                "recipient_email": spec.recipient_email,
                "recipient_name": spec.recipient_name,
                "subject": subject,
                "content": content,
                "attachments": [a.model_dump() for a in spec.attachments] if spec.attachments else None,
                "origin": spec.origin,
                "priority": priority,
                "max_retry": max_retry,
                "schedule_ts": spec.schedule_ts,
            }
        )
        self.metrics.inc_enqueued()
        self.logger.info(
            "Enqueued task %s for %s (priority=%d, schedule_ts=%s)",
            queue_id, spec.recipient_email, priority, spec.schedule_ts,
        )
        self.scheduler.wake("scheduled" if spec.schedule_ts else "pending")
        return queue_id

    async def enqueue_scheduled(
        self, spec: EmailTaskSpec | dict[str, Any], schedule_at: int | float | datetime
    ) -> str:
        """Enqueue a task that is not eligible for sending before ``schedule_at``."""
        if isinstance(schedule_at, datetime):
            schedule_ts = int(schedule_at.timestamp())
        else:
            schedule_ts = int(schedule_at)
        spec = self._validate(spec)
        return await self.enqueue(spec.model_copy(update={"schedule_ts": schedule_ts}))

    # ----------------------------------------------------------------- control
    async def _require(self, queue_id: str) -> dict[str, Any]:
        row = await self.db.tasks.get(queue_id)
        if row is None:
            raise TaskNotFoundError(queue_id)
        return row

    async def cancel(self, queue_id: str) -> bool:
        """Cancel a PENDING task. False if it is already leased or finished.

        Raises:
            TaskNotFoundError: Unknown queue id.
        """
        if await self.db.tasks.cancel(queue_id, reason=CANCEL_REASON, now_ts=self._utc_now_epoch()):
            self.logger.info("Task %s cancelled", queue_id)
            return True
        row = await self._require(queue_id)
        self.logger.debug("Task %s not cancellable in status %s", queue_id, row["status"])
        return False

    async def retry(self, queue_id: str) -> bool:
        """Move a FAILED task back to PENDING while ``retry_count < max_retry``.

        Raises:
            TaskNotFoundError: Unknown queue id.
        """
        if await self.db.tasks.reset_to_pending(queue_id, now_ts=self._utc_now_epoch()):
            self.logger.info("Task %s queued for manual retry", queue_id)
            self.metrics.inc_retried("manual")
            self.scheduler.wake("pending")
            return True
        row = await self._require(queue_id)
        self.logger.debug(
            "Task %s not retryable (status=%s, retry_count=%s, max_retry=%s)",
            queue_id, row["status"], row["retry_count"], row["max_retry"],
        )
        return False

    async def count_pending(self) -> int:
        return await self.db.tasks.count_by_status(TaskStatus.PENDING.value)

    async def count_failed(self) -> int:
        return await self.db.tasks.count_by_status(TaskStatus.FAILED.value)

    async def get_task(self, queue_id: str) -> EmailTask:
        return EmailTask.from_row(await self._require(queue_id))

    async def get_attempts(self, queue_id: str) -> list[dict[str, Any]]:
        """Delivery attempts of a task, oldest first.

        Raises:
            TaskNotFoundError: Unknown queue id.
        """
        await self._require(queue_id)
        return await self.db.send_log.for_task(queue_id)

    async def list_tasks(
        self, status: TaskStatus | str | None = None, limit: int = 100
    ) -> list[EmailTask]:
        if isinstance(status, TaskStatus):
            status = status.value
        rows = await self.db.tasks.list_tasks(status, limit)
        return [EmailTask.from_row(r) for r in rows]

    async def stats(self) -> dict[str, int]:
        """Task counts per status."""
        return await self.db.tasks.counts()

    async def purge_sent(self, older_than_days: int = 30) -> int:
        """Physically delete SENT tasks delivered more than ``older_than_days`` ago.

        Their send log entries go with them.
        """
        if older_than_days < 0:
            raise TaskValidationError("older_than_days must be >= 0")
        cutoff = self._utc_now_epoch() - older_than_days * 86400
        removed = await self.db.tasks.purge_sent_before(cutoff)
        if removed:
            await self.db.send_log.purge_orphans(self.db.tasks.name)
            self.logger.info("Purged %d sent tasks older than %d days", removed, older_than_days)
        return removed

    async def run_now(self) -> dict[str, int]:
        """Run one retry sweep and one lease/dispatch cycle immediately."""
        return await self.scheduler.run_now()

    # ---------------------------------------------------------------- commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands: ``enqueue``, ``cancel``, ``retry``, ``getTask``,
        ``listTasks``, ``stats``, ``runNow``, ``purgeSent``.

        Returns:
            dict: Command result with ``ok`` status and command-specific data.
            Queue errors are reported as ``{"ok": False, "error": ..., "code": ...}``.
        """
        payload = payload or {}
        try:
            match cmd:
                case "enqueue":
                    schedule_at = payload.get("schedule_ts")
                    queue_id = await self.enqueue(payload)
                    return {"ok": True, "queue_id": queue_id, "scheduled": schedule_at is not None}
                case "cancel":
                    return {"ok": True, "cancelled": await self.cancel(payload["queue_id"])}
                case "retry":
                    return {"ok": True, "retried": await self.retry(payload["queue_id"])}
                case "getTask":
                    task = await self.get_task(payload["queue_id"])
                    attempts = await self.db.send_log.for_task(task.queue_id)
                    return {"ok": True, "task": task.to_dict(), "attempts": attempts}
                case "listTasks":
                    tasks = await self.list_tasks(payload.get("status"), int(payload.get("limit", 100)))
                    return {"ok": True, "tasks": [t.to_dict() for t in tasks]}
                case "stats":
                    return {"ok": True, "counts": await self.stats()}
                case "runNow":
                    return {"ok": True, **await self.run_now()}
                case "purgeSent":
                    removed = await self.purge_sent(int(payload.get("older_than_days", 30)))
                    return {"ok": True, "removed": removed}
                case _:
                    return {"ok": False, "error": f"unknown command: {cmd}"}
        except KeyError as exc:
            return {"ok": False, "error": f"missing parameter: {exc.args[0]}", "code": "validation_error"}
        except MailQueueError as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}


__all__ = ["CANCEL_REASON", "EmailQueue"]
