# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Email tasks table: the durable queue and its state machine."""

from __future__ import annotations

from typing import Any

from ...models import TaskStatus
from ...sql import Integer, String, Table, Timestamp

PENDING = TaskStatus.PENDING.value
SENDING = TaskStatus.SENDING.value
SENT = TaskStatus.SENT.value
FAILED = TaskStatus.FAILED.value


class EmailTasksTable(Table):
    """Email tasks table: one row per send request.

    Fields:
    - pk: Internal surrogate key (autoincrement), never exposed
    - queue_id: External handle, unique and immutable
    - status: PENDING, SENDING, SENT or FAILED
    - priority: 1 (served first) .. 10, default 5
    - retry_count / max_retry: attempts consumed / ceiling copied at creation
    - schedule_ts: not eligible before this epoch (NULL = immediately)
    - next_retry_ts: earliest automatic retry (NULL = never auto-retried)
    - lease_owner / lease_expires_ts: holder and expiry of a SENDING lease

    Every state change below is one conditional UPDATE on one row. The
    returned rowcount tells whether the transition happened; a zero means
    another worker got there first, or the task is no longer in the
    expected state.
    """

    name = "email_tasks"

    def configure(self) -> None:
        c = self.columns
        c.column("pk", Integer, primary_key=True)
        c.column("queue_id", String, nullable=False, unique=True)
        c.column("template_code", String)
        c.column("recipient_email", String, nullable=False)
        c.column("recipient_name", String)
        c.column("subject", String)
        c.column("content", String)
        c.column("attachments", String, json_encoded=True)
        c.column("origin", String)
        c.column("status", String, nullable=False, default=PENDING)
        c.column("priority", Integer, nullable=False, default=5)
        c.column("retry_count", Integer, nullable=False, default=0)
        c.column("max_retry", Integer, nullable=False, default=3)
        c.column("schedule_ts", Timestamp)
        c.column("next_retry_ts", Timestamp)
        c.column("lease_owner", String)
        c.column("lease_expires_ts", Timestamp)
        c.column("error_message", String)
        c.column("sent_ts", Timestamp)
        c.column("created_ts", Timestamp)
        c.column("updated_ts", Timestamp)

    def create_indexes_sql(self) -> list[str]:
        return [
            f"CREATE INDEX IF NOT EXISTS idx_{self.name}_lease "
            f"ON {self.name} (status, priority, created_ts)",
            f"CREATE INDEX IF NOT EXISTS idx_{self.name}_retry "
            f"ON {self.name} (status, next_retry_ts)",
        ]

    # -------------------------------------------------------------------------
    # Creation and lookup
    # -------------------------------------------------------------------------

    async def add(self, record: dict[str, Any]) -> None:
        """Insert a new task in PENDING state."""
        record = dict(record)
        record["status"] = PENDING
        record.setdefault("retry_count", 0)
        await self.insert(record)

    async def get(self, queue_id: str) -> dict[str, Any] | None:
        return await self.select_one(where={"queue_id": queue_id})

    async def list_tasks(
        self, status: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Most recent tasks first, optionally filtered by status."""
        where = {"status": status} if status else None
        return await self.select(where=where, order_by="created_ts DESC, pk DESC", limit=limit)

    async def count_by_status(self, status: str) -> int:
        return await self.count({"status": status})

    async def counts(self) -> dict[str, int]:
        rows = await self.db.adapter.fetch_all(
            f"SELECT status, COUNT(*) AS cnt FROM {self.name} GROUP BY status"
        )
        result = {s.value: 0 for s in TaskStatus}
        result.update({r["status"]: int(r["cnt"]) for r in rows})
        return result

    # -------------------------------------------------------------------------
    # Leasing
    # -------------------------------------------------------------------------

    async def candidates(
        self, *, limit: int, now_ts: int, scheduled: bool = False
    ) -> list[dict[str, Any]]:
        """PENDING tasks eligible for leasing, in priority then age order.

        ``scheduled=False`` selects tasks with no schedule or a schedule that
        has passed; ``scheduled=True`` selects only tasks carrying a schedule
        that has become due.
        """
        if scheduled:
            due = "schedule_ts IS NOT NULL AND schedule_ts <= :now_ts"
        else:
            due = "(schedule_ts IS NULL OR schedule_ts <= :now_ts)"
        query = f"""
            SELECT * FROM {self.name}
            WHERE status = :status AND {due}
            ORDER BY priority ASC, created_ts ASC, pk ASC
            LIMIT :limit
        """
        return await self.fetch_all(query, {"status": PENDING, "now_ts": now_ts, "limit": limit})

    async def claim(
        self, pk: int, *, owner: str, lease_expires_ts: int, now_ts: int
    ) -> bool:
        """PENDING -> SENDING. Exactly one concurrent caller gets True."""
        rowcount = await self.execute(
            f"""
            UPDATE {self.name}
            SET status = :sending, lease_owner = :owner,
                lease_expires_ts = :lease_expires_ts, updated_ts = :now_ts
            WHERE pk = :pk AND status = :pending
            """,
            {
                "sending": SENDING,
                "pending": PENDING,
                "owner": owner,
                "lease_expires_ts": lease_expires_ts,
                "now_ts": now_ts,
                "pk": pk,
            },
        )
        return rowcount == 1

    async def renew_lease(
        self, pk: int, *, owner: str, lease_expires_ts: int, now_ts: int
    ) -> bool:
        """Extend a lease still held by ``owner`` and not yet expired.

        False means the lease expired or moved to another worker, and the
        task must not be sent.
        """
        rowcount = await self.execute(
            f"""
            UPDATE {self.name}
            SET lease_expires_ts = :lease_expires_ts, updated_ts = :now_ts
            WHERE pk = :pk AND status = :sending AND lease_owner = :owner
              AND lease_expires_ts > :now_ts
            """,
            {
                "sending": SENDING,
                "owner": owner,
                "lease_expires_ts": lease_expires_ts,
                "now_ts": now_ts,
                "pk": pk,
            },
        )
        return rowcount == 1

    async def expired_leases(self, *, now_ts: int, limit: int) -> list[dict[str, Any]]:
        return await self.fetch_all(
            f"""
            SELECT * FROM {self.name}
            WHERE status = :status AND lease_expires_ts IS NOT NULL
              AND lease_expires_ts <= :now_ts
            ORDER BY lease_expires_ts ASC
            LIMIT :limit
            """,
            {"status": SENDING, "now_ts": now_ts, "limit": limit},
        )

    async def reclaim(self, pk: int, *, now_ts: int) -> bool:
        """SENDING -> PENDING for a lease that expired without an outcome."""
        rowcount = await self.execute(
            f"""
            UPDATE {self.name}
            SET status = :pending, lease_owner = NULL, lease_expires_ts = NULL,
                updated_ts = :now_ts
            WHERE pk = :pk AND status = :sending
              AND lease_expires_ts IS NOT NULL AND lease_expires_ts <= :now_ts
            """,
            {"pending": PENDING, "sending": SENDING, "now_ts": now_ts, "pk": pk},
        )
        return rowcount == 1

    # -------------------------------------------------------------------------
    # Outcomes
    # -------------------------------------------------------------------------

    async def mark_sent(self, pk: int, *, owner: str, now_ts: int) -> bool:
        """SENDING -> SENT, only for the current lease holder."""
        rowcount = await self.execute(
            f"""
            UPDATE {self.name}
            SET status = :sent, sent_ts = :now_ts, error_message = NULL,
                next_retry_ts = NULL, lease_owner = NULL, lease_expires_ts = NULL,
                updated_ts = :now_ts
            WHERE pk = :pk AND status = :sending AND lease_owner = :owner
            """,
            {"sent": SENT, "sending": SENDING, "owner": owner, "now_ts": now_ts, "pk": pk},
        )
        return rowcount == 1

    async def mark_failed(
        self,
        pk: int,
        *,
        owner: str,
        error: str,
        next_retry_ts: int | None,
        now_ts: int,
    ) -> bool:
        """SENDING -> FAILED, consuming one attempt without exceeding max_retry."""
        rowcount = await self.execute(
            f"""
            UPDATE {self.name}
            SET status = :failed, error_message = :error,
                retry_count = CASE WHEN retry_count < max_retry
                                   THEN retry_count + 1 ELSE retry_count END,
                next_retry_ts = :next_retry_ts,
                lease_owner = NULL, lease_expires_ts = NULL, updated_ts = :now_ts
            WHERE pk = :pk AND status = :sending AND lease_owner = :owner
            """,
            {
                "failed": FAILED,
                "sending": SENDING,
                "owner": owner,
                "error": error,
                "next_retry_ts": next_retry_ts,
                "now_ts": now_ts,
                "pk": pk,
            },
        )
        return rowcount == 1

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    async def cancel(self, queue_id: str, *, reason: str, now_ts: int) -> bool:
        """PENDING -> FAILED. Does not consume an attempt and is never auto-retried."""
        rowcount = await self.execute(
            f"""
            UPDATE {self.name}
            SET status = :failed, error_message = :reason, next_retry_ts = NULL,
                updated_ts = :now_ts
            WHERE queue_id = :queue_id AND status = :pending
            """,
            {"failed": FAILED, "pending": PENDING, "reason": reason, "now_ts": now_ts, "queue_id": queue_id},
        )
        return rowcount == 1

    async def reset_to_pending(self, queue_id: str, *, now_ts: int) -> bool:
        """FAILED -> PENDING on operator request, while retries remain."""
        rowcount = await self.execute(
            f"""
            UPDATE {self.name}
            SET status = :pending, next_retry_ts = NULL, updated_ts = :now_ts
            WHERE queue_id = :queue_id AND status = :failed AND retry_count < max_retry
            """,
            {"pending": PENDING, "failed": FAILED, "now_ts": now_ts, "queue_id": queue_id},
        )
        return rowcount == 1

    async def retry_candidates(self, *, now_ts: int, limit: int) -> list[dict[str, Any]]:
        """FAILED tasks with retries left whose backoff window has elapsed."""
        return await self.fetch_all(
            f"""
            SELECT * FROM {self.name}
            WHERE status = :status AND retry_count < max_retry
              AND next_retry_ts IS NOT NULL AND next_retry_ts <= :now_ts
            ORDER BY next_retry_ts ASC, priority ASC
            LIMIT :limit
            """,
            {"status": FAILED, "now_ts": now_ts, "limit": limit},
        )

    async def release_for_retry(self, pk: int, *, now_ts: int) -> bool:
        """FAILED -> PENDING from the automatic retry sweep."""
        rowcount = await self.execute(
            f"""
            UPDATE {self.name}
            SET status = :pending, next_retry_ts = NULL, updated_ts = :now_ts
            WHERE pk = :pk AND status = :failed AND retry_count < max_retry
              AND next_retry_ts IS NOT NULL AND next_retry_ts <= :now_ts
            """,
            {"pending": PENDING, "failed": FAILED, "now_ts": now_ts, "pk": pk},
        )
        return rowcount == 1

    async def purge_sent_before(self, cutoff_ts: int) -> int:
        """Delete SENT tasks delivered before ``cutoff_ts``. Returns rows removed."""
        return await self.execute(
            f"DELETE FROM {self.name} WHERE status = :status AND sent_ts < :cutoff_ts",
            {"status": SENT, "cutoff_ts": cutoff_ts},
        )


__all__ = ["EmailTasksTable"]
