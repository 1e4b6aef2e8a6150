# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Send log table: one row per delivery attempt."""

from __future__ import annotations

from typing import Any

from ...sql import Integer, String, Table, Timestamp


class SendLogTable(Table):
    """Delivery attempts, kept after the task row moves on.

    The task row only holds the latest ``error_message``; every attempt,
    successful or not, is appended here with the server that handled it
    and how long the transport call took.

    Fields:
    - queue_id, recipient_email: Task the attempt belongs to
    - attempt: 1 for the first send, incremented on every retry
    - status: SENT or FAILED
    - server: Transport endpoint (``host:port`` for SMTP)
    - duration_ms: Wall time of the transport call
    """

    name = "email_send_log"

    def configure(self) -> None:
        c = self.columns
        c.column("pk", Integer, primary_key=True)
        c.column("queue_id", String, nullable=False)
        c.column("recipient_email", String, nullable=False)
        c.column("attempt", Integer, nullable=False)
        c.column("status", String, nullable=False)
        c.column("error_message", String)
        c.column("server", String)
        c.column("duration_ms", Integer)
        c.column("lease_owner", String)
        c.column("created_ts", Timestamp)

    def create_indexes_sql(self) -> list[str]:
        return [
            f"CREATE INDEX IF NOT EXISTS idx_{self.name}_queue ON {self.name} (queue_id, pk)",
            f"CREATE INDEX IF NOT EXISTS idx_{self.name}_recipient "
            f"ON {self.name} (recipient_email, created_ts)",
        ]

    async def log(self, record: dict[str, Any]) -> None:
        """Append one attempt."""
        await self.insert(record)

    async def for_task(self, queue_id: str) -> list[dict[str, Any]]:
        """Attempts for a task, oldest first."""
        return await self.select(where={"queue_id": queue_id}, order_by="pk")

    async def for_recipient(self, recipient_email: str, limit: int = 100) -> list[dict[str, Any]]:
        """Most recent attempts to an address, newest first."""
        return await self.select(
            where={"recipient_email": recipient_email},
            order_by="created_ts DESC, pk DESC",
            limit=limit,
        )

    async def purge_orphans(self, tasks_table: str) -> int:
        """Drop attempts whose task row no longer exists."""
        return await self.execute(
            f"DELETE FROM {self.name} WHERE queue_id NOT IN (SELECT queue_id FROM {tasks_table})"
        )


__all__ = ["SendLogTable"]
