# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Verification codes table used by the verify-code client of the queue."""

from __future__ import annotations

from typing import Any

from ...sql import Integer, String, Table, Timestamp

UNUSED = "UNUSED"
USED = "USED"
INVALID = "INVALID"


class VerifyCodesTable(Table):
    """Verification codes table.

    Fields:
    - email: Address the code was sent to
    - code, code_type: The code and its alphabet (NUMERIC, ALPHA, ALPHANUMERIC)
    - status: UNUSED, USED or INVALID
    - expires_ts: Code is rejected after this epoch
    - queue_id: Email task that carried the code
    """

    name = "verify_codes"

    def configure(self) -> None:
        c = self.columns
        c.column("pk", Integer, primary_key=True)
        c.column("email", String, nullable=False)
        c.column("code", String, nullable=False)
        c.column("code_type", String, nullable=False)
        c.column("status", String, nullable=False, default=UNUSED)
        c.column("expires_ts", Integer, nullable=False)
        c.column("queue_id", String)
        c.column("client_ip", String)
        c.column("used_ts", Integer)
        c.column("created_ts", Integer)
        c.column("updated_ts", Integer)

    def create_indexes_sql(self) -> list[str]:
        return [f"CREATE INDEX IF NOT EXISTS idx_{self.name}_email ON {self.name} (email, status)"]

    async def add(self, record: dict[str, Any]) -> None:
        await self.insert({**record, "status": UNUSED})

    async def latest_unused(self, email: str) -> dict[str, Any] | None:
        return await self.fetch_one(
            f"""
            SELECT * FROM {self.name}
            WHERE email = :email AND status = :status
            ORDER BY created_ts DESC, pk DESC
            LIMIT 1
            """,
            {"email": email, "status": UNUSED},
        )

    async def invalidate_unused(self, email: str, *, now_ts: int) -> int:
        """Mark every outstanding code for ``email`` INVALID."""
        return await self.execute(
            f"""
            UPDATE {self.name} SET status = :invalid, updated_ts = :now_ts
            WHERE email = :email AND status = :unused
            """,
            {"invalid": INVALID, "unused": UNUSED, "email": email, "now_ts": now_ts},
        )

    async def set_status(self, pk: int, status: str, *, now_ts: int) -> bool:
        """UNUSED -> USED or INVALID. False when the code was consumed meanwhile."""
        rowcount = await self.execute(
            f"""
            UPDATE {self.name}
            SET status = :status, updated_ts = :now_ts,
                used_ts = :used_ts
            WHERE pk = :pk AND status = :unused
            """,
            {
                "status": status,
                "unused": UNUSED,
                "used_ts": now_ts if status == USED else None,
                "now_ts": now_ts,
                "pk": pk,
            },
        )
        return rowcount == 1


__all__ = ["INVALID", "UNUSED", "USED", "VerifyCodesTable"]
