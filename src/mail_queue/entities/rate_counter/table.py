# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Rate counters table: fixed-window hit counters shared across processes."""

from __future__ import annotations

from ...sql import Integer, String, Table, Timestamp


class RateCountersTable(Table):
    """Rate counters table.

    Fields:
    - counter_key: e.g. "recipient:alice@example.com" or "origin:10.0.0.1"
    - hits: hits recorded in the current window
    - expires_ts: end of the current window; the next hit after it starts a new one
    """

    name = "rate_counters"

    def configure(self) -> None:
        c = self.columns
        c.column("counter_key", String, primary_key=True)
        c.column("hits", Integer, nullable=False, default=0)
        c.column("expires_ts", Timestamp, nullable=False)

    async def incr(self, counter_key: str, *, ttl: int, now_ts: int) -> int:
        """Atomically count one hit and return the post-increment value.

        Creates the counter with a window of ``ttl`` seconds when absent or
        when the previous window has expired.
        """
        row = await self.db.adapter.execute_returning(
            f"""
            INSERT INTO {self.name} (counter_key, hits, expires_ts)
            VALUES (:counter_key, 1, :expires_ts)
            ON CONFLICT (counter_key) DO UPDATE SET
                hits = CASE WHEN {self.name}.expires_ts <= :now_ts
                            THEN 1 ELSE {self.name}.hits + 1 END,
                expires_ts = CASE WHEN {self.name}.expires_ts <= :now_ts
                                  THEN :expires_ts ELSE {self.name}.expires_ts END
            RETURNING hits
            """,
            {"counter_key": counter_key, "expires_ts": now_ts + ttl, "now_ts": now_ts},
        )
        return int(row["hits"]) if row else 1

    async def purge_expired(self, now_ts: int) -> int:
        return await self.execute(
            f"DELETE FROM {self.name} WHERE expires_ts <= :now_ts", {"now_ts": now_ts}
        )


__all__ = ["RateCountersTable"]
