# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite async adapter using aiosqlite."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import aiosqlite

from .base import DbAdapter

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence


class SqliteAdapter(DbAdapter):
    """SQLite async adapter.

    File databases open a connection per operation, so concurrent pollers
    in the same process behave like independent clients and SQLite's write
    lock serializes their conditional updates. An in-memory database only
    lives as long as its connection, so ``:memory:`` keeps one shared
    connection guarded by a lock.
    """

    def __init__(self, db_path: str, timeout: float = 30.0):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file, or ":memory:" for in-memory DB.
            timeout: Seconds to wait on a locked database before failing.
        """
        self.db_path = db_path or ":memory:"
        self.timeout = timeout
        self._shared: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def in_memory(self) -> bool:
        return self.db_path == ":memory:"

    async def connect(self) -> None:
        """Open the shared connection for in-memory databases; no-op for files."""
        if self.in_memory and self._shared is None:
            self._shared = await aiosqlite.connect(self.db_path)

    async def close(self) -> None:
        """Close the shared connection, if any."""
        if self._shared is not None:
            await self._shared.close()
            self._shared = None

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[aiosqlite.Connection]:
        if self.in_memory:
            if self._shared is None:
                await self.connect()
            async with self._lock:
                yield self._shared  # type: ignore[misc]
            return
        async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
            yield db

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        async with self._connection() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def execute_many(
        self, query: str, params_list: Sequence[dict[str, Any]]
    ) -> int:
        """Execute query multiple times with different params (batch insert)."""
        async with self._connection() as db:
            await db.executemany(query, params_list)
            await db.commit()
            return len(params_list)

    async def execute_returning(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute a write with RETURNING, commit, return the first row (SQLite >= 3.35)."""
        async with self._connection() as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                cols = [c[0] for c in cursor.description] if cursor.description else []
            await db.commit()
            if row is None:
                return None
            return dict(zip(cols, row, strict=True))

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        async with self._connection() as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
                if row is None:
                    return None
                cols = [c[0] for c in cursor.description]
                return dict(zip(cols, row, strict=True))

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        async with self._connection() as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
                cols = [c[0] for c in cursor.description]
                return [dict(zip(cols, row, strict=True)) for row in rows]

    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        async with self._connection() as db:
            await db.executescript(script)
            await db.commit()

    async def upsert(
        self,
        table: str,
        data: dict[str, Any],
        conflict_columns: Sequence[str],
        update_extras: Sequence[str] | None = None,
    ) -> int:
        """Insert or update using SQLite ON CONFLICT DO UPDATE."""
        columns = list(data.keys())
        placeholders = ", ".join(f":{c}" for c in columns)
        col_list = ", ".join(columns)
        conflict_cols = ", ".join(conflict_columns)
        update_parts = [f"{c} = excluded.{c}" for c in columns if c not in conflict_columns]
        if update_extras:
            update_parts.extend(update_extras)
        update_cols = ", ".join(update_parts)

        query = f"""
            INSERT INTO {table} ({col_list}) VALUES ({placeholders})
            ON CONFLICT ({conflict_cols}) DO UPDATE SET {update_cols}
        """
        return await self.execute(query, data)
