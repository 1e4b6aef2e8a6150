# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Base adapter class for async database backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence


class DbAdapter(ABC):
    """Abstract base class for async database adapters.

    All queries use :name placeholders (supported by both SQLite and PostgreSQL).
    Every write commits immediately: the queue expresses each state change as a
    single-row conditional UPDATE and never needs multi-statement transactions.
    """

    def pk_column(self, name: str) -> str:
        """Return SQL definition for autoincrement primary key column."""
        return f'"{name}" INTEGER PRIMARY KEY AUTOINCREMENT'

    @abstractmethod
    async def connect(self) -> None:
        """Establish database connection."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close database connection."""
        ...

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute query, return affected row count."""
        ...

    @abstractmethod
    async def execute_many(
        self, query: str, params_list: Sequence[dict[str, Any]]
    ) -> int:
        """Execute query multiple times with different params (batch insert)."""
        ...

    @abstractmethod
    async def execute_returning(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute a write with a RETURNING clause, commit, return the first row."""
        ...

    @abstractmethod
    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute query, return single row as dict or None."""
        ...

    @abstractmethod
    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute query, return all rows as list of dicts."""
        ...

    @abstractmethod
    async def execute_script(self, script: str) -> None:
        """Execute multiple statements (for schema creation)."""
        ...

    @abstractmethod
    async def upsert(
        self,
        table: str,
        data: dict[str, Any],
        conflict_columns: Sequence[str],
        update_extras: Sequence[str] | None = None,
    ) -> int:
        """Insert or update row on conflict.

        Args:
            table: Table name.
            data: Column-value pairs to insert/update.
            conflict_columns: Columns that define uniqueness.
            update_extras: Extra SQL expressions for UPDATE (e.g., "updated_ts = :updated_ts").

        Returns:
            Affected row count.
        """
        ...

    # -------------------------------------------------------------------------
    # Generic CRUD helpers built on the primitives above
    # -------------------------------------------------------------------------

    def _where_sql(self, where: dict[str, Any] | None) -> str:
        if not where:
            return ""
        return " WHERE " + " AND ".join(f"{k} = :{k}" for k in where)

    async def insert(self, table: str, data: dict[str, Any]) -> int:
        """Insert a single row, return affected row count."""
        columns = list(data.keys())
        col_list = ", ".join(columns)
        placeholders = ", ".join(f":{c}" for c in columns)
        return await self.execute(
            f"INSERT INTO {table} ({col_list}) VALUES ({placeholders})", data
        )

    async def insert_or_ignore(
        self, table: str, data: dict[str, Any], conflict_columns: Sequence[str]
    ) -> int:
        """Insert a row unless one with the same ``conflict_columns`` exists.

        Returns 1 when inserted, 0 when the row was already there. Both
        SQLite and PostgreSQL accept ``ON CONFLICT ... DO NOTHING``.
        """
        columns = list(data.keys())
        col_list = ", ".join(columns)
        placeholders = ", ".join(f":{c}" for c in columns)
        conflict_cols = ", ".join(conflict_columns)
        return await self.execute(
            f"INSERT INTO {table} ({col_list}) VALUES ({placeholders}) "
            f"ON CONFLICT ({conflict_cols}) DO NOTHING",
            data,
        )

    async def select(
        self,
        table: str,
        columns: list[str] | None = None,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Select rows matching equality conditions."""
        cols_sql = ", ".join(columns) if columns else "*"
        query = f"SELECT {cols_sql} FROM {table}{self._where_sql(where)}"
        if order_by:
            query += f" ORDER BY {order_by}"
        if limit is not None:
            query += f" LIMIT {int(limit)}"
        return await self.fetch_all(query, where)

    async def select_one(
        self,
        table: str,
        columns: list[str] | None = None,
        where: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Select the first row matching equality conditions."""
        rows = await self.select(table, columns, where, limit=1)
        return rows[0] if rows else None

    async def update(
        self, table: str, values: dict[str, Any], where: dict[str, Any]
    ) -> int:
        """Update rows matching equality conditions, return affected row count."""
        set_sql = ", ".join(f"{k} = :v_{k}" for k in values)
        params = {f"v_{k}": v for k, v in values.items()}
        params.update(where)
        return await self.execute(
            f"UPDATE {table} SET {set_sql}{self._where_sql(where)}", params
        )

    async def delete(self, table: str, where: dict[str, Any]) -> int:
        """Delete rows matching equality conditions, return affected row count."""
        return await self.execute(f"DELETE FROM {table}{self._where_sql(where)}", where)

    async def count(self, table: str, where: dict[str, Any] | None = None) -> int:
        """Count rows matching equality conditions."""
        row = await self.fetch_one(
            f"SELECT COUNT(*) AS cnt FROM {table}{self._where_sql(where)}", where
        )
        return int(row["cnt"]) if row else 0
