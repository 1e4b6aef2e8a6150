# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Database manager owning an adapter and a registry of tables."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .adapters import DbAdapter, get_adapter

if TYPE_CHECKING:
    from .table import Table


class SqlDb:
    """Async database manager.

    Tables are registered once with :meth:`add_table` and reached by name
    through :meth:`table`. All SQL goes through ``self.adapter``.
    """

    def __init__(self, connection_string: str):
        self.connection_string = connection_string
        self.adapter: DbAdapter = get_adapter(connection_string)
        self.tables: dict[str, Table] = {}

    def add_table(self, table_class: type[Table]) -> Table:
        """Instantiate and register a table class, return the instance."""
        instance = table_class(self)
        self.tables[instance.name] = instance
        return instance

    def table(self, name: str) -> Table:
        """Return a registered table by name."""
        try:
            return self.tables[name]
        except KeyError:
            raise ValueError(f"Table '{name}' is not registered") from None

    async def connect(self) -> None:
        await self.adapter.connect()

    async def close(self) -> None:
        await self.adapter.close()

    async def check_structure(self) -> None:
        """Create every registered table (and its indexes) if missing."""
        for table in self.tables.values():
            await table.create_schema()

    async def init_db(self) -> None:
        """Connect, create tables, add columns introduced since the last run."""
        await self.connect()
        await self.check_structure()
        for table in self.tables.values():
            await table.sync_schema()
