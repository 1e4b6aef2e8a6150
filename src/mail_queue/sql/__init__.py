# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Minimal async SQL layer with adapter pattern.

Usage:
    db = SqlDb("/data/mail_queue.db")
    db.add_table(EmailTasksTable)
    await db.init_db()
    rows = await db.table("email_tasks").fetch_all(
        "SELECT * FROM email_tasks WHERE status = :status",
        {"status": "PENDING"},
    )
"""

from .adapters import DbAdapter, SqliteAdapter, get_adapter
from .column import Boolean, Column, Columns, Integer, String, Timestamp
from .sqldb import SqlDb
from .table import Table

__all__ = [
    "Boolean",
    "Column",
    "Columns",
    "DbAdapter",
    "Integer",
    "SqlDb",
    "SqliteAdapter",
    "String",
    "Table",
    "Timestamp",
    "get_adapter",
]
