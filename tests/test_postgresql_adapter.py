# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the PostgreSQL adapter that need no running server."""

import sys

import pytest

from mail_queue.sql.adapters import get_adapter
from mail_queue.sql.adapters.postgresql import convert_placeholders


class FakeCursor:
    def __init__(self, connection, row_factory):
        self.connection = connection
        self.row_factory = row_factory
        self.rowcount = connection.rowcount

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def execute(self, query, params=None):
        self.connection.statements.append((query, params))

    async def executemany(self, query, params_list):
        self.connection.statements.append((query, list(params_list)))

    async def fetchone(self):
        return self.connection.rows[0] if self.connection.rows else None

    async def fetchall(self):
        return list(self.connection.rows)


class FakeConnection:
    def __init__(self, rows=(), rowcount=1):
        self.rows = list(rows)
        self.rowcount = rowcount
        self.statements = []
        self.row_factories = []
        self.commits = 0

    def cursor(self, row_factory=None):
        self.row_factories.append(row_factory)
        return FakeCursor(self, row_factory)

    async def commit(self):
        self.commits += 1


class FakePool:
    def __init__(self, connection):
        self.conn = connection

    def connection(self):
        pool = self

        class _Borrow:
            async def __aenter__(self):
                return pool.conn

            async def __aexit__(self, *exc):
                return False

        return _Borrow()


class TestPlaceholders:
    def test_named_params_become_pyformat(self):
        query = "UPDATE t SET a = :a WHERE pk = :pk AND status = :status_1"
        assert convert_placeholders(query) == (
            "UPDATE t SET a = %(a)s WHERE pk = %(pk)s AND status = %(status_1)s"
        )

    def test_casts_are_preserved(self):
        query = "SELECT created_ts::bigint FROM t WHERE queue_id = :queue_id::text"
        assert convert_placeholders(query) == (
            "SELECT created_ts::bigint FROM t WHERE queue_id = %(queue_id)s::text"
        )

    def test_literal_percent_is_escaped(self):
        query = "SELECT * FROM t WHERE subject LIKE '50%' AND pk = :pk"
        assert convert_placeholders(query) == "SELECT * FROM t WHERE subject LIKE '50%%' AND pk = %(pk)s"

    def test_query_without_params_is_unchanged(self):
        assert convert_placeholders("SELECT COUNT(*) FROM t") == "SELECT COUNT(*) FROM t"


class TestConstruction:
    def test_missing_driver_names_the_extra(self, monkeypatch):
        monkeypatch.setitem(sys.modules, "psycopg", None)
        with pytest.raises(ImportError, match=r"mail-queue\[postgresql\]"):
            get_adapter("postgresql://localhost/queue")

    @pytest.mark.parametrize("dsn", ["postgresql://u:p@db:5432/queue", "postgres://u:p@db/queue"])
    def test_dsn_selects_postgres_adapter(self, dsn):
        pytest.importorskip("psycopg")
        from mail_queue.sql.adapters.postgresql import PostgresAdapter

        adapter = get_adapter(dsn)
        assert isinstance(adapter, PostgresAdapter)
        assert adapter.dsn.startswith("postgresql://")

    def test_pk_column_is_serial(self):
        pytest.importorskip("psycopg")
        adapter = get_adapter("postgresql://localhost/queue")
        assert adapter.pk_column("pk") == '"pk" SERIAL PRIMARY KEY'

    def test_invalid_pool_bounds(self):
        from mail_queue.sql.adapters.postgresql import PostgresAdapter

        with pytest.raises(ValueError, match="pool bounds"):
            PostgresAdapter("postgresql://localhost/queue", min_size=5, max_size=2)


class TestOperations:
    @pytest.fixture
    def adapter(self):
        pytest.importorskip("psycopg")
        from mail_queue.sql.adapters.postgresql import PostgresAdapter

        return PostgresAdapter("postgresql://localhost/queue")

    def attach(self, adapter, **kwargs):
        conn = FakeConnection(**kwargs)
        adapter._pool = FakePool(conn)
        return conn

    @pytest.mark.asyncio
    async def test_execute_converts_and_commits(self, adapter):
        conn = self.attach(adapter, rowcount=1)

        count = await adapter.execute("UPDATE t SET status = :status WHERE pk = :pk", {"status": "SENT", "pk": 3})

        assert count == 1
        assert conn.statements == [
            ("UPDATE t SET status = %(status)s WHERE pk = %(pk)s", {"status": "SENT", "pk": 3})
        ]
        assert conn.commits == 1

    @pytest.mark.asyncio
    async def test_lost_conditional_update_reports_zero(self, adapter):
        self.attach(adapter, rowcount=0)
        assert await adapter.execute("UPDATE t SET a = 1 WHERE pk = :pk", {"pk": 1}) == 0

    @pytest.mark.asyncio
    async def test_fetch_all_returns_dict_rows_without_commit(self, adapter):
        from psycopg.rows import dict_row

        rows = [{"pk": 1, "status": "PENDING"}, {"pk": 2, "status": "PENDING"}]
        conn = self.attach(adapter, rows=rows)

        result = await adapter.fetch_all("SELECT * FROM t WHERE status = :status", {"status": "PENDING"})

        assert result == rows
        assert conn.row_factories == [dict_row]
        assert conn.commits == 0

    @pytest.mark.asyncio
    async def test_fetch_one_empty(self, adapter):
        self.attach(adapter)
        assert await adapter.fetch_one("SELECT * FROM t WHERE pk = :pk", {"pk": 9}) is None

    @pytest.mark.asyncio
    async def test_execute_many_skips_empty_batch(self, adapter):
        conn = self.attach(adapter)
        assert await adapter.execute_many("INSERT INTO t (a) VALUES (:a)", []) == 0
        assert conn.statements == []

    @pytest.mark.asyncio
    async def test_upsert_without_update_columns_does_nothing_on_conflict(self, adapter):
        conn = self.attach(adapter)

        await adapter.upsert("t", {"code": "x"}, ["code"])

        query, params = conn.statements[0]
        assert "ON CONFLICT (code) DO NOTHING" in query
        assert params == {"code": "x"}

    @pytest.mark.asyncio
    async def test_upsert_updates_other_columns(self, adapter):
        conn = self.attach(adapter)

        await adapter.upsert("t", {"code": "x", "body": "b"}, ["code"], ["updated_ts = :updated_ts"])

        query, _ = conn.statements[0]
        assert "DO UPDATE SET body = EXCLUDED.body, updated_ts = %(updated_ts)s" in query

    @pytest.mark.asyncio
    async def test_use_before_connect(self, adapter):
        with pytest.raises(RuntimeError, match="before connect"):
            await adapter.fetch_all("SELECT 1")
