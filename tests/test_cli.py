# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the mail-queue command-line interface."""

import json

import pytest
from click.testing import CliRunner

from conftest import FakeTransport
from mail_queue import cli
from mail_queue.cli import main
from mail_queue.queue import EmailQueue


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for var in ("MQ_CONFIG", "MQ_DB_PATH"):
        monkeypatch.delenv(var, raising=False)
    db_path = str(tmp_path / "cli.db")

    def _invoke(*args):
        return runner.invoke(main, ["--db", db_path, *args])

    return _invoke


def output_text(result):
    """Output with rich line wrapping undone."""
    return " ".join(result.output.split())


def enqueue_json(invoke, *args):
    result = invoke("enqueue", *args, "--json")
    assert result.exit_code == 0, result.output
    return json.loads(result.output)["queue_id"]


class TestTasks:
    def test_enqueue_and_status(self, invoke):
        queue_id = enqueue_json(invoke, "ada@example.com", "-s", "Hello", "-c", "Body", "--priority", "2")

        result = invoke("status", queue_id, "--json")

        assert result.exit_code == 0
        task = json.loads(result.output)
        assert task["status"] == "PENDING"
        assert task["priority"] == 2
        assert task["subject"] == "Hello"

    def test_enqueue_plain_output(self, invoke):
        result = invoke("enqueue", "ada@example.com", "-s", "Hello", "-c", "Body")
        assert result.exit_code == 0
        assert "Enqueued" in result.output

    def test_invalid_enqueue_exits_1(self, invoke):
        result = invoke("enqueue", "not-an-address", "-s", "Hello", "-c", "Body")
        assert result.exit_code == 1
        assert "invalid recipient address" in output_text(result)

    def test_enqueue_with_attachment(self, invoke, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("hello")
        queue_id = enqueue_json(invoke, "ada@example.com", "-s", "S", "-c", "B", "--attach", str(path))

        task = json.loads(invoke("status", queue_id, "--json").output)

        assert task["attachments"][0]["filename"] == "notes.txt"
        assert task["attachments"][0]["mime_type"] == "text/plain"

    def test_schedule_at_iso(self, invoke):
        queue_id = enqueue_json(
            invoke, "ada@example.com", "-s", "S", "-c", "B", "--schedule-at", "2030-01-01T00:00:00+00:00"
        )
        task = json.loads(invoke("status", queue_id, "--json").output)
        assert task["schedule_ts"] == 1893456000

    def test_bad_var_rejected(self, invoke):
        result = invoke("enqueue", "ada@example.com", "-t", "X", "--var", "novalue")
        assert result.exit_code == 2

    def test_cancel_and_retry(self, invoke):
        queue_id = enqueue_json(invoke, "ada@example.com", "-s", "S", "-c", "B")

        cancel = invoke("cancel", queue_id)
        assert cancel.exit_code == 0
        assert "cancelled" in cancel.output
        assert invoke("cancel", queue_id).exit_code == 1

        retry = invoke("retry", queue_id)
        assert retry.exit_code == 0
        assert json.loads(invoke("status", queue_id, "--json").output)["status"] == "PENDING"

    def test_status_lists_attempts(self, invoke, monkeypatch):
        transport = FakeTransport()
        monkeypatch.setattr(cli, "EmailQueue", lambda config: EmailQueue(config, transport=transport))
        queue_id = enqueue_json(invoke, "ada@example.com", "-s", "S", "-c", "B")
        assert json.loads(invoke("status", queue_id, "--json").output)["attempts"] == []

        assert invoke("run-now").exit_code == 0

        task = json.loads(invoke("status", queue_id, "--json").output)
        assert task["status"] == "SENT"
        assert [a["status"] for a in task["attempts"]] == ["SENT"]
        assert task["attempts"][0]["server"] == "fake:25"
        plain = invoke("status", queue_id)
        assert plain.exit_code == 0
        assert "Attempts" in plain.output

    def test_unknown_task(self, invoke):
        result = invoke("status", "missing")
        assert result.exit_code == 1
        assert "not found" in output_text(result)

    def test_list_and_stats(self, invoke):
        enqueue_json(invoke, "a@example.com", "-s", "S", "-c", "B")
        enqueue_json(invoke, "b@example.com", "-s", "S", "-c", "B")

        listed = json.loads(invoke("list", "--status", "PENDING", "--json").output)
        stats = json.loads(invoke("stats", "--json").output)

        assert {t["recipient_email"] for t in listed} == {"a@example.com", "b@example.com"}
        assert stats == {"PENDING": 2, "SENDING": 0, "SENT": 0, "FAILED": 0}

    def test_list_empty(self, invoke):
        result = invoke("list")
        assert result.exit_code == 0
        assert "No tasks found" in result.output

    def test_purge(self, invoke):
        result = invoke("purge", "--older-than-days", "7")
        assert result.exit_code == 0
        assert "Removed 0" in result.output


class TestTemplates:
    def test_add_list_use_remove(self, invoke):
        added = invoke("templates", "add", "WELCOME", "-s", "Hi {{ name }}", "-c", "Welcome {{ name }}")
        assert added.exit_code == 0

        listed = json.loads(invoke("templates", "list", "--json").output)
        assert [t["template_code"] for t in listed] == ["WELCOME"]

        queue_id = enqueue_json(invoke, "ada@example.com", "-t", "WELCOME", "--var", "name=Ada")
        task = json.loads(invoke("status", queue_id, "--json").output)
        assert task["subject"] == "Hi Ada"

        assert invoke("templates", "remove", "WELCOME", "--force").exit_code == 0
        assert invoke("templates", "remove", "WELCOME", "--force").exit_code == 1

    def test_add_requires_content(self, invoke):
        result = invoke("templates", "add", "EMPTY", "-s", "Subject")
        assert result.exit_code == 1

    def test_missing_template(self, invoke):
        result = invoke("enqueue", "ada@example.com", "-t", "NOPE")
        assert result.exit_code == 1
        assert "Template 'NOPE' not found" in output_text(result)
