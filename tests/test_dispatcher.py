# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for dispatching leased tasks and recording outcomes."""

import pytest

from mail_queue.dispatcher import Dispatcher
from mail_queue.lease import LeaseManager
from mail_queue.retry import RetryStrategy
from mail_queue.transport import SendResult

from conftest import FakeTransport

NOW = 1_700_000_000


async def leased_task(db, queue_id="t1", **fields):
    record = {
        "queue_id": queue_id,
        "recipient_email": "user@example.com",
        "subject": "s",
        "content": "c",
        "priority": 5,
        "max_retry": 3,
    }
    record.update(fields)
    await db.tasks.add(record)
    manager = LeaseManager(db.tasks, owner="w1")
    (task,) = [t for t in await manager.lease(10, now_ts=NOW) if t.queue_id == queue_id]
    return task


def make_dispatcher(db, transport, **kwargs):
    return Dispatcher(db.tasks, transport, RetryStrategy(3, delays=(60,)), owner="w1", **kwargs)


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_success_marks_sent(self, db):
        task = await leased_task(db)
        transport = FakeTransport()

        assert await make_dispatcher(db, transport).dispatch(task, now_ts=NOW) is True

        row = await db.tasks.get("t1")
        assert row["status"] == "SENT"
        assert row["sent_ts"] == NOW
        assert transport.sent_ids == ["t1"]

    @pytest.mark.asyncio
    async def test_temporary_failure_schedules_retry(self, db):
        task = await leased_task(db)
        transport = FakeTransport([SendResult.failed("451 try again later")])

        assert await make_dispatcher(db, transport).dispatch(task, now_ts=NOW) is False

        row = await db.tasks.get("t1")
        assert row["status"] == "FAILED"
        assert row["retry_count"] == 1
        assert row["next_retry_ts"] == NOW + 60
        assert row["error_message"] == "451 try again later"

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, db):
        task = await leased_task(db)
        transport = FakeTransport([SendResult.failed("no such user", permanent=True)])

        await make_dispatcher(db, transport).dispatch(task, now_ts=NOW)

        row = await db.tasks.get("t1")
        assert row["status"] == "FAILED"
        assert row["retry_count"] == 1
        assert row["next_retry_ts"] is None

    @pytest.mark.asyncio
    async def test_last_attempt_is_not_retried(self, db):
        task = await leased_task(db, max_retry=1)
        transport = FakeTransport([SendResult.failed("451 busy")])

        await make_dispatcher(db, transport).dispatch(task, now_ts=NOW)

        row = await db.tasks.get("t1")
        assert row["retry_count"] == 1
        assert row["next_retry_ts"] is None

    @pytest.mark.asyncio
    async def test_transport_exception_becomes_failure(self, db):
        task = await leased_task(db)
        transport = FakeTransport([ConnectionRefusedError("connection refused")])

        assert await make_dispatcher(db, transport).dispatch(task, now_ts=NOW) is False

        row = await db.tasks.get("t1")
        assert row["status"] == "FAILED"
        assert "connection refused" in row["error_message"]
        assert row["next_retry_ts"] == NOW + 60

    @pytest.mark.asyncio
    async def test_send_timeout(self, db):
        task = await leased_task(db)
        transport = FakeTransport(delay=1.0)

        await make_dispatcher(db, transport, send_timeout=0.05).dispatch(task, now_ts=NOW)

        row = await db.tasks.get("t1")
        assert row["status"] == "FAILED"
        assert row["error_message"] == "Send timed out after 0.05s"
        assert row["next_retry_ts"] is not None

    @pytest.mark.asyncio
    async def test_lost_lease_does_not_record(self, db):
        task = await leased_task(db)
        await db.tasks.execute(
            "UPDATE email_tasks SET lease_owner = 'other' WHERE queue_id = :queue_id",
            {"queue_id": "t1"},
        )

        transport = FakeTransport()

        assert await make_dispatcher(db, transport).dispatch(task, now_ts=NOW) is False

        row = await db.tasks.get("t1")
        assert row["status"] == "SENDING"
        assert row["lease_owner"] == "other"
        assert transport.calls == []


class TestBatch:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self, db):
        for i in range(3):
            await db.tasks.add({"queue_id": f"t{i}", "recipient_email": "u@example.com",
                                "subject": "s", "content": "c", "created_ts": NOW + i})
        tasks = await LeaseManager(db.tasks, owner="w1").lease(10, now_ts=NOW)
        transport = FakeTransport([SendResult.ok(), RuntimeError("boom"), SendResult.ok()])

        sent, failed = await make_dispatcher(db, transport).dispatch_batch(tasks, now_ts=NOW)

        assert (sent, failed) == (2, 1)
        assert (await db.tasks.get("t1"))["status"] == "FAILED"
        assert (await db.tasks.get("t2"))["status"] == "SENT"


class TestLeaseExpiry:
    """A worker only sends while its lease is still valid and still its own."""

    @pytest.mark.asyncio
    async def test_reclaimed_task_is_not_sent_by_the_previous_holder(self, db):
        await db.tasks.add({"queue_id": "q1", "recipient_email": "u@example.com",
                            "subject": "s", "content": "c"})
        (task_a,) = await LeaseManager(db.tasks, owner="a", lease_timeout=10).lease(10, now_ts=NOW)
        worker_b = LeaseManager(db.tasks, owner="b", lease_timeout=10)

        # Worker A is still busy with earlier tasks of its batch
        assert await worker_b.reclaim_expired(10, now_ts=NOW + 11) == 1
        (task_b,) = await worker_b.lease(10, now_ts=NOW + 11)
        transport_b = FakeTransport()
        dispatcher_b = Dispatcher(db.tasks, transport_b, RetryStrategy(3), owner="b",
                                  send_timeout=5, lease_timeout=10)
        assert await dispatcher_b.dispatch(task_b, now_ts=NOW + 11) is True

        transport_a = FakeTransport()
        dispatcher_a = Dispatcher(db.tasks, transport_a, RetryStrategy(3), owner="a",
                                  send_timeout=5, lease_timeout=10)
        assert await dispatcher_a.dispatch(task_a, now_ts=NOW + 12) is False

        assert transport_a.sent_ids == []
        assert transport_b.sent_ids == ["q1"]
        row = await db.tasks.get("q1")
        assert row["status"] == "SENT"

    @pytest.mark.asyncio
    async def test_expired_lease_is_left_for_the_reclaim_sweep(self, db):
        await db.tasks.add({"queue_id": "q1", "recipient_email": "u@example.com",
                            "subject": "s", "content": "c"})
        (task,) = await LeaseManager(db.tasks, owner="w1", lease_timeout=10).lease(10, now_ts=NOW)
        transport = FakeTransport()
        dispatcher = Dispatcher(db.tasks, transport, RetryStrategy(3), owner="w1",
                                send_timeout=5, lease_timeout=10)

        assert await dispatcher.dispatch(task, now_ts=NOW + 10) is False

        assert transport.calls == []
        row = await db.tasks.get("q1")
        assert row["status"] == "SENDING"
        assert row["retry_count"] == 0

    @pytest.mark.asyncio
    async def test_lease_is_renewed_right_before_sending(self, db):
        task = await leased_task(db)
        seen = []

        class LeaseCheckingTransport(FakeTransport):
            async def send(self, task):
                seen.append((await db.tasks.get(task.queue_id))["lease_expires_ts"])
                return await super().send(task)

        dispatcher = make_dispatcher(db, LeaseCheckingTransport(), lease_timeout=600)
        assert await dispatcher.dispatch(task, now_ts=NOW + 500) is True

        assert seen == [NOW + 500 + 600]

    def test_lease_timeout_must_exceed_send_timeout(self, db):
        with pytest.raises(ValueError, match="lease_timeout"):
            make_dispatcher(db, FakeTransport(), send_timeout=30, lease_timeout=30)


class TestSendLog:
    @pytest.mark.asyncio
    async def test_failed_attempt_is_logged(self, db):
        task = await leased_task(db)
        transport = FakeTransport([SendResult.failed("451 greylisted")])

        await make_dispatcher(db, transport, send_log=db.send_log).dispatch(task, now_ts=NOW)

        (entry,) = await db.send_log.for_task("t1")
        assert entry["attempt"] == 1
        assert entry["status"] == "FAILED"
        assert entry["error_message"] == "451 greylisted"
        assert entry["server"] == "fake:25"
        assert entry["lease_owner"] == "w1"
        assert entry["created_ts"] == NOW
        assert entry["duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_attempts_accumulate_across_retries(self, db):
        task = await leased_task(db)
        transport = FakeTransport([SendResult.failed("451 busy")])
        dispatcher = make_dispatcher(db, transport, send_log=db.send_log)
        await dispatcher.dispatch(task, now_ts=NOW)

        row = await db.tasks.get("t1")
        assert await db.tasks.release_for_retry(row["pk"], now_ts=NOW + 60)
        (retried,) = await LeaseManager(db.tasks, owner="w1").lease(10, now_ts=NOW + 60)
        await dispatcher.dispatch(retried, now_ts=NOW + 60)

        entries = await db.send_log.for_task("t1")
        assert [(e["attempt"], e["status"]) for e in entries] == [(1, "FAILED"), (2, "SENT")]
        assert entries[0]["error_message"] == "451 busy"
        assert (await db.tasks.get("t1"))["error_message"] is None
        assert len(await db.send_log.for_recipient("user@example.com")) == 2

    @pytest.mark.asyncio
    async def test_skipped_send_is_not_logged(self, db):
        task = await leased_task(db)
        await db.tasks.execute(
            "UPDATE email_tasks SET lease_owner = 'other' WHERE queue_id = :queue_id",
            {"queue_id": "t1"},
        )

        await make_dispatcher(db, FakeTransport(), send_log=db.send_log).dispatch(task, now_ts=NOW)

        assert await db.send_log.for_task("t1") == []
