# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Tests for the background loops of QueueScheduler."""

import asyncio
import time

import pytest

from mail_queue.config import PollerConfig
from mail_queue.models import TaskStatus
from mail_queue.transport import SendResult

from conftest import FakeTransport


async def wait_for_status(queue, queue_id, status, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        task = await queue.get_task(queue_id)
        if task.status == status:
            return task
        await asyncio.sleep(0.02)
    raise AssertionError(f"task {queue_id} never reached {status}")


def fast_poller(**overrides):
    options = dict(pending_interval=0.05, scheduled_interval=0.05, retry_interval=0.05,
                   reclaim_interval=0.05, cleanup_interval=0.05, batch_size=10, send_timeout=2)
    options.update(overrides)
    return PollerConfig(**options)


class TestLoops:
    @pytest.mark.asyncio
    async def test_start_sends_enqueued_tasks(self, make_queue):
        transport = FakeTransport()
        queue = await make_queue(transport, scheduler_active=True)
        await queue.start()
        assert queue.scheduler.running

        queue_id = await queue.enqueue({"recipient_email": "a@example.com", "subject": "s", "content": "c"})

        await wait_for_status(queue, queue_id, TaskStatus.SENT)
        await queue.stop()
        assert not queue.scheduler.running
        assert transport.closed

    @pytest.mark.asyncio
    async def test_inactive_scheduler_does_not_start_loops(self, make_queue):
        queue = await make_queue()
        await queue.start()
        assert not queue.scheduler.running

    @pytest.mark.asyncio
    async def test_retry_loop_resends_after_temporary_failure(self, make_queue):
        transport = FakeTransport([SendResult.failed("451 try again")])
        queue = await make_queue(transport, scheduler_active=True)
        await queue.start()

        queue_id = await queue.enqueue({"recipient_email": "a@example.com", "subject": "s", "content": "c"})

        task = await wait_for_status(queue, queue_id, TaskStatus.SENT)
        assert task.retry_count == 1
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_wake_runs_pending_before_interval(self, make_queue):
        transport = FakeTransport()
        queue = await make_queue(transport, scheduler_active=True, poller=fast_poller(pending_interval=3600))
        await queue.start()
        await asyncio.sleep(0.05)

        # enqueue wakes the pending loop
        queue_id = await queue.enqueue({"recipient_email": "a@example.com", "subject": "s", "content": "c"})

        await wait_for_status(queue, queue_id, TaskStatus.SENT, timeout=1.0)

    @pytest.mark.asyncio
    async def test_loop_survives_tick_errors(self, make_queue):
        queue = await make_queue(scheduler_active=True)
        calls = []
        original = queue.lease.lease

        async def flaky_lease(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("store unavailable")
            return await original(*args, **kwargs)

        queue.lease.lease = flaky_lease
        await queue.start()
        queue_id = await queue.enqueue({"recipient_email": "a@example.com", "subject": "s", "content": "c"})

        await wait_for_status(queue, queue_id, TaskStatus.SENT)

    @pytest.mark.asyncio
    async def test_cleanup_loop_sweeps_transport(self, make_queue, transport):
        queue = await make_queue(transport, scheduler_active=True)
        await queue.start()

        async with asyncio.timeout(2.0):
            while transport.cleanups == 0:
                await asyncio.sleep(0.01)

    @pytest.mark.asyncio
    async def test_cleanup_tick_calls_transport(self, make_queue, transport):
        queue = await make_queue(transport)
        assert await queue.scheduler.run_cleanup_tick() == 0
        assert transport.cleanups == 1

    @pytest.mark.asyncio
    async def test_stop_is_safe_without_start(self, make_queue):
        queue = await make_queue()
        await queue.scheduler.stop()
        assert not queue.scheduler.running


class TestReclaim:
    @pytest.mark.asyncio
    async def test_reclaim_loop_recovers_stuck_task(self, make_queue):
        transport = FakeTransport()
        queue = await make_queue(
            transport,
            scheduler_active=True,
            poller=fast_poller(reclaim_enabled=True),
        )
        queue_id = await queue.enqueue({"recipient_email": "a@example.com", "subject": "s", "content": "c"})
        # A worker that crashed after leasing
        await queue.tasks.execute(
            "UPDATE email_tasks SET status = 'SENDING', lease_owner = 'crashed', "
            "lease_expires_ts = :expired WHERE queue_id = :queue_id",
            {"expired": int(time.time()) - 1, "queue_id": queue_id},
        )

        await queue.start()

        await wait_for_status(queue, queue_id, TaskStatus.SENT)
        assert transport.sent_ids == [queue_id]

    @pytest.mark.asyncio
    async def test_run_now_reports_reclaimed_when_enabled(self, make_queue):
        queue = await make_queue(poller=fast_poller(reclaim_enabled=True))
        result = await queue.run_now()
        assert result == {"retried": 0, "reclaimed": 0, "pending": 0, "scheduled": 0}

    @pytest.mark.asyncio
    async def test_stuck_task_stays_without_reclaim(self, make_queue):
        queue = await make_queue(poller=fast_poller(reclaim_enabled=False))
        queue_id = await queue.enqueue({"recipient_email": "a@example.com", "subject": "s", "content": "c"})
        await queue.tasks.execute(
            "UPDATE email_tasks SET status = 'SENDING', lease_owner = 'crashed', "
            "lease_expires_ts = 0 WHERE queue_id = :queue_id",
            {"queue_id": queue_id},
        )

        await queue.run_now()

        assert (await queue.get_task(queue_id)).status == TaskStatus.SENDING
