# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Shared fixtures: a scripted transport and queues on temporary SQLite files."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from mail_queue.config import PollerConfig, QueueConfig, RateLimitConfig, RetryConfig, StorageConfig
from mail_queue.queue import EmailQueue
from mail_queue.queue_db import QueueDb
from mail_queue.rate_limit import MemoryCounterStore
from mail_queue.retry import RetryStrategy
from mail_queue.transport import SendResult


class FakeTransport:
    """Scripted transport.

    ``outcomes`` are consumed in order: a SendResult is returned, an
    exception is raised. Once exhausted every send succeeds.
    """

    server = "fake:25"

    def __init__(self, outcomes=None, delay: float = 0.0):
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.calls = []
        self.closed = False
        self.cleanups = 0

    async def send(self, task):
        self.calls.append(task)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else SendResult.ok()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def cleanup(self):
        self.cleanups += 1

    async def close(self):
        self.closed = True

    @property
    def sent_ids(self):
        return [t.queue_id for t in self.calls]


def make_config(db_path: str, **overrides) -> QueueConfig:
    """Test configuration: loops off, no backoff wait, generous rate limits."""
    options = dict(
        storage=StorageConfig(db_path=db_path),
        poller=PollerConfig(pending_interval=0.05, scheduled_interval=0.05, retry_interval=0.05,
                            reclaim_interval=0.05, cleanup_interval=0.05, batch_size=10, send_timeout=2),
        retry=RetryConfig(max_retries=3, initial_delay=0),
        rate_limit=RateLimitConfig(per_recipient=100, per_origin=100, backend="memory"),
        scheduler_active=False,
    )
    options.update(overrides)
    return QueueConfig(**options)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest_asyncio.fixture
async def db(tmp_path):
    queue_db = QueueDb(str(tmp_path / "tables.db"))
    await queue_db.init_db()
    yield queue_db
    await queue_db.close()


@pytest_asyncio.fixture
async def make_queue(tmp_path):
    """Factory building initialized queues; every queue is stopped at teardown."""
    created = []

    async def factory(transport=None, *, name="queue.db", retry_strategy=None, **overrides):
        queue = EmailQueue(
            make_config(str(tmp_path / name), **overrides),
            transport=transport or FakeTransport(),
            counter_store=MemoryCounterStore(),
            retry_strategy=retry_strategy or RetryStrategy(3, delays=(0,)),
        )
        await queue.init()
        created.append(queue)
        return queue

    yield factory
    for queue in created:
        await queue.stop()


@pytest_asyncio.fixture
async def queue(make_queue, transport):
    return await make_queue(transport)
