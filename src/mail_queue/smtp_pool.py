# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Lightweight asyncio-friendly SMTP connection pool.

Connections are keyed by asyncio task, so concurrent dispatchers never share
an SMTP session while sequential sends from the same task reuse one.

Example:
    pool = SMTPPool(ttl=300)
    smtp = await pool.get_connection("smtp.example.com", 587, "user", "secret", use_tls=True)
    await smtp.send_message(message)
    await pool.cleanup()
"""

from __future__ import annotations

import asyncio
import logging
import time

import aiosmtplib

logger = logging.getLogger(__name__)

ConnParams = tuple[str, int, str | None, str | None, bool]
# connection, last use, parameters, owning asyncio task
PoolEntry = tuple[aiosmtplib.SMTP, float, ConnParams, asyncio.Task | None]


class SMTPPool:
    """Asyncio-compatible SMTP connection pool with per-task connection reuse.

    Attributes:
        ttl: Maximum age in seconds for pooled connections before expiration.
        timeout: Socket timeout passed to aiosmtplib.
    """

    def __init__(self, ttl: int = 300, timeout: float = 10.0):
        self.ttl = ttl
        self.timeout = timeout
        self.pool: dict[int, PoolEntry] = {}
        self.lock = asyncio.Lock()

    async def _connect(
        self, host: str, port: int, user: str | None, password: str | None, use_tls: bool
    ) -> aiosmtplib.SMTP:
        """Open and authenticate a new connection.

        Port 465 with TLS uses implicit TLS, other ports with TLS use
        STARTTLS, no TLS means plain SMTP.

        Raises:
            asyncio.TimeoutError: If connection takes longer than 15 seconds.
            aiosmtplib.SMTPException: If connection or authentication fails.
        """
        implicit_tls = use_tls and port == 465
        smtp = aiosmtplib.SMTP(
            hostname=host,
            port=port,
            use_tls=implicit_tls,
            start_tls=use_tls and not implicit_tls,
            timeout=self.timeout,
        )

        async def _do_connect():
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        # Guard against aiosmtplib timeouts not covering the whole handshake
        await asyncio.wait_for(_do_connect(), timeout=15.0)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """NOOP health check; True on a 250 reply."""
        try:
            response = await asyncio.wait_for(smtp.noop(), timeout=5.0)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            return False
        return response.code == 250

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            await smtp.quit()
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            logger.debug("Ignoring error while closing SMTP connection: %s", exc)

    async def get_connection(
        self, host: str, port: int, user: str | None, password: str | None, *, use_tls: bool
    ) -> aiosmtplib.SMTP:
        """Return a live connection for the current asyncio task, opening one if needed."""
        owner = asyncio.current_task()
        task_id = id(owner)
        params = (host, port, user, password, use_tls)

        async with self.lock:
            entry = self.pool.get(task_id)

        if entry:
            smtp, last_used, entry_params, _owner = entry
            fresh_enough = (time.time() - last_used) < self.ttl
            if entry_params == params and fresh_enough and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[task_id] = (smtp, time.time(), params, owner)
                return smtp
            async with self.lock:
                self.pool.pop(task_id, None)
            await self._quit(smtp)

        smtp = await self._connect(host, port, user, password, use_tls)
        async with self.lock:
            self.pool[task_id] = (smtp, time.time(), params, owner)
        return smtp

    async def discard(self) -> None:
        """Drop the current task's connection after a send error."""
        task_id = id(asyncio.current_task())
        async with self.lock:
            entry = self.pool.pop(task_id, None)
        if entry:
            await self._quit(entry[0])

    async def cleanup(self, *, close_all: bool = False) -> None:
        """Close expired, unhealthy or orphaned connections.

        A connection is orphaned once the asyncio task that opened it has
        finished, e.g. a one-off API request. ``close_all`` closes every
        connection.
        """
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        stale: list[int] = []
        for task_id, (smtp, last_used, _params, owner) in items:
            orphaned = owner is not None and owner.done()
            if close_all or orphaned or (now - last_used) > self.ttl or not await self._is_alive(smtp):
                stale.append(task_id)

        for task_id in stale:
            async with self.lock:
                entry = self.pool.pop(task_id, None)
            if entry:
                await self._quit(entry[0])


__all__ = ["SMTPPool"]
