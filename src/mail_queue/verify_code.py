# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Verification codes delivered through the queue.

A client of :class:`EmailQueue`: it generates a short code, stores it, and
enqueues the ``VERIFY_CODE`` template for the address. Sending is rate
limited per address and per client IP with its own, stricter windows.
"""

from __future__ import annotations

import logging
import secrets
import string
import time
from enum import Enum
from typing import TYPE_CHECKING

from .entities.verify_code import INVALID, USED
from .exceptions import RateLimitExceeded, TaskValidationError

if TYPE_CHECKING:
    from .queue import EmailQueue

logger = logging.getLogger(__name__)

VERIFY_TEMPLATE_CODE = "VERIFY_CODE"
DEFAULT_TEMPLATE = {
    "template_code": VERIFY_TEMPLATE_CODE,
    "name": "Verification code",
    "subject": "Your verification code: {{ code }}",
    "content": (
        "Your verification code is {{ code }}.\n"
        "It expires in {{ expire_minutes }} minutes.\n"
        "If you did not request it, ignore this email.\n"
    ),
}


class CodeType(str, Enum):
    NUMERIC = "NUMERIC"
    ALPHA = "ALPHA"
    ALPHANUMERIC = "ALPHANUMERIC"


ALPHABETS = {
    CodeType.NUMERIC: string.digits,
    CodeType.ALPHA: string.ascii_uppercase,
    CodeType.ALPHANUMERIC: string.ascii_uppercase + string.digits,
}


def generate_code(length: int = 6, code_type: CodeType = CodeType.NUMERIC) -> str:
    alphabet = ALPHABETS[CodeType(code_type)]
    return "".join(secrets.choice(alphabet) for _ in range(length))


class VerifyCodeService:
    """Sends and checks one-time verification codes.

    Attributes:
        queue: Queue used to deliver the code emails.
        code_length: Characters per code.
        expire_minutes: Validity of a code.
        email_per_minute: Codes per address per minute.
        ip_per_minute: Codes per client IP per minute.
    """

    def __init__(
        self,
        queue: EmailQueue,
        *,
        code_length: int = 6,
        expire_minutes: int = 5,
        email_per_minute: int = 1,
        ip_per_minute: int = 5,
        template_code: str = VERIFY_TEMPLATE_CODE,
        priority: int = 1,
    ):
        self.queue = queue
        self.codes = queue.db.verify_codes
        self.code_length = code_length
        self.expire_minutes = expire_minutes
        self.email_per_minute = email_per_minute
        self.ip_per_minute = ip_per_minute
        self.template_code = template_code
        self.priority = priority
        self._template_installed = False

    async def install_template(self) -> None:
        """Store the default template unless one with the same code exists.

        Runs the insert once per service; a template edited by an operator
        is never overwritten.
        """
        if self._template_installed:
            return
        await self.queue.db.templates.add_if_missing({**DEFAULT_TEMPLATE, "template_code": self.template_code})
        self._template_installed = True

    async def _check_rate(self, email: str, client_ip: str | None) -> None:
        limiter = self.queue.limiter
        key = f"verify_code:email:{email}"
        if not await limiter.allow(key, self.email_per_minute, window_seconds=60):
            raise RateLimitExceeded(key)
        if client_ip:
            key = f"verify_code:ip:{client_ip}"
            if not await limiter.allow(key, self.ip_per_minute, window_seconds=60):
                raise RateLimitExceeded(key)

    async def send_code(
        self,
        email: str,
        *,
        client_ip: str | None = None,
        code_type: CodeType | str = CodeType.NUMERIC,
    ) -> str:
        """Generate a code for ``email`` and enqueue its delivery.

        Earlier unused codes for the address are invalidated.

        Returns:
            The queue id of the delivery task.

        Raises:
            RateLimitExceeded: Too many codes for the address or client IP.
            TaskValidationError: Invalid address or template.
        """
        email = email.strip().lower()
        try:
            code_type = CodeType(code_type)
        except ValueError:
            raise TaskValidationError(f"unknown code type: {code_type}") from None

        await self._check_rate(email, client_ip)

        code = generate_code(self.code_length, code_type)
        now = int(time.time())
        queue_id = await self.queue.enqueue(
            {
                "recipient_email": email,
                "template_code": self.template_code,
                "variables": {
                    "code": code,
                    "expire_minutes": self.expire_minutes,
                    "email": email,
                    "code_type": code_type.value,
                },
                "priority": self.priority,
                "origin": client_ip,
            }
        )
        await self.codes.invalidate_unused(email, now_ts=now)
        await self.codes.add(
            {
                "email": email,
                "code": code,
                "code_type": code_type.value,
                "expires_ts": now + self.expire_minutes * 60,
                "queue_id": queue_id,
                "client_ip": client_ip,
            }
        )
        logger.info("Verification code queued for %s (task %s)", email, queue_id)
        return queue_id

    async def verify(self, email: str, code: str, *, consume: bool = True) -> bool:
        """Check ``code`` against the latest unused code for ``email``.

        Expired codes are marked INVALID. A matching code is marked USED
        unless ``consume`` is False.
        """
        email = email.strip().lower()
        record = await self.codes.latest_unused(email)
        if record is None:
            logger.info("No active verification code for %s", email)
            return False
        now = int(time.time())
        if record["expires_ts"] < now:
            await self.codes.set_status(record["pk"], INVALID, now_ts=now)
            logger.info("Verification code for %s expired", email)
            return False
        if not secrets.compare_digest(record["code"], code.strip().upper()):
            return False
        if consume:
            # A concurrent verify may have consumed it first
            return await self.codes.set_status(record["pk"], USED, now_ts=now)
        return True


__all__ = ["CodeType", "VerifyCodeService", "generate_code"]
