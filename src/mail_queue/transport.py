# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transports: the collaborators that actually deliver a task.

A transport reports its outcome as a :class:`SendResult` value. It may also
raise; the dispatcher converts any exception into a failed result.
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import TYPE_CHECKING, Protocol

import aiosmtplib

from .smtp_pool import SMTPPool

if TYPE_CHECKING:
    from .config import SmtpConfig
    from .models import EmailTask

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendResult:
    """Outcome of one delivery attempt.

    Attributes:
        success: True when the message was accepted.
        error: Human-readable error for failed attempts.
        permanent: True when retrying cannot help (bad address, auth failure).
            None lets the retry policy classify ``error``.
    """

    success: bool
    error: str | None = None
    permanent: bool | None = None

    @classmethod
    def ok(cls) -> SendResult:
        return cls(True)

    @classmethod
    def failed(cls, error: str, *, permanent: bool | None = None) -> SendResult:
        return cls(False, error, permanent)


class Transport(Protocol):
    """Delivery collaborator used by the dispatcher.

    ``server`` names the endpoint in the send log.
    """

    server: str | None

    async def send(self, task: EmailTask) -> SendResult:
        ...

    async def cleanup(self) -> None:
        """Release idle resources; called periodically by the scheduler."""
        ...

    async def close(self) -> None:
        ...


def build_message(task: EmailTask, from_addr: str) -> EmailMessage:
    """Build a MIME message from a task. HTML is detected by a leading tag."""
    msg = EmailMessage()
    msg["From"] = from_addr
    msg["To"] = formataddr((task.recipient_name or "", task.recipient_email))
    msg["Subject"] = task.subject or ""
    msg["Message-ID"] = make_msgid()
    msg["X-Queue-Id"] = task.queue_id

    content = task.content or ""
    if content.lstrip().startswith("<"):
        msg.set_content("This message requires an HTML-capable mail client.")
        msg.add_alternative(content, subtype="html")
    else:
        msg.set_content(content)

    for att in task.attachments or []:
        maintype, _, subtype = (att.get("mime_type") or "application/octet-stream").partition("/")
        msg.add_attachment(
            base64.b64decode(att["content"]),
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=att["filename"],
        )
    return msg


class SmtpTransport:
    """Sends tasks through one SMTP server using pooled aiosmtplib connections."""

    def __init__(self, config: SmtpConfig, pool: SMTPPool | None = None):
        self.config = config
        self.pool = pool or SMTPPool(timeout=config.timeout)

    @property
    def server(self) -> str:
        return f"{self.config.host}:{self.config.port}"

    async def send(self, task: EmailTask) -> SendResult:
        cfg = self.config
        message = build_message(task, cfg.from_addr)
        smtp = await self.pool.get_connection(
            cfg.host, cfg.port, cfg.user, cfg.password, use_tls=cfg.use_tls
        )
        try:
            errors, _response = await smtp.send_message(message, sender=cfg.from_addr)
        except aiosmtplib.SMTPRecipientsRefused as exc:
            await self.pool.discard()
            return SendResult.failed(str(exc), permanent=True)
        except (aiosmtplib.SMTPException, OSError):
            await self.pool.discard()
            raise
        if errors:
            # Single recipient per task: any refusal means the send failed
            code, text = next(iter(errors.values()))
            return SendResult.failed(f"{code} {text}", permanent=500 <= code < 600)
        return SendResult.ok()

    async def cleanup(self) -> None:
        await self.pool.cleanup()

    async def close(self) -> None:
        await self.pool.cleanup(close_all=True)


class NullTransport:
    """Accepts every task without sending anything. Used for dry runs."""

    server = None

    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send(self, task: EmailTask) -> SendResult:
        logger.info("Dry run: task %s to %s not sent", task.queue_id, task.recipient_email)
        self.sent.append(task.queue_id)
        return SendResult.ok()

    async def cleanup(self) -> None:
        pass

    async def close(self) -> None:
        pass


__all__ = ["NullTransport", "SendResult", "SmtpTransport", "Transport", "build_message"]
