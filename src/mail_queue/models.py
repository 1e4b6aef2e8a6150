# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models and task views for the mail queue.

Models:
    - TaskStatus: lifecycle states of a queued email
    - AttachmentPayload: opaque attachment carried with a task
    - EmailTaskSpec: validated enqueue request
    - EmailTask: read-only view of a stored task row
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

EMAIL_PATTERN = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


class TaskStatus(str, Enum):
    """Lifecycle states of a queued email.

    Attributes:
        PENDING: Waiting to be leased by a poller.
        SENDING: Leased by exactly one worker, transport call in flight.
        SENT: Delivered. Terminal.
        FAILED: Last attempt failed or task cancelled. Terminal unless retried.
    """

    PENDING = "PENDING"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class AttachmentPayload(BaseModel):
    """Attachment carried as base64 content. The queue never inspects it."""

    model_config = ConfigDict(extra="forbid")

    filename: Annotated[str, Field(min_length=1, description="File name shown to the recipient")]
    content: Annotated[str, Field(description="Base64-encoded file content")]
    mime_type: Annotated[
        str,
        Field(default="application/octet-stream", description="MIME type, e.g. application/pdf"),
    ]


class EmailTaskSpec(BaseModel):
    """Enqueue request.

    Either ``subject`` and ``content`` are given, or ``template_code`` names a
    stored template rendered with ``variables`` at enqueue time.

    ``origin`` is an optional identity key (client IP, calling service) used
    for the per-origin rate limit. It is stored with the task for auditing.
    """

    model_config = ConfigDict(extra="forbid")

    recipient_email: Annotated[str, Field(min_length=3, max_length=320)]
    recipient_name: str | None = None
    subject: str | None = None
    content: str | None = None
    template_code: str | None = None
    variables: dict[str, Any] | None = None
    attachments: list[AttachmentPayload] | None = None
    priority: Annotated[
        int | None,
        Field(default=None, ge=MIN_PRIORITY, le=MAX_PRIORITY, description="1 = served first"),
    ]
    max_retry: Annotated[int | None, Field(default=None, ge=0)]
    origin: str | None = None
    schedule_ts: Annotated[
        int | None,
        Field(default=None, ge=0, description="UTC epoch seconds before which the task is not sent"),
    ]

    @field_validator("recipient_email")
    @classmethod
    def recipient_must_be_address(cls, v: str) -> str:
        v = v.strip()
        if not EMAIL_PATTERN.match(v):
            raise ValueError(f"invalid recipient address: {v!r}")
        return v

    @model_validator(mode="after")
    def content_or_template(self) -> EmailTaskSpec:
        if self.template_code:
            return self
        if not self.subject or self.content is None:
            raise ValueError("subject and content are required when no template_code is given")
        return self


@dataclass(frozen=True)
class EmailTask:
    """Stored task as seen by pollers, dispatcher and callers.

    The internal surrogate key ``pk`` is kept for storage operations but is
    excluded from :meth:`to_dict`; callers only ever see ``queue_id``.
    """

    pk: int
    queue_id: str
    recipient_email: str
    status: TaskStatus
    priority: int
    retry_count: int
    max_retry: int
    subject: str | None = None
    content: str | None = None
    recipient_name: str | None = None
    template_code: str | None = None
    attachments: list[dict[str, Any]] | None = None
    origin: str | None = None
    schedule_ts: int | None = None
    next_retry_ts: int | None = None
    lease_owner: str | None = None
    lease_expires_ts: int | None = None
    error_message: str | None = None
    sent_ts: int | None = None
    created_ts: int | None = None
    updated_ts: int | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> EmailTask:
        known = cls.__dataclass_fields__
        data = {k: v for k, v in row.items() if k in known}
        data["status"] = TaskStatus(data["status"])
        return cls(**data)

    @property
    def is_terminal(self) -> bool:
        if self.status == TaskStatus.SENT:
            return True
        return self.status == TaskStatus.FAILED and self.retry_count >= self.max_retry

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("pk")
        data["status"] = self.status.value
        return data


__all__ = [
    "DEFAULT_PRIORITY",
    "MAX_PRIORITY",
    "MIN_PRIORITY",
    "AttachmentPayload",
    "EmailTask",
    "EmailTaskSpec",
    "TaskStatus",
]
