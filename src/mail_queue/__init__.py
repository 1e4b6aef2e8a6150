# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable asynchronous email delivery queue.

Tasks are persisted in a SQL store, leased by pollers through a conditional
state transition, dispatched through a transport and retried with
exponential backoff. The main entry point is :class:`EmailQueue`.
"""

from .config import QueueConfig, load_config
from .exceptions import (
    MailQueueError,
    RateLimitExceeded,
    TaskNotFoundError,
    TaskValidationError,
    TemplateError,
)
from .models import EmailTask, EmailTaskSpec, TaskStatus
from .queue import EmailQueue

__version__ = "0.3.0"

__all__ = [
    "EmailQueue",
    "EmailTask",
    "EmailTaskSpec",
    "MailQueueError",
    "QueueConfig",
    "RateLimitExceeded",
    "TaskNotFoundError",
    "TaskStatus",
    "TaskValidationError",
    "TemplateError",
    "load_config",
]
