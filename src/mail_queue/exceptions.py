# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exceptions raised by the mail queue.

Every error carries a short machine-readable ``code`` that the HTTP API and
the CLI report alongside the human message. Normal business outcomes
(cancelling a task that is already in flight, retrying a task that has no
retries left) are not errors and return ``False`` instead.
"""


class MailQueueError(Exception):
    """Base class for all queue errors."""

    code = "mail_queue_error"

    def __init__(self, message: str = "Mail queue error"):
        super().__init__(message)


class TaskValidationError(MailQueueError, ValueError):
    """Raised when an enqueue request is rejected before a task is created."""

    code = "validation_error"

    def __init__(self, message: str = "Invalid email task"):
        super().__init__(message)


class TemplateError(TaskValidationError):
    """Raised when a template is unknown, disabled or fails to render."""

    code = "template_error"

    def __init__(self, template_code: str, reason: str = "not found"):
        self.template_code = template_code
        super().__init__(f"Template '{template_code}' {reason}")


class RateLimitExceeded(MailQueueError):
    """Raised when a rate-limit window has been exhausted for a key."""

    code = "rate_limited"

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Rate limit exceeded for '{key}'")


class TaskNotFoundError(MailQueueError, LookupError):
    """Raised when a queue id does not match any stored task."""

    code = "task_not_found"

    def __init__(self, queue_id: str):
        self.queue_id = queue_id
        super().__init__(f"Task '{queue_id}' not found")


__all__ = [
    "MailQueueError",
    "RateLimitExceeded",
    "TaskNotFoundError",
    "TaskValidationError",
    "TemplateError",
]
