# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry policy: error classification and exponential backoff.

A failed task consumes one attempt (``retry_count`` grows by one, never past
``max_retry``). It becomes eligible for an automatic retry only when the
error is temporary and attempts remain; the sweep then waits until
``next_retry_ts`` before moving it back to PENDING.

Example:
    strategy = RetryStrategy(initial_delay=60, multiplier=2)
    strategy.calculate_delay(0)  # 60
    strategy.calculate_delay(2)  # 240
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence

import aiosmtplib

DEFAULT_MAX_RETRIES = 3
DEFAULT_INITIAL_DELAY = 60
DEFAULT_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY = 3600

TEMPORARY_PATTERNS = (
    "421",  # Service not available
    "450",  # Mailbox unavailable
    "451",  # Local error in processing
    "452",  # Insufficient system storage
    "timeout",
    "timed out",
    "connection refused",
    "connection reset",
    "temporarily unavailable",
    "try again",
    "throttl",  # throttled/throttling
)

PERMANENT_PATTERNS = (
    "wrong_version_number",  # TLS/STARTTLS mismatch
    "certificate verify failed",
    "ssl handshake",
    "certificate_unknown",
    "unknown_ca",
    "certificate has expired",
    "self signed certificate",
    "authentication failed",
    "auth",  # Authentication errors (wrong credentials)
    "535",  # Authentication credentials invalid
    "534",  # Authentication mechanism too weak
    "530",  # Authentication required
    "550",  # Mailbox does not exist
    "553",  # Mailbox name not allowed
)


class RetryStrategy:
    """Decides whether and when a failed task is attempted again.

    Delays grow as ``initial_delay * multiplier ** n`` capped at
    ``max_delay``. An explicit ``delays`` tuple overrides the formula; past
    its end the last value is reused.

    Attributes:
        max_retries: Ceiling copied into new tasks as ``max_retry``.
        delays: Explicit per-attempt delays, or None for exponential.
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        *,
        initial_delay: int = DEFAULT_INITIAL_DELAY,
        multiplier: float = DEFAULT_MULTIPLIER,
        max_delay: int = DEFAULT_MAX_DELAY,
        delays: Sequence[int] | None = None,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.delays = tuple(delays) if delays else None

    @classmethod
    def from_config(cls, config) -> RetryStrategy:
        """Build from a :class:`mail_queue.config.RetryConfig`."""
        return cls(
            max_retries=config.max_retries,
            initial_delay=config.initial_delay,
            multiplier=config.multiplier,
            max_delay=config.max_delay,
        )

    def calculate_delay(self, attempt: int) -> int:
        """Seconds to wait before retry number ``attempt`` (0-indexed)."""
        attempt = max(attempt, 0)
        if self.delays:
            return self.delays[min(attempt, len(self.delays) - 1)]
        delay = self.initial_delay * (self.multiplier ** attempt)
        return int(min(delay, self.max_delay))

    def classify_error(self, exc: BaseException) -> tuple[bool, int | None]:
        """Classify an error as temporary or permanent.

        Returns:
            tuple: (is_temporary, smtp_code)
                - is_temporary: True if the error should trigger a retry
                - smtp_code: The SMTP reply code if available, None otherwise
        """
        smtp_code = None
        if isinstance(exc, aiosmtplib.SMTPException):
            # aiosmtplib stores code in different attributes depending on exception type
            smtp_code = getattr(exc, "smtp_code", None) or getattr(exc, "code", None)

        # Network/timeout errors are temporary
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
            return True, smtp_code

        if smtp_code:
            if 400 <= smtp_code < 500:
                return True, smtp_code
            if 500 <= smtp_code < 600:
                return False, smtp_code

        return self.classify_message(str(exc)), smtp_code

    def classify_message(self, message: str | None) -> bool:
        """Classify a transport error text. True means temporary."""
        error_msg = (message or "").lower()
        for pattern in TEMPORARY_PATTERNS:
            if pattern in error_msg:
                return True
        for pattern in PERMANENT_PATTERNS:
            if pattern in error_msg:
                return False
        # Default: treat unknown errors as temporary (safer for retry)
        return True

    def should_retry(
        self,
        retry_count: int,
        exc: BaseException | None = None,
        *,
        max_retry: int | None = None,
        temporary: bool | None = None,
    ) -> bool:
        """True when another automatic attempt is allowed.

        Args:
            retry_count: Attempts consumed, including the one that just failed.
            exc: The error, classified when ``temporary`` is not given.
            max_retry: Per-task ceiling; defaults to ``max_retries``.
            temporary: Pre-computed classification.
        """
        ceiling = self.max_retries if max_retry is None else max_retry
        if retry_count >= ceiling:
            return False
        if temporary is None:
            temporary = True if exc is None else self.classify_error(exc)[0]
        return temporary

    def next_retry_ts(
        self,
        retry_count: int,
        max_retry: int,
        now_ts: int,
        *,
        temporary: bool = True,
    ) -> int | None:
        """Epoch of the next automatic retry after a failure, or None.

        ``retry_count`` is the value stored after the failure was recorded.
        """
        if not self.should_retry(retry_count, max_retry=max_retry, temporary=temporary):
            return None
        return now_ts + self.calculate_delay(retry_count - 1)


__all__ = [
    "DEFAULT_INITIAL_DELAY",
    "DEFAULT_MAX_DELAY",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_MULTIPLIER",
    "RetryStrategy",
]
