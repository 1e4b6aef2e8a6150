# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration dataclasses and loader for the mail queue.

Nested structure keeps related settings together:
- config.poller.pending_interval
- config.retry.max_retries
- config.rate_limit.per_recipient

:func:`load_config` fills the dataclasses from an INI file, using ``MQ_*``
environment variables as fallbacks.
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class StorageConfig:
    """Task store settings."""

    db_path: str = "/data/mail_queue.db"
    """SQLite path, ``:memory:`` or a ``postgresql://`` DSN."""


@dataclass
class PollerConfig:
    """Poll loop intervals and batch sizes."""

    pending_interval: float = 10.0
    """Seconds between ticks leasing immediately-due tasks."""

    scheduled_interval: float = 30.0
    """Seconds between ticks leasing scheduled tasks that became due."""

    retry_interval: float = 300.0
    """Seconds between retry sweeps moving eligible FAILED tasks back to PENDING."""

    reclaim_interval: float = 60.0
    """Seconds between sweeps reclaiming expired leases."""

    cleanup_interval: float = 150.0
    """Seconds between sweeps closing idle or orphaned transport connections."""

    batch_size: int = 50
    """Maximum tasks leased per tick."""

    send_timeout: float = 30.0
    """Upper bound in seconds for a single transport call."""

    lease_timeout: int = 600
    """Seconds a SENDING lease stays valid before it can be reclaimed.

    Renewed right before each send, so it must exceed ``send_timeout``.
    """

    reclaim_enabled: bool = False
    """Reclaim expired leases back to PENDING (at-least-once delivery)."""


@dataclass
class RetryConfig:
    """Retry behavior settings."""

    max_retries: int = 3
    """Retry ceiling copied into each task at enqueue time."""

    initial_delay: int = 60
    """Backoff before the first automatic retry, in seconds."""

    multiplier: float = 2.0
    """Growth factor applied to the delay after each failure."""

    max_delay: int = 3600
    """Upper bound for a single backoff delay, in seconds."""


@dataclass
class RateLimitConfig:
    """Enqueue rate limiting."""

    enabled: bool = True
    """Reject enqueue requests that exceed the thresholds below."""

    window_seconds: int = 60
    """Length of the counting window."""

    per_recipient: int = 3
    """Maximum enqueues per recipient address per window."""

    per_origin: int = 20
    """Maximum enqueues per origin key (client IP, service name) per window."""

    backend: str = "sql"
    """Counter backend: ``sql`` (shared across processes) or ``memory``."""


@dataclass
class SmtpConfig:
    """Outgoing SMTP server."""

    host: str = "localhost"
    port: int = 25
    user: str | None = None
    password: str | None = None
    use_tls: bool = False
    from_addr: str = "noreply@localhost"
    """Envelope and header sender for every task."""

    timeout: float = 10.0
    """Socket timeout for SMTP commands."""


@dataclass
class ServerConfig:
    """HTTP server settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    """Value expected in the ``X-API-Token`` header; ``None`` disables auth."""


@dataclass
class QueueConfig:
    """Root configuration object."""

    storage: StorageConfig = field(default_factory=StorageConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    default_priority: int = 5
    """Priority assigned when a request carries none (1 = highest, 10 = lowest)."""

    scheduler_active: bool = True
    """Start the poll loops together with the service."""

    log_level: str = "INFO"


def load_config(path: str | os.PathLike[str] | None = None) -> QueueConfig:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with MQ_):
      MQ_CONFIG - Path to config.ini file (default: config.ini)
      MQ_LOG_LEVEL - Logging level (default: INFO)
      MQ_DB_PATH - Database path or DSN (default: /data/mail_queue.db)
      MQ_HOST, MQ_PORT, MQ_API_TOKEN - HTTP server
      MQ_SCHEDULER_ACTIVE - Start poll loops (default: True)
      MQ_DEFAULT_PRIORITY - Default task priority (default: 5)
      MQ_PENDING_INTERVAL, MQ_SCHEDULED_INTERVAL, MQ_RETRY_INTERVAL, MQ_RECLAIM_INTERVAL,
      MQ_CLEANUP_INTERVAL
      MQ_BATCH_SIZE, MQ_SEND_TIMEOUT, MQ_LEASE_TIMEOUT, MQ_RECLAIM_ENABLED
      MQ_MAX_RETRIES, MQ_RETRY_INITIAL_DELAY, MQ_RETRY_MULTIPLIER, MQ_RETRY_MAX_DELAY
      MQ_RATE_LIMIT_ENABLED, MQ_RATE_WINDOW, MQ_RATE_PER_RECIPIENT, MQ_RATE_PER_ORIGIN, MQ_RATE_BACKEND
      MQ_SMTP_HOST, MQ_SMTP_PORT, MQ_SMTP_USER, MQ_SMTP_PASSWORD, MQ_SMTP_USE_TLS, MQ_SMTP_FROM

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [scheduler] active, pending_interval, scheduled_interval, retry_interval,
                  reclaim_interval, cleanup_interval, batch_size, send_timeout,
                  lease_timeout, reclaim_enabled
      [retry] max_retries, initial_delay, multiplier, max_delay
      [rate_limit] enabled, window_seconds, per_recipient, per_origin, backend
      [smtp] host, port, user, password, use_tls, from_addr, timeout
      [queue] default_priority
      [logging] level
    """
    config_path = Path(path or os.getenv("MQ_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, env: str, default: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return os.getenv(env, default)

    def get_int(section: str, option: str, env: str, default: int) -> int:
        value = get(section, option, env)
        return default if value is None else int(value)

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        return default if value is None else float(value)

    def get_bool(section: str, option: str, env: str, default: bool) -> bool:
        value = get(section, option, env)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    d = QueueConfig()
    token = get("server", "api_token", "MQ_API_TOKEN")
    if isinstance(token, str):
        token = token.strip() or None

    return QueueConfig(
        storage=StorageConfig(
            db_path=os.path.expanduser(get("storage", "db_path", "MQ_DB_PATH", d.storage.db_path) or ""),
        ),
        poller=PollerConfig(
            pending_interval=get_float("scheduler", "pending_interval", "MQ_PENDING_INTERVAL", d.poller.pending_interval),
            scheduled_interval=get_float(
                "scheduler", "scheduled_interval", "MQ_SCHEDULED_INTERVAL", d.poller.scheduled_interval
            ),
            retry_interval=get_float("scheduler", "retry_interval", "MQ_RETRY_INTERVAL", d.poller.retry_interval),
            reclaim_interval=get_float("scheduler", "reclaim_interval", "MQ_RECLAIM_INTERVAL", d.poller.reclaim_interval),
            cleanup_interval=get_float(
                "scheduler", "cleanup_interval", "MQ_CLEANUP_INTERVAL", d.poller.cleanup_interval
            ),
            batch_size=get_int("scheduler", "batch_size", "MQ_BATCH_SIZE", d.poller.batch_size),
            send_timeout=get_float("scheduler", "send_timeout", "MQ_SEND_TIMEOUT", d.poller.send_timeout),
            lease_timeout=get_int("scheduler", "lease_timeout", "MQ_LEASE_TIMEOUT", d.poller.lease_timeout),
            reclaim_enabled=get_bool("scheduler", "reclaim_enabled", "MQ_RECLAIM_ENABLED", d.poller.reclaim_enabled),
        ),
        retry=RetryConfig(
            max_retries=get_int("retry", "max_retries", "MQ_MAX_RETRIES", d.retry.max_retries),
            initial_delay=get_int("retry", "initial_delay", "MQ_RETRY_INITIAL_DELAY", d.retry.initial_delay),
            multiplier=get_float("retry", "multiplier", "MQ_RETRY_MULTIPLIER", d.retry.multiplier),
            max_delay=get_int("retry", "max_delay", "MQ_RETRY_MAX_DELAY", d.retry.max_delay),
        ),
        rate_limit=RateLimitConfig(
            enabled=get_bool("rate_limit", "enabled", "MQ_RATE_LIMIT_ENABLED", d.rate_limit.enabled),
            window_seconds=get_int("rate_limit", "window_seconds", "MQ_RATE_WINDOW", d.rate_limit.window_seconds),
            per_recipient=get_int("rate_limit", "per_recipient", "MQ_RATE_PER_RECIPIENT", d.rate_limit.per_recipient),
            per_origin=get_int("rate_limit", "per_origin", "MQ_RATE_PER_ORIGIN", d.rate_limit.per_origin),
            backend=get("rate_limit", "backend", "MQ_RATE_BACKEND", d.rate_limit.backend) or "sql",
        ),
        smtp=SmtpConfig(
            host=get("smtp", "host", "MQ_SMTP_HOST", d.smtp.host) or d.smtp.host,
            port=get_int("smtp", "port", "MQ_SMTP_PORT", d.smtp.port),
            user=get("smtp", "user", "MQ_SMTP_USER"),
            password=get("smtp", "password", "MQ_SMTP_PASSWORD"),
            use_tls=get_bool("smtp", "use_tls", "MQ_SMTP_USE_TLS", d.smtp.use_tls),
            from_addr=get("smtp", "from_addr", "MQ_SMTP_FROM", d.smtp.from_addr) or d.smtp.from_addr,
            timeout=get_float("smtp", "timeout", "MQ_SMTP_TIMEOUT", d.smtp.timeout),
        ),
        server=ServerConfig(
            host=get("server", "host", "MQ_HOST", d.server.host) or d.server.host,
            port=get_int("server", "port", "MQ_PORT", d.server.port),
            api_token=token,
        ),
        default_priority=get_int("queue", "default_priority", "MQ_DEFAULT_PRIORITY", d.default_priority),
        scheduler_active=get_bool("scheduler", "active", "MQ_SCHEDULER_ACTIVE", d.scheduler_active),
        log_level=(get("logging", "level", "MQ_LOG_LEVEL", d.log_level) or d.log_level).upper(),
    )


__all__ = [
    "PollerConfig",
    "QueueConfig",
    "RateLimitConfig",
    "RetryConfig",
    "ServerConfig",
    "SmtpConfig",
    "StorageConfig",
    "load_config",
]
