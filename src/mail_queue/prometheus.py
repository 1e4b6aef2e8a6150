# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the mail queue.

All metrics use the ``mq_`` prefix.

Metrics exposed:
    - ``mq_enqueued_total``: Counter of tasks accepted by ``enqueue``.
    - ``mq_sent_total``: Counter of tasks delivered.
    - ``mq_failed_total``: Counter of failed attempts, labeled temporary/permanent.
    - ``mq_retried_total``: Counter of FAILED -> PENDING transitions, labeled by trigger.
    - ``mq_rate_limited_total``: Counter of rejected enqueues per key class.
    - ``mq_lease_conflicts_total``: Counter of lease attempts lost to another worker.
    - ``mq_reclaimed_total``: Counter of expired leases moved back to PENDING.
    - ``mq_pending_tasks``: Gauge of tasks currently PENDING.

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class QueueMetrics:
    """Prometheus metrics collector for the mail queue.

    Each instance owns its registry so several queues (or tests) never clash
    on metric names.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()
        self.enqueued = Counter(
            "mq_enqueued_total",
            "Total tasks enqueued",
            registry=self.registry,
        )
        self.sent = Counter(
            "mq_sent_total",
            "Total tasks sent",
            registry=self.registry,
        )
        self.failed = Counter(
            "mq_failed_total",
            "Total failed send attempts",
            ["kind"],
            registry=self.registry,
        )
        self.retried = Counter(
            "mq_retried_total",
            "Total tasks moved back to PENDING",
            ["trigger"],
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "mq_rate_limited_total",
            "Total enqueue requests rejected by rate limiting",
            ["key_class"],
            registry=self.registry,
        )
        self.lease_conflicts = Counter(
            "mq_lease_conflicts_total",
            "Total lease attempts lost to a concurrent worker",
            registry=self.registry,
        )
        self.reclaimed = Counter(
            "mq_reclaimed_total",
            "Total expired leases reclaimed",
            registry=self.registry,
        )
        self.pending = Gauge(
            "mq_pending_tasks",
            "Current pending tasks",
            registry=self.registry,
        )

    def inc_enqueued(self) -> None:
        self.enqueued.inc()

    def inc_sent(self) -> None:
        self.sent.inc()

    def inc_failed(self, permanent: bool) -> None:
        self.failed.labels(kind="permanent" if permanent else "temporary").inc()

    def inc_retried(self, trigger: str) -> None:
        """Count a FAILED -> PENDING transition.

        Args:
            trigger: "manual" for operator retries, "sweep" for the automatic sweep.
        """
        self.retried.labels(trigger=trigger).inc()

    def inc_rate_limited(self, key_class: str) -> None:
        self.rate_limited.labels(key_class=key_class or "default").inc()

    def inc_lease_conflict(self) -> None:
        self.lease_conflicts.inc()

    def inc_reclaimed(self, count: int = 1) -> None:
        self.reclaimed.inc(count)

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)


__all__ = ["QueueMetrics"]
