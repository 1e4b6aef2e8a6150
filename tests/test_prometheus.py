# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
from mail_queue.prometheus import QueueMetrics


def test_queue_metrics_counters_and_gauge():
    metrics = QueueMetrics()

    metrics.inc_enqueued()
    metrics.inc_sent()
    metrics.inc_failed(permanent=True)
    metrics.inc_failed(permanent=False)
    metrics.inc_retried("sweep")
    metrics.inc_rate_limited("")
    metrics.inc_reclaimed(2)
    metrics.set_pending(3)

    output = metrics.generate_latest()
    assert b"mq_sent_total 1.0" in output
    assert b'mq_failed_total{kind="permanent"} 1.0' in output
    assert b'mq_failed_total{kind="temporary"} 1.0' in output
    assert b'mq_retried_total{trigger="sweep"} 1.0' in output
    assert b'mq_rate_limited_total{key_class="default"} 1.0' in output
    assert b"mq_reclaimed_total 2.0" in output
    assert b"mq_pending_tasks 3.0" in output


def test_instances_do_not_share_registry():
    first, second = QueueMetrics(), QueueMetrics()
    first.inc_sent()
    assert b"mq_sent_total 0.0" in second.generate_latest()
