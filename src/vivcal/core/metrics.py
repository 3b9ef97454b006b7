"""Prometheus metrics for the sync and reminder engine.

Metrics exported:
- vivcal_upstream_calls_total: Counter of calendar provider calls
- vivcal_upstream_latency_seconds: Histogram of calendar provider call latency
- vivcal_refresh_gate_hits_total: Counter of refreshes answered from cache
- vivcal_push_notifications_total: Counter of inbound webhook notifications
- vivcal_channel_registrations_total: Counter of push subscription attempts
- vivcal_reminders_total: Counter of reminder show/close emissions
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Histogram

upstream_calls_total = Counter(
    "vivcal_upstream_calls_total",
    "Total number of calendar provider calls",
    labelnames=["operation", "status"],
)

upstream_latency_seconds = Histogram(
    "vivcal_upstream_latency_seconds",
    "Latency of calendar provider calls in seconds",
    labelnames=["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

refresh_gate_hits_total = Counter(
    "vivcal_refresh_gate_hits_total",
    "Refresh requests answered from cache by the minimum-interval gate",
)

push_notifications_total = Counter(
    "vivcal_push_notifications_total",
    "Inbound push notifications accepted by the webhook listener",
)

channel_registrations_total = Counter(
    "vivcal_channel_registrations_total",
    "Push subscription registration attempts",
    labelnames=["status"],
)

reminders_total = Counter(
    "vivcal_reminders_total",
    "Reminder emissions to the display layer",
    labelnames=["action"],
)


@contextmanager
def track_upstream_call(operation: str) -> Iterator[None]:
    """Record latency and outcome of one provider call.

    The call is counted as ``error`` when the wrapped block raises.
    """
    start = time.perf_counter()
    status = "success"
    try:
        yield
    except BaseException:
        status = "error"
        raise
    finally:
        upstream_latency_seconds.labels(operation=operation).observe(time.perf_counter() - start)
        upstream_calls_total.labels(operation=operation, status=status).inc()
