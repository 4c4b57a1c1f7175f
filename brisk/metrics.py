"""Prometheus metrics for workers and beat.

Provides a `configure_metrics()` function that creates the metrics for a
process. When disabled, every metric helper is a no-op.

Environment Variables:
    METRICS_ENABLED: Enable/disable metrics collection (default: true)
    METRICS_PORT: Port for the worker's /metrics endpoint

Metric Naming Convention:
    brisk_{component}_{metric_name}_{unit}
"""

from __future__ import annotations

import os
from typing import Any

# Global state
_metrics_enabled: bool = False
_metrics_initialized: bool = False

_worker_metrics: dict[str, Any] = {}
_beat_metrics: dict[str, Any] = {}
_broker_metrics: dict[str, Any] = {}


def is_metrics_enabled() -> bool:
    """Check if metrics collection is enabled."""
    return _metrics_enabled


def configure_metrics(service_name: str, enabled: bool | None = None) -> None:
    """Configure Prometheus metrics for a brisk process.

    Args:
        service_name: "worker" or "beat". Any other name only gets the
            broker metrics.
        enabled: Overrides METRICS_ENABLED when given

    Environment Variables:
        METRICS_ENABLED: Set to "false" to disable metrics (default: "true")
    """
    global _metrics_enabled, _metrics_initialized

    if enabled is None:
        enabled = os.environ.get("METRICS_ENABLED", "true").lower() == "true"
    _metrics_enabled = enabled

    if not enabled:
        return

    if _metrics_initialized:
        return

    _metrics_initialized = True

    _init_broker_metrics()
    if service_name == "worker":
        _init_worker_metrics()
    elif service_name == "beat":
        _init_beat_metrics()


def _init_worker_metrics() -> None:
    """Initialize worker metrics."""
    from prometheus_client import Counter, Gauge, Histogram

    _worker_metrics["tasks_total"] = Counter(
        "brisk_worker_tasks_total",
        "Deliveries resolved, by task name and outcome",
        ["task_name", "outcome"],
    )

    _worker_metrics["task_duration_seconds"] = Histogram(
        "brisk_worker_task_duration_seconds",
        "Handler execution time",
        ["task_name"],
        buckets=(0.01, 0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 300),
    )

    _worker_metrics["queue_wait_seconds"] = Histogram(
        "brisk_worker_queue_wait_seconds",
        "Time between a task becoming due and its dispatch",
        ["queue"],
        buckets=(0.01, 0.1, 0.5, 1, 5, 10, 30, 60, 300),
    )

    _worker_metrics["tasks_in_flight"] = Gauge(
        "brisk_worker_tasks_in_flight",
        "Deliveries pulled from the broker and not yet resolved",
    )


def _init_beat_metrics() -> None:
    """Initialize beat metrics."""
    from prometheus_client import Counter

    _beat_metrics["publishes_total"] = Counter(
        "brisk_beat_publishes_total",
        "Schedule entry firings, by entry and status",
        ["entry", "status"],
    )


def _init_broker_metrics() -> None:
    """Initialize broker metrics."""
    from prometheus_client import Counter

    _broker_metrics["reconnects_total"] = Counter(
        "brisk_broker_reconnects_total",
        "Broker reconnect attempts",
        ["scheme"],
    )

    _broker_metrics["restored_total"] = Counter(
        "brisk_broker_restored_total",
        "Unacknowledged deliveries returned to their queue by the visibility sweep",
    )


# =============================================================================
# Worker Metrics
# =============================================================================


def inc_worker_tasks(task_name: str, outcome: str) -> None:
    """Increment the resolved-delivery counter.

    Args:
        task_name: Registered task name (or "unknown" for undecodable payloads)
        outcome: succeeded, retried, failed, expired, deferred, rejected
    """
    if not _metrics_enabled or "tasks_total" not in _worker_metrics:
        return
    _worker_metrics["tasks_total"].labels(task_name=task_name, outcome=outcome).inc()


def observe_task_duration(task_name: str, duration: float) -> None:
    """Record handler execution duration in seconds."""
    if not _metrics_enabled or "task_duration_seconds" not in _worker_metrics:
        return
    _worker_metrics["task_duration_seconds"].labels(task_name=task_name).observe(
        duration
    )


def observe_queue_wait(queue: str, duration: float) -> None:
    """Record how long a due task waited before dispatch."""
    if not _metrics_enabled or "queue_wait_seconds" not in _worker_metrics:
        return
    _worker_metrics["queue_wait_seconds"].labels(queue=queue).observe(duration)


def set_tasks_in_flight(count: int) -> None:
    """Set the in-flight delivery gauge."""
    if not _metrics_enabled or "tasks_in_flight" not in _worker_metrics:
        return
    _worker_metrics["tasks_in_flight"].set(count)


# =============================================================================
# Beat Metrics
# =============================================================================


def inc_beat_publishes(entry: str, status: str) -> None:
    """Increment the beat publish counter.

    Args:
        entry: Schedule entry name
        status: success or failure
    """
    if not _metrics_enabled or "publishes_total" not in _beat_metrics:
        return
    _beat_metrics["publishes_total"].labels(entry=entry, status=status).inc()


# =============================================================================
# Broker Metrics
# =============================================================================


def inc_broker_reconnects(scheme: str) -> None:
    """Increment the reconnect counter for a broker URL scheme."""
    if not _metrics_enabled or "reconnects_total" not in _broker_metrics:
        return
    _broker_metrics["reconnects_total"].labels(scheme=scheme).inc()


def inc_broker_restored(count: int) -> None:
    """Count deliveries restored by the visibility sweep."""
    if not _metrics_enabled or "restored_total" not in _broker_metrics:
        return
    _broker_metrics["restored_total"].inc(count)
