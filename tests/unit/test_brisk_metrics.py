"""Unit tests for the metrics module."""

import os
from unittest.mock import patch


def _reset_metrics_module():
    """Reset the metrics module and clear brisk collectors from the registry.

    Prometheus refuses to register a metric name twice, and reloading the
    module only resets its state.
    """
    import importlib

    from prometheus_client import REGISTRY

    import brisk.metrics

    collectors_to_remove = []
    for collector in list(REGISTRY._names_to_collectors.values()):
        name = getattr(collector, "_name", "")
        if name.startswith("brisk_") and collector not in collectors_to_remove:
            collectors_to_remove.append(collector)

    for collector in collectors_to_remove:
        try:
            REGISTRY.unregister(collector)
        except KeyError:
            pass

    importlib.reload(brisk.metrics)


def _sample(name: str, labels: dict | None = None) -> float | None:
    from prometheus_client import REGISTRY

    return REGISTRY.get_sample_value(name, labels or {})


class TestMetricsConfiguration:
    """Tests for configure_metrics()."""

    def setup_method(self):
        _reset_metrics_module()

    def test_disabled_before_configure(self):
        import brisk.metrics

        assert not brisk.metrics.is_metrics_enabled()

    def test_enabled_from_environment(self):
        import brisk.metrics

        with patch.dict(os.environ, {"METRICS_ENABLED": "true"}):
            brisk.metrics.configure_metrics("worker")
        assert brisk.metrics.is_metrics_enabled()

    def test_disabled_from_environment(self):
        import brisk.metrics

        with patch.dict(os.environ, {"METRICS_ENABLED": "false"}):
            brisk.metrics.configure_metrics("worker")
        assert not brisk.metrics.is_metrics_enabled()

    def test_explicit_flag_overrides_environment(self):
        import brisk.metrics

        with patch.dict(os.environ, {"METRICS_ENABLED": "true"}):
            brisk.metrics.configure_metrics("worker", enabled=False)
        assert not brisk.metrics.is_metrics_enabled()

    def test_helpers_are_noops_when_disabled(self):
        import brisk.metrics

        brisk.metrics.configure_metrics("worker", enabled=False)
        brisk.metrics.inc_worker_tasks("users.create", "succeeded")
        brisk.metrics.observe_task_duration("users.create", 0.1)
        brisk.metrics.set_tasks_in_flight(3)
        brisk.metrics.inc_beat_publishes("nightly", "success")
        brisk.metrics.inc_broker_reconnects("redis")

        labels = {"task_name": "users.create", "outcome": "succeeded"}
        assert _sample("brisk_worker_tasks_total", labels) is None


class TestWorkerMetrics:
    """Tests for worker metric helpers."""

    def setup_method(self):
        _reset_metrics_module()
        import brisk.metrics

        brisk.metrics.configure_metrics("worker", enabled=True)

    def test_tasks_total(self):
        import brisk.metrics

        brisk.metrics.inc_worker_tasks("users.create", "succeeded")
        brisk.metrics.inc_worker_tasks("users.create", "succeeded")
        brisk.metrics.inc_worker_tasks("users.create", "retried")

        labels = {"task_name": "users.create", "outcome": "succeeded"}
        assert _sample("brisk_worker_tasks_total", labels) == 2
        labels["outcome"] = "retried"
        assert _sample("brisk_worker_tasks_total", labels) == 1

    def test_task_duration(self):
        import brisk.metrics

        brisk.metrics.observe_task_duration("users.create", 0.2)
        labels = {"task_name": "users.create"}
        assert _sample("brisk_worker_task_duration_seconds_count", labels) == 1

    def test_queue_wait(self):
        import brisk.metrics

        brisk.metrics.observe_queue_wait("reports", 1.5)
        assert _sample("brisk_worker_queue_wait_seconds_sum", {"queue": "reports"}) == 1.5

    def test_in_flight(self):
        import brisk.metrics

        brisk.metrics.set_tasks_in_flight(5)
        assert _sample("brisk_worker_tasks_in_flight") == 5

    def test_broker_metrics(self):
        import brisk.metrics

        brisk.metrics.inc_broker_reconnects("amqp")
        brisk.metrics.inc_broker_restored(3)
        assert _sample("brisk_broker_reconnects_total", {"scheme": "amqp"}) == 1
        assert _sample("brisk_broker_restored_total") == 3

    def test_beat_helpers_are_noops_in_worker(self):
        import brisk.metrics

        brisk.metrics.inc_beat_publishes("nightly", "success")
        labels = {"entry": "nightly", "status": "success"}
        assert _sample("brisk_beat_publishes_total", labels) is None


class TestBeatMetrics:
    """Tests for beat metric helpers."""

    def setup_method(self):
        _reset_metrics_module()
        import brisk.metrics

        brisk.metrics.configure_metrics("beat", enabled=True)

    def test_publishes_total(self):
        import brisk.metrics

        brisk.metrics.inc_beat_publishes("nightly", "success")
        brisk.metrics.inc_beat_publishes("nightly", "failure")

        assert _sample("brisk_beat_publishes_total", {"entry": "nightly", "status": "success"}) == 1
        assert _sample("brisk_beat_publishes_total", {"entry": "nightly", "status": "failure"}) == 1
