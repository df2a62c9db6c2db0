"""
Unit tests for metrics collection and logging helpers.
"""

import pytest

from agent_orchestrator.utils.logging import LoggerMixin
from agent_orchestrator.utils.monitoring import MetricType, MetricsCollector


class TestMetricsCollector:
    """Test metrics collection functionality."""

    @pytest.fixture
    def metrics_collector(self):
        return MetricsCollector(max_history=3)

    def test_counter_operations(self, metrics_collector):
        metrics_collector.increment_counter("tasks.completed")
        metrics_collector.increment_counter("tasks.completed", 2.0)
        assert metrics_collector.get_counter("tasks.completed") == 3.0
        assert metrics_collector.get_counter("missing") == 0.0

    def test_gauge_operations(self, metrics_collector):
        metrics_collector.set_gauge("tasks.ready", 4)
        metrics_collector.set_gauge("tasks.ready", 2)
        assert metrics_collector.get_gauge("tasks.ready") == 2
        assert metrics_collector.get_gauge("missing") is None

    def test_timer_statistics(self, metrics_collector):
        for value in (10.0, 30.0, 20.0):
            metrics_collector.record_timer("task.duration", value)
        stats = metrics_collector.get_timer_stats("task.duration")
        assert stats["count"] == 3
        assert stats["min"] == 10.0
        assert stats["max"] == 30.0
        assert stats["mean"] == 20.0

    def test_history_is_bounded(self, metrics_collector):
        for value in range(5):
            metrics_collector.record_histogram("sizes", float(value))
        assert metrics_collector.get_histogram_stats("sizes")["count"] == 3
        assert len(metrics_collector.metrics["sizes"]) == 3
        assert metrics_collector.metrics["sizes"][-1].type == MetricType.HISTOGRAM

    def test_metrics_with_tags(self, metrics_collector):
        metrics_collector.set_gauge("capacity.utilization", 50.0, tags={"agent_id": "a"})
        metrics_collector.set_gauge("capacity.utilization", 75.0, tags={"agent_id": "b"})
        assert metrics_collector.get_gauge("capacity.utilization", tags={"agent_id": "a"}) == 50.0
        assert "capacity.utilization{agent_id=b}" in metrics_collector.get_all_metrics()["gauges"]

    def test_reset_metrics(self, metrics_collector):
        metrics_collector.increment_counter("x")
        metrics_collector.record_timer("y", 1.0)
        metrics_collector.reset_metrics()
        assert metrics_collector.get_all_metrics() == {
            "counters": {}, "gauges": {}, "histograms": {}, "timers": {}
        }


class TestLoggerMixin:
    """Test operation logging helpers."""

    class Component(LoggerMixin):
        pass

    def test_logger_is_cached(self):
        component = self.Component()
        assert component.logger is component.logger

    def test_logged_operation_reraises(self, mocker):
        component = self.Component()
        error_spy = mocker.patch.object(component, "log_operation_error")
        with pytest.raises(RuntimeError):
            with component.logged_operation("work", task_id="t1"):
                raise RuntimeError("boom")
        error_spy.assert_called_once()
        assert error_spy.call_args.kwargs["task_id"] == "t1"

    def test_logged_operation_success(self, mocker):
        component = self.Component()
        success_spy = mocker.patch.object(component, "log_operation_success")
        with component.logged_operation("work"):
            pass
        success_spy.assert_called_once()
        assert success_spy.call_args.args[0] == "work"
