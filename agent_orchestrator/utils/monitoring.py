"""
Metrics collection for Agent Orchestrator.
"""

import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional


class MetricType(str, Enum):
    """Types of metrics."""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    TIMER = "timer"


@dataclass
class Metric:
    """A single recorded metric value."""
    name: str
    type: MetricType
    value: float
    timestamp: datetime = field(default_factory=datetime.now)
    tags: Dict[str, str] = field(default_factory=dict)


def _metric_key(name: str, tags: Optional[Dict[str, str]]) -> str:
    if not tags:
        return name
    rendered = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}{{{rendered}}}"


def _summarize(values: List[float]) -> Dict[str, float]:
    if not values:
        return {"count": 0}

    sorted_values = sorted(values)
    count = len(sorted_values)

    return {
        "count": count,
        "min": sorted_values[0],
        "max": sorted_values[-1],
        "mean": sum(sorted_values) / count,
        "p50": sorted_values[int(count * 0.5)],
        "p95": sorted_values[min(count - 1, int(count * 0.95))],
        "p99": sorted_values[min(count - 1, int(count * 0.99))]
    }


class MetricsCollector:
    """Metrics collection and aggregation. Tagged values are stored under ``name{k=v}`` keys."""

    def __init__(self, max_history: int = 1000):
        self.max_history = max_history
        self.metrics: Dict[str, Deque[Metric]] = defaultdict(lambda: deque(maxlen=max_history))
        self.counters: Dict[str, float] = defaultdict(float)
        self.gauges: Dict[str, float] = {}
        self.histograms: Dict[str, List[float]] = defaultdict(list)
        self.timers: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()

    def increment_counter(self, name: str, value: float = 1.0, tags: Optional[Dict[str, str]] = None):
        """Increment a counter metric."""
        key = _metric_key(name, tags)
        with self._lock:
            self.counters[key] += value
            self._record_metric(key, MetricType.COUNTER, self.counters[key], tags)

    def set_gauge(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        """Set a gauge metric value."""
        key = _metric_key(name, tags)
        with self._lock:
            self.gauges[key] = value
            self._record_metric(key, MetricType.GAUGE, value, tags)

    def record_histogram(self, name: str, value: float, tags: Optional[Dict[str, str]] = None):
        """Record a histogram value."""
        key = _metric_key(name, tags)
        with self._lock:
            self._append_bounded(self.histograms[key], value)
            self._record_metric(key, MetricType.HISTOGRAM, value, tags)

    def record_timer(self, name: str, duration_ms: float, tags: Optional[Dict[str, str]] = None):
        """Record a timer value."""
        key = _metric_key(name, tags)
        with self._lock:
            self._append_bounded(self.timers[key], duration_ms)
            self._record_metric(key, MetricType.TIMER, duration_ms, tags)

    def _append_bounded(self, values: List[float], value: float):
        values.append(value)
        if len(values) > self.max_history:
            del values[:-self.max_history]

    def _record_metric(self, key: str, metric_type: MetricType, value: float, tags: Optional[Dict[str, str]]):
        """Record a metric in the history."""
        self.metrics[key].append(Metric(name=key, type=metric_type, value=value, tags=dict(tags or {})))

    def get_counter(self, name: str, tags: Optional[Dict[str, str]] = None) -> float:
        """Get current counter value."""
        return self.counters.get(_metric_key(name, tags), 0.0)

    def get_gauge(self, name: str, tags: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Get current gauge value."""
        return self.gauges.get(_metric_key(name, tags))

    def get_histogram_stats(self, name: str, tags: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """Get histogram statistics."""
        return _summarize(list(self.histograms.get(_metric_key(name, tags), [])))

    def get_timer_stats(self, name: str, tags: Optional[Dict[str, str]] = None) -> Dict[str, float]:
        """Get timer statistics."""
        return _summarize(list(self.timers.get(_metric_key(name, tags), [])))

    def get_all_metrics(self) -> Dict[str, Any]:
        """Get all current metrics."""
        with self._lock:
            histograms = {name: list(values) for name, values in self.histograms.items()}
            timers = {name: list(values) for name, values in self.timers.items()}
            counters = dict(self.counters)
            gauges = dict(self.gauges)

        return {
            "counters": counters,
            "gauges": gauges,
            "histograms": {name: _summarize(values) for name, values in histograms.items()},
            "timers": {name: _summarize(values) for name, values in timers.items()}
        }

    def reset_metrics(self):
        """Reset all metrics."""
        with self._lock:
            self.counters.clear()
            self.gauges.clear()
            self.histograms.clear()
            self.timers.clear()
            self.metrics.clear()
