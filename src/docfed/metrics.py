"""
Metrics for the federation engine.

Counters, gauges and histograms held in a thread-safe collector:

- queries_total{strategy}        Federated queries executed
- cache_hits_total{strategy}     Queries served from a cache slot
- source_failures_total{source}  Adapter connect/fetch failures
- joins_skipped_total            Joins skipped for an invalid ON clause
- query_duration_seconds         End-to-end query latency
- connected_sources              Data sources with a live adapter
"""
from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


class MetricType(Enum):
    """Types of metrics."""
    COUNTER = "counter"      # Monotonically increasing
    GAUGE = "gauge"          # Can go up or down
    HISTOGRAM = "histogram"  # Distribution of values


def _label_key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((labels or {}).items()))


@dataclass
class Metric:
    """A metric with its metadata and per-label-set values."""
    name: str
    metric_type: MetricType
    description: str = ""
    unit: str = ""
    max_samples: int = 1000

    _values: Dict[LabelKey, float] = field(default_factory=dict)
    _samples: Deque[float] = field(default_factory=deque)
    _count: int = 0
    _sum: float = 0.0

    def inc(self, value: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        """Increment a counter."""
        if self.metric_type != MetricType.COUNTER:
            raise ValueError(f"Cannot inc non-counter metric: {self.name}")
        if value < 0:
            raise ValueError(f"Counter {self.name} cannot decrease")
        key = _label_key(labels)
        self._values[key] = self._values.get(key, 0.0) + value

    def set(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Set a gauge value."""
        if self.metric_type != MetricType.GAUGE:
            raise ValueError(f"Cannot set non-gauge metric: {self.name}")
        self._values[_label_key(labels)] = value

    def observe(self, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Observe a histogram value."""
        if self.metric_type != MetricType.HISTOGRAM:
            raise ValueError(f"Cannot observe non-histogram metric: {self.name}")
        self._samples.append(value)
        while len(self._samples) > self.max_samples:
            self._samples.popleft()
        self._count += 1
        self._sum += value

    def get_value(self, labels: Optional[Dict[str, str]] = None) -> float:
        """
        Current value.

        Counters and gauges return the value for ``labels``, or the total
        across label sets when ``labels`` is None. Histograms return the mean.
        """
        if self.metric_type == MetricType.HISTOGRAM:
            return self._sum / self._count if self._count else 0.0
        if labels is None:
            return sum(self._values.values())
        return self._values.get(_label_key(labels), 0.0)

    def get_histogram_stats(self) -> Dict[str, float]:
        """Histogram statistics over the retained samples."""
        if self.metric_type != MetricType.HISTOGRAM:
            return {}

        if not self._samples:
            return {
                "count": 0, "sum": 0.0, "min": 0.0, "max": 0.0,
                "avg": 0.0, "p50": 0.0, "p90": 0.0, "p99": 0.0,
            }

        sorted_values = sorted(self._samples)
        count = len(sorted_values)

        def percentile(p: float) -> float:
            idx = int(p * count / 100)
            return sorted_values[min(idx, count - 1)]

        return {
            "count": self._count,
            "sum": self._sum,
            "min": sorted_values[0],
            "max": sorted_values[-1],
            "avg": self._sum / self._count,
            "p50": percentile(50),
            "p90": percentile(90),
            "p99": percentile(99),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Export metric to dictionary."""
        result = {
            "name": self.name,
            "type": self.metric_type.value,
            "description": self.description,
            "unit": self.unit,
            "value": self.get_value(),
        }

        if self.metric_type == MetricType.HISTOGRAM:
            result["stats"] = self.get_histogram_stats()
        elif any(self._values):
            result["labels"] = [
                {"labels": dict(key), "value": value}
                for key, value in self._values.items()
            ]

        return result


class MetricsCollector:
    """
    Collects and manages metrics.

    Usage:
        collector = MetricsCollector()
        collector.counter("queries_total", "Federated queries executed")
        collector.inc("queries_total", labels={"strategy": "virtual"})

        collector.histogram("query_duration_seconds", "Query duration", "seconds")
        with collector.timer("query_duration_seconds"):
            ...
    """

    def __init__(self):
        self._metrics: Dict[str, Metric] = {}
        self._lock = threading.RLock()
        self._start_time = datetime.now()

    def _register(self, name: str, metric_type: MetricType, description: str, unit: str) -> Metric:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = Metric(
                    name=name,
                    metric_type=metric_type,
                    description=description,
                    unit=unit,
                )
                self._metrics[name] = metric
            elif metric.metric_type != metric_type:
                raise ValueError(
                    f"Metric {name} already registered as {metric.metric_type.value}"
                )
            return metric

    def counter(self, name: str, description: str = "", unit: str = "") -> Metric:
        """Create or get a counter metric."""
        return self._register(name, MetricType.COUNTER, description, unit)

    def gauge(self, name: str, description: str = "", unit: str = "") -> Metric:
        """Create or get a gauge metric."""
        return self._register(name, MetricType.GAUGE, description, unit)

    def histogram(self, name: str, description: str = "", unit: str = "") -> Metric:
        """Create or get a histogram metric."""
        return self._register(name, MetricType.HISTOGRAM, description, unit)

    def inc(self, name: str, value: float = 1.0, labels: Optional[Dict[str, str]] = None) -> None:
        """Increment a counter. Unregistered names are ignored."""
        with self._lock:
            if name in self._metrics:
                self._metrics[name].inc(value, labels)

    def set(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Set a gauge value. Unregistered names are ignored."""
        with self._lock:
            if name in self._metrics:
                self._metrics[name].set(value, labels)

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        """Observe a histogram value. Unregistered names are ignored."""
        with self._lock:
            if name in self._metrics:
                self._metrics[name].observe(value, labels)

    def timer(self, name: str, labels: Optional[Dict[str, str]] = None) -> "Timer":
        """Create a timer context manager for histogram metrics."""
        return Timer(self, name, labels)

    def value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Current value of a metric, 0 if it is not registered."""
        with self._lock:
            metric = self._metrics.get(name)
            return metric.get_value(labels) if metric else 0.0

    def get(self, name: str) -> Optional[Metric]:
        """Get a metric by name."""
        with self._lock:
            return self._metrics.get(name)

    def export(self) -> List[Dict[str, Any]]:
        """Export all metrics as dictionaries."""
        with self._lock:
            return [m.to_dict() for m in self._metrics.values()]

    def reset(self, name: Optional[str] = None) -> None:
        """Reset metric(s)."""
        with self._lock:
            if name:
                self._metrics.pop(name, None)
            else:
                self._metrics.clear()

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now() - self._start_time).total_seconds()


class Timer:
    """Context manager for timing operations."""

    def __init__(self, collector: MetricsCollector, name: str, labels: Optional[Dict[str, str]] = None):
        self.collector = collector
        self.name = name
        self.labels = labels
        self.start_time: Optional[float] = None
        self.duration: Optional[float] = None

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration = time.perf_counter() - self.start_time
        self.collector.observe(self.name, self.duration, self.labels)


def federation_metrics() -> MetricsCollector:
    """Collector with the engine's metrics registered."""
    collector = MetricsCollector()
    collector.counter("queries_total", "Federated queries executed")
    collector.counter("cache_hits_total", "Queries served from a cache slot")
    collector.counter("source_failures_total", "Adapter connect/fetch failures")
    collector.counter("joins_skipped_total", "Joins skipped for an invalid ON clause")
    collector.histogram("query_duration_seconds", "End-to-end query latency", "seconds")
    collector.gauge("connected_sources", "Data sources with a live adapter")
    return collector
