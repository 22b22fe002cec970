"""Prometheus-style metrics for the operation engine.

Metric types:
- Counter: Monotonically increasing value
- Gauge: Value that can go up or down
- Histogram: Distribution of values

Each engine owns its own :class:`MetricsRegistry`, so independent engines
(and tests) never share counters. ``export_prometheus()`` renders the
registry for the ``/metrics`` endpoint.

Example:
    >>> registry = MetricsRegistry()
    >>> metrics = EngineMetrics(registry)
    >>> metrics.operations_started.labels(operation_type="full_pipeline").inc()
    >>> "isx_operations_started_total" in registry.export_prometheus()
    True
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Labels:
    """Immutable label set for metrics."""

    _labels: tuple[tuple[str, str], ...]

    @classmethod
    def from_dict(cls, d: dict[str, str] | None) -> Labels:
        if not d:
            return cls(())
        return cls(tuple(sorted((k, str(v)) for k, v in d.items())))

    def to_dict(self) -> dict[str, str]:
        return dict(self._labels)


class Metric(ABC):
    """Base class for metrics."""

    kind = "untyped"

    def __init__(self, name: str, description: str = ""):
        self.name = name
        self.description = description
        self._lock = threading.Lock()

    @abstractmethod
    def collect(self) -> list[dict[str, Any]]:
        """Collect metric values for export."""
        ...


class Counter(Metric):
    """A monotonically increasing counter (operations started, messages dropped)."""

    kind = "counter"

    def __init__(self, name: str, description: str = ""):
        super().__init__(name, description)
        self._values: dict[Labels, float] = {}

    def labels(self, **kwargs: str) -> _CounterChild:
        return _CounterChild(self, Labels.from_dict(kwargs))

    def inc(self, value: float = 1.0) -> None:
        self.labels().inc(value)

    def value(self, **kwargs: str) -> float:
        with self._lock:
            return self._values.get(Labels.from_dict(kwargs), 0.0)

    def _inc(self, labels: Labels, value: float) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        with self._lock:
            self._values[labels] = self._values.get(labels, 0.0) + value

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"name": self.name, "type": self.kind, "labels": labels.to_dict(), "value": value}
                for labels, value in self._values.items()
            ]


class _CounterChild:
    def __init__(self, counter: Counter, labels: Labels):
        self._counter = counter
        self._labels = labels

    def inc(self, value: float = 1.0) -> None:
        self._counter._inc(self._labels, value)


class Gauge(Metric):
    """A value that can go up or down (active operations, open connections)."""

    kind = "gauge"

    def __init__(self, name: str, description: str = ""):
        super().__init__(name, description)
        self._values: dict[Labels, float] = {}

    def labels(self, **kwargs: str) -> _GaugeChild:
        return _GaugeChild(self, Labels.from_dict(kwargs))

    def set(self, value: float) -> None:
        self.labels().set(value)

    def inc(self, value: float = 1.0) -> None:
        self.labels().inc(value)

    def dec(self, value: float = 1.0) -> None:
        self.labels().inc(-value)

    def value(self, **kwargs: str) -> float:
        with self._lock:
            return self._values.get(Labels.from_dict(kwargs), 0.0)

    def _add(self, labels: Labels, value: float, *, absolute: bool = False) -> None:
        with self._lock:
            current = 0.0 if absolute else self._values.get(labels, 0.0)
            self._values[labels] = current + value

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {"name": self.name, "type": self.kind, "labels": labels.to_dict(), "value": value}
                for labels, value in self._values.items()
            ]


class _GaugeChild:
    def __init__(self, gauge: Gauge, labels: Labels):
        self._gauge = gauge
        self._labels = labels

    def set(self, value: float) -> None:
        self._gauge._add(self._labels, value, absolute=True)

    def inc(self, value: float = 1.0) -> None:
        self._gauge._add(self._labels, value)

    def dec(self, value: float = 1.0) -> None:
        self._gauge._add(self._labels, -value)


class Histogram(Metric):
    """A distribution of values (operation and step durations)."""

    kind = "histogram"

    DEFAULT_BUCKETS = (0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0, 1800.0, 3600.0, float("inf"))

    def __init__(self, name: str, description: str = "", buckets: tuple[float, ...] | None = None):
        super().__init__(name, description)
        self._buckets = buckets or self.DEFAULT_BUCKETS
        self._data: dict[Labels, dict[str, Any]] = {}

    def labels(self, **kwargs: str) -> _HistogramChild:
        return _HistogramChild(self, Labels.from_dict(kwargs))

    def observe(self, value: float) -> None:
        self.labels().observe(value)

    def _observe(self, labels: Labels, value: float) -> None:
        with self._lock:
            data = self._data.setdefault(
                labels,
                {"buckets": dict.fromkeys(self._buckets, 0), "sum": 0.0, "count": 0},
            )
            data["sum"] += value
            data["count"] += 1
            for bucket in self._buckets:
                if value <= bucket:
                    data["buckets"][bucket] += 1

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            return [
                {
                    "name": self.name,
                    "type": self.kind,
                    "labels": labels.to_dict(),
                    "buckets": dict(data["buckets"]),
                    "sum": data["sum"],
                    "count": data["count"],
                }
                for labels, data in self._data.items()
            ]


class _HistogramChild:
    def __init__(self, histogram: Histogram, labels: Labels):
        self._histogram = histogram
        self._labels = labels

    def observe(self, value: float) -> None:
        self._histogram._observe(self._labels, value)


class MetricsRegistry:
    """Registry of metrics for collection and export."""

    def __init__(self) -> None:
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, name: str, factory: Any) -> Any:
        with self._lock:
            if name not in self._metrics:
                self._metrics[name] = factory()
            return self._metrics[name]

    def counter(self, name: str, description: str = "") -> Counter:
        return self._get_or_create(name, lambda: Counter(name, description))

    def gauge(self, name: str, description: str = "") -> Gauge:
        return self._get_or_create(name, lambda: Gauge(name, description))

    def histogram(self, name: str, description: str = "", buckets: tuple[float, ...] | None = None) -> Histogram:
        return self._get_or_create(name, lambda: Histogram(name, description, buckets))

    def collect(self) -> list[dict[str, Any]]:
        with self._lock:
            metrics = list(self._metrics.values())
        results: list[dict[str, Any]] = []
        for metric in metrics:
            results.extend(metric.collect())
        return results

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        with self._lock:
            metrics = list(self._metrics.values())

        for metric in metrics:
            if metric.description:
                lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.kind}")
            for data in metric.collect():
                labels = data.get("labels", {})
                label_str = ",".join(f'{k}="{v}"' for k, v in labels.items())

                if data["type"] in ("counter", "gauge"):
                    suffix = "{" + label_str + "}" if label_str else ""
                    lines.append(f"{metric.name}{suffix} {data['value']}")
                else:
                    for bucket, count in data["buckets"].items():
                        le = "+Inf" if bucket == float("inf") else str(bucket)
                        bucket_labels = f'{label_str},le="{le}"' if label_str else f'le="{le}"'
                        lines.append(f"{metric.name}_bucket{{{bucket_labels}}} {count}")
                    suffix = "{" + label_str + "}" if label_str else ""
                    lines.append(f"{metric.name}_sum{suffix} {data['sum']}")
                    lines.append(f"{metric.name}_count{suffix} {data['count']}")

        return "\n".join(lines) + "\n" if lines else ""


class EngineMetrics:
    """Pre-defined metrics for operation, step and connection tracking."""

    def __init__(self, registry: MetricsRegistry | None = None):
        self.registry = reg = registry or MetricsRegistry()

        self.operations_started = reg.counter(
            "isx_operations_started_total", "Operations accepted by start()"
        )
        self.operations_finished = reg.counter(
            "isx_operations_finished_total", "Operations that reached a terminal status"
        )
        self.operations_active = reg.gauge("isx_operations_active", "Operations currently pending or running")
        self.operation_duration = reg.histogram(
            "isx_operation_duration_seconds", "Wall-clock duration of finished operations"
        )
        self.step_attempts = reg.counter("isx_step_attempts_total", "Step executor invocations")
        self.step_retries = reg.counter("isx_step_retries_total", "Step retries scheduled")
        self.connections_active = reg.gauge("isx_ws_connections_active", "Open streaming connections")
        self.messages_sent = reg.counter("isx_ws_messages_sent_total", "Messages written to clients")
        self.messages_dropped = reg.counter(
            "isx_ws_messages_dropped_total", "Droppable messages discarded under backpressure"
        )
        self.slow_disconnects = reg.counter(
            "isx_ws_slow_consumer_disconnects_total", "Connections closed because a terminal message did not fit"
        )

    def record_start(self, operation_type: str) -> None:
        self.operations_started.labels(operation_type=operation_type).inc()
        self.operations_active.inc()

    def record_finish(self, operation_type: str, status: str, duration: float | None) -> None:
        self.operations_finished.labels(operation_type=operation_type, status=status).inc()
        self.operations_active.dec()
        if duration is not None:
            self.operation_duration.labels(operation_type=operation_type).observe(duration)


__all__ = [
    "Counter",
    "Gauge",
    "Histogram",
    "MetricsRegistry",
    "EngineMetrics",
]
