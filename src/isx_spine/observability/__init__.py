"""Observability package: in-process metrics with Prometheus text export.

Structured logging lives in :mod:`isx_spine.core.logging`.
"""

from .metrics import (
    Counter,
    EngineMetrics,
    Gauge,
    Histogram,
    MetricsRegistry,
)

__all__ = [
    "Counter",
    "EngineMetrics",
    "Gauge",
    "Histogram",
    "MetricsRegistry",
]
