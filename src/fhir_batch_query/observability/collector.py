# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Metrics collector backed by dicts and Prometheus.

MetricsCollector keeps a dict snapshot of every metric (for get_metrics()
and JSON export) and mirrors updates into prometheus_client metrics
registered in the collector's own CollectorRegistry. Using a registry per
collector lets several clients live in one process without name clashes.

Usage:
    >>> collector = MetricsCollector()
    >>> collector.inc_counter(NETWORK_CALLS_TOTAL, labels={"kind": "batch"})
    >>> collector.get_metrics()["counters"][NETWORK_CALLS_TOTAL]
    {'kind=batch': 1}
    >>> generate_latest(collector.registry)  # Prometheus exposition format
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from .constants import (
    ACTIVE_CALLS,
    BATCH_ENTRIES_TOTAL,
    BATCH_FALLBACKS_TOTAL,
    CACHE_HITS_TOTAL,
    CACHE_MISSES_TOTAL,
    CACHE_WRITES_TOTAL,
    CALL_LATENCY_SECONDS,
    LATENCY_BUCKETS,
    NETWORK_CALLS_TOTAL,
    PACING_INTERVAL_SECONDS,
    QUEUE_DEPTH,
    REQUESTS_COMPLETED_TOTAL,
    REQUESTS_ENQUEUED_TOTAL,
    REQUESTS_FAILED_TOTAL,
    REQUESTS_RETRIED_TOTAL,
)

logger = logging.getLogger(__name__)


@dataclass
class MetricDefinition:
    """Schema of a metric: type, description, labels and histogram buckets."""

    name: str
    metric_type: str  # 'counter', 'gauge', 'histogram'
    description: str
    label_names: tuple[str, ...] = ()
    buckets: tuple[float, ...] | None = None


METRIC_DEFINITIONS: dict[str, MetricDefinition] = {
    # === Scheduling Counters ===
    REQUESTS_ENQUEUED_TOTAL: MetricDefinition(
        REQUESTS_ENQUEUED_TOTAL, "counter", "Total requests enqueued"
    ),
    REQUESTS_COMPLETED_TOTAL: MetricDefinition(
        REQUESTS_COMPLETED_TOTAL, "counter", "Total requests fulfilled"
    ),
    REQUESTS_FAILED_TOTAL: MetricDefinition(
        REQUESTS_FAILED_TOTAL, "counter", "Total requests rejected", ("reason",)
    ),
    REQUESTS_RETRIED_TOTAL: MetricDefinition(
        REQUESTS_RETRIED_TOTAL, "counter", "Total request retries", ("reason",)
    ),
    NETWORK_CALLS_TOTAL: MetricDefinition(
        NETWORK_CALLS_TOTAL, "counter", "Total network calls", ("kind",)
    ),
    BATCH_ENTRIES_TOTAL: MetricDefinition(
        BATCH_ENTRIES_TOTAL, "counter", "Total requests sent inside batches"
    ),
    BATCH_FALLBACKS_TOTAL: MetricDefinition(
        BATCH_FALLBACKS_TOTAL, "counter", "Total batches split after an abort"
    ),
    # === Gauges ===
    ACTIVE_CALLS: MetricDefinition(
        ACTIVE_CALLS, "gauge", "Network calls currently in flight"
    ),
    QUEUE_DEPTH: MetricDefinition(QUEUE_DEPTH, "gauge", "Pending queue depth"),
    PACING_INTERVAL_SECONDS: MetricDefinition(
        PACING_INTERVAL_SECONDS, "gauge", "Minimum spacing between network calls"
    ),
    # === Cache Counters ===
    CACHE_HITS_TOTAL: MetricDefinition(
        CACHE_HITS_TOTAL, "counter", "Total response cache hits", ("store",)
    ),
    CACHE_MISSES_TOTAL: MetricDefinition(
        CACHE_MISSES_TOTAL, "counter", "Total response cache misses", ("store",)
    ),
    CACHE_WRITES_TOTAL: MetricDefinition(
        CACHE_WRITES_TOTAL, "counter", "Total response cache writes", ("store",)
    ),
    # === Histograms ===
    CALL_LATENCY_SECONDS: MetricDefinition(
        CALL_LATENCY_SECONDS,
        "histogram",
        "Network call latency in seconds",
        ("kind",),
        LATENCY_BUCKETS,
    ),
}


class MetricsCollector:
    """
    Collector for the client's counters, gauges and histograms.

    Thread Safety:
        Dict updates are protected by an RLock; prometheus_client metrics
        are thread-safe on their own.

    Args:
        registry: Prometheus registry to register metrics in. A fresh
            CollectorRegistry is created when omitted.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()

        self._counters: dict[str, dict[str, float]] = defaultdict(
            lambda: defaultdict(float)
        )
        self._gauges: dict[str, dict[str, float]] = defaultdict(
            lambda: defaultdict(float)
        )
        self._histograms: dict[str, dict[str, list[float]]] = defaultdict(
            lambda: defaultdict(list)
        )
        self._lock = threading.RLock()
        self._prom_metrics: dict[str, Any] = {}

    def _labels_to_key(self, labels: dict[str, str] | None) -> str:
        """Convert labels dict to a stable string key."""
        if not labels:
            return ""
        return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))

    def _prom_metric(self, name: str, labels: dict[str, str] | None) -> Any:
        """Get (creating on first use) the Prometheus child for ``name``."""
        metric = self._prom_metrics.get(name)
        if metric is None:
            defn = METRIC_DEFINITIONS.get(name)
            if defn is None:
                raise ValueError(f"Unknown metric: {name}")
            if defn.metric_type == "counter":
                metric = Counter(
                    name, defn.description, defn.label_names, registry=self.registry
                )
            elif defn.metric_type == "gauge":
                metric = Gauge(
                    name, defn.description, defn.label_names, registry=self.registry
                )
            else:
                metric = Histogram(
                    name,
                    defn.description,
                    defn.label_names,
                    buckets=defn.buckets or LATENCY_BUCKETS,
                    registry=self.registry,
                )
            self._prom_metrics[name] = metric
        return metric.labels(**labels) if labels else metric

    # === Counter Operations ===

    def inc_counter(
        self,
        name: str,
        value: float = 1,
        labels: dict[str, str] | None = None,
    ) -> None:
        """
        Increment a counter metric.

        Raises:
            ValueError: If value is negative or the metric is unknown
        """
        if value < 0:
            raise ValueError("Counter increment must be non-negative")
        with self._lock:
            self._counters[name][self._labels_to_key(labels)] += value
            self._prom_metric(name, labels).inc(value)

    # === Gauge Operations ===

    def set_gauge(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Set a gauge metric to a specific value."""
        with self._lock:
            self._gauges[name][self._labels_to_key(labels)] = value
            self._prom_metric(name, labels).set(value)

    # === Histogram Operations ===

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Record an observation in a histogram."""
        label_key = self._labels_to_key(labels)
        with self._lock:
            observations = self._histograms[name][label_key]
            observations.append(value)
            # Keep only recent observations to prevent memory growth
            if len(observations) > 10000:
                del observations[:5000]
            self._prom_metric(name, labels).observe(value)

    # === Snapshot Operations ===

    def get_metrics(self) -> dict[str, Any]:
        """
        Get a snapshot of all metrics.

        Returns a dict suitable for JSON serialization with structure:
        {
            "counters": {"metric_name": {"label_key": value, ...}, ...},
            "gauges": {"metric_name": {"label_key": value, ...}, ...},
            "histograms": {"metric_name": {"label_key": {...}, ...}, ...}
        }
        """
        with self._lock:
            counters = {
                name: dict(label_values)
                for name, label_values in self._counters.items()
            }
            gauges = {
                name: dict(label_values) for name, label_values in self._gauges.items()
            }
            histograms: dict[str, dict[str, dict[str, float]]] = {}
            for name, label_values in self._histograms.items():
                histograms[name] = {
                    label_key: {
                        "count": len(observations),
                        "sum": sum(observations),
                        "avg": sum(observations) / len(observations),
                        "min": min(observations),
                        "max": max(observations),
                    }
                    for label_key, observations in label_values.items()
                    if observations
                }

        return {"counters": counters, "gauges": gauges, "histograms": histograms}

    def reset(self) -> None:
        """Reset the dict snapshot (Prometheus metrics keep their totals)."""
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._histograms.clear()

        logger.debug("Metrics collector reset")


__all__ = ["METRIC_DEFINITIONS", "MetricDefinition", "MetricsCollector"]
