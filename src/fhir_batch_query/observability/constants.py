# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Metric name constants following Prometheus naming conventions.

All metric names use the ``fhir_bq_`` prefix.

Naming Conventions:
    - Counter metrics end with `_total`
    - Histogram metrics for time end with `_seconds`
    - Gauges use present-tense descriptive names

Label Best Practices:
    Labels are limited to small enumerations:
    - `kind` - Network call kind (single, batch)
    - `reason` - Retry/failure reason (rate_limit, abort, http_error, ...)
    - `store` - Cache store (temporary, durable)

    Never label by URL or request id.
"""


# =============================================================================
# Global Prefix
# =============================================================================

METRIC_PREFIX = "fhir_bq"
"""Prefix for all Prometheus metrics in this library."""


# =============================================================================
# Scheduling Metrics (scheduler/dispatcher.py)
# =============================================================================

REQUESTS_ENQUEUED_TOTAL = f"{METRIC_PREFIX}_requests_enqueued_total"
"""Total requests accepted into the pending queue."""

REQUESTS_COMPLETED_TOTAL = f"{METRIC_PREFIX}_requests_completed_total"
"""Total requests fulfilled."""

REQUESTS_FAILED_TOTAL = f"{METRIC_PREFIX}_requests_failed_total"
"""Total requests rejected, labelled by reason."""

REQUESTS_RETRIED_TOTAL = f"{METRIC_PREFIX}_requests_retried_total"
"""Total requests scheduled for another attempt."""

NETWORK_CALLS_TOTAL = f"{METRIC_PREFIX}_network_calls_total"
"""Total network calls, labelled by kind (single or batch)."""

BATCH_ENTRIES_TOTAL = f"{METRIC_PREFIX}_batch_entries_total"
"""Total requests carried inside batch Bundles."""

BATCH_FALLBACKS_TOTAL = f"{METRIC_PREFIX}_batch_fallbacks_total"
"""Total batches split back into individual requests after an abort."""


# =============================================================================
# Gauge Metrics
# =============================================================================

ACTIVE_CALLS = f"{METRIC_PREFIX}_active_calls"
"""Network calls currently in flight."""

QUEUE_DEPTH = f"{METRIC_PREFIX}_queue_depth"
"""Requests waiting in the pending queue."""

PACING_INTERVAL_SECONDS = f"{METRIC_PREFIX}_pacing_interval_seconds"
"""Current minimum spacing between network calls."""


# =============================================================================
# Cache Metrics (cache/response_cache.py)
# =============================================================================

CACHE_HITS_TOTAL = f"{METRIC_PREFIX}_cache_hits_total"
"""Total response cache hits."""

CACHE_MISSES_TOTAL = f"{METRIC_PREFIX}_cache_misses_total"
"""Total response cache misses (including expired entries)."""

CACHE_WRITES_TOTAL = f"{METRIC_PREFIX}_cache_writes_total"
"""Total entries written to the response cache."""


# =============================================================================
# Latency Metrics
# =============================================================================

CALL_LATENCY_SECONDS = f"{METRIC_PREFIX}_call_latency_seconds"
"""Network call latency, labelled by kind."""

LATENCY_BUCKETS = (0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
"""Histogram buckets for network call latency."""


__all__ = [
    "ACTIVE_CALLS",
    "BATCH_ENTRIES_TOTAL",
    "BATCH_FALLBACKS_TOTAL",
    "CACHE_HITS_TOTAL",
    "CACHE_MISSES_TOTAL",
    "CACHE_WRITES_TOTAL",
    "CALL_LATENCY_SECONDS",
    "LATENCY_BUCKETS",
    "METRIC_PREFIX",
    "NETWORK_CALLS_TOTAL",
    "PACING_INTERVAL_SECONDS",
    "QUEUE_DEPTH",
    "REQUESTS_COMPLETED_TOTAL",
    "REQUESTS_ENQUEUED_TOTAL",
    "REQUESTS_FAILED_TOTAL",
    "REQUESTS_RETRIED_TOTAL",
]
