# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Events and metrics."""

from .collector import METRIC_DEFINITIONS, MetricDefinition, MetricsCollector
from .events import ClientEvent, EventBus, EventListener, EventRecord

__all__ = [
    "METRIC_DEFINITIONS",
    "ClientEvent",
    "EventBus",
    "EventListener",
    "EventRecord",
    "MetricDefinition",
    "MetricsCollector",
]
