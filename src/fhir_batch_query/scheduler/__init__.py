# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Request scheduling: configuration, retry rules and the batch dispatcher."""

from .config import ENV_PREFIX, ClientConfig, ConnectionSettings
from .dispatcher import BatchDispatcher, InFlightCall, parse_entry_status, with_query_param
from .retry import RetryPolicy, pacing_from_rate_limit, parse_retry_after

__all__ = [
    "ENV_PREFIX",
    "BatchDispatcher",
    "ClientConfig",
    "ConnectionSettings",
    "InFlightCall",
    "RetryPolicy",
    "pacing_from_rate_limit",
    "parse_entry_status",
    "parse_retry_after",
    "with_query_param",
]
