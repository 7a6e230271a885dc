# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Response cache and its stores.

The Redis store is imported lazily so that the ``redis`` package is only
required when it is actually used.
"""

from typing import TYPE_CHECKING, Any

from .base import BaseCacheStore, CacheEntry, HealthCheckResult
from .memory import MemoryCacheStore
from .response_cache import NO_CACHE_STATUSES, ResponseCache, create_cache_store

if TYPE_CHECKING:
    from .redis import RedisCacheStore


def __getattr__(name: str) -> Any:
    if name == "RedisCacheStore":
        try:
            from .redis import RedisCacheStore

            return RedisCacheStore
        except ImportError as e:
            raise ImportError(
                "RedisCacheStore requires the 'redis' package. "
                "Install it with: pip install fhir-batch-query[redis]"
            ) from e
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "NO_CACHE_STATUSES",
    "BaseCacheStore",
    "CacheEntry",
    "HealthCheckResult",
    "MemoryCacheStore",
    "RedisCacheStore",
    "ResponseCache",
    "create_cache_store",
]
