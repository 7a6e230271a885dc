# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""In-process cache store."""

import asyncio
import logging

from .base import BaseCacheStore, CacheEntry, HealthCheckResult

logger = logging.getLogger(__name__)


class MemoryCacheStore(BaseCacheStore):
    """
    Cache store keeping entries in a dict of dicts.

    Used for the response cache's temporary (unnamed) entries, and as the
    durable store when no Redis server is configured or reachable. Entries
    live as long as the process.
    """

    def __init__(self, namespace: str = "fhir_batch_query"):
        super().__init__(namespace)
        self._caches: dict[str, dict[str, CacheEntry]] = {}
        self._lock = asyncio.Lock()

    async def get(self, cache_name: str, key: str) -> CacheEntry | None:
        async with self._lock:
            return self._caches.get(cache_name, {}).get(key)

    async def put(self, cache_name: str, key: str, entry: CacheEntry) -> None:
        async with self._lock:
            self._caches.setdefault(cache_name, {})[key] = entry

    async def delete(self, cache_name: str, key: str) -> bool:
        async with self._lock:
            cache = self._caches.get(cache_name)
            if cache is None or key not in cache:
                return False
            del cache[key]
            if not cache:
                del self._caches[cache_name]
            return True

    async def clear_by_name(self, cache_name: str) -> bool:
        async with self._lock:
            return self._caches.pop(cache_name, None) is not None

    async def cache_names(self) -> list[str]:
        async with self._lock:
            return list(self._caches)

    async def clear_all(self) -> None:
        async with self._lock:
            self._caches.clear()

    async def health_check(self) -> HealthCheckResult:
        async with self._lock:
            entries = sum(len(cache) for cache in self._caches.values())
        return HealthCheckResult(
            healthy=True,
            store_type="memory",
            namespace=self.namespace,
            metadata={"caches": len(self._caches), "entries": entries},
        )


__all__ = ["MemoryCacheStore"]
