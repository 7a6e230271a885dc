# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Response cache.

ResponseCache stores fulfilled responses (and, on request, error responses)
keyed by absolute request URL. Entries written without a cache name live in
an in-process temporary store; entries written with a cache name go to the
durable store, which is Redis when one is configured and reachable.

Expiry is lazy: an entry is checked when it is read, and an expired durable
entry is deleted at that moment. Nothing sweeps the stores in the
background.
"""

import logging
import os
import time
from collections.abc import Callable
from typing import Any

from ..exceptions import HTTP_ABORT, CacheBackendError
from ..observability.collector import MetricsCollector
from ..observability.constants import (
    CACHE_HITS_TOTAL,
    CACHE_MISSES_TOTAL,
    CACHE_WRITES_TOTAL,
)
from ..types.response import is_success
from .base import BaseCacheStore, CacheEntry
from .memory import MemoryCacheStore

logger = logging.getLogger(__name__)

NO_CACHE_STATUSES = frozenset({HTTP_ABORT, 401, 403})
"""Error statuses that are never cached, even with cache_errors enabled."""

TEMPORARY_CACHE = ""
"""Name under which unnamed entries are kept in the temporary store."""


class ResponseCache:
    """
    URL-keyed cache of responses with optional named durable caches.

    Args:
        durable: Store for named caches; an in-memory store when omitted
        metrics: Optional metrics collector
        clock: Wall clock used for entry timestamps and expiry checks

    Example:
        >>> cache = ResponseCache()
        >>> await cache.add(url, {"status": 200, "data": bundle},
        ...                 cache_name="init-https://server", expiration_seconds=86400)
        >>> entry = await cache.get(url, cache_name="init-https://server")
    """

    def __init__(
        self,
        durable: BaseCacheStore | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._temporary = MemoryCacheStore()
        self._durable = durable if durable is not None else MemoryCacheStore()
        self._metrics = metrics
        self._clock = clock

    @property
    def durable_store(self) -> BaseCacheStore:
        return self._durable

    def _store_for(self, cache_name: str | None) -> tuple[BaseCacheStore, str, str]:
        if cache_name:
            return self._durable, cache_name, "durable"
        return self._temporary, TEMPORARY_CACHE, "temporary"

    def _count(self, metric: str, store_label: str) -> None:
        if self._metrics is not None:
            self._metrics.inc_counter(metric, labels={"store": store_label})

    async def get(self, key: str, cache_name: str | None = None) -> CacheEntry | None:
        """
        Read the entry for ``key``.

        Returns None if there is no entry or the entry has expired. Expired
        entries are deleted from the store.
        """
        store, name, store_label = self._store_for(cache_name)
        entry = await store.get(name, key)
        if entry is not None and entry.is_expired(self._clock()):
            logger.debug(f"Cache entry for {key} expired")
            try:
                await store.delete(name, key)
            except CacheBackendError as e:
                logger.warning(f"Could not delete expired entry for {key}: {e}")
            entry = None
        self._count(
            CACHE_HITS_TOTAL if entry is not None else CACHE_MISSES_TOTAL, store_label
        )
        return entry

    async def add(
        self,
        key: str,
        payload: dict[str, Any],
        cache_name: str | None = None,
        expiration_seconds: float | None = None,
        cache_errors: bool = False,
    ) -> bool:
        """
        Store a response (``{"status", "data"}``) or error payload.

        Error payloads are only stored when ``cache_errors`` is set, and
        statuses in NO_CACHE_STATUSES (aborts, 401, 403) are never stored.

        Returns:
            Whether the payload was written.
        """
        status = int(payload.get("status", HTTP_ABORT))
        if not is_success(status):
            if not cache_errors or status in NO_CACHE_STATUSES:
                return False
        store, name, store_label = self._store_for(cache_name)
        entry = CacheEntry(
            payload=payload,
            stored_at=self._clock(),
            expiration_seconds=expiration_seconds,
        )
        try:
            await store.put(name, key, entry)
        except CacheBackendError as e:
            logger.warning(f"Response for {key} not cached: {e}")
            return False
        self._count(CACHE_WRITES_TOTAL, store_label)
        return True

    async def has_not_expired_data(self, key: str, cache_name: str | None = None) -> bool:
        """Whether an unexpired entry exists for ``key``."""
        return await self.get(key, cache_name) is not None

    async def clear_by_name(self, cache_name: str) -> bool:
        """Delete a named durable cache; returns whether it existed."""
        return await self._durable.clear_by_name(cache_name)

    async def clear_all(self) -> None:
        """Delete the temporary entries and every named cache."""
        await self._temporary.clear_all()
        await self._durable.clear_all()

    async def aclose(self) -> None:
        await self._durable.aclose()


async def create_cache_store(
    redis_url: str | None = None,
    namespace: str = "fhir_batch_query",
) -> BaseCacheStore:
    """
    Select the durable cache store once, at startup.

    A Redis store is used when ``redis_url`` (or the REDIS_URL environment
    variable) is set and the server answers a health check; otherwise the
    in-memory store is used. Requires the ``redis`` extra for the Redis
    store.
    """
    url = redis_url or os.environ.get("REDIS_URL")
    if not url:
        logger.debug("No Redis URL configured; using in-memory cache store")
        return MemoryCacheStore(namespace)

    from .redis import RedisCacheStore

    store = RedisCacheStore(redis_url=url, namespace=namespace)
    health = await store.health_check()
    if health.healthy:
        logger.info(f"Using Redis cache store at {url}")
        return store

    logger.warning(
        f"Redis cache store unavailable ({health.error}); using in-memory cache store"
    )
    await store.aclose()
    return MemoryCacheStore(namespace)


__all__ = [
    "NO_CACHE_STATUSES",
    "ResponseCache",
    "create_cache_store",
]
