# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Redis cache store.

RedisCacheStore keeps named caches in Redis so that cached initialization
results (and any other named cache) survive process restarts and are
shared between processes talking to the same FHIR servers.

Key layout (names and URLs are urlsafe-base64 encoded, so they never
contain ':' or glob characters):

    <namespace>:names                 set of cache names
    <namespace>:c:<name_b64>:<url_b64>   JSON-serialized CacheEntry
"""

import base64
import logging
import os

from redis.asyncio import Redis
from redis.exceptions import ConnectionError, RedisError, ResponseError, TimeoutError

from ..exceptions import CacheBackendError
from .base import BaseCacheStore, CacheEntry, HealthCheckResult

logger = logging.getLogger(__name__)


def _b64(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode()).decode().rstrip("=")


class RedisCacheStore(BaseCacheStore):
    """
    Cache store backed by Redis.

    Args:
        redis_url: Redis connection URL; falls back to the REDIS_URL
            environment variable, then to redis://localhost:6379
        redis_client: Pre-configured client (takes precedence over the URL;
            not closed by aclose())
        namespace: Prefix for every key written by this store
        max_connections: Connection pool size for an owned client

    Example:
        >>> store = RedisCacheStore("redis://localhost:6379/0")
        >>> (await store.health_check()).healthy
        True
    """

    def __init__(
        self,
        redis_url: str | None = None,
        redis_client: Redis | None = None,
        namespace: str = "fhir_batch_query",
        max_connections: int = 10,
    ):
        super().__init__(namespace)
        self.redis_url = redis_url or os.environ.get(
            "REDIS_URL", "redis://localhost:6379"
        )
        self.max_connections = max_connections
        self._redis: Redis | None = redis_client
        self._owns_client = redis_client is None
        self._names_key = f"{namespace}:names"

    def _entry_key(self, cache_name: str, key: str) -> str:
        return f"{self.namespace}:c:{_b64(cache_name)}:{_b64(key)}"

    def _cache_pattern(self, cache_name: str) -> str:
        return f"{self.namespace}:c:{_b64(cache_name)}:*"

    async def _ensure_connected(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(
                self.redis_url,
                decode_responses=True,
                max_connections=self.max_connections,
            )
        return self._redis

    async def get(self, cache_name: str, key: str) -> CacheEntry | None:
        try:
            redis_client = await self._ensure_connected()
            raw = await redis_client.get(self._entry_key(cache_name, key))
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error reading cache {cache_name!r}: {e}")
            return None
        if raw is None:
            return None
        try:
            return CacheEntry.from_json(raw)
        except ValueError as e:
            logger.warning(f"Discarding unreadable cache entry in {cache_name!r}: {e}")
            return None

    async def put(self, cache_name: str, key: str, entry: CacheEntry) -> None:
        try:
            redis_client = await self._ensure_connected()
            async with redis_client.pipeline(transaction=True) as pipe:
                pipe.set(self._entry_key(cache_name, key), entry.to_json())
                pipe.sadd(self._names_key, cache_name)
                await pipe.execute()
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error writing cache {cache_name!r}: {e}")
            raise CacheBackendError(f"Failed to write cache entry: {e}") from e

    async def delete(self, cache_name: str, key: str) -> bool:
        try:
            redis_client = await self._ensure_connected()
            return bool(await redis_client.delete(self._entry_key(cache_name, key)))
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error deleting from cache {cache_name!r}: {e}")
            raise CacheBackendError(f"Failed to delete cache entry: {e}") from e

    async def clear_by_name(self, cache_name: str) -> bool:
        """Delete every entry of a named cache.

        Uses SCAN instead of KEYS so that large caches do not block Redis.
        """
        try:
            redis_client = await self._ensure_connected()
            existed = bool(await redis_client.srem(self._names_key, cache_name))
            keys_to_delete: list[str] = []
            async for key in redis_client.scan_iter(
                match=self._cache_pattern(cache_name), count=100
            ):
                keys_to_delete.append(key)
                if len(keys_to_delete) >= 100:
                    await redis_client.delete(*keys_to_delete)
                    existed = True
                    keys_to_delete = []
            if keys_to_delete:
                await redis_client.delete(*keys_to_delete)
                existed = True
            return existed
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error clearing cache {cache_name!r}: {e}")
            raise CacheBackendError(f"Failed to clear cache: {e}") from e

    async def cache_names(self) -> list[str]:
        try:
            redis_client = await self._ensure_connected()
            return sorted(await redis_client.smembers(self._names_key))
        except (ConnectionError, TimeoutError, ResponseError, RedisError) as e:
            logger.error(f"Redis error listing caches: {e}")
            raise CacheBackendError(f"Failed to list caches: {e}") from e

    async def health_check(self) -> HealthCheckResult:
        """Perform health check on the store."""
        try:
            redis_client = await self._ensure_connected()
            await redis_client.ping()
            names = await redis_client.scard(self._names_key)
            return HealthCheckResult(
                healthy=True,
                store_type="redis",
                namespace=self.namespace,
                metadata={"redis_url": self.redis_url, "caches": names},
            )
        except (ConnectionError, TimeoutError, ResponseError, RedisError, OSError) as e:
            return HealthCheckResult(
                healthy=False,
                store_type="redis",
                namespace=self.namespace,
                error=str(e),
            )

    async def aclose(self) -> None:
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            self._redis = None


__all__ = ["RedisCacheStore"]
