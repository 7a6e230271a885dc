# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Base cache store for the response cache.

This module provides the CacheEntry model and the BaseCacheStore abstract
class that every store implementation (in-memory, Redis) provides. Stores
are organised as named caches, each mapping a request URL to an entry.
Stores know nothing about expiry: the ResponseCache checks an entry's age
when it is read and deletes it then.
"""

import abc
import time
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field


@dataclass
class HealthCheckResult:
    """
    Structured health check result for store monitoring.

    Attributes:
        healthy: Whether the store is operational
        store_type: Type of store (e.g., 'redis', 'memory')
        namespace: Store namespace
        error: Error message if unhealthy
        metadata: Additional store-specific information
    """

    healthy: bool
    store_type: str
    namespace: str
    error: str | None = None
    metadata: dict[str, Any] | None = None


class CacheEntry(BaseModel):
    """
    A cached response (or cached error).

    Attributes:
        payload: ``{"status", "data"}`` for a response, or
            ``{"status", "error", "wwwAuthenticate"?}`` for an error
        stored_at: Wall clock time the entry was written
        expiration_seconds: Lifetime of the entry; None never expires
    """

    payload: dict[str, Any]
    stored_at: float = Field(default_factory=time.time)
    expiration_seconds: float | None = None

    @property
    def status(self) -> int:
        return int(self.payload.get("status", 0))

    @property
    def is_error(self) -> bool:
        return "error" in self.payload and "data" not in self.payload

    def is_expired(self, now: float | None = None) -> bool:
        """Whether the entry is older than its lifetime."""
        if self.expiration_seconds is None:
            return False
        current = time.time() if now is None else now
        return current - self.stored_at > self.expiration_seconds

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> "CacheEntry":
        return cls.model_validate_json(raw)


class BaseCacheStore(abc.ABC):
    """
    Interface for the storage behind a ResponseCache.

    Every method is async so that network-backed stores fit the same
    interface as the in-process one.
    """

    def __init__(self, namespace: str = "fhir_batch_query"):
        self.namespace = namespace

    @abc.abstractmethod
    async def get(self, cache_name: str, key: str) -> CacheEntry | None:
        """Read an entry, or None if it is absent."""
        pass

    @abc.abstractmethod
    async def put(self, cache_name: str, key: str, entry: CacheEntry) -> None:
        """Write an entry, replacing any previous one."""
        pass

    @abc.abstractmethod
    async def delete(self, cache_name: str, key: str) -> bool:
        """Delete an entry; returns whether it existed."""
        pass

    @abc.abstractmethod
    async def clear_by_name(self, cache_name: str) -> bool:
        """Delete a named cache; returns whether it existed."""
        pass

    @abc.abstractmethod
    async def cache_names(self) -> list[str]:
        """List the names of the caches in this store."""
        pass

    async def clear_all(self) -> None:
        """Delete every named cache in the store."""
        for name in await self.cache_names():
            await self.clear_by_name(name)

    @abc.abstractmethod
    async def health_check(self) -> HealthCheckResult:
        """Perform a health check on the store."""
        pass

    async def aclose(self) -> None:
        """Release resources held by the store."""
        return None


__all__ = ["BaseCacheStore", "CacheEntry", "HealthCheckResult"]
