# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""FHIR Batch Query - batched, cached, rate-adaptive FHIR REST client.

This library sits between an application and a FHIR server and turns many
small GET requests into few network calls.

Key Features:
    - Combines queued GET requests into FHIR ``batch`` Bundles
    - Priority queue with bounded concurrency and request pacing
    - Adapts to server rate limits (rate-limit headers, 429, Retry-After)
    - Response cache with named, expiring caches (memory or Redis)
    - Server capability negotiation (FHIR version and feature probes)
    - Cancellable paged filter/map over search results

Quick Start:
    >>> from fhir_batch_query import ClientConfig, FhirBatchClient
    >>>
    >>> config = ClientConfig(service_base_url="https://lforms-fhir.nlm.nih.gov/baseR4")
    >>> async with FhirBatchClient(config) as client:
    ...     features = await client.initialize()
    ...     response = await client.get("Patient?_count=5")

Main Exports:
    - FhirBatchClient: The client facade
    - ClientConfig: Configuration options
    - ResponseCache, MemoryCacheStore, RedisCacheStore: Response caching
    - ServerFeatures: Negotiated server capabilities
    - CancellationToken: Request cancellation

Note: RedisCacheStore requires the 'redis' extra. Install with:
    pip install fhir-batch-query[redis]

Version: 0.1.0
"""

__version__ = "0.1.0"

from typing import TYPE_CHECKING

from .cache import (
    NO_CACHE_STATUSES,
    BaseCacheStore,
    CacheEntry,
    MemoryCacheStore,
    ResponseCache,
    create_cache_store,
)
from .cancellation import CancellationToken
from .client import FhirBatchClient
from .exceptions import (
    BASIC_AUTH_REQUIRED,
    HTTP_ABORT,
    OAUTH2_REQUIRED,
    UNSUPPORTED_VERSION,
    AbortReason,
    BasicAuthRequiredError,
    CacheBackendError,
    ConfigurationError,
    FhirBatchQueryError,
    FhirQueryError,
    HttpError,
    MetadataUnavailableError,
    OAuth2RequiredError,
    OutdatedResponseError,
    RateLimitedError,
    RequestAbortedError,
    TransportError,
    UnsupportedVersionError,
)
from .observability import ClientEvent, EventBus, EventRecord, MetricsCollector
from .paging import MapFilterResult, PagedMapFilter
from .scheduler import ClientConfig
from .transport import HttpxTransport, RawResponse, TransportProtocol
from .types import FHIR_JSON, FORM_URLENCODED, Priority, Response, ServerFeatures

if TYPE_CHECKING:
    from .cache import RedisCacheStore

__all__ = [
    "BASIC_AUTH_REQUIRED",
    "FHIR_JSON",
    "FORM_URLENCODED",
    "HTTP_ABORT",
    "NO_CACHE_STATUSES",
    "OAUTH2_REQUIRED",
    "UNSUPPORTED_VERSION",
    "AbortReason",
    # Cache
    "BaseCacheStore",
    "BasicAuthRequiredError",
    "CacheBackendError",
    "CacheEntry",
    # Cancellation
    "CancellationToken",
    # Configuration
    "ClientConfig",
    # Observability
    "ClientEvent",
    "ConfigurationError",
    "EventBus",
    "EventRecord",
    # Client
    "FhirBatchClient",
    # Exceptions
    "FhirBatchQueryError",
    "FhirQueryError",
    "HttpError",
    # Transport
    "HttpxTransport",
    # Paging
    "MapFilterResult",
    "MemoryCacheStore",
    "MetadataUnavailableError",
    "MetricsCollector",
    "OAuth2RequiredError",
    "OutdatedResponseError",
    "PagedMapFilter",
    # Types
    "Priority",
    "RateLimitedError",
    "RawResponse",
    "RedisCacheStore",  # Lazy loaded - requires redis extra
    "RequestAbortedError",
    "Response",
    "ResponseCache",
    "ServerFeatures",
    "TransportError",
    "TransportProtocol",
    "UnsupportedVersionError",
    "create_cache_store",
]


def __getattr__(name: str) -> type:
    """Lazy import for optional redis cache store."""
    if name == "RedisCacheStore":
        from .cache import RedisCacheStore

        return RedisCacheStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
