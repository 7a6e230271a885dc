# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
FHIR batch query client.

FhirBatchClient is the public entry point. It ties together the batch
dispatcher (queueing, batching, pacing, retries), the response cache, the
capability negotiator and the paged map/filter helper.

Example:
    >>> config = ClientConfig(service_base_url="https://lforms-fhir.nlm.nih.gov/baseR4")
    >>> async with FhirBatchClient(config) as client:
    ...     features = await client.initialize()
    ...     patients = await client.get_with_cache("Patient?_count=10")
    ...     print(features.has_batch_support, len(patients.data["entry"]))
"""

import asyncio
import logging
from typing import Any

from typing_extensions import Self

from .cache.response_cache import ResponseCache, create_cache_store
from .cancellation import CancellationToken
from .exceptions import FhirQueryError, error_from_payload
from .negotiation.negotiator import CapabilityNegotiator
from .observability.collector import MetricsCollector
from .observability.events import ClientEvent, EventBus, EventListener
from .paging import MapFilterFunction, PagedMapFilter
from .scheduler.config import ClientConfig, ConnectionSettings
from .scheduler.dispatcher import BatchDispatcher
from .scheduler.retry import RetryPolicy
from .transport.base import TransportProtocol
from .transport.httpx_transport import HttpxTransport
from .types.features import ServerFeatures
from .types.request import FHIR_JSON, FORM_URLENCODED, PendingRequest, Priority
from .types.response import Response

logger = logging.getLogger(__name__)


class FhirBatchClient:
    """
    Batched, cached, rate-adaptive client for one FHIR server at a time.

    Args:
        config: Client configuration; defaults to ClientConfig()
        transport: Network transport; an HttpxTransport is created (and
            closed by aclose()) when omitted
        cache: Response cache; an in-memory cache when omitted
        events: Event bus; a new one when omitted
        metrics: Metrics collector; created when ``config.metrics_enabled``
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        transport: TransportProtocol | None = None,
        cache: ResponseCache | None = None,
        events: EventBus | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        self._owns_transport = transport is None
        self._transport: TransportProtocol = transport or HttpxTransport(
            timeout=self.config.request_timeout
        )
        if metrics is None and self.config.metrics_enabled:
            metrics = MetricsCollector()
        self.metrics = metrics
        self.events = events or EventBus()
        self.cache = cache or ResponseCache(metrics=metrics)
        self.connection = ConnectionSettings(
            base_url=self.config.service_base_url,
            api_key=self.config.api_key,
        )
        self.retry_policy = RetryPolicy(self.config)
        self._dispatcher = BatchDispatcher(
            self._transport,
            self.config,
            self.connection,
            retry_policy=self.retry_policy,
            events=self.events,
            metrics=metrics,
        )
        self.cache_enabled = True
        self.init_context = ""
        self._features = ServerFeatures()
        self._negotiation: asyncio.Future[ServerFeatures] | None = None

    @classmethod
    async def create(
        cls,
        config: ClientConfig | None = None,
        redis_url: str | None = None,
        **kwargs: Any,
    ) -> "FhirBatchClient":
        """
        Create a client whose named caches live in Redis when available.

        The durable store is chosen once here: Redis if ``redis_url`` (or
        REDIS_URL) points at a reachable server, the in-memory store
        otherwise.
        """
        config = config or ClientConfig()
        metrics = kwargs.pop("metrics", None)
        if metrics is None and config.metrics_enabled:
            metrics = MetricsCollector()
        store = await create_cache_store(redis_url)
        cache = ResponseCache(store, metrics=metrics)
        return cls(config, cache=cache, metrics=metrics, **kwargs)

    # === Lifecycle ===

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Abort outstanding requests and release the transport and cache."""
        await self._dispatcher.aclose()
        if self._negotiation is not None and not self._negotiation.done():
            self._negotiation.cancel()
        if self._owns_transport:
            await self._transport.aclose()
        await self.cache.aclose()
        logger.debug("FHIR batch client closed")

    # === Connection ===

    @property
    def service_base_url(self) -> str:
        return self.connection.base_url

    @property
    def api_key(self) -> str:
        return self.connection.api_key

    @api_key.setter
    def api_key(self, value: str | None) -> None:
        self.connection.api_key = (value or "").strip()

    @property
    def authorization_header(self) -> str | None:
        return self.connection.authorization_header

    @authorization_header.setter
    def authorization_header(self, value: str | None) -> None:
        self.connection.authorization_header = value

    def get_full_url(self, url: str) -> str:
        """Return ``url`` unchanged if absolute, else joined to the base URL."""
        return self.connection.get_full_url(url)

    def get_relative_url(self, url: str) -> str:
        """Strip the base URL prefix from ``url`` if present."""
        return self.connection.get_relative_url(url)

    # === Tunables ===

    @property
    def max_requests_per_batch(self) -> int:
        return self._dispatcher.max_requests_per_batch

    @max_requests_per_batch.setter
    def max_requests_per_batch(self, value: int) -> None:
        if value < 1:
            raise ValueError("max_requests_per_batch must be at least 1")
        self._dispatcher.max_requests_per_batch = value

    @property
    def max_active_requests(self) -> int:
        return self._dispatcher.max_active_requests

    @max_active_requests.setter
    def max_active_requests(self, value: int) -> None:
        if value < 1:
            raise ValueError("max_active_requests must be at least 1")
        self._dispatcher.max_active_requests = value

    @property
    def pacing_interval(self) -> float:
        """Minimum spacing in seconds between network calls (0 disables pacing)."""
        return self._dispatcher.pacing_interval

    @pacing_interval.setter
    def pacing_interval(self, value: float) -> None:
        self._dispatcher.pacing_interval = value

    # === Events ===

    def subscribe(
        self,
        listener: EventListener,
        events: list[ClientEvent] | None = None,
    ) -> Any:
        """Subscribe to client events; returns an unsubscribe function."""
        return self.events.subscribe(listener, events)

    def add_change_listener(self, handler: EventListener) -> Any:
        """Subscribe to parameters-changed events; returns an unsubscribe function."""
        return self.events.subscribe(handler, [ClientEvent.PARAMETERS_CHANGED])

    # === Requests ===

    async def get(
        self,
        url: str,
        *,
        combine: bool = True,
        retry_count: int | None = None,
        token: CancellationToken | None = None,
        priority: Priority = Priority.NORMAL,
    ) -> Response:
        """
        Queue a GET request and wait for its response.

        GET URLs longer than ``max_url_length`` (other than $lastn lookups)
        are sent as ``POST <path>/_search`` with a form-encoded body.

        Args:
            url: Absolute URL or a URL relative to the server base
            combine: Whether the request may be folded into a batch
            retry_count: Maximum number of attempts; None retries until the
                give-up window expires
            token: Cancellation token
            priority: Dispatch priority

        Raises:
            FhirQueryError: The request was rejected or aborted
        """
        full_url = self.get_full_url(url)
        if len(full_url) > self.config.max_url_length and "/$lastn" not in full_url:
            path, _, query = full_url.partition("?")
            return await self.request(
                "POST",
                f"{path}/_search",
                body=query,
                content_type=FORM_URLENCODED,
                retry_count=retry_count,
                token=token,
                priority=priority,
            )
        return await self._submit(
            "GET",
            full_url,
            combinable=combine,
            retry_count=retry_count,
            token=token,
            priority=priority,
        )

    async def request(
        self,
        method: str,
        url: str,
        *,
        body: str | None = None,
        content_type: str = FHIR_JSON,
        retry_count: int | None = None,
        token: CancellationToken | None = None,
        priority: Priority = Priority.NORMAL,
        log_prefix: str = "",
    ) -> Response:
        """Queue a non-combinable request (e.g. a POST) and wait for its response."""
        return await self._submit(
            method.upper(),
            self.get_full_url(url),
            body=body,
            content_type=content_type,
            combinable=False,
            retry_count=retry_count,
            token=token,
            priority=priority,
            log_prefix=log_prefix,
        )

    async def _submit(
        self,
        method: str,
        url: str,
        *,
        body: str | None = None,
        content_type: str = FHIR_JSON,
        combinable: bool = True,
        retry_count: int | None = None,
        token: CancellationToken | None = None,
        priority: Priority = Priority.NORMAL,
        log_prefix: str = "",
    ) -> Response:
        loop = asyncio.get_running_loop()
        request = PendingRequest(
            method=method,
            url=url,
            future=loop.create_future(),
            token=CancellationToken.linked(token),
            body=body,
            content_type=content_type,
            combinable=combinable,
            retries_remaining=retry_count,
            priority=priority,
            log_prefix=log_prefix,
        )
        future = self._dispatcher.enqueue(request)
        try:
            return await future
        except asyncio.CancelledError:
            request.token.cancel()
            raise
        finally:
            request.token.release()

    async def get_with_cache(
        self,
        url: str,
        *,
        cache_name: str | None = None,
        expiration_seconds: float | None = None,
        cache_errors: bool = False,
        combine: bool = True,
        retry_count: int | None = None,
        token: CancellationToken | None = None,
        priority: Priority = Priority.NORMAL,
    ) -> Response:
        """
        Like get(), but answered from the response cache when possible.

        Fulfilled responses are cached; error responses only when
        ``cache_errors`` is set (aborts, 401 and 403 are never cached). A
        cached error is raised again on a hit.

        Args:
            cache_name: Named (durable) cache to use; the temporary cache
                when None
            expiration_seconds: Lifetime of the cached entry; None never
                expires
            cache_errors: Whether to cache error responses
        """
        full_url = self.get_full_url(url)
        if self.cache_enabled:
            entry = await self.cache.get(full_url, cache_name)
            if entry is not None:
                logger.debug(f"Using cached data for {full_url}")
                if entry.is_error:
                    raise error_from_payload(entry.payload)
                return Response(
                    status=entry.status,
                    data=entry.payload.get("data"),
                    from_cache=True,
                )

        try:
            response = await self.get(
                full_url,
                combine=combine,
                retry_count=retry_count,
                token=token,
                priority=priority,
            )
        except FhirQueryError as error:
            if self.cache_enabled and cache_errors:
                await self.cache.add(
                    full_url,
                    error.to_payload(),
                    cache_name=cache_name,
                    expiration_seconds=expiration_seconds,
                    cache_errors=True,
                )
            raise

        if self.cache_enabled:
            await self.cache.add(
                full_url,
                response.to_payload(),
                cache_name=cache_name,
                expiration_seconds=expiration_seconds,
            )
        return response

    def resources_map_filter(
        self,
        url: str,
        count: int,
        map_filter: MapFilterFunction,
        page_size: int | None = None,
    ) -> PagedMapFilter:
        """
        Start a paged filter/map over the results of a search.

        Returns a PagedMapFilter that can be awaited for the result and
        cancelled with cancel().
        """
        return PagedMapFilter(self, url, count, map_filter, page_size)

    def clear_pending_requests(self) -> None:
        """Reject queued requests and abort in-flight calls."""
        self._dispatcher.clear()

    # === Cache ===

    async def is_cached(self, url: str, cache_name: str | None = None) -> bool:
        """Whether an unexpired cached response exists for ``url``."""
        return await self.cache.has_not_expired_data(self.get_full_url(url), cache_name)

    async def clear_cache_by_name(self, cache_name: str) -> bool:
        return await self.cache.clear_by_name(cache_name)

    async def clear_cache(self) -> None:
        """Delete the temporary cache and every named cache."""
        await self.cache.clear_all()

    async def set_cache_enabled(self, enabled: bool) -> None:
        """Turn the response cache on or off; turning it off clears it."""
        self.cache_enabled = enabled
        if not enabled:
            await self.clear_cache()

    # === Initialization ===

    def get_init_cache_name(self, use_init_context: bool = True) -> str:
        """Name of the cache holding initialization responses for this server."""
        context = f"{self.init_context}-" if use_init_context and self.init_context else ""
        return f"init-{context}{self.service_base_url}"

    def get_common_init_request_options(
        self, use_init_context: bool = True
    ) -> dict[str, Any]:
        """Options shared by every initialization request."""
        return {
            "combine": False,
            "retry_count": self.config.init_retry_count,
            "cache_name": self.get_init_cache_name(use_init_context),
            "expiration_seconds": self.config.init_cache_expiration,
            "cache_errors": True,
        }

    async def initialize(
        self,
        server_url: str | None = None,
        context: str | None = None,
    ) -> ServerFeatures:
        """
        Negotiate the capabilities of the server.

        Changing the server URL or the context clears pending requests,
        resets pacing and starts a new negotiation; otherwise the current
        negotiation (running or finished) is shared.

        Raises:
            UnsupportedVersionError, BasicAuthRequiredError,
            OAuth2RequiredError, MetadataUnavailableError: Negotiation failed
            OutdatedResponseError: A newer initialize() superseded this one
        """
        server_url = server_url.rstrip("/") if server_url else None
        url_changed = server_url is not None and server_url != self.service_base_url
        context_changed = context is not None and context != self.init_context
        if url_changed or context_changed:
            if url_changed:
                self.connection.base_url = server_url or ""
            if context_changed:
                self.init_context = context or ""
            self.connection.format_supported = True
            self.clear_pending_requests()
            self.retry_policy.reset()
            self._features = ServerFeatures()
            self._negotiation = None

        if self._negotiation is None:
            negotiator = CapabilityNegotiator(self, self.service_base_url, self.init_context)
            self._negotiation = asyncio.ensure_future(self._negotiate(negotiator))
        return await asyncio.shield(self._negotiation)

    async def _negotiate(self, negotiator: CapabilityNegotiator) -> ServerFeatures:
        features = await negotiator.run()
        negotiator.ensure_current()
        self._features = features
        return features

    def get_features(self) -> ServerFeatures:
        """Features of the last completed negotiation (defaults before that)."""
        return self._features

    def get_version_name(self) -> str | None:
        return self._features.version_name

    # === Introspection ===

    def get_metrics(self) -> dict[str, Any]:
        """Snapshot of scheduler state and, if enabled, collected metrics."""
        snapshot: dict[str, Any] = {"scheduler": self._dispatcher.get_stats()}
        if self.metrics is not None:
            snapshot.update(self.metrics.get_metrics())
        return snapshot


__all__ = ["FhirBatchClient"]
