# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Client Configuration for the FHIR Batch Query client

This module provides the configuration dataclass for the client and its
scheduler (batching, concurrency, rate adaptation and initialization
defaults), plus the mutable connection settings shared between the
client facade and the dispatcher.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields

from ..exceptions import ConfigurationError

ENV_PREFIX = "FHIR_BATCH_QUERY_"


@dataclass
class ClientConfig:
    """
    Configuration for the FHIR batch query client.

    All durations are in seconds.
    """

    # === Connection ===

    service_base_url: str = ""
    """Base URL of the FHIR server (trailing slashes are removed)."""

    api_key: str = ""
    """Value sent as the ``api_key`` query parameter on every call, if set."""

    request_timeout: float | None = 120.0
    """Network timeout for an owned httpx transport; None disables it."""

    # === Batching and Concurrency ===

    max_requests_per_batch: int = 10
    """Maximum number of requests folded into a single batch Bundle."""

    max_active_requests: int = 6
    """Maximum number of network calls in flight at once."""

    batch_timeout: float = 0.02
    """Quiet period before a partial batch is dispatched."""

    max_url_length: int = 1900
    """URLs longer than this are sent inside a batch or as POST _search."""

    # === Rate Adaptation ===

    rate_limit_header: str = "x-ratelimit-limit"
    """Header advertising the server's per-second request limit."""

    rate_limit_interval: float = 1.0
    """Period the advertised rate limit applies to."""

    rate_limit_margin: float = 0.06
    """Extra spacing added to the period when deriving the pacing interval."""

    retry_pacing_step: float = 0.1
    """Pacing increase applied on each retry while pacing is below the period."""

    default_retry_interval: float = 1.0
    """Retry delay used when Retry-After is missing or invalid."""

    give_up_timeout: float = 90.0
    """Stop retrying once this long has passed since the last success."""

    max_preflight_time: float = 15.0
    """Aborted calls that took longer than this are not retried."""

    # === Initialization ===

    init_retry_count: int = 2
    """Attempts allowed for each initialization probe."""

    init_cache_expiration: int = 86400
    """Lifetime of cached initialization responses."""

    restricted_init_contexts: tuple[str, ...] = ("dbgap-pre-login",)
    """Contexts that only run the available-study probe after the core probes."""

    uncached_metadata_contexts: tuple[str, ...] = ("basic-auth",)
    """Contexts in which the metadata request bypasses the cache."""

    # === Metrics ===

    metrics_enabled: bool = False
    """Collect Prometheus metrics for the scheduler and the cache."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self.service_base_url = self.service_base_url.rstrip("/")
        if self.max_requests_per_batch < 1:
            raise ValueError("max_requests_per_batch must be at least 1")
        if self.max_active_requests < 1:
            raise ValueError("max_active_requests must be at least 1")
        if self.batch_timeout < 0:
            raise ValueError("batch_timeout must be non-negative")
        if self.max_url_length < 1:
            raise ValueError("max_url_length must be at least 1")
        if self.rate_limit_interval <= 0:
            raise ValueError("rate_limit_interval must be positive")
        if self.rate_limit_margin < 0 or self.retry_pacing_step < 0:
            raise ValueError("rate_limit_margin and retry_pacing_step must be non-negative")
        if self.default_retry_interval < 0:
            raise ValueError("default_retry_interval must be non-negative")
        if self.give_up_timeout <= 0:
            raise ValueError("give_up_timeout must be positive")
        if self.max_preflight_time < 0:
            raise ValueError("max_preflight_time must be non-negative")
        if self.init_retry_count < 1:
            raise ValueError("init_retry_count must be at least 1")
        if self.init_cache_expiration < 0:
            raise ValueError("init_cache_expiration must be non-negative")

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: object,
    ) -> "ClientConfig":
        """
        Build a configuration from ``FHIR_BATCH_QUERY_*`` environment variables.

        Each scalar field can be set through the upper-cased field name, e.g.
        ``FHIR_BATCH_QUERY_MAX_ACTIVE_REQUESTS=2``. Tuple fields take a comma
        separated list. Keyword overrides win over the environment.

        Raises:
            ConfigurationError: If a variable cannot be converted to the
                field's type
        """
        environ = os.environ if environ is None else environ
        values: dict[str, object] = {}
        for f in fields(cls):
            name = f"{ENV_PREFIX}{f.name.upper()}"
            raw = environ.get(name)
            if raw is None:
                continue
            default = f.default
            try:
                if isinstance(default, bool):
                    values[f.name] = raw.strip().lower() in ("1", "true", "yes", "on")
                elif isinstance(default, int):
                    values[f.name] = int(raw)
                elif isinstance(default, float) or default is None:
                    values[f.name] = None if raw.strip() == "" else float(raw)
                elif isinstance(default, tuple):
                    values[f.name] = tuple(
                        v.strip() for v in raw.split(",") if v.strip()
                    )
                else:
                    values[f.name] = raw
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from e
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]


@dataclass
class ConnectionSettings:
    """
    Per-connection state shared by the client and its dispatcher.

    Unlike ClientConfig these values change at runtime: the base URL when
    the client is pointed at another server, ``format_supported`` when the
    server rejects ``_format``, and the authorization header on login.
    """

    base_url: str = ""
    api_key: str = ""
    authorization_header: str | None = None
    format_supported: bool = True
    extra_headers: dict[str, str] = field(default_factory=dict)

    def get_full_url(self, url: str) -> str:
        """Return ``url`` unchanged if absolute, else joined to the base URL."""
        if url.startswith(("http://", "https://")):
            return url
        return f"{self.base_url}/{url}"

    def get_relative_url(self, url: str) -> str:
        """Strip the base URL prefix from ``url`` if present."""
        prefix = f"{self.base_url}/"
        if self.base_url and url.startswith(prefix):
            return url[len(prefix):]
        return url


__all__ = ["ENV_PREFIX", "ClientConfig", "ConnectionSettings"]
