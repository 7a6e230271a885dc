# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
httpx-based transport.

HttpxTransport wraps an httpx.AsyncClient and translates network failures
(connection errors, timeouts, protocol errors) into RawResponse objects
with status HTTP_ABORT, so that the dispatcher's retry rules can treat
them like any other aborted call.
"""

import logging
import time
from collections.abc import Mapping

import httpx

from .base import RawResponse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0


class HttpxTransport:
    """
    Transport backed by httpx.AsyncClient.

    Args:
        client: Optional pre-configured AsyncClient. When omitted a client is
            created and owned by the transport (and closed by aclose()).
        timeout: Request timeout in seconds for an owned client; None
            disables the timeout.

    Example:
        >>> transport = HttpxTransport(timeout=30.0)
        >>> raw = await transport.send("GET", "https://r4.example.org/fhir/metadata")
        >>> raw.status
        200
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def send(
        self,
        method: str,
        url: str,
        *,
        body: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> RawResponse:
        started = time.monotonic()
        try:
            response = await self._client.request(
                method,
                url,
                content=body.encode("utf-8") if body is not None else None,
                headers=dict(headers or {}),
            )
        except httpx.TimeoutException as e:
            logger.debug(f"{method} {url} timed out: {e}")
            return RawResponse.aborted(time.monotonic() - started)
        except httpx.TransportError as e:
            logger.debug(f"{method} {url} failed: {type(e).__name__}: {e}")
            return RawResponse.aborted(time.monotonic() - started)

        return RawResponse(
            status=response.status_code,
            headers={name.lower(): value for name, value in response.headers.items()},
            text=response.text,
            elapsed=time.monotonic() - started,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["DEFAULT_TIMEOUT", "HttpxTransport"]
