# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Protocol for the network layer used by the dispatcher."""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..exceptions import HTTP_ABORT


@dataclass(frozen=True)
class RawResponse:
    """
    Outcome of a single network call.

    Transports never raise for HTTP or network failures: a connection drop
    or timeout is reported as status HTTP_ABORT with an empty body.

    Attributes:
        status: HTTP status code, or HTTP_ABORT
        headers: Response headers keyed by lower-cased name
        text: Response body
        elapsed: Seconds between sending and receiving the response
    """

    status: int
    headers: Mapping[str, str] = field(default_factory=dict)
    text: str = ""
    elapsed: float = 0.0

    @classmethod
    def aborted(cls, elapsed: float = 0.0) -> "RawResponse":
        return cls(status=HTTP_ABORT, elapsed=elapsed)

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    def json(self) -> Any:
        """Parse the body as JSON; an empty body parses as an empty dict."""
        if not self.text:
            return {}
        return json.loads(self.text)


@runtime_checkable
class TransportProtocol(Protocol):
    """
    Minimal protocol for sending HTTP requests.

    The dispatcher only needs to send one request at a time and to be able
    to cancel the awaiting task; everything else (connection pooling, TLS,
    proxies) belongs to the implementation.
    """

    async def send(
        self,
        method: str,
        url: str,
        *,
        body: str | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> RawResponse:
        """Send a request and return its outcome."""
        ...

    async def aclose(self) -> None:
        """Release network resources."""
        ...


__all__ = ["RawResponse", "TransportProtocol"]
