# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Request types for the batching scheduler.

This module defines the queued unit of work (PendingRequest) and the
priority levels used to order the dispatcher's queue.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING

from ..cancellation import CancellationToken

if TYPE_CHECKING:
    from ..exceptions import FhirQueryError
    from .response import Response

FHIR_JSON = "application/fhir+json"
"""Content type used for request bodies sent to the FHIR server."""

FORM_URLENCODED = "application/x-www-form-urlencoded"
"""Content type used for long GET URLs converted to POST _search."""


class Priority(IntEnum):
    """
    Request priority levels.

    Higher values are dispatched first; requests with equal priority keep
    their arrival order.
    """

    LOW = 100
    NORMAL = 200


@dataclass
class PendingRequest:
    """
    A request waiting in (or travelling through) the dispatcher.

    Attributes:
        method: HTTP method, "GET" or "POST"
        url: Absolute request URL
        future: Settled exactly once with a Response or a FhirQueryError
        token: Cancellation token; cancelling it aborts the request
        body: Serialized request body for POST
        content_type: Content type of the body
        combinable: Whether the request may be folded into a batch
        retries_remaining: Attempts left; None means unbounded within the
            give-up window
        priority: Dispatch priority
        log_prefix: Prefix for log lines about this request
        request_id: Identifier used in logs and bookkeeping
    """

    method: str
    url: str
    future: "asyncio.Future[Response]"
    token: CancellationToken = field(default_factory=CancellationToken)
    body: str | None = None
    content_type: str = FHIR_JSON
    combinable: bool = True
    retries_remaining: int | None = None
    priority: Priority = Priority.NORMAL
    log_prefix: str = ""
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    @property
    def is_combinable(self) -> bool:
        """Only combinable GET requests may join a batch."""
        return self.method == "GET" and self.combinable

    @property
    def settled(self) -> bool:
        return self.future.done()

    def resolve(self, response: "Response") -> None:
        """Settle the request successfully; later settlements are ignored."""
        if not self.future.done():
            self.future.set_result(response)

    def reject(self, error: "FhirQueryError") -> None:
        """Settle the request with an error; later settlements are ignored."""
        if not self.future.done():
            self.future.set_exception(error)


__all__ = ["FHIR_JSON", "FORM_URLENCODED", "PendingRequest", "Priority"]
