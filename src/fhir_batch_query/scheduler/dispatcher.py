# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Batching request dispatcher.

BatchDispatcher owns the pending queue and every network call made by the
client. Requests are queued by priority (FIFO within a priority) and leave
the queue in groups:

* up to ``max_requests_per_batch`` combinable GET requests are folded into
  one FHIR ``batch`` Bundle POSTed to the server base URL; the Bundle
  response is split positionally back onto the member requests;
* a POST or non-combinable request is sent on its own;
* a single GET whose URL is too long for a query string is wrapped in a
  batch of one.

Dispatch is triggered immediately when a full batch is waiting, after a
short quiet period (``batch_timeout``) otherwise, and whenever a call
completes. At most ``max_active_requests`` calls are in flight, and
consecutive calls are spaced by the pacing interval maintained by the
RetryPolicy.

All state is mutated from the event loop thread without awaiting in the
middle of a queue operation, so no locks are needed.
"""

import asyncio
import json
import logging
import re
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from ..cancellation import CancellationToken
from ..exceptions import (
    HTTP_ABORT,
    AbortReason,
    FhirQueryError,
    HttpError,
    RateLimitedError,
    RequestAbortedError,
    TransportError,
    error_for_status,
)
from ..observability.collector import MetricsCollector
from ..observability.constants import (
    ACTIVE_CALLS,
    BATCH_ENTRIES_TOTAL,
    BATCH_FALLBACKS_TOTAL,
    CALL_LATENCY_SECONDS,
    NETWORK_CALLS_TOTAL,
    PACING_INTERVAL_SECONDS,
    QUEUE_DEPTH,
    REQUESTS_COMPLETED_TOTAL,
    REQUESTS_ENQUEUED_TOTAL,
    REQUESTS_FAILED_TOTAL,
    REQUESTS_RETRIED_TOTAL,
)
from ..observability.events import ClientEvent, EventBus
from ..transport.base import RawResponse, TransportProtocol
from ..types.request import FHIR_JSON, PendingRequest
from ..types.response import Response, error_diagnostic, is_success
from .config import ClientConfig, ConnectionSettings
from .retry import RetryPolicy, parse_retry_after

logger = logging.getLogger(__name__)

_ENTRY_STATUS = re.compile(r"^\s*(\d+)")


def parse_entry_status(value: Any) -> int:
    """Read the numeric status of a batch entry ("200 OK" -> 200)."""
    if isinstance(value, int):
        return value
    match = _ENTRY_STATUS.match(str(value or ""))
    return int(match.group(1)) if match else HTTP_ABORT


def with_query_param(url: str, name: str, value: str) -> str:
    """Append ``name=value`` to ``url`` unless the parameter is already present."""
    if re.search(rf"[?&]{re.escape(name)}=", url):
        return url
    return f"{url}{'&' if '?' in url else '?'}{name}={value}"


@dataclass
class InFlightCall:
    """
    A network call in progress.

    Attributes:
        request: The request being sent (a batch wrapper for batches)
        kind: "single" or "batch"
        started_at: Monotonic start time
        send_task: Task awaiting the transport
        abort_reason: Set when the call is aborted by its token or by clear()
    """

    request: PendingRequest
    kind: str
    started_at: float = field(default_factory=time.monotonic)
    task: "asyncio.Task[None] | None" = None
    send_task: "asyncio.Task[RawResponse] | None" = None
    abort_reason: AbortReason | None = None

    def abort(self, reason: AbortReason) -> None:
        if self.abort_reason is None:
            self.abort_reason = reason
        if self.send_task is not None and not self.send_task.done():
            self.send_task.cancel()


class BatchDispatcher:
    """
    Priority queue, batcher and network call manager.

    Args:
        transport: Transport used for every network call
        config: Client configuration (initial limits, timeouts)
        connection: Shared connection settings (base URL, credentials)
        retry_policy: Pacing and retry rules; created from config if omitted
        events: Event bus for batch-issue, single-request-failure and
            parameters-changed notifications
        metrics: Optional metrics collector
    """

    def __init__(
        self,
        transport: TransportProtocol,
        config: ClientConfig,
        connection: ConnectionSettings,
        retry_policy: RetryPolicy | None = None,
        events: EventBus | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._transport = transport
        self._config = config
        self._connection = connection
        self.retry_policy = retry_policy or RetryPolicy(config)
        self.events = events or EventBus()
        self._metrics = metrics

        self.max_requests_per_batch = config.max_requests_per_batch
        self.max_active_requests = config.max_active_requests
        self.batch_timeout = config.batch_timeout

        self._pending: deque[PendingRequest] = deque()
        self._in_flight: dict[str, InFlightCall] = {}
        self._delayed: dict[str, tuple[asyncio.TimerHandle, PendingRequest]] = {}
        self._batch_timer: asyncio.TimerHandle | None = None
        self._pacing_timer: asyncio.TimerHandle | None = None
        self._last_call_time: float | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    # === State ===

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    @property
    def delayed_count(self) -> int:
        return len(self._delayed)

    @property
    def pacing_interval(self) -> float:
        return self.retry_policy.pacing_interval

    @pacing_interval.setter
    def pacing_interval(self, value: float) -> None:
        if value < 0:
            raise ValueError("pacing_interval must be non-negative")
        self.retry_policy.pacing_interval = value
        self._set_gauge(PACING_INTERVAL_SECONDS, value)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None or self._loop.is_closed():
            self._loop = asyncio.get_running_loop()
        return self._loop

    # === Queue ===

    def enqueue(self, request: PendingRequest) -> "asyncio.Future[Response]":
        """
        Add a request to the queue and schedule dispatch.

        A full batch's worth of pending requests is dispatched right away;
        otherwise the quiet-period timer is restarted. Cancelling the
        request's token while it waits rejects it at once.
        """
        loop = self._get_loop()
        index = len(self._pending)
        while index > 0 and self._pending[index - 1].priority < request.priority:
            index -= 1
        self._pending.insert(index, request)
        self._inc(REQUESTS_ENQUEUED_TOTAL)
        request.token.add_callback(partial(self._withdraw, request))
        if request.settled:
            return request.future

        if len(self._pending) < self.max_requests_per_batch:
            self._cancel_batch_timer()
            self._batch_timer = loop.call_later(self.batch_timeout, self._on_batch_timer)
        else:
            self._cancel_batch_timer()
            self.dispatch_ready()
        self._set_gauge(QUEUE_DEPTH, len(self._pending))
        return request.future

    def _withdraw(self, request: PendingRequest) -> None:
        """Reject a cancelled request that has not been sent yet."""
        for index, queued in enumerate(self._pending):
            if queued is request:
                del self._pending[index]
                break
        else:
            delayed = self._delayed.get(request.request_id)
            if delayed is None or delayed[1] is not request:
                return
            del self._delayed[request.request_id]
            delayed[0].cancel()
        self._fail(request, RequestAbortedError(reason=AbortReason.CANCELLED))
        self._set_gauge(QUEUE_DEPTH, len(self._pending))

    def _on_batch_timer(self) -> None:
        self._batch_timer = None
        self.dispatch_ready()

    def _on_pacing_timer(self) -> None:
        self._pacing_timer = None
        self.dispatch_ready()

    def _cancel_batch_timer(self) -> None:
        if self._batch_timer is not None:
            self._batch_timer.cancel()
            self._batch_timer = None

    def _cancel_pacing_timer(self) -> None:
        if self._pacing_timer is not None:
            self._pacing_timer.cancel()
            self._pacing_timer = None

    def _pacing_wait(self) -> float:
        pacing = self.retry_policy.pacing_interval
        if pacing <= 0 or self._last_call_time is None:
            return 0.0
        return pacing - (time.monotonic() - self._last_call_time)

    def dispatch_ready(self) -> None:
        """Send as many groups as capacity and pacing allow."""
        self._cancel_pacing_timer()
        while self._pending and len(self._in_flight) < self.max_active_requests:
            wait = self._pacing_wait()
            if wait > 0:
                self._pacing_timer = self._get_loop().call_later(
                    wait, self._on_pacing_timer
                )
                break
            group = self.select_next_group()
            if group:
                self._dispatch_group(group)
        self._set_gauge(QUEUE_DEPTH, len(self._pending))
        self._set_gauge(ACTIVE_CALLS, len(self._in_flight))

    def select_next_group(self) -> list[PendingRequest]:
        """
        Take the next group of requests off the head of the queue.

        Cancelled requests are rejected and skipped. A non-combinable request
        is only taken when the group is still empty, and always alone.
        """
        group: list[PendingRequest] = []
        while self._pending and len(group) < self.max_requests_per_batch:
            request = self._pending.popleft()
            if request.token.cancelled:
                self._fail(request, RequestAbortedError(reason=AbortReason.CANCELLED))
                continue
            if not request.is_combinable:
                if group:
                    self._pending.appendleft(request)
                else:
                    group.append(request)
                break
            group.append(request)
        return group

    def _dispatch_group(self, group: list[PendingRequest]) -> None:
        first = group[0]
        too_long = first.method == "GET" and len(first.url) > self._config.max_url_length
        if len(group) > 1 or too_long:
            self._dispatch_batch(group)
        else:
            self._start_call(first, "single")

    # === Batches ===

    def _dispatch_batch(self, group: list[PendingRequest]) -> None:
        loop = self._get_loop()
        batch_token = CancellationToken()
        interested = len(group)

        def member_cancelled() -> None:
            nonlocal interested
            interested -= 1
            if interested == 0:
                batch_token.cancel()

        removers = [request.token.add_callback(member_cancelled) for request in group]
        bundle = {
            "resourceType": "Bundle",
            "type": "batch",
            "entry": [
                {
                    "request": {
                        "method": "GET",
                        "url": self._connection.get_relative_url(request.url),
                    }
                }
                for request in group
            ],
        }
        batch = PendingRequest(
            method="POST",
            url=self._connection.base_url,
            future=loop.create_future(),
            token=batch_token,
            body=json.dumps(bundle, separators=(",", ":")),
            content_type=FHIR_JSON,
            combinable=False,
            priority=group[0].priority,
            log_prefix="Batch: ",
        )
        batch.future.add_done_callback(
            partial(self._settle_batch, group, batch_token, removers)
        )
        self._inc(BATCH_ENTRIES_TOTAL, len(group))
        self._start_call(batch, "batch")

    def _settle_batch(
        self,
        group: list[PendingRequest],
        batch_token: CancellationToken,
        removers: list[Callable[[], None]],
        future: "asyncio.Future[Response]",
    ) -> None:
        for remove in removers:
            remove()

        if future.cancelled():
            error: BaseException | None = RequestAbortedError(reason=AbortReason.CLEARED)
        else:
            error = future.exception()

        if error is None:
            self._split_batch(group, future.result())
            return

        if (
            isinstance(error, RequestAbortedError)
            and error.reason is AbortReason.TRANSPORT
            and not batch_token.cancelled
        ):
            # Re-send the members one at a time, ahead of everything else
            retry = [request for request in group if not request.settled]
            for request in retry:
                request.combinable = False
            self._pending.extendleft(reversed(retry))
            logger.warning(
                f"Batch of {len(group)} requests was aborted; "
                f"re-sending them individually"
            )
            self._inc(BATCH_FALLBACKS_TOTAL)
            self.events.emit(
                ClientEvent.BATCH_ISSUE,
                size=len(group),
                urls=[request.url for request in group],
            )
            self.dispatch_ready()
            return

        if isinstance(error, RequestAbortedError) and error.reason is AbortReason.CLEARED:
            for request in group:
                self._fail(request, RequestAbortedError(reason=AbortReason.CLEARED))
            return

        reported = False
        for request in group:
            if request.token.cancelled:
                self._fail(request, RequestAbortedError(reason=AbortReason.CANCELLED))
            elif not reported and isinstance(error, FhirQueryError):
                self._fail(request, error)
                reported = True
            else:
                self._fail(
                    request,
                    RequestAbortedError(
                        "Batch request failed", reason=AbortReason.BATCH_FAILURE
                    ),
                )

    def _split_batch(self, group: list[PendingRequest], response: Response) -> None:
        data = response.data if isinstance(response.data, dict) else {}
        entries = data.get("entry") or []
        for index, request in enumerate(group):
            if request.token.cancelled:
                self._fail(request, RequestAbortedError(reason=AbortReason.CANCELLED))
                continue
            entry = entries[index] if index < len(entries) else None
            if not isinstance(entry, dict):
                self._fail(
                    request,
                    HttpError(
                        "Batch response has no entry for this request",
                        response.status,
                    ),
                )
                continue
            entry_response = entry.get("response") or {}
            status = parse_entry_status(entry_response.get("status"))
            if is_success(status):
                self._inc(REQUESTS_COMPLETED_TOTAL)
                request.resolve(Response(status, entry.get("resource") or {}))
            else:
                self._fail(
                    request,
                    error_for_status(status, error_diagnostic(entry_response.get("outcome"))),
                )

    # === Network Calls ===

    def _start_call(self, request: PendingRequest, kind: str) -> None:
        call = InFlightCall(request, kind)
        self._in_flight[request.request_id] = call
        self._last_call_time = call.started_at
        remove = request.token.add_callback(partial(call.abort, AbortReason.CANCELLED))
        call.task = self._get_loop().create_task(self._perform(call, remove))
        self._inc(NETWORK_CALLS_TOTAL, labels={"kind": kind})

    def _prepare(self, request: PendingRequest) -> tuple[str, dict[str, str]]:
        """Build the URL and headers actually sent for ``request``."""
        url = request.url
        if self._connection.api_key:
            url = with_query_param(url, "api_key", self._connection.api_key)
        if self._connection.format_supported:
            url = with_query_param(url, "_format", "json")
        headers = dict(self._connection.extra_headers)
        if request.body is not None:
            headers["Content-Type"] = request.content_type
        if self._connection.authorization_header:
            headers["Authorization"] = self._connection.authorization_header
        return url, headers

    async def _send(
        self, call: InFlightCall, url: str, headers: dict[str, str]
    ) -> RawResponse:
        if call.abort_reason is not None:
            return RawResponse.aborted()
        request = call.request
        call.send_task = asyncio.ensure_future(
            self._transport.send(request.method, url, body=request.body, headers=headers)
        )
        try:
            return await call.send_task
        except asyncio.CancelledError:
            if call.abort_reason is None:
                raise
            return RawResponse.aborted(time.monotonic() - call.started_at)

    async def _perform(
        self, call: InFlightCall, remove_cancel_callback: Callable[[], None]
    ) -> None:
        request = call.request
        url, headers = self._prepare(request)
        raw: RawResponse | None = None
        try:
            raw = await self._send(call, url, headers)
        except Exception as e:
            logger.exception(
                f"{request.log_prefix}Transport failed for {request.method} {url}"
            )
            error = TransportError(f"Transport failure: {e}")
            error.__cause__ = e
            self._fail(request, error, kind=call.kind)
        finally:
            remove_cancel_callback()
            self._in_flight.pop(request.request_id, None)

        if raw is not None:
            self._handle_response(call, raw)
        self.dispatch_ready()

    def _handle_response(self, call: InFlightCall, raw: RawResponse) -> None:
        request = call.request
        elapsed = time.monotonic() - call.started_at
        status = raw.status
        logger.debug(
            f"{request.log_prefix}{request.method} {request.url} "
            f"returned {status} in {elapsed:.3f}s"
        )
        if self._metrics is not None:
            self._metrics.observe_histogram(
                CALL_LATENCY_SECONDS, elapsed, labels={"kind": call.kind}
            )

        if self.retry_policy.observe_headers(raw.headers):
            self._clamp_concurrency("rate_limit_header")

        if is_success(status):
            try:
                data = raw.json()
            except ValueError as e:
                self._fail(request, HttpError(f"Invalid JSON response: {e}", status), call.kind)
                return
            self.retry_policy.record_success()
            if call.kind == "single":
                self._inc(REQUESTS_COMPLETED_TOTAL)
            request.resolve(Response(status, data, raw.headers))
            return

        if call.abort_reason is AbortReason.CLEARED:
            self._fail(request, RequestAbortedError(reason=AbortReason.CLEARED), call.kind)
            return

        caller_aborted = (
            call.abort_reason is AbortReason.CANCELLED or request.token.cancelled
        )
        if self.retry_policy.should_retry(request, status, elapsed, caller_aborted):
            self._schedule_retry(request, raw)
            return

        self._fail(request, self._error_for(raw, caller_aborted), call.kind)

    def _error_for(self, raw: RawResponse, caller_aborted: bool) -> FhirQueryError:
        if raw.status == HTTP_ABORT:
            reason = AbortReason.CANCELLED if caller_aborted else AbortReason.TRANSPORT
            return RequestAbortedError(reason=reason)
        try:
            data = raw.json()
        except ValueError:
            data = None
        diagnostics = error_diagnostic(data)
        if raw.status == 429:
            return RateLimitedError(
                diagnostics,
                retry_after=parse_retry_after(raw.header("retry-after"), 0.0) or None,
            )
        www_authenticate = raw.header("www-authenticate") if raw.status == 401 else None
        return error_for_status(raw.status, diagnostics, www_authenticate)

    def _schedule_retry(self, request: PendingRequest, raw: RawResponse) -> None:
        if self.retry_policy.escalate_pacing():
            self._clamp_concurrency("retry")
        delay = self.retry_policy.retry_delay(raw.headers)
        logger.info(
            f"{request.log_prefix}Retrying {request.method} {request.url} "
            f"in {delay:.2f}s (status {raw.status})"
        )
        handle = self._get_loop().call_later(delay, self._release_retry, request.request_id)
        self._delayed[request.request_id] = (handle, request)
        reason = "rate_limit" if raw.status == 429 else "abort"
        self._inc(REQUESTS_RETRIED_TOTAL, labels={"reason": reason})

    def _release_retry(self, request_id: str) -> None:
        delayed = self._delayed.pop(request_id, None)
        if delayed is None:
            return
        self._pending.appendleft(delayed[1])
        self.dispatch_ready()

    def _clamp_concurrency(self, reason: str) -> None:
        self.max_active_requests = 1
        self._set_gauge(PACING_INTERVAL_SECONDS, self.retry_policy.pacing_interval)
        self.events.emit(
            ClientEvent.PARAMETERS_CHANGED,
            reason=reason,
            max_active_requests=self.max_active_requests,
            pacing_interval=self.retry_policy.pacing_interval,
        )

    def _fail(
        self,
        request: PendingRequest,
        error: FhirQueryError,
        kind: str | None = None,
    ) -> None:
        request.reject(error)
        reason = (
            error.reason.value
            if isinstance(error, RequestAbortedError)
            else f"http_{error.status}"
        )
        self._inc(REQUESTS_FAILED_TOTAL, labels={"reason": reason})
        if kind != "single":
            return
        if isinstance(error, RequestAbortedError) and error.reason in (
            AbortReason.CANCELLED,
            AbortReason.CLEARED,
        ):
            return
        self.events.emit(
            ClientEvent.SINGLE_REQUEST_FAILURE,
            url=request.url,
            status=error.status,
            error=error.error,
        )

    # === Clearing ===

    def clear(self) -> None:
        """
        Drop every pending request and abort every in-flight call.

        Queued and delayed-retry requests are rejected immediately; in-flight
        requests are rejected once their transport call unwinds. All of them
        fail with RequestAbortedError(reason=CLEARED).
        """
        self._cancel_batch_timer()
        self._cancel_pacing_timer()
        pending = list(self._pending)
        self._pending.clear()
        delayed = list(self._delayed.values())
        self._delayed.clear()

        for request in pending:
            self._fail(request, RequestAbortedError(reason=AbortReason.CLEARED))
        for handle, request in delayed:
            handle.cancel()
            self._fail(request, RequestAbortedError(reason=AbortReason.CLEARED))
        for call in list(self._in_flight.values()):
            call.abort(AbortReason.CLEARED)

        if pending or delayed or self._in_flight:
            logger.info(
                f"Cleared {len(pending) + len(delayed)} queued requests and "
                f"aborted {len(self._in_flight)} calls"
            )
        self._set_gauge(QUEUE_DEPTH, 0)

    async def aclose(self) -> None:
        """Clear everything and wait for in-flight calls to unwind."""
        self.clear()
        tasks = [call.task for call in self._in_flight.values() if call.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # === Metrics ===

    def _inc(
        self, name: str, value: float = 1, labels: dict[str, str] | None = None
    ) -> None:
        if self._metrics is not None:
            self._metrics.inc_counter(name, value, labels)

    def _set_gauge(self, name: str, value: float) -> None:
        if self._metrics is not None:
            self._metrics.set_gauge(name, value)

    def get_stats(self) -> dict[str, Any]:
        return {
            "pending": len(self._pending),
            "active": len(self._in_flight),
            "delayed_retries": len(self._delayed),
            "max_requests_per_batch": self.max_requests_per_batch,
            "max_active_requests": self.max_active_requests,
            "pacing_interval": self.retry_policy.pacing_interval,
        }


__all__ = [
    "BatchDispatcher",
    "InFlightCall",
    "parse_entry_status",
    "with_query_param",
]
