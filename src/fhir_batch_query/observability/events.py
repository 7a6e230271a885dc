# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Client events.

The dispatcher publishes three kinds of events on an EventBus:

* ``batch-issue`` - a batch Bundle was aborted by the network and its
  members were re-queued as individual requests
* ``single-request-failure`` - a request sent on its own failed terminally
* ``parameters-changed`` - the scheduler's pacing or concurrency limits
  were adjusted in response to rate limiting

Listeners run synchronously on the event loop thread. A listener that
raises is logged and skipped; it never disturbs the scheduler.
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ClientEvent(str, Enum):
    BATCH_ISSUE = "batch-issue"
    SINGLE_REQUEST_FAILURE = "single-request-failure"
    PARAMETERS_CHANGED = "parameters-changed"


@dataclass(frozen=True)
class EventRecord:
    """
    A published event.

    Attributes:
        event: Which event occurred
        payload: Event details (see EventBus.emit callers)
        timestamp: Wall clock time of publication
    """

    event: ClientEvent
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


EventListener = Callable[[EventRecord], None]


class EventBus:
    """
    Synchronous publish/subscribe hub for ClientEvent notifications.

    Example:
        >>> bus = EventBus()
        >>> unsubscribe = bus.subscribe(print, [ClientEvent.PARAMETERS_CHANGED])
        >>> bus.emit(ClientEvent.PARAMETERS_CHANGED, max_active_requests=1)
        >>> unsubscribe()
    """

    def __init__(self) -> None:
        self._listeners: dict[int, tuple[EventListener, frozenset[ClientEvent]]] = {}
        self._next_id = 0

    def subscribe(
        self,
        listener: EventListener,
        events: Iterable[ClientEvent] | None = None,
    ) -> Callable[[], None]:
        """
        Register ``listener`` for ``events`` (all events when None).

        Returns:
            A function that removes the subscription.
        """
        listener_id = self._next_id
        self._next_id += 1
        wanted = frozenset(events) if events is not None else frozenset(ClientEvent)
        self._listeners[listener_id] = (listener, wanted)

        def unsubscribe() -> None:
            self._listeners.pop(listener_id, None)

        return unsubscribe

    def emit(self, event: ClientEvent, **payload: Any) -> EventRecord:
        """Publish an event to every interested listener."""
        record = EventRecord(event=event, payload=payload)
        for listener, wanted in list(self._listeners.values()):
            if event not in wanted:
                continue
            try:
                listener(record)
            except Exception:
                logger.exception(f"Listener for {event.value} failed")
        return record

    @property
    def listener_count(self) -> int:
        return len(self._listeners)


__all__ = ["ClientEvent", "EventBus", "EventListener", "EventRecord"]
