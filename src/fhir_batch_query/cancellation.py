# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Cancellation tokens for queued and in-flight requests.

A CancellationToken is handed to the client alongside a request. Cancelling
it rejects the request if it is still queued, and aborts the network call if
it is in flight. Batches derive their own token that only fires once every
member request has been cancelled.

Tokens are plain synchronous objects: callbacks run inline on cancel(), in
the order they were registered. They are meant to be used from a single
event loop thread.
"""

import logging
from collections.abc import Callable

from .exceptions import AbortReason, RequestAbortedError

logger = logging.getLogger(__name__)

CancelCallback = Callable[[], None]


class CancellationToken:
    """
    One-shot cancellation signal with callback registration.

    Example:
        >>> token = CancellationToken()
        >>> task = asyncio.create_task(client.get("Observation", token=token))
        >>> token.cancel()  # the request rejects with RequestAbortedError
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: dict[int, CancelCallback] = {}
        self._next_id = 0
        self._detach: CancelCallback | None = None

    @classmethod
    def linked(cls, parent: "CancellationToken | None") -> "CancellationToken":
        """
        Create a token that is cancelled when ``parent`` is cancelled.

        The child can also be cancelled on its own without affecting the
        parent. Call release() when the child is no longer needed so the
        parent does not keep a reference to it.
        """
        child = cls()
        if parent is not None:
            child._detach = parent.add_callback(child.cancel)
        return child

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._cancelled

    def add_callback(self, callback: CancelCallback) -> CancelCallback:
        """
        Register a callback to run on cancellation.

        If the token is already cancelled the callback runs immediately.

        Returns:
            A function that unregisters the callback.
        """
        if self._cancelled:
            callback()
            return _noop

        callback_id = self._next_id
        self._next_id += 1
        self._callbacks[callback_id] = callback

        def remove() -> None:
            self._callbacks.pop(callback_id, None)

        return remove

    def cancel(self) -> None:
        """Cancel the token and run all registered callbacks once."""
        if self._cancelled:
            return
        self._cancelled = True
        callbacks = list(self._callbacks.values())
        self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def release(self) -> None:
        """Detach this token from its parent, if it was created via linked()."""
        if self._detach is not None:
            self._detach()
            self._detach = None

    def raise_if_cancelled(self) -> None:
        """Raise RequestAbortedError if the token has been cancelled."""
        if self._cancelled:
            raise RequestAbortedError(reason=AbortReason.CANCELLED)


def _noop() -> None:
    return None


__all__ = ["CancelCallback", "CancellationToken"]
