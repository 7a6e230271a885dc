# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Retry and pacing rules.

RetryPolicy owns the two pieces of adaptive state the scheduler keeps about
the server's rate limiting:

* the pacing interval, the minimum spacing between two network calls. It
  starts at zero, is derived from the server's advertised rate limit, and is
  nudged upward every time a request has to be retried;
* the time of the last successful response, which bounds how long a request
  keeps being retried (the give-up window).

It also decides whether a failed attempt is retried and how long to wait
before the next attempt (honouring Retry-After).
"""

import logging
import math
import time
from collections.abc import Mapping
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from ..exceptions import HTTP_ABORT
from ..types.request import PendingRequest
from .config import ClientConfig

logger = logging.getLogger(__name__)


def parse_retry_after(
    value: str | None,
    default: float,
    now: datetime | None = None,
) -> float:
    """
    Convert a Retry-After header value to a delay in seconds.

    Digits are seconds; anything else is parsed as an HTTP date and the delay
    is the time remaining until that date. Missing, unparsable or past values
    give ``default``.

    Example:
        >>> parse_retry_after("2", 1.0)
        2.0
        >>> parse_retry_after("not a date", 1.0)
        1.0
    """
    if value is None:
        return default
    value = value.strip()
    if value.isdigit():
        return float(int(value))
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    delay = (retry_at - (now or datetime.now(timezone.utc))).total_seconds()
    return delay if delay >= 0 else default


def pacing_from_rate_limit(
    value: str | None,
    interval: float,
    margin: float,
) -> float | None:
    """
    Derive the pacing interval from an advertised per-period request limit.

    Only half of the advertised limit is used, and the period is widened by
    ``margin``. Returns None when ``value`` is not a number.

    Example:
        >>> pacing_from_rate_limit("10", 1.0, 0.06)
        0.212
    """
    if value is None:
        return None
    try:
        limit = float(value)
    except ValueError:
        return None
    if math.isnan(limit) or math.isinf(limit):
        return None
    usable = max(1, math.floor(limit / 2))
    # Rounded up to whole milliseconds
    return math.ceil((interval + margin) * 1000 / usable) / 1000


class RetryPolicy:
    """
    Adaptive pacing state and retry decisions.

    Args:
        config: Client configuration supplying the intervals and windows
    """

    def __init__(self, config: ClientConfig) -> None:
        self._config = config
        self.pacing_interval = 0.0
        self.last_success_time = time.monotonic()

    def reset(self) -> None:
        """Forget any pacing derived from a previous server."""
        self.pacing_interval = 0.0
        self.last_success_time = time.monotonic()

    def record_success(self) -> None:
        self.last_success_time = time.monotonic()

    def observe_headers(self, headers: Mapping[str, str]) -> bool:
        """
        Update pacing from the rate limit header of a response.

        Every response carrying a numeric limit replaces the current pacing,
        including pacing raised by earlier retries.

        Returns:
            True if pacing was enabled by this response, in which case the
            caller is expected to clamp concurrency to a single call.
        """
        pacing = pacing_from_rate_limit(
            headers.get(self._config.rate_limit_header.lower()),
            self._config.rate_limit_interval,
            self._config.rate_limit_margin,
        )
        if not pacing:
            return False
        was_paced = bool(self.pacing_interval)
        if pacing != self.pacing_interval:
            logger.info(f"Server rate limit detected, pacing calls {pacing:.3f}s apart")
        self.pacing_interval = pacing
        return not was_paced

    def is_retryable(self, status: int, elapsed: float, caller_aborted: bool) -> bool:
        """
        Whether a failed attempt is of a kind worth retrying.

        429 responses always qualify. Aborted calls qualify when the caller
        did not abort them and they failed fast enough to look like a
        connection drop rather than a stuck request.
        """
        if status == 429:
            return True
        return (
            status == HTTP_ABORT
            and not caller_aborted
            and elapsed < self._config.max_preflight_time
        )

    def should_retry(
        self,
        request: PendingRequest,
        status: int,
        elapsed: float,
        caller_aborted: bool = False,
    ) -> bool:
        """
        Decide whether ``request`` gets another attempt.

        Consumes one attempt from ``request.retries_remaining`` when the
        failure is retryable and the request still has a bounded budget.
        """
        if request.token.cancelled:
            return False
        if not self.is_retryable(status, elapsed, caller_aborted):
            return False
        if request.retries_remaining is not None:
            request.retries_remaining -= 1
            if request.retries_remaining <= 0:
                return False
        since_success = time.monotonic() - self.last_success_time
        return since_success < self._config.give_up_timeout

    def escalate_pacing(self) -> bool:
        """
        Slow down after a retry.

        Returns:
            True if pacing was increased (and concurrency should be clamped).
        """
        if self.pacing_interval >= self._config.rate_limit_interval:
            return False
        self.pacing_interval = round(
            self.pacing_interval + self._config.retry_pacing_step, 6
        )
        logger.info(f"Retrying; pacing increased to {self.pacing_interval:.3f}s")
        return True

    def retry_delay(self, headers: Mapping[str, str]) -> float:
        """Delay before the next attempt, honouring Retry-After."""
        return parse_retry_after(
            headers.get("retry-after"), self._config.default_retry_interval
        )


__all__ = ["RetryPolicy", "pacing_from_rate_limit", "parse_retry_after"]
