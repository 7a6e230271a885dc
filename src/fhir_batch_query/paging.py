# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Paged filter/map over FHIR search results.

PagedMapFilter walks the pages of a search Bundle, applies an async
predicate/mapper to every resource of a page concurrently, and keeps
fetching pages until enough results have been collected or the server has
no next page. Its mapper contract:

* ``True`` keeps the resource unchanged
* ``False`` drops it
* any other value replaces it (a list is spliced in element by element)

The page size defaults to ``max_requests_per_batch * max_active_requests * 2``,
enough for one page's worth of follow-up requests to fill the dispatcher.
"""

import asyncio
import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from .cancellation import CancellationToken
from .types.response import bundle_resources

if TYPE_CHECKING:
    from .client import FhirBatchClient

logger = logging.getLogger(__name__)

MapFilterFunction = Callable[[Any], "Awaitable[Any] | Any"]

_SIMPLE_URL = re.compile(r"^([^?]*)(?:\?([^?]*))?$")
_URI_COMPONENT_SAFE = "-_.!~*'()"


def update_url_with_param(url: str, name: str, value: Any) -> str:
    """
    Set query parameter ``name`` to ``value``, replacing any previous value.

    URLs with more than one "?" are returned unchanged.

    Example:
        >>> update_url_with_param("Patient?_count=5&gender=male", "_count", 20)
        'Patient?gender=male&_count=20'
    """
    match = _SIMPLE_URL.match(url)
    if match is None:
        return url
    path, query = match.group(1), match.group(2) or ""
    params = [
        item for item in query.split("&") if item and item.split("=")[0] != name
    ]
    params.append(f"{name}={quote(str(value), safe=_URI_COMPONENT_SAFE)}")
    return f"{path}?{'&'.join(params)}"


def get_next_page_url(bundle: Any) -> str | None:
    """Return the URL of the Bundle link with relation "next", if any."""
    if not isinstance(bundle, dict):
        return None
    for link in bundle.get("link") or []:
        if isinstance(link, dict) and link.get("relation") == "next" and link.get("url"):
            return str(link["url"])
    return None


@dataclass
class MapFilterResult:
    """
    Result of a PagedMapFilter run.

    Attributes:
        items: Kept resources and mapped values, at most ``count`` of them
        total: Total number of matching resources reported by the server,
            or, if no page reported one, the number of resources seen when
            the last page was reached; None if neither is known
    """

    items: list[Any] = field(default_factory=list)
    total: int | None = None


class PagedMapFilter:
    """
    A running, cancellable filter/map over the pages of a search.

    Instances are created by FhirBatchClient.resources_map_filter() and are
    awaitable; awaiting one yields a MapFilterResult.

    Example:
        >>> async def has_observations(patient):
        ...     bundle = await client.get(f"Observation?subject=Patient/{patient['id']}&_count=1")
        ...     return bool(bundle.data.get("entry"))
        >>> run = client.resources_map_filter("Patient?gender=female", 50, has_observations)
        >>> result = await run
        >>> len(result.items) <= 50
        True
    """

    def __init__(
        self,
        client: "FhirBatchClient",
        url: str,
        count: int,
        map_filter: MapFilterFunction,
        page_size: int | None = None,
    ) -> None:
        if count < 0:
            raise ValueError("count must be non-negative")
        self._client = client
        self._map_filter = map_filter
        self._count = count
        self._token = CancellationToken()
        size = page_size or client.max_requests_per_batch * client.max_active_requests * 2
        self.url = update_url_with_param(url, "_count", size)
        self.page_size = size
        self.pages_fetched = 0
        self.result: asyncio.Task[MapFilterResult] = asyncio.ensure_future(self._run())

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    def cancel(self) -> None:
        """
        Stop the run.

        Pending mapper calls reject with RequestAbortedError and no further
        pages are fetched; awaiting the run raises RequestAbortedError.
        """
        self._token.cancel()

    def __await__(self) -> Any:
        return self.result.__await__()

    async def _apply(self, resource: Any) -> Any:
        self._token.raise_if_cancelled()
        outcome = self._map_filter(resource)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        self._token.raise_if_cancelled()
        return outcome

    async def _run(self) -> MapFilterResult:
        items: list[Any] = []
        total: int | None = None
        seen = 0
        page_url: str | None = self.url

        while page_url is not None:
            self._token.raise_if_cancelled()
            response = await self._client.get_with_cache(page_url, token=self._token)
            self.pages_fetched += 1
            data = response.data
            if total is None and isinstance(data, dict) and isinstance(data.get("total"), int):
                total = data["total"]

            resources = bundle_resources(data)
            seen += len(resources)
            outcomes = await asyncio.gather(*(self._apply(r) for r in resources))
            for resource, outcome in zip(resources, outcomes):
                if outcome is True:
                    items.append(resource)
                elif isinstance(outcome, list):
                    items.extend(outcome)
                elif outcome is not False:
                    items.append(outcome)

            page_url = get_next_page_url(data)
            if len(items) >= self._count:
                break
            if page_url is None and total is None:
                total = seen

        logger.debug(
            f"Map/filter over {self.url} collected {len(items)} items "
            f"from {self.pages_fetched} pages"
        )
        return MapFilterResult(items=items[: self._count], total=total)


__all__ = [
    "MapFilterFunction",
    "MapFilterResult",
    "PagedMapFilter",
    "get_next_page_url",
    "update_url_with_param",
]
