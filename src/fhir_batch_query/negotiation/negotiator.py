# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Capability negotiation.

CapabilityNegotiator discovers what a FHIR server supports by issuing a
series of small probe queries through the client (so probes are batched,
paced, retried and cached like any other request). It runs as a linear
state machine:

    CHECK_METADATA -> PROBE_CORE -> PROBE_CONDITIONAL -> COMPLETE

* CHECK_METADATA reads ``metadata?_elements=fhirVersion``, maps the version
  to a release name, and falls back to plainer metadata queries when the
  server rejects ``_elements`` or ``_format`` (each fallback at most once).
* PROBE_CORE runs the ResearchStudy, ``:missing`` and batch probes
  concurrently; a failed probe simply means "not supported".
* PROBE_CONDITIONAL runs the remaining probes, which depend on the core
  results. Restricted contexts (e.g. before a dbGaP login) only run the
  available-study probe.

Every step checks that the client is still pointed at the same server and
context; if not, the negotiation fails with OutdatedResponseError and its
results are discarded.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..exceptions import (
    BasicAuthRequiredError,
    FhirBatchQueryError,
    FhirQueryError,
    MetadataUnavailableError,
    OAuth2RequiredError,
    OutdatedResponseError,
    UnsupportedVersionError,
)
from ..types.features import ServerFeatures
from ..types.request import FHIR_JSON
from ..types.response import Response, has_entries
from .versions import get_version_name, research_study_statuses

if TYPE_CHECKING:
    from ..client import FhirBatchClient

logger = logging.getLogger(__name__)

METADATA_ELEMENTS_QUERY = "metadata?_elements=fhirVersion"
METADATA_QUERY = "metadata"


class NegotiationStep(str, Enum):
    PENDING = "pending"
    CHECK_METADATA = "check_metadata"
    PROBE_CORE = "probe_core"
    PROBE_CONDITIONAL = "probe_conditional"
    COMPLETE = "complete"


class ProbeInconclusiveError(FhirBatchQueryError):
    """Raised inside a probe when the server's data cannot answer the question."""

    pass


def _fulfilled(result: Any) -> bool:
    return isinstance(result, Response)


def _has_entries(result: Any) -> bool:
    return isinstance(result, Response) and has_entries(result.data)


def _first_resource(response: Response) -> dict[str, Any]:
    entries = response.data.get("entry") if isinstance(response.data, dict) else None
    if not entries or not isinstance(entries[0], dict):
        return {}
    resource = entries[0].get("resource")
    return resource if isinstance(resource, dict) else {}


def _first_code(resource: dict[str, Any]) -> str | None:
    """``system|code`` (pipe percent-encoded) of the first coding, if complete."""
    codings = (resource.get("code") or {}).get("coding") or []
    if not codings:
        return None
    system, code = codings[0].get("system"), codings[0].get("code")
    if not system or not code:
        return None
    return f"{system}%7C{code}"


class CapabilityNegotiator:
    """
    One negotiation run against one server URL and context.

    Args:
        client: The client whose queue the probes go through
        server_url: Base URL being negotiated
        context: Initialization context ("" for the full probe set)
    """

    def __init__(self, client: "FhirBatchClient", server_url: str, context: str = ""):
        self._client = client
        self.server_url = server_url
        self.context = context
        self.step = NegotiationStep.PENDING
        self.version_name: str | None = None
        self.metadata_query: str | None = None
        self.is_format_supported = True

    def ensure_current(self) -> None:
        """Raise OutdatedResponseError if the client moved to another server or context."""
        if (
            self._client.service_base_url != self.server_url
            or self._client.init_context != self.context
        ):
            raise OutdatedResponseError()

    async def run(self) -> ServerFeatures:
        """
        Run every step and return the discovered features.

        Raises:
            UnsupportedVersionError: The server's FHIR version is unknown
            BasicAuthRequiredError: Metadata requires Basic authentication
            OAuth2RequiredError: Metadata requires a Bearer token
            MetadataUnavailableError: Metadata could not be read
            OutdatedResponseError: The client moved on during negotiation
        """
        logger.info(f"Negotiating capabilities of {self.server_url}")
        self.step = NegotiationStep.CHECK_METADATA
        await self.check_metadata()

        self.step = NegotiationStep.PROBE_CORE
        found = await self.probe_core()

        self.step = NegotiationStep.PROBE_CONDITIONAL
        found.update(await self.probe_conditional(found))

        self.ensure_current()
        self.step = NegotiationStep.COMPLETE
        features = ServerFeatures(
            version_name=self.version_name,
            is_format_supported=self.is_format_supported,
            **found,
        )
        logger.info(f"Capabilities of {self.server_url}: {features.as_flat_map()}")
        return features

    # === CHECK_METADATA ===

    async def _fetch_metadata(self, query: str) -> Response:
        client = self._client
        if self.context in client.config.uncached_metadata_contexts:
            return await client.get(
                query, combine=False, retry_count=client.config.init_retry_count
            )
        return await client.get_with_cache(
            query, **client.get_common_init_request_options(use_init_context=False)
        )

    async def check_metadata(self) -> None:
        """Read the server's FHIR version and settle the metadata query."""
        client = self._client
        query = METADATA_ELEMENTS_QUERY
        attempted: set[str] = set()
        while True:
            try:
                response = await self._fetch_metadata(query)
                break
            except FhirQueryError as error:
                self.ensure_current()
                for cache_name in {
                    client.get_init_cache_name(),
                    client.get_init_cache_name(use_init_context=False),
                }:
                    await client.clear_cache_by_name(cache_name)
                client.clear_pending_requests()
                self._raise_auth_error(error)

                rejected = {
                    param
                    for param in ("_format", "_elements")
                    if param in error.error and param not in attempted
                }
                if not rejected:
                    raise MetadataUnavailableError(
                        "Could not retrieve the FHIR server's metadata. "
                        "Please make sure you are entering the base URL for a FHIR server.",
                        error.status,
                    ) from error
                attempted |= rejected
                if "_format" in rejected:
                    logger.info(f"{self.server_url} rejects _format; omitting it")
                    self.is_format_supported = False
                    client.connection.format_supported = False
                if "_elements" in rejected:
                    query = METADATA_QUERY

        self.ensure_current()
        data = response.data if isinstance(response.data, dict) else {}
        fhir_version = data.get("fhirVersion")
        version_name = get_version_name(fhir_version)
        if version_name is None:
            raise UnsupportedVersionError(fhir_version)
        self.version_name = version_name
        if self.is_format_supported:
            query += "&_format=json" if "?" in query else "?_format=json"
        self.metadata_query = query

    def _raise_auth_error(self, error: FhirQueryError) -> None:
        if error.status != 401:
            return
        challenge = error.www_authenticate or ""
        if challenge.startswith("Basic"):
            raise BasicAuthRequiredError(error.error, challenge) from error
        if challenge.startswith("Bearer"):
            raise OAuth2RequiredError(error.error, challenge) from error

    # === PROBE_CORE ===

    async def probe_core(self) -> dict[str, bool]:
        """Run the ResearchStudy, :missing and batch probes concurrently."""
        client = self._client
        options = client.get_common_init_request_options()
        batch_bundle = {
            "resourceType": "Bundle",
            "type": "batch",
            "entry": [{"request": {"method": "GET", "url": self.metadata_query}}],
        }
        research_study, missing_modifier, batch = await asyncio.gather(
            client.get_with_cache("ResearchStudy?_elements=id&_count=1", **options),
            client.get_with_cache(
                "Observation?code:missing=false&_elements=id&_count=1", **options
            ),
            client.request(
                "POST",
                client.service_base_url,
                body=json.dumps(batch_bundle),
                content_type=FHIR_JSON,
                retry_count=client.config.init_retry_count,
                log_prefix="Batch probe: ",
            ),
            return_exceptions=True,
        )
        self.ensure_current()
        return {
            "has_research_study": _has_entries(research_study),
            "has_missing_modifier": _fulfilled(missing_modifier),
            "has_batch_support": self._batch_succeeded(batch),
        }

    @staticmethod
    def _batch_succeeded(result: Any) -> bool:
        if not isinstance(result, Response) or not isinstance(result.data, dict):
            return False
        entries = result.data.get("entry") or []
        if not entries or not isinstance(entries[0], dict):
            return False
        status = str((entries[0].get("response") or {}).get("status", ""))
        return status.startswith("200")

    # === PROBE_CONDITIONAL ===

    async def probe_conditional(self, found: dict[str, bool]) -> dict[str, bool]:
        """Run the probes that depend on the core results."""
        client = self._client
        if self.context in client.config.restricted_init_contexts:
            has_study = await self.check_has_available_study(found["has_research_study"])
            self.ensure_current()
            return {"has_available_study": has_study}

        options = client.get_common_init_request_options()
        interpretation = (
            "interpretation:missing=false"
            if found["has_missing_modifier"]
            else "interpretation:not=zzz"
        )
        (
            by_date,
            by_age,
            lastn,
            has_interpretation,
            not_modifier_issue,
            has_study,
        ) = await asyncio.gather(
            client.get_with_cache(
                "Observation?date=gt1000-01-01&_elements=id&_count=1", **options
            ),
            client.get_with_cache(
                "Observation?_sort=age-at-event&_elements=id&_count=1", **options
            ),
            client.get_with_cache(
                "Observation/$lastn?max=1&_elements=code,value,component"
                "&code:text=zzzzz&_count=1",
                **options,
            ),
            client.get_with_cache(
                f"Observation?{interpretation}&_elements=id&_count=1", **options
            ),
            self.check_not_modifier_issue(),
            self.check_has_available_study(found["has_research_study"]),
            return_exceptions=True,
        )
        self.ensure_current()
        return {
            "sort_observations_by_date": _has_entries(by_date),
            "sort_observations_by_age_at_event": _has_entries(by_age),
            "has_lastn_lookup": _fulfilled(lastn),
            "has_interpretation": _has_entries(has_interpretation),
            "has_not_modifier_issue": not_modifier_issue is True,
            "has_available_study": has_study is True,
        }

    async def check_not_modifier_issue(self) -> bool:
        """
        Detect servers that ignore all but the first value of ``code:not``.

        Takes the codes of two Observations of the same patient and compares
        the number of that patient's Observations excluding the first code
        with the number excluding both codes. The issue is reported when the
        latter count is smaller.

        Raises:
            ProbeInconclusiveError: The data does not allow the comparison
            FhirQueryError: A calibration query failed
        """
        client = self._client
        options = client.get_common_init_request_options()

        first = await client.get_with_cache("Observation?_count=1", **options)
        observation = _first_resource(first)
        first_code = _first_code(observation)
        patient_ref = (observation.get("subject") or {}).get("reference")
        if not first_code or not patient_ref:
            raise ProbeInconclusiveError("No coded Observation with a subject")

        base = f"Observation?code:not={first_code}&subject={patient_ref}&_total=accurate"
        one_code = await client.get_with_cache(f"{base}&_count=1", **options)
        second_code = _first_code(_first_resource(one_code))
        if not second_code:
            raise ProbeInconclusiveError("Patient has a single Observation code")

        async def summary_one_code() -> Response:
            if isinstance(one_code.data.get("total"), int):
                return one_code
            return await client.get_with_cache(f"{base}&_summary=count", **options)

        summary_one, summary_two = await asyncio.gather(
            summary_one_code(),
            client.get_with_cache(
                f"Observation?code:not={first_code},{second_code}"
                f"&subject={patient_ref}&_total=accurate&_summary=count",
                **options,
            ),
        )
        total_one = summary_one.data.get("total")
        total_two = summary_two.data.get("total")
        if not isinstance(total_one, int) or not isinstance(total_two, int):
            raise ProbeInconclusiveError("Server did not report totals")
        return total_two < total_one

    async def check_has_available_study(self, has_research_study: bool) -> bool:
        """Whether some ResearchStudy has subjects with an enrolled status."""
        if not has_research_study or self.version_name is None:
            return False
        statuses = research_study_statuses(self.version_name)
        if not statuses:
            return False
        try:
            response = await self._client.get_with_cache(
                "ResearchStudy?_elements=id&_count=1"
                f"&_has:ResearchSubject:study:status={statuses}",
                **self._client.get_common_init_request_options(),
            )
        except FhirQueryError as e:
            logger.debug(f"Available study probe failed: {e}")
            return False
        return has_entries(response.data)


__all__ = [
    "METADATA_ELEMENTS_QUERY",
    "METADATA_QUERY",
    "CapabilityNegotiator",
    "NegotiationStep",
    "ProbeInconclusiveError",
]
