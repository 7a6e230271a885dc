"""Unit tests for CapabilityNegotiator and FhirBatchClient.initialize."""

import asyncio
from typing import Any

import pytest
from fhir_fakes import (
    BASE_URL,
    FakeTransport,
    SentRequest,
    batch_response,
    json_response,
    wait_until,
)

from fhir_batch_query.client import FhirBatchClient
from fhir_batch_query.exceptions import (
    BasicAuthRequiredError,
    MetadataUnavailableError,
    OAuth2RequiredError,
    OutdatedResponseError,
    UnsupportedVersionError,
)
from fhir_batch_query.negotiation.negotiator import (
    METADATA_ELEMENTS_QUERY,
    CapabilityNegotiator,
    NegotiationStep,
)
from fhir_batch_query.transport.base import RawResponse

OTHER_URL = "https://other.example.org/baseR4"
BASE_PATH = "/baseR4"

OBS_A = {
    "resourceType": "Observation",
    "id": "a",
    "code": {"coding": [{"system": "http://loinc.org", "code": "1111-1"}]},
    "subject": {"reference": "Patient/p1"},
}
OBS_B = {
    "resourceType": "Observation",
    "id": "b",
    "code": {"coding": [{"system": "http://loinc.org", "code": "2222-2"}]},
    "subject": {"reference": "Patient/p1"},
}
STUDY = {"resourceType": "ResearchStudy", "id": "s1"}


def searchset(resources: list[dict[str, Any]], total: int | None = None) -> dict[str, Any]:
    bundle: dict[str, Any] = {
        "resourceType": "Bundle",
        "type": "searchset",
        "entry": [{"resource": r} for r in resources],
    }
    if total is not None:
        bundle["total"] = total
    return bundle


def rejection(
    message: str,
    status: int = 400,
    headers: dict[str, str] | None = None,
) -> RawResponse:
    return json_response(
        {
            "resourceType": "OperationOutcome",
            "issue": [{"severity": "error", "diagnostics": message}],
        },
        status=status,
        headers=headers,
    )


class FakeFhirServer:
    """
    Answers the negotiation probes like a small FHIR server.

    ``unsupported`` names the capabilities the server lacks: "missing",
    "batch", "date", "age-at-event", "lastn", and for metadata queries the
    "_format" and "_elements" parameters.
    """

    def __init__(self, fhir_version: str = "4.0.1") -> None:
        self.fhir_version = fhir_version
        self.unsupported: set[str] = set()
        self.metadata_response: RawResponse | None = None
        self.research_studies = True
        self.available_study = True
        self.interpretation = True
        self.not_modifier_totals = (5, 3)

    def metadata(self) -> dict[str, Any]:
        return {"resourceType": "CapabilityStatement", "fhirVersion": self.fhir_version}

    def __call__(self, request: SentRequest) -> RawResponse:
        if request.is_batch:
            if "batch" in self.unsupported:
                return rejection("Batch is not supported")
            return batch_response(
                request.bundle_urls,
                entry_for=lambda url: {
                    "resource": self.metadata(),
                    "response": {"status": "200 OK"},
                },
            )

        params = request.url.params
        path = request.url.path.removeprefix(f"{BASE_PATH}/")
        if path == "metadata":
            for param in ("_format", "_elements"):
                if param in self.unsupported and param in params:
                    return rejection(f"Unknown parameter {param}")
            if self.metadata_response is not None:
                return self.metadata_response
            return json_response(self.metadata())

        if path == "ResearchStudy":
            if "_has:ResearchSubject:study:status" in params:
                return json_response(searchset([STUDY] if self.available_study else []))
            return json_response(searchset([STUDY] if self.research_studies else []))

        if path == "Observation/$lastn":
            if "lastn" in self.unsupported:
                return rejection("Unknown operation $lastn", status=404)
            return json_response(searchset([]))

        if path == "Observation":
            return self._observations(params)

        return rejection(f"Unknown resource {path}", status=404)

    def _observations(self, params: Any) -> RawResponse:
        if any(key.endswith(":missing") for key in params) and "missing" in self.unsupported:
            return rejection("Unknown modifier :missing")
        if "interpretation:missing" in params or "interpretation:not" in params:
            return json_response(searchset([OBS_A] if self.interpretation else []))
        if "date" in params and "date" in self.unsupported:
            return rejection("Unknown search parameter date")
        if params.get("_sort") == "age-at-event" and "age-at-event" in self.unsupported:
            return rejection("Unknown sort parameter age-at-event")
        if "code:not" in params:
            excluded = params["code:not"].split(",")
            total = self.not_modifier_totals[len(excluded) - 1]
            if params.get("_summary") == "count":
                return json_response({"resourceType": "Bundle", "total": total})
            return json_response(searchset([OBS_B]))
        return json_response(searchset([OBS_A]))


def paths(transport: FakeTransport) -> list[str]:
    return [call.url.path for call in transport.calls]


class TestNegotiation:
    @pytest.mark.asyncio
    async def test_all_capabilities_detected(self, config):
        transport = FakeTransport(FakeFhirServer())
        async with FhirBatchClient(config, transport=transport) as client:
            features = await client.initialize()

        assert features.version_name == "R4"
        assert features.is_format_supported is True
        assert features.has_research_study is True
        assert features.has_missing_modifier is True
        assert features.has_batch_support is True
        assert features.sort_observations_by_date is True
        assert features.sort_observations_by_age_at_event is True
        assert features.has_lastn_lookup is True
        assert features.has_interpretation is True
        assert features.has_not_modifier_issue is True
        assert features.has_available_study is True
        assert client.get_features() == features
        assert client.get_version_name() == "R4"

    @pytest.mark.asyncio
    async def test_unsupported_probes_report_false(self, config):
        server = FakeFhirServer()
        server.unsupported = {"missing", "batch", "date", "age-at-event", "lastn"}
        server.research_studies = False
        server.interpretation = False
        server.not_modifier_totals = (5, 5)
        transport = FakeTransport(server)
        async with FhirBatchClient(config, transport=transport) as client:
            features = await client.initialize()

        assert features.version_name == "R4"
        assert features.as_flat_map() == {
            "versionName": "R4",
            "isFormatSupported": True,
            "hasResearchStudy": False,
            "hasMissingModifier": False,
            "hasBatchSupport": False,
            "hasAvailableStudy": False,
            "sortObservationsByDate": False,
            "sortObservationsByAgeAtEvent": False,
            "hasLastnLookup": False,
            "hasInterpretation": False,
            "hasNotModifierIssue": False,
        }
        # Without :missing the interpretation probe falls back to :not
        assert any("interpretation:not" in call.url.params for call in transport.calls)
        # No study probe without ResearchStudy resources
        assert not any(
            "_has:ResearchSubject:study:status" in call.url.params
            for call in transport.calls
        )

    @pytest.mark.asyncio
    async def test_empty_sort_results_report_false(self, config):
        server = FakeFhirServer()

        def handler(request: SentRequest) -> RawResponse:
            params = request.url.params
            if "date" in params or params.get("_sort") == "age-at-event":
                return json_response(searchset([]))
            return server(request)

        transport = FakeTransport(handler)
        async with FhirBatchClient(config, transport=transport) as client:
            features = await client.initialize()

        assert features.sort_observations_by_date is False
        assert features.sort_observations_by_age_at_event is False
        assert features.has_lastn_lookup is True

    @pytest.mark.asyncio
    async def test_probes_are_single_requests(self, config):
        transport = FakeTransport(FakeFhirServer())
        async with FhirBatchClient(config, transport=transport) as client:
            await client.initialize()

        # Only the batch probe is a batch
        assert len(transport.batches) == 1
        assert transport.batches[0].bundle_urls == [
            f"{METADATA_ELEMENTS_QUERY}&_format=json"
        ]

    @pytest.mark.asyncio
    async def test_r5_uses_r5_study_statuses(self, config):
        transport = FakeTransport(FakeFhirServer("5.0.0"))
        async with FhirBatchClient(config, transport=transport) as client:
            features = await client.initialize()

        assert features.version_name == "R5"
        statuses = [
            call.url.params["_has:ResearchSubject:study:status"]
            for call in transport.calls
            if "_has:ResearchSubject:study:status" in call.url.params
        ]
        assert statuses == ["draft,active,retired,unknown"]


class TestMetadataFailures:
    @pytest.mark.asyncio
    async def test_unknown_version(self, config):
        transport = FakeTransport(FakeFhirServer("3.0.2"))
        async with FhirBatchClient(config, transport=transport) as client:
            with pytest.raises(UnsupportedVersionError):
                await client.initialize()
        # Nothing is probed after the version check
        assert paths(transport) == [f"{BASE_PATH}/metadata"]

    @pytest.mark.asyncio
    async def test_non_string_version(self, config):
        transport = FakeTransport(FakeFhirServer(4.0))
        async with FhirBatchClient(config, transport=transport) as client:
            with pytest.raises(UnsupportedVersionError) as exc_info:
                await client.initialize()
        assert exc_info.value.fhir_version == 4.0

    @pytest.mark.asyncio
    async def test_basic_auth_challenge(self, config):
        server = FakeFhirServer()
        server.metadata_response = rejection(
            "Unauthorized", status=401, headers={"WWW-Authenticate": 'Basic realm="fhir"'}
        )
        transport = FakeTransport(server)
        async with FhirBatchClient(config, transport=transport) as client:
            with pytest.raises(BasicAuthRequiredError) as exc_info:
                await client.initialize()
            assert exc_info.value.www_authenticate == 'Basic realm="fhir"'
            assert not await client.is_cached(
                METADATA_ELEMENTS_QUERY, client.get_init_cache_name()
            )

    @pytest.mark.asyncio
    async def test_bearer_challenge(self, config):
        server = FakeFhirServer()
        server.metadata_response = rejection(
            "Unauthorized", status=401, headers={"WWW-Authenticate": "Bearer"}
        )
        transport = FakeTransport(server)
        async with FhirBatchClient(config, transport=transport) as client:
            with pytest.raises(OAuth2RequiredError):
                await client.initialize()

    @pytest.mark.asyncio
    async def test_metadata_unavailable(self, config):
        server = FakeFhirServer()
        server.metadata_response = rejection("Not a FHIR server", status=404)
        transport = FakeTransport(server)
        async with FhirBatchClient(config, transport=transport) as client:
            with pytest.raises(MetadataUnavailableError) as exc_info:
                await client.initialize()
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_format_rejected_falls_back(self, config):
        server = FakeFhirServer()
        server.unsupported = {"_format"}
        transport = FakeTransport(server)
        async with FhirBatchClient(config, transport=transport) as client:
            features = await client.initialize()

            assert features.is_format_supported is False
            assert client.connection.format_supported is False
            assert transport.batches[0].bundle_urls == [METADATA_ELEMENTS_QUERY]
            # Every call after the rejected one omits _format
            assert "_format" in transport.calls[0].url.params
            assert all("_format" not in call.url.params for call in transport.calls[1:])

    @pytest.mark.asyncio
    async def test_elements_rejected_falls_back(self, config):
        server = FakeFhirServer()
        server.unsupported = {"_elements"}
        transport = FakeTransport(server)
        async with FhirBatchClient(config, transport=transport) as client:
            features = await client.initialize()

        assert features.version_name == "R4"
        assert transport.batches[0].bundle_urls == ["metadata?_format=json"]
        metadata_calls = [
            call for call in transport.calls if call.url.path == f"{BASE_PATH}/metadata"
        ]
        assert len(metadata_calls) == 2
        assert "_elements" not in metadata_calls[1].url.params


class TestContexts:
    @pytest.mark.asyncio
    async def test_restricted_context_only_probes_available_study(self, config):
        transport = FakeTransport(FakeFhirServer())
        async with FhirBatchClient(config, transport=transport) as client:
            features = await client.initialize(context="dbgap-pre-login")

        assert features.has_available_study is True
        assert features.sort_observations_by_date is False
        assert features.has_lastn_lookup is False
        assert f"{BASE_PATH}/Observation/$lastn" not in paths(transport)
        assert not any("date" in call.url.params for call in transport.calls)

    @pytest.mark.asyncio
    async def test_probe_responses_cached_per_context(self, config):
        transport = FakeTransport(FakeFhirServer())
        async with FhirBatchClient(config, transport=transport) as client:
            await client.initialize(context="ctx")

            assert client.get_init_cache_name() == f"init-ctx-{BASE_URL}"
            assert await client.is_cached(
                METADATA_ELEMENTS_QUERY, client.get_init_cache_name(use_init_context=False)
            )
            assert await client.is_cached(
                "ResearchStudy?_elements=id&_count=1", client.get_init_cache_name()
            )

    @pytest.mark.asyncio
    async def test_uncached_metadata_context(self, config):
        transport = FakeTransport(FakeFhirServer())
        async with FhirBatchClient(config, transport=transport) as client:
            await client.initialize(context="basic-auth")

            assert not await client.is_cached(
                METADATA_ELEMENTS_QUERY, client.get_init_cache_name(use_init_context=False)
            )

    @pytest.mark.asyncio
    async def test_context_change_retries_format(self, config):
        server = FakeFhirServer()
        server.unsupported = {"_format"}
        transport = FakeTransport(server)
        async with FhirBatchClient(config, transport=transport) as client:
            await client.initialize()
            assert client.connection.format_supported is False

            await client.clear_cache()
            calls = len(transport.calls)
            features = await client.initialize(context="ctx")

            # The new negotiation tries _format again before falling back
            assert "_format" in transport.calls[calls].url.params
            assert features.is_format_supported is False

    @pytest.mark.asyncio
    async def test_negotiation_is_shared(self, config):
        transport = FakeTransport(FakeFhirServer())
        async with FhirBatchClient(config, transport=transport) as client:
            first, second = await asyncio.gather(client.initialize(), client.initialize())
            calls = len(transport.calls)
            third = await client.initialize(BASE_URL + "/")

        assert first is second is third
        assert len(transport.calls) == calls

    @pytest.mark.asyncio
    async def test_server_switch_discards_running_negotiation(self, config):
        server = FakeFhirServer()
        release = asyncio.Event()

        async def handler(request: SentRequest) -> RawResponse:
            if request.url.host == "fhir.example.org":
                await release.wait()
            return server(request)

        transport = FakeTransport(handler)
        async with FhirBatchClient(config, transport=transport) as client:
            stale = asyncio.ensure_future(client.initialize())
            await wait_until(lambda: len(transport.calls) == 1)

            features = await client.initialize(OTHER_URL)

            with pytest.raises(OutdatedResponseError):
                await stale
            assert features.version_name == "R4"
            assert client.service_base_url == OTHER_URL
            assert client.get_features() is features
            assert transport.cancelled_calls == 1


class TestNegotiatorSteps:
    @pytest.mark.asyncio
    async def test_step_reaches_complete(self, config):
        transport = FakeTransport(FakeFhirServer())
        async with FhirBatchClient(config, transport=transport) as client:
            negotiator = CapabilityNegotiator(client, BASE_URL)
            assert negotiator.step is NegotiationStep.PENDING
            await negotiator.run()

        assert negotiator.step is NegotiationStep.COMPLETE
        assert negotiator.metadata_query == f"{METADATA_ELEMENTS_QUERY}&_format=json"

    @pytest.mark.asyncio
    async def test_ensure_current(self, config):
        async with FhirBatchClient(config, transport=FakeTransport()) as client:
            negotiator = CapabilityNegotiator(client, BASE_URL)
            negotiator.ensure_current()
            client.init_context = "other"
            with pytest.raises(OutdatedResponseError):
                negotiator.ensure_current()

    @pytest.mark.asyncio
    async def test_not_modifier_inconclusive_without_second_code(self, config):
        server = FakeFhirServer()
        transport = FakeTransport(server)

        def handler(request: SentRequest) -> RawResponse:
            if "code:not" in request.url.params:
                return json_response(searchset([]))
            return server(request)

        transport.handler = handler
        async with FhirBatchClient(config, transport=transport) as client:
            features = await client.initialize()

        assert features.has_not_modifier_issue is False
