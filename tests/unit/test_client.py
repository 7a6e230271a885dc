"""Unit tests for FhirBatchClient."""

from unittest.mock import AsyncMock, patch

import pytest
from fhir_fakes import BASE_URL, FakeTransport, SentRequest, echo_handler, json_response

from fhir_batch_query.cache.memory import MemoryCacheStore
from fhir_batch_query.client import FhirBatchClient
from fhir_batch_query.exceptions import HttpError
from fhir_batch_query.observability.constants import REQUESTS_ENQUEUED_TOTAL
from fhir_batch_query.scheduler.config import ClientConfig
from fhir_batch_query.transport.base import RawResponse
from fhir_batch_query.types.request import FORM_URLENCODED


def failing_handler(request: SentRequest) -> RawResponse:
    if request.url.path.endswith("/Missing"):
        return json_response(
            {"resourceType": "OperationOutcome", "issue": [{"diagnostics": "gone"}]},
            status=404,
        )
    if request.url.path.endswith("/Secret"):
        return json_response({}, status=403)
    return echo_handler(request)


class TestCachedRequests:
    @pytest.mark.asyncio
    async def test_second_request_served_from_cache(self, config, transport):
        async with FhirBatchClient(config, transport=transport) as client:
            first = await client.get_with_cache("Patient/1")
            second = await client.get_with_cache(f"{BASE_URL}/Patient/1")

            assert first.from_cache is False
            assert second.from_cache is True
            assert second.data == first.data
            assert await client.is_cached("Patient/1")
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_named_cache(self, config, transport):
        async with FhirBatchClient(config, transport=transport) as client:
            await client.get_with_cache("Patient/1", cache_name="study", expiration_seconds=60)

            assert await client.is_cached("Patient/1", "study")
            assert not await client.is_cached("Patient/1")

            assert await client.clear_cache_by_name("study") is True
            assert not await client.is_cached("Patient/1", "study")

    @pytest.mark.asyncio
    async def test_cached_error_is_raised_again(self, config):
        transport = FakeTransport(failing_handler)
        async with FhirBatchClient(config, transport=transport) as client:
            with pytest.raises(HttpError) as first:
                await client.get_with_cache("Missing", cache_errors=True)
            with pytest.raises(HttpError) as second:
                await client.get_with_cache("Missing", cache_errors=True)

        assert first.value.status == second.value.status == 404
        assert second.value.error == "gone"
        assert len(transport.calls) == 1

    @pytest.mark.asyncio
    async def test_errors_not_cached_by_default(self, config):
        transport = FakeTransport(failing_handler)
        async with FhirBatchClient(config, transport=transport) as client:
            for _ in range(2):
                with pytest.raises(HttpError):
                    await client.get_with_cache("Missing")
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_forbidden_never_cached(self, config):
        transport = FakeTransport(failing_handler)
        async with FhirBatchClient(config, transport=transport) as client:
            for _ in range(2):
                with pytest.raises(HttpError):
                    await client.get_with_cache("Secret", cache_errors=True)
        assert len(transport.calls) == 2

    @pytest.mark.asyncio
    async def test_disabling_cache_clears_it(self, config, transport):
        async with FhirBatchClient(config, transport=transport) as client:
            await client.get_with_cache("Patient/1", cache_name="study")
            await client.set_cache_enabled(False)

            assert not await client.is_cached("Patient/1", "study")
            await client.get_with_cache("Patient/1", cache_name="study")
            assert not await client.is_cached("Patient/1", "study")
        assert len(transport.calls) == 2


class TestRequests:
    @pytest.mark.asyncio
    async def test_long_url_sent_as_search_post(self, transport):
        config = ClientConfig(service_base_url=BASE_URL, batch_timeout=0.01, max_url_length=80)
        query = "name=" + "a" * 100
        async with FhirBatchClient(config, transport=transport) as client:
            response = await client.get(f"Patient?{query}")

        assert response.status == 200
        [call] = transport.calls
        assert call.method == "POST"
        assert call.url.path == "/baseR4/Patient/_search"
        assert call.body == query
        assert call.headers["Content-Type"] == FORM_URLENCODED

    @pytest.mark.asyncio
    async def test_long_lastn_url_sent_in_batch(self, transport):
        config = ClientConfig(service_base_url=BASE_URL, batch_timeout=0.01, max_url_length=80)
        async with FhirBatchClient(config, transport=transport) as client:
            await client.get("Observation/$lastn?code=" + "1" * 100)

        [call] = transport.calls
        assert call.is_batch
        assert call.bundle_urls[0].startswith("Observation/$lastn?code=")

    @pytest.mark.asyncio
    async def test_credentials(self, config, transport):
        async with FhirBatchClient(config, transport=transport) as client:
            client.api_key = " secret "
            client.authorization_header = "Bearer abc"
            await client.get("Patient/1")

            assert client.api_key == "secret"
        [call] = transport.calls
        assert call.url.params["api_key"] == "secret"
        assert call.url.params["_format"] == "json"
        assert call.headers["Authorization"] == "Bearer abc"

    @pytest.mark.asyncio
    async def test_relative_and_full_urls(self, config, transport):
        async with FhirBatchClient(config, transport=transport) as client:
            assert client.get_full_url("Patient") == f"{BASE_URL}/Patient"
            assert client.get_full_url("https://x.org/Patient") == "https://x.org/Patient"
            assert client.get_relative_url(f"{BASE_URL}/Patient?a=1") == "Patient?a=1"


class TestTunables:
    @pytest.mark.asyncio
    async def test_validation(self, config, transport):
        async with FhirBatchClient(config, transport=transport) as client:
            client.max_requests_per_batch = 3
            client.max_active_requests = 2
            client.pacing_interval = 0.5

            assert client.max_requests_per_batch == 3
            assert client.max_active_requests == 2
            assert client.pacing_interval == 0.5
            with pytest.raises(ValueError):
                client.max_requests_per_batch = 0
            with pytest.raises(ValueError):
                client.max_active_requests = 0


class TestInitOptions:
    @pytest.mark.asyncio
    async def test_cache_names(self, config, transport):
        async with FhirBatchClient(config, transport=transport) as client:
            assert client.get_init_cache_name() == f"init-{BASE_URL}"
            client.init_context = "basic-auth"
            assert client.get_init_cache_name() == f"init-basic-auth-{BASE_URL}"
            assert client.get_init_cache_name(use_init_context=False) == f"init-{BASE_URL}"

    @pytest.mark.asyncio
    async def test_common_options(self, config, transport):
        async with FhirBatchClient(config, transport=transport) as client:
            options = client.get_common_init_request_options()

        assert options == {
            "combine": False,
            "retry_count": config.init_retry_count,
            "cache_name": f"init-{BASE_URL}",
            "expiration_seconds": config.init_cache_expiration,
            "cache_errors": True,
        }


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_create_without_redis_uses_memory_store(self, config, transport, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        client = await FhirBatchClient.create(config, transport=transport)
        async with client:
            assert isinstance(client.cache.durable_store, MemoryCacheStore)
            await client.get_with_cache("Patient/1", cache_name="named")
            assert await client.is_cached("Patient/1", "named")

    @pytest.mark.asyncio
    async def test_given_transport_left_open(self, config, transport):
        async with FhirBatchClient(config, transport=transport):
            pass
        assert transport.closed is False

    @pytest.mark.asyncio
    async def test_owned_transport_closed(self, config):
        with patch("fhir_batch_query.client.HttpxTransport") as transport_cls:
            transport_cls.return_value.aclose = AsyncMock()
            async with FhirBatchClient(config):
                pass

        transport_cls.assert_called_once_with(timeout=config.request_timeout)
        transport_cls.return_value.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_metrics(self, transport):
        config = ClientConfig(service_base_url=BASE_URL, batch_timeout=0.01, metrics_enabled=True)
        async with FhirBatchClient(config, transport=transport) as client:
            await client.get("Patient/1")
            metrics = client.get_metrics()

        assert metrics["scheduler"]["pending"] == 0
        assert metrics["scheduler"]["max_requests_per_batch"] == 10
        assert metrics["counters"][REQUESTS_ENQUEUED_TOTAL][""] == 1

    @pytest.mark.asyncio
    async def test_metrics_disabled(self, config, transport):
        async with FhirBatchClient(config, transport=transport) as client:
            assert client.metrics is None
            assert set(client.get_metrics()) == {"scheduler"}
