"""Shared fixtures for unit tests."""

import pytest
from fhir_fakes import BASE_URL, FakeTransport

from fhir_batch_query.scheduler.config import ClientConfig


@pytest.fixture
def config() -> ClientConfig:
    """Configuration with short timers so tests run quickly."""
    return ClientConfig(
        service_base_url=BASE_URL,
        batch_timeout=0.01,
        default_retry_interval=0.05,
        give_up_timeout=5.0,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
