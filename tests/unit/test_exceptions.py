"""Unit tests for the exceptions module.

Tests the exception hierarchy in fhir_batch_query.exceptions and the helpers
that map statuses and cached payloads back to exception classes.
"""

import pytest

from fhir_batch_query.exceptions import (
    BASIC_AUTH_REQUIRED,
    HTTP_ABORT,
    OAUTH2_REQUIRED,
    UNSUPPORTED_VERSION,
    AbortReason,
    BasicAuthRequiredError,
    CacheBackendError,
    ConfigurationError,
    FhirBatchQueryError,
    FhirQueryError,
    HttpError,
    OAuth2RequiredError,
    OutdatedResponseError,
    RateLimitedError,
    RequestAbortedError,
    UnsupportedVersionError,
    error_for_status,
    error_from_payload,
)


class TestFhirBatchQueryError:
    """Tests for the base exception."""

    def test_every_error_is_catchable_as_base(self):
        for error in (
            HttpError("x", 500),
            RequestAbortedError(),
            ConfigurationError("bad"),
            CacheBackendError("down"),
        ):
            with pytest.raises(FhirBatchQueryError):
                raise error


class TestFhirQueryError:
    """Tests for request failures."""

    def test_status_and_error_preserved(self):
        error = HttpError("Resource not found", 404)
        assert error.status == 404
        assert error.error == "Resource not found"
        assert str(error) == "Resource not found"

    def test_message_defaults_to_status(self):
        error = HttpError(status=500)
        assert str(error) == "Request failed with status 500"

    def test_to_payload_without_challenge(self):
        assert HttpError("boom", 500).to_payload() == {"status": 500, "error": "boom"}

    def test_to_payload_with_challenge(self):
        error = HttpError("no", 401, 'Basic realm="fhir"')
        assert error.to_payload() == {
            "status": 401,
            "error": "no",
            "wwwAuthenticate": 'Basic realm="fhir"',
        }


class TestRequestAbortedError:
    """Tests for aborted requests."""

    def test_status_is_abort(self):
        error = RequestAbortedError()
        assert error.status == HTTP_ABORT
        assert error.reason is AbortReason.CANCELLED

    def test_reason_in_default_message(self):
        assert "cleared" in str(RequestAbortedError(reason=AbortReason.CLEARED))

    def test_outdated_response_is_cleared_abort(self):
        error = OutdatedResponseError()
        assert isinstance(error, RequestAbortedError)
        assert error.reason is AbortReason.CLEARED
        assert error.error == "Outdated response to initialization request."


class TestSpecialStatuses:
    """Tests for the negative sentinel statuses."""

    def test_unsupported_version(self):
        error = UnsupportedVersionError("1.0.2")
        assert error.status == UNSUPPORTED_VERSION
        assert error.fhir_version == "1.0.2"
        assert "1.0.2" in error.error

    def test_basic_auth_required(self):
        error = BasicAuthRequiredError("login", "Basic")
        assert error.status == BASIC_AUTH_REQUIRED
        assert error.www_authenticate == "Basic"

    def test_oauth2_required(self):
        error = OAuth2RequiredError("login", "Bearer")
        assert error.status == OAUTH2_REQUIRED

    def test_rate_limited(self):
        error = RateLimitedError(retry_after=3.0)
        assert error.status == 429
        assert error.retry_after == 3.0
        assert error.error == "Too Many Requests"


class TestErrorForStatus:
    """Tests for error_for_status and error_from_payload."""

    @pytest.mark.parametrize(
        "status,expected",
        [
            (HTTP_ABORT, RequestAbortedError),
            (429, RateLimitedError),
            (BASIC_AUTH_REQUIRED, BasicAuthRequiredError),
            (OAUTH2_REQUIRED, OAuth2RequiredError),
            (404, HttpError),
            (500, HttpError),
        ],
    )
    def test_class_by_status(self, status, expected):
        assert isinstance(error_for_status(status, "x"), expected)

    def test_abort_status_is_transport_abort(self):
        error = error_for_status(HTTP_ABORT)
        assert error.reason is AbortReason.TRANSPORT

    def test_unsupported_version_keeps_status(self):
        error = error_for_status(UNSUPPORTED_VERSION, "old")
        assert type(error) is FhirQueryError
        assert error.status == UNSUPPORTED_VERSION

    def test_from_payload(self):
        error = error_from_payload({"status": 404, "error": "gone"})
        assert isinstance(error, HttpError)
        assert error.status == 404
        assert error.error == "gone"

    def test_from_payload_restores_challenge(self):
        original = HttpError("denied", 401, "Bearer")
        revived = error_from_payload(original.to_payload())
        assert revived.www_authenticate == "Bearer"
        assert revived.to_payload() == original.to_payload()
