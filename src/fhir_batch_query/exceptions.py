# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Exception classes for the FHIR batch query client.

This module defines the exception hierarchy used throughout the library.
All exceptions inherit from FhirBatchQueryError, making it easy to catch
every client-related exception with a single except clause.

Request failures are instances of FhirQueryError and always carry a numeric
``status``. Positive values are HTTP status codes; zero and the negative
sentinels below describe conditions that never reached (or never came back
from) the server in a usable form.
"""

from enum import Enum
from typing import Any

HTTP_ABORT = 0
"""Status of a request that was aborted (caller, clear, or connection drop)."""

UNSUPPORTED_VERSION = -1
"""Status reported when the server's FHIR version is not supported."""

BASIC_AUTH_REQUIRED = -2
"""Status reported when the server's metadata requires Basic authentication."""

OAUTH2_REQUIRED = -3
"""Status reported when the server's metadata requires a Bearer token."""


class AbortReason(str, Enum):
    """Why a request ended with status HTTP_ABORT."""

    CANCELLED = "cancelled"
    CLEARED = "cleared"
    TRANSPORT = "transport"
    BATCH_FAILURE = "batch_failure"


class FhirBatchQueryError(Exception):
    """Base exception for all FHIR batch query errors.

    Example:
        try:
            response = await client.get("Patient?_count=10")
        except FhirBatchQueryError as e:
            logger.error(f"FHIR query error: {e}")
    """

    pass


class FhirQueryError(FhirBatchQueryError):
    """Raised when a request is rejected.

    Attributes:
        status: HTTP status code, or one of HTTP_ABORT, UNSUPPORTED_VERSION,
            BASIC_AUTH_REQUIRED, OAUTH2_REQUIRED.
        error: Human readable diagnostics (usually taken from the server's
            OperationOutcome).
        www_authenticate: Value of the WWW-Authenticate header, only set
            for 401 responses.
    """

    default_status: int = HTTP_ABORT

    def __init__(
        self,
        error: str = "",
        status: int | None = None,
        www_authenticate: str | None = None,
    ):
        self.status = self.default_status if status is None else status
        self.error = error
        self.www_authenticate = www_authenticate
        super().__init__(error or f"Request failed with status {self.status}")

    def to_payload(self) -> dict[str, Any]:
        """Return the serializable form of this error (used by the cache)."""
        payload: dict[str, Any] = {"status": self.status, "error": self.error}
        if self.www_authenticate is not None:
            payload["wwwAuthenticate"] = self.www_authenticate
        return payload


class RequestAbortedError(FhirQueryError):
    """Raised when a request ends with status HTTP_ABORT.

    Attributes:
        reason: The AbortReason describing who aborted the request.

    Example:
        try:
            await client.get(url, token=token)
        except RequestAbortedError as e:
            if e.reason is AbortReason.CANCELLED:
                return  # the caller lost interest
            raise
    """

    def __init__(
        self,
        error: str = "",
        reason: AbortReason = AbortReason.CANCELLED,
    ):
        super().__init__(error or f"Request aborted ({reason.value})", HTTP_ABORT)
        self.reason = reason


class OutdatedResponseError(RequestAbortedError):
    """Raised when a negotiation is superseded by a newer server URL or context."""

    def __init__(self, error: str = "Outdated response to initialization request."):
        super().__init__(error, AbortReason.CLEARED)


class RateLimitedError(FhirQueryError):
    """Raised when a 429 response can no longer be retried.

    Attributes:
        retry_after: The server's last Retry-After hint in seconds, if any.
    """

    default_status = 429

    def __init__(self, error: str = "", retry_after: float | None = None):
        super().__init__(error or "Too Many Requests", 429)
        self.retry_after = retry_after


class HttpError(FhirQueryError):
    """Raised for any other non-2xx response."""

    pass


class TransportError(FhirQueryError):
    """Raised when a transport fails in a way it could not translate to a status."""

    pass


class MetadataUnavailableError(FhirQueryError):
    """Raised when the server's capability statement cannot be retrieved."""

    pass


class UnsupportedVersionError(FhirQueryError):
    """Raised when the server reports a FHIR version the client cannot handle.

    Attributes:
        fhir_version: The fhirVersion value reported by the server.
    """

    default_status = UNSUPPORTED_VERSION

    def __init__(self, fhir_version: str | None):
        super().__init__(
            f"Unsupported FHIR version: {fhir_version}", UNSUPPORTED_VERSION
        )
        self.fhir_version = fhir_version


class BasicAuthRequiredError(FhirQueryError):
    """Raised when the metadata endpoint demands Basic authentication."""

    default_status = BASIC_AUTH_REQUIRED

    def __init__(self, error: str = "", www_authenticate: str | None = None):
        super().__init__(error, BASIC_AUTH_REQUIRED, www_authenticate)


class OAuth2RequiredError(FhirQueryError):
    """Raised when the metadata endpoint demands a Bearer token."""

    default_status = OAUTH2_REQUIRED

    def __init__(self, error: str = "", www_authenticate: str | None = None):
        super().__init__(error, OAUTH2_REQUIRED, www_authenticate)


class ConfigurationError(FhirBatchQueryError):
    """Raised when the client is configured with invalid values."""

    pass


class CacheBackendError(FhirBatchQueryError):
    """Raised when the durable cache store fails a write or delete."""

    pass


def error_for_status(
    status: int,
    error: str = "",
    www_authenticate: str | None = None,
) -> FhirQueryError:
    """Build the FhirQueryError subclass matching ``status``.

    Used both for live responses and to revive error payloads stored in the
    response cache.
    """
    if status == HTTP_ABORT:
        return RequestAbortedError(error, AbortReason.TRANSPORT)
    if status == 429:
        return RateLimitedError(error)
    if status == BASIC_AUTH_REQUIRED:
        return BasicAuthRequiredError(error, www_authenticate)
    if status == OAUTH2_REQUIRED:
        return OAuth2RequiredError(error, www_authenticate)
    if status == UNSUPPORTED_VERSION:
        return FhirQueryError(error, status)
    return HttpError(error, status, www_authenticate)


def error_from_payload(payload: dict[str, Any]) -> FhirQueryError:
    """Rebuild an error from the dict produced by FhirQueryError.to_payload."""
    return error_for_status(
        int(payload.get("status", HTTP_ABORT)),
        payload.get("error") or "",
        payload.get("wwwAuthenticate"),
    )


__all__ = [
    "BASIC_AUTH_REQUIRED",
    "HTTP_ABORT",
    "OAUTH2_REQUIRED",
    "UNSUPPORTED_VERSION",
    "AbortReason",
    "BasicAuthRequiredError",
    "CacheBackendError",
    "ConfigurationError",
    "FhirBatchQueryError",
    "FhirQueryError",
    "HttpError",
    "MetadataUnavailableError",
    "OAuth2RequiredError",
    "OutdatedResponseError",
    "RateLimitedError",
    "RequestAbortedError",
    "TransportError",
    "UnsupportedVersionError",
    "error_for_status",
    "error_from_payload",
]
