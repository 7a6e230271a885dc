# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Type definitions and constants."""

from .features import ServerFeatures
from .request import FHIR_JSON, FORM_URLENCODED, PendingRequest, Priority
from .response import (
    Response,
    bundle_resources,
    error_diagnostic,
    has_entries,
    is_success,
)

__all__ = [
    # Content types
    "FHIR_JSON",
    "FORM_URLENCODED",
    # Requests
    "PendingRequest",
    "Priority",
    # Responses
    "Response",
    # Capabilities
    "ServerFeatures",
    "bundle_resources",
    "error_diagnostic",
    "has_entries",
    "is_success",
]
