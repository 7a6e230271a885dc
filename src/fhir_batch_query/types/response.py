# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Response types.

Response is what callers receive for a fulfilled request. Helpers in this
module extract diagnostics and pagination links from FHIR JSON payloads.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Response:
    """
    A fulfilled request.

    Attributes:
        status: HTTP status code (always 2xx for fulfilled requests)
        data: Parsed JSON body; for batch members, the entry's resource
        headers: Response headers with lower-cased names (empty for batch
            members and cached responses)
        from_cache: Whether the response came from the response cache
    """

    status: int
    data: Any
    headers: Mapping[str, str] = field(default_factory=dict)
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return is_success(self.status)

    def to_payload(self) -> dict[str, Any]:
        """Return the serializable form stored in the response cache."""
        return {"status": self.status, "data": self.data}


def is_success(status: int) -> bool:
    """Whether ``status`` is a 2xx HTTP status."""
    return 200 <= status < 300


def error_diagnostic(data: Any) -> str:
    """
    Extract a human readable error from a FHIR error payload.

    An OperationOutcome's issue diagnostics are joined with newlines. Other
    payloads fall back to ``error.message``, then to "Unknown Error".
    """
    if isinstance(data, dict):
        issues = data.get("issue")
        if isinstance(issues, list):
            return "\n".join(
                str(issue["diagnostics"])
                for issue in issues
                if isinstance(issue, dict) and issue.get("diagnostics")
            )
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return "Unknown Error"


def bundle_resources(data: Any) -> list[Any]:
    """Return the resources of a Bundle's entries (missing entries are skipped)."""
    if not isinstance(data, dict):
        return []
    return [
        entry["resource"]
        for entry in data.get("entry") or []
        if isinstance(entry, dict) and "resource" in entry
    ]


def has_entries(data: Any) -> bool:
    """Whether a Bundle has a non-empty entry list."""
    return isinstance(data, dict) and bool(data.get("entry"))


__all__ = [
    "Response",
    "bundle_resources",
    "error_diagnostic",
    "has_entries",
    "is_success",
]
