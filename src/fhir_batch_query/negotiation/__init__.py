# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Server capability negotiation."""

from .negotiator import (
    METADATA_ELEMENTS_QUERY,
    METADATA_QUERY,
    CapabilityNegotiator,
    NegotiationStep,
    ProbeInconclusiveError,
)
from .versions import (
    RESEARCH_STUDY_STATUSES_BY_VERSION,
    get_version_name,
    research_study_statuses,
)

__all__ = [
    "METADATA_ELEMENTS_QUERY",
    "METADATA_QUERY",
    "RESEARCH_STUDY_STATUSES_BY_VERSION",
    "CapabilityNegotiator",
    "NegotiationStep",
    "ProbeInconclusiveError",
    "get_version_name",
    "research_study_statuses",
]
