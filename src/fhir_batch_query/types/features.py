# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Server capability flags discovered by the negotiation state machine.

ServerFeatures is immutable: the negotiator builds a complete instance and
the client swaps it in atomically once negotiation reaches completion, so
callers never observe a half-populated set of flags.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ServerFeatures(BaseModel):
    """
    Capability flags of a FHIR server.

    Field names are snake_case; ``as_flat_map()`` returns the camelCase
    names (``hasBatchSupport`` and so on) used by UI code.

    Attributes:
        version_name: FHIR release name, e.g. "R4"
        is_format_supported: Whether the server accepts ``_format=json``
        has_research_study: Whether ResearchStudy resources exist
        has_missing_modifier: Whether the ``:missing`` modifier works
        has_batch_support: Whether batch Bundles are accepted
        has_available_study: Whether a study with enrolled subjects exists
        sort_observations_by_date: Whether Observation date search works
        sort_observations_by_age_at_event: Whether sorting by age-at-event works
        has_lastn_lookup: Whether Observation/$lastn is implemented
        has_interpretation: Whether Observations with interpretation exist
        has_not_modifier_issue: Whether a multi-valued ``:not`` is mishandled
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    version_name: str | None = None
    is_format_supported: bool = True
    has_research_study: bool = False
    has_missing_modifier: bool = False
    has_batch_support: bool = False
    has_available_study: bool = False
    sort_observations_by_date: bool = False
    sort_observations_by_age_at_event: bool = False
    has_lastn_lookup: bool = False
    has_interpretation: bool = False
    has_not_modifier_issue: bool = False

    def as_flat_map(self) -> dict[str, Any]:
        """Return the flags keyed by their camelCase names."""
        return self.model_dump(by_alias=True)


__all__ = ["ServerFeatures"]
