# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
FHIR release tables.

Maps the ``fhirVersion`` reported in a CapabilityStatement to a release
name, and lists the ResearchSubject statuses that count as "enrolled"
for each release.
"""

import re

VERSION_NAME_BY_PATTERN: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^4\.0(\.\d+)?$"), "R4"),
    (re.compile(r"^4\.3\.\d+(-.+)?$"), "R4B"),
    (re.compile(r"^5\.0\.\d+(-.+)?$"), "R5"),
)
"""Patterns tried in order against the server's fhirVersion."""

RESEARCH_STUDY_STATUSES_BY_VERSION: dict[str, tuple[str, ...]] = {
    "R4": (
        "candidate",
        "eligible",
        "follow-up",
        "ineligible",
        "not-registered",
        "off-study",
        "on-study",
        "on-study-intervention",
        "on-study-observation",
        "pending-on-study",
        "potential-candidate",
        "screening",
        "withdrawn",
    ),
    "R5": ("draft", "active", "retired", "unknown"),
}
# R4B did not change ResearchSubject.status
RESEARCH_STUDY_STATUSES_BY_VERSION["R4B"] = RESEARCH_STUDY_STATUSES_BY_VERSION["R4"]


def get_version_name(fhir_version: str | None) -> str | None:
    """
    Return the release name for ``fhir_version``, or None if unsupported.

    Example:
        >>> get_version_name("4.0.1")
        'R4'
        >>> get_version_name("3.0.2") is None
        True
    """
    if not isinstance(fhir_version, str) or not fhir_version:
        return None
    for pattern, name in VERSION_NAME_BY_PATTERN:
        if pattern.match(fhir_version.strip()):
            return name
    return None


def research_study_statuses(version_name: str) -> str:
    """Comma separated ResearchSubject statuses for a ``_has`` search."""
    return ",".join(RESEARCH_STUDY_STATUSES_BY_VERSION.get(version_name, ()))


__all__ = [
    "RESEARCH_STUDY_STATUSES_BY_VERSION",
    "VERSION_NAME_BY_PATTERN",
    "get_version_name",
    "research_study_statuses",
]
