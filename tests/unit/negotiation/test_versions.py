"""Unit tests for FHIR version mapping."""

import pytest

from fhir_batch_query.negotiation.versions import (
    get_version_name,
    research_study_statuses,
)


class TestVersionNames:
    @pytest.mark.parametrize(
        "version,expected",
        [
            ("4.0.1", "R4"),
            ("4.0.0", "R4"),
            ("4.3.0", "R4B"),
            ("5.0.0", "R5"),
            ("3.0.2", None),
            ("1.0.2", None),
            ("", None),
            (None, None),
            (4.0, None),
        ],
    )
    def test_get_version_name(self, version, expected):
        assert get_version_name(version) == expected


class TestStudyStatuses:
    def test_r5(self):
        assert research_study_statuses("R5") == "draft,active,retired,unknown"

    def test_unknown_release(self):
        assert research_study_statuses("DSTU2") == ""
