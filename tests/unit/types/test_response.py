"""Unit tests for Response and the payload helpers."""

import pytest

from fhir_batch_query.types.response import (
    Response,
    bundle_resources,
    error_diagnostic,
    has_entries,
    is_success,
)


class TestResponse:
    def test_ok(self):
        assert Response(200, {}).ok is True
        assert Response(404, {}).ok is False

    def test_to_payload(self):
        response = Response(200, {"a": 1}, headers={"etag": "x"}, from_cache=False)
        assert response.to_payload() == {"status": 200, "data": {"a": 1}}

    @pytest.mark.parametrize("status,expected", [(199, False), (200, True), (204, True), (299, True), (300, False)])
    def test_is_success(self, status, expected):
        assert is_success(status) is expected


class TestErrorDiagnostic:
    def test_operation_outcome_issues_joined(self):
        outcome = {
            "resourceType": "OperationOutcome",
            "issue": [{"diagnostics": "first"}, {"severity": "error"}, {"diagnostics": "second"}],
        }
        assert error_diagnostic(outcome) == "first\nsecond"

    def test_error_message_fallback(self):
        assert error_diagnostic({"error": {"message": "bad token"}}) == "bad token"

    def test_unknown(self):
        assert error_diagnostic(None) == "Unknown Error"
        assert error_diagnostic({"foo": 1}) == "Unknown Error"


class TestBundleHelpers:
    def test_bundle_resources_skips_entries_without_resource(self):
        bundle = {"entry": [{"resource": {"id": "1"}}, {"fullUrl": "x"}, {"resource": {"id": "2"}}]}
        assert bundle_resources(bundle) == [{"id": "1"}, {"id": "2"}]

    def test_bundle_resources_non_bundle(self):
        assert bundle_resources(None) == []
        assert bundle_resources({"resourceType": "Bundle"}) == []

    def test_has_entries(self):
        assert has_entries({"entry": [{}]}) is True
        assert has_entries({"entry": []}) is False
        assert has_entries("nope") is False
