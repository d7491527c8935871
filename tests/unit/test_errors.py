"""Tests for the structured error hierarchy."""

import pytest

from dataset_runner.lib.errors import (
    MAX_BODY_CHARS,
    ConfigurationError,
    NotFoundError,
    PaginationError,
    QueryError,
    RunnerError,
    SchemaMismatchError,
    StateTransitionError,
    StorageError,
    TransportError,
    UpstreamError,
)


class TestRunnerError:
    """Tests for the base error."""

    def test_message_only(self):
        error = RunnerError("Something failed")
        assert str(error) == "Something failed"
        assert error.details == {}
        assert error.suggestion is None

    def test_details_and_suggestion_in_str(self):
        error = RunnerError("Something failed", details={"page": 2}, suggestion="Try again")
        text = str(error)
        assert "Something failed" in text
        assert "page: 2" in text
        assert "Suggestion: Try again" in text

    def test_to_dict(self):
        error = ConfigurationError("Missing token", field="access_token")
        assert error.to_dict() == {
            "error_type": "ConfigurationError",
            "message": "Missing token",
            "details": {"field": "access_token"},
            "suggestion": None,
        }


class TestUpstreamErrors:
    """Tests for transport and upstream errors."""

    def test_transport_error_records_cause(self):
        cause = ConnectionError("refused")
        error = TransportError("Could not reach upstream API", endpoint="https://x", cause=cause)
        assert error.cause is cause
        assert error.details == {"endpoint": "https://x", "cause": "refused", "cause_type": "ConnectionError"}

    def test_upstream_error_truncates_body(self):
        error = UpstreamError(502, "e" * 500)
        assert error.status_code == 502
        assert len(error.body) == MAX_BODY_CHARS
        assert error.message == "Upstream API error: 502 " + "e" * MAX_BODY_CHARS
        assert isinstance(error, TransportError)

    def test_upstream_error_without_body(self):
        error = UpstreamError(503)
        assert error.message == "Upstream API error: 503"
        assert "body" not in error.details

    def test_query_error(self):
        error = QueryError("Throttled", errors=[{"message": "Throttled"}, {"message": "x"}])
        assert error.message == "GraphQL error: Throttled"
        assert error.details["error_count"] == 2


class TestPayloadAndStoreErrors:
    """Tests for the remaining error kinds."""

    def test_schema_mismatch_has_default_suggestion(self):
        error = SchemaMismatchError("No connection", resource="Product", fields=[])
        assert error.details == {"resource": "Product", "response_fields": "(none)"}
        assert "pageInfo" in error.suggestion

    def test_pagination_error(self):
        error = PaginationError("Stuck", page=3, cursor="abc")
        assert error.details == {"page": 3, "cursor": "abc"}

    def test_storage_error(self):
        error = StorageError("Write failed", operation="write", execution_id="e1", cause=OSError("disk full"))
        assert error.details["operation"] == "write"
        assert error.details["cause_type"] == "OSError"

    def test_not_found_is_not_a_storage_error(self):
        error = NotFoundError("Execution not found: e1", execution_id="e1")
        assert not isinstance(error, StorageError)
        assert error.execution_id == "e1"

    def test_state_transition_error(self):
        error = StateTransitionError("Nope", execution_id="e1", current="completed", requested="failed")
        assert error.details == {
            "execution_id": "e1",
            "current_status": "completed",
            "requested_status": "failed",
        }

    @pytest.mark.parametrize(
        "error",
        [
            TransportError("x"),
            UpstreamError(500),
            QueryError("x"),
            SchemaMismatchError("x"),
            PaginationError("x"),
            StorageError("x"),
            NotFoundError("x"),
            StateTransitionError("x"),
            ConfigurationError("x"),
        ],
    )
    def test_all_errors_are_runner_errors(self, error):
        assert isinstance(error, RunnerError)
        assert error.to_dict()["error_type"] == type(error).__name__
