"""Structured exception hierarchy for dataset executions.

Upstream failures, payload shape problems and execution-record storage
failures each get their own type so the orchestrator can record the
distinguishing error kind and callers can render "no executions yet"
differently from "backend unavailable".
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "RunnerError",
    "TransportError",
    "UpstreamError",
    "QueryError",
    "SchemaMismatchError",
    "PaginationError",
    "StorageError",
    "NotFoundError",
    "StateTransitionError",
    "ConfigurationError",
    "MAX_BODY_CHARS",
]

# Upstream response bodies are clipped to this many characters in errors
MAX_BODY_CHARS = 200


class RunnerError(Exception):
    """Base exception for all dataset runner errors.

    Provides structured error information for debugging and for the
    ``error_detail`` field of a failed execution record.
    """

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if self.details:
            detail_lines = [f"  {k}: {v}" for k, v in self.details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging and persistence."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class TransportError(RunnerError):
    """The upstream API could not be reached.

    Raised for connection failures, timeouts and other network errors.
    """

    def __init__(
        self,
        message: str,
        *,
        endpoint: Optional[str] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.endpoint = endpoint
        self.cause = cause

        details = kwargs.pop("details", {})
        if endpoint:
            details["endpoint"] = endpoint
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class UpstreamError(TransportError):
    """The upstream API answered with a non-success HTTP status.

    Only the first ``MAX_BODY_CHARS`` characters of the response body are
    kept.
    """

    def __init__(
        self,
        status_code: int,
        body: str = "",
        *,
        endpoint: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.status_code = status_code
        self.body = (body or "")[:MAX_BODY_CHARS]

        details = kwargs.pop("details", {})
        details["status_code"] = status_code
        if self.body:
            details["body"] = self.body

        super().__init__(
            f"Upstream API error: {status_code} {self.body}".rstrip(),
            endpoint=endpoint,
            details=details,
            **kwargs,
        )


class QueryError(RunnerError):
    """The upstream API returned a GraphQL error envelope."""

    def __init__(
        self,
        message: str,
        *,
        errors: Optional[list] = None,
        **kwargs: Any,
    ) -> None:
        self.errors = errors or []

        details = kwargs.pop("details", {})
        if len(self.errors) > 1:
            details["error_count"] = len(self.errors)

        super().__init__(f"GraphQL error: {message}", details=details, **kwargs)


class SchemaMismatchError(RunnerError):
    """A response did not have any recognised payload shape."""

    def __init__(
        self,
        message: str,
        *,
        resource: Optional[str] = None,
        fields: Optional[list] = None,
        **kwargs: Any,
    ) -> None:
        self.resource = resource
        self.fields = fields or []

        details = kwargs.pop("details", {})
        if resource:
            details["resource"] = resource
        if fields is not None:
            details["response_fields"] = ", ".join(fields) or "(none)"

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = (
                "Check that the query selects a connection with "
                "'edges' and 'pageInfo { hasNextPage endCursor }'."
            )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class PaginationError(RunnerError):
    """Cursor pagination cannot make progress."""

    def __init__(
        self,
        message: str,
        *,
        page: Optional[int] = None,
        cursor: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if page is not None:
            details["page"] = page
        if cursor:
            details["cursor"] = cursor

        super().__init__(message, details=details, **kwargs)


class StorageError(RunnerError):
    """Reading or writing an execution record failed."""

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        execution_id: Optional[str] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.operation = operation
        self.execution_id = execution_id
        self.cause = cause

        details = kwargs.pop("details", {})
        if operation:
            details["operation"] = operation
        if execution_id:
            details["execution_id"] = execution_id
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        super().__init__(message, details=details, **kwargs)


class NotFoundError(RunnerError):
    """No execution matches the given id.

    Deliberately not a ``StorageError``: a missing record is an answer,
    not a backend failure.
    """

    def __init__(self, message: str, *, execution_id: Optional[str] = None, **kwargs: Any) -> None:
        self.execution_id = execution_id

        details = kwargs.pop("details", {})
        if execution_id:
            details["execution_id"] = execution_id

        super().__init__(message, details=details, **kwargs)


class StateTransitionError(RunnerError):
    """An update would break the execution record lifecycle."""

    def __init__(
        self,
        message: str,
        *,
        execution_id: Optional[str] = None,
        current: Optional[str] = None,
        requested: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if execution_id:
            details["execution_id"] = execution_id
        if current:
            details["current_status"] = current
        if requested:
            details["requested_status"] = requested

        super().__init__(message, details=details, **kwargs)


class ConfigurationError(RunnerError):
    """A dataset or source configuration is invalid or incomplete."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.field = field

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field

        super().__init__(message, details=details, **kwargs)
