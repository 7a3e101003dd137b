"""
Shared error handling for the Identity Federation service.

The taxonomy mirrors how federation failures are meant to travel:
``Unauthorized`` and ``ValidationFailed`` surface to HTTP callers, while
``RemoteUnavailable`` and ``NoLinkedAccount`` are converted into soft results
at the synchronizer and suggestion boundaries.
"""

from typing import Any, Dict, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class FederationException(Exception):
    """Base exception for the federation engine."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details,
        )


class Unauthorized(FederationException):
    """Bad, expired or malformed bearer token, or no verification key available."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized", details: Optional[Dict[str, Any]] = None):
        super().__init__("UNAUTHORIZED", message, details)


class NotConfigured(FederationException):
    """The identity provider is not set up."""

    status_code = 503

    def __init__(self, message: str = "Identity provider is not configured",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_CONFIGURED", message, details)


class RemoteUnavailable(FederationException):
    """Network failure or 5xx from the identity provider."""

    status_code = 502

    def __init__(self, message: str = "Identity provider unavailable",
                 status_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if status_code is not None:
            details["status_code"] = status_code
        self.remote_status = status_code
        super().__init__("REMOTE_UNAVAILABLE", message, details)


class NoLinkedAccount(FederationException):
    """The user has no provider credential."""

    status_code = 404

    def __init__(self, message: str = "No linked provider account",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__("NO_LINKED_ACCOUNT", message, details)


class ValidationFailed(FederationException):
    """Malformed email or missing required claim."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_FAILED", message, details)
