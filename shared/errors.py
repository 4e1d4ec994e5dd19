"""
Shared error handling for the metrics relay.
"""

from typing import Optional
from pydantic import BaseModel

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str


class RelayError(Exception):
    """Base exception for relay errors."""

    status_code: int = 500

    def __init__(self, code: str, message: str, status_code: Optional[int] = None):
        self.code = code
        self.message = message
        if status_code is not None:
            self.status_code = status_code
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
        )


class ConfigError(RelayError):
    """Unreadable or malformed settings or credential source. Fatal at startup."""

    def __init__(self, message: str = "Invalid configuration"):
        super().__init__("CONFIG_ERROR", message, 500)


class AuthorizationError(RelayError):
    """Missing, malformed or unknown bearer token."""

    def __init__(self, reason: str = "unknown"):
        # reason is for logs and metrics only, never the response body
        self.reason = reason
        super().__init__("AUTHORIZATION_ERROR", "Unauthorized", 401)


class PayloadTooLargeError(RelayError):
    """Request body above the configured cap."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__("PAYLOAD_TOO_LARGE", "Payload too large", 413)


class RequestTimeoutError(RelayError):
    """Request/response cycle exceeded the pipeline timeout."""

    def __init__(self):
        super().__init__("REQUEST_TIMEOUT", "Request timeout", 408)


class GatewayError(RelayError):
    """Upstream unreachable or inbound body could not be read."""

    def __init__(self, reason: str = "transport"):
        self.reason = reason
        super().__init__("BAD_GATEWAY", "Bad gateway", 502)


class PushCycleError(RelayError):
    """A single metrics push tick failed."""

    def __init__(self, message: str = "Metrics push failed"):
        super().__init__("PUSH_CYCLE_ERROR", message, 500)
