"""
Shared error handling for the NDC distribution gateway.

Every failure that crosses a layer boundary is an ``NdcGatewayException``
tagged with an ``ErrorKind``. Retry and breaker decisions are pure
functions of that tag (and of the HTTP status for ``HTTP_STATUS``).
"""

from enum import Enum
from typing import Dict, Any, List, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    BREAKER_OPEN = "breaker_open"
    AUTHENTICATION_FAILED = "authentication_failed"
    PROVIDER_BUSINESS = "provider_business"
    CANCELLED = "cancelled"
    VALIDATION = "validation"
    INTERNAL = "internal"


ERROR_CODES: Dict[ErrorKind, str] = {
    ErrorKind.NETWORK: "NDC_CONNECTION_ERROR",
    ErrorKind.TIMEOUT: "NDC_TIMEOUT",
    ErrorKind.HTTP_STATUS: "NDC_HTTP_ERROR",
    ErrorKind.BREAKER_OPEN: "CIRCUIT_OPEN",
    ErrorKind.AUTHENTICATION_FAILED: "NDC_AUTH_FAILED",
    ErrorKind.PROVIDER_BUSINESS: "NDC_ERROR",
    ErrorKind.CANCELLED: "CANCELLED",
    ErrorKind.VALIDATION: "VALIDATION_ERROR",
    ErrorKind.INTERNAL: "INTERNAL_ERROR",
}

# HTTP status a service answers with per error code; anything else is a bad gateway
HTTP_STATUS_BY_CODE: Dict[str, int] = {
    ERROR_CODES[ErrorKind.AUTHENTICATION_FAILED]: 401,
    ERROR_CODES[ErrorKind.VALIDATION]: 422,
    ERROR_CODES[ErrorKind.PROVIDER_BUSINESS]: 422,
    ERROR_CODES[ErrorKind.BREAKER_OPEN]: 503,
    ERROR_CODES[ErrorKind.TIMEOUT]: 504,
    ERROR_CODES[ErrorKind.CANCELLED]: 504,
    ERROR_CODES[ErrorKind.INTERNAL]: 500,
}


def http_status_for(code: str) -> int:
    return HTTP_STATUS_BY_CODE.get(code, 502)


class ProviderError(BaseModel):
    """A single error or warning reported by the provider in a response body."""

    code: Optional[str] = None
    message: str
    type: Optional[str] = None
    owner: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error payload carried by result envelopes."""

    trace_id: Optional[str] = None
    kind: ErrorKind
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    provider_errors: List[ProviderError] = Field(default_factory=list)
    retryable: bool = False


class NdcGatewayException(Exception):
    """Base exception for gateway failures."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self,
                 message: str,
                 details: Optional[Dict[str, Any]] = None,
                 provider_errors: Optional[List[ProviderError]] = None,
                 retryable: Optional[bool] = None):
        self.code = ERROR_CODES[self.kind]
        self.message = message
        self.details = details or {}
        self.provider_errors = list(provider_errors or [])
        self.retryable = is_retryable(self) if retryable is None else retryable
        super().__init__(message)

    def mark_exhausted(self, attempts: List[Dict[str, Any]]) -> "NdcGatewayException":
        """Flag the error as final after a retry sequence gave up."""
        self.details["attempts"] = attempts
        self.details["exhausted"] = True
        self.retryable = False
        return self

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
            kind=self.kind,
            code=self.code,
            message=self.message,
            details=self.details,
            provider_errors=self.provider_errors,
            retryable=self.retryable
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class NetworkError(NdcGatewayException):
    """Connection-level failure before a response was received."""
    kind = ErrorKind.NETWORK


class RequestTimeoutError(NdcGatewayException):
    """A single attempt exceeded its timeout."""
    kind = ErrorKind.TIMEOUT

    def __init__(self, url: str, timeout: float, details: Optional[Dict[str, Any]] = None):
        self.url = url
        self.timeout = timeout
        super().__init__(
            f"Request to {url} timed out after {timeout:g}s",
            details={"url": url, "timeout_seconds": timeout, **(details or {})}
        )


class HttpStatusError(NdcGatewayException):
    """The provider answered with a non-success HTTP status."""
    kind = ErrorKind.HTTP_STATUS

    def __init__(self, status_code: int, message: Optional[str] = None,
                 body: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        self.body = body
        merged = {"status_code": status_code, **(details or {})}
        if body:
            merged["body_excerpt"] = body[:500]
        super().__init__(message or f"Provider returned HTTP {status_code}", details=merged)


class BreakerOpenError(NdcGatewayException):
    """The circuit breaker for a dependency is open; no attempt was made."""
    kind = ErrorKind.BREAKER_OPEN

    def __init__(self, breaker_key: str, remaining_seconds: float = 0.0):
        self.breaker_key = breaker_key
        self.remaining_seconds = remaining_seconds
        super().__init__(
            f"Circuit breaker '{breaker_key}' is open",
            details={"breaker_key": breaker_key,
                     "retry_after_seconds": round(max(0.0, remaining_seconds), 3)}
        )


class AuthenticationFailed(NdcGatewayException):
    """Credential exchange was rejected. Never retried automatically."""
    kind = ErrorKind.AUTHENTICATION_FAILED


class ProviderBusinessError(NdcGatewayException):
    """A well-formed provider response carrying a domain-level rejection."""
    kind = ErrorKind.PROVIDER_BUSINESS

    def __init__(self, provider_errors: List[ProviderError], message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        if message is None:
            message = provider_errors[0].message if provider_errors else "Provider rejected the request"
        super().__init__(message, details=details, provider_errors=provider_errors)


class CallCancelledError(NdcGatewayException):
    """The call was abandoned by its caller or ran out of its deadline."""
    kind = ErrorKind.CANCELLED

    def __init__(self, message: str = "Call cancelled", reason: str = "cancelled"):
        self.reason = reason
        super().__init__(message, details={"reason": reason})


class RequestValidationError(NdcGatewayException):
    """The caller supplied an unusable request."""
    kind = ErrorKind.VALIDATION


class InternalError(NdcGatewayException):
    """Unexpected failure inside the gateway."""
    kind = ErrorKind.INTERNAL


def is_retryable(error: BaseException) -> bool:
    """Default classifier: whether re-attempting could plausibly succeed."""
    if not isinstance(error, NdcGatewayException):
        return False
    if error.kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT):
        return True
    if error.kind == ErrorKind.HTTP_STATUS:
        return getattr(error, "status_code", None) in RETRYABLE_STATUS_CODES
    # open breakers are retryable by the caller later, never inside a retry loop
    return error.kind == ErrorKind.BREAKER_OPEN


def is_dependency_failure(error: BaseException) -> bool:
    """Whether an outcome indicates the dependency itself is unhealthy."""
    if not isinstance(error, NdcGatewayException):
        return True
    if error.kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT):
        return True
    if error.kind == ErrorKind.HTTP_STATUS:
        status_code = getattr(error, "status_code", 0)
        return status_code >= 500 or status_code in (408, 429)
    return False


def wrap_unexpected(error: BaseException) -> NdcGatewayException:
    """Coerce any exception into the gateway taxonomy."""
    if isinstance(error, NdcGatewayException):
        return error
    return InternalError(
        f"Unexpected error: {error}",
        details={"exception_type": type(error).__name__}
    )
