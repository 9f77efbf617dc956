"""
Salesforce-specific exceptions for error handling.

Every failure that leaves the transport is classified exactly once into one
of these types. The retry policy only looks at ``retryable``; everything else
is propagated to the caller untouched.
"""

from enum import Enum
from typing import Optional, Dict, Any, List


RETRYABLE_STATUS_CODES = frozenset({500, 502, 503, 504})


class ErrorKind(str, Enum):
    """Classification of a failed Salesforce call."""

    HTTP = "http"
    RATE_LIMITED = "rate_limited"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    NOT_FOUND = "not_found"
    PRECONDITION_FAILED = "precondition_failed"
    TIMEOUT = "timeout"
    CONNECTION = "connection"
    SERIALIZATION = "serialization"
    BUSINESS_LOGIC = "business_logic"
    VALIDATION = "validation"
    JOB_STATE = "job_state"
    RETRIES_EXHAUSTED = "retries_exhausted"
    WAIT_TIMEOUT = "wait_timeout"


class SalesforceError(Exception):
    """Base exception for Salesforce API errors."""

    kind = ErrorKind.HTTP

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        response: Optional[Any] = None,
        fields: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.response = response if response is not None else {}
        self.fields = fields or []

    @property
    def retryable(self) -> bool:
        return False

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(message={self.message!r}, "
            f"status_code={self.status_code}, kind={self.kind.value})"
        )


class SalesforceHTTPError(SalesforceError):
    """Raised for non-2xx responses without a more specific classification."""

    kind = ErrorKind.HTTP

    @property
    def retryable(self) -> bool:
        return self.status_code in RETRYABLE_STATUS_CODES


class SalesforceRateLimitError(SalesforceError):
    """Raised when API rate limit is exceeded (429)."""

    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str = "Rate limit exceeded - please retry after a delay",
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, status_code=429, **kwargs)
        self.retry_after = retry_after

    @property
    def retryable(self) -> bool:
        return True


class SalesforceAuthenticationError(SalesforceError):
    """Raised when the bearer token is rejected (401)."""

    kind = ErrorKind.AUTHENTICATION

    def __init__(
        self,
        message: str = "Authentication failed - access token may be invalid or expired",
        **kwargs,
    ):
        super().__init__(message, status_code=401, **kwargs)


class SalesforceAuthorizationError(SalesforceError):
    """Raised when the authenticated user lacks permission (403)."""

    kind = ErrorKind.AUTHORIZATION

    def __init__(
        self,
        message: str = "Authorization failed - user may lack required permissions",
        **kwargs,
    ):
        super().__init__(message, status_code=403, **kwargs)


class SalesforceNotFoundError(SalesforceError):
    """Raised when a requested resource is not found (404)."""

    kind = ErrorKind.NOT_FOUND

    def __init__(
        self,
        message: str = "Resource not found",
        **kwargs,
    ):
        super().__init__(message, status_code=404, **kwargs)


class SalesforcePreconditionFailedError(SalesforceError):
    """Raised when a conditional request precondition does not hold (412)."""

    kind = ErrorKind.PRECONDITION_FAILED

    def __init__(
        self,
        message: str = "Precondition failed - resource was modified",
        **kwargs,
    ):
        super().__init__(message, status_code=412, **kwargs)


class SalesforceTimeoutError(SalesforceError):
    """Raised when a request times out."""

    kind = ErrorKind.TIMEOUT

    def __init__(
        self,
        message: str = "Request timed out",
        **kwargs,
    ):
        super().__init__(message, **kwargs)

    @property
    def retryable(self) -> bool:
        return True


class SalesforceConnectionError(SalesforceError):
    """Raised when network/connection errors occur."""

    kind = ErrorKind.CONNECTION

    def __init__(
        self,
        message: str = "Connection error - unable to reach Salesforce",
        **kwargs,
    ):
        super().__init__(message, **kwargs)

    @property
    def retryable(self) -> bool:
        return True


class SalesforceSerializationError(SalesforceError):
    """Raised when a response body cannot be decoded or holds unknown values."""

    kind = ErrorKind.SERIALIZATION


class SalesforceBusinessLogicError(SalesforceError):
    """Raised when Salesforce reports a semantic error (errorCode payload)."""

    kind = ErrorKind.BUSINESS_LOGIC


class SalesforceValidationError(SalesforceError):
    """Raised for invalid caller input, before anything is sent."""

    kind = ErrorKind.VALIDATION


class RetriesExhaustedError(SalesforceError):
    """Raised when the retry budget for one call is spent."""

    kind = ErrorKind.RETRIES_EXHAUSTED

    def __init__(
        self,
        attempts: int,
        last_error: SalesforceError,
        message: Optional[str] = None,
    ):
        super().__init__(
            message or f"All {attempts} attempts exhausted: {last_error.message}",
            status_code=last_error.status_code,
            code=last_error.code,
        )
        self.attempts = attempts
        self.last_error = last_error


def parse_error_payload(body: Any) -> Optional[Dict[str, Any]]:
    """
    Extract the first Salesforce error entry from a decoded error body.

    Salesforce reports errors either as a list of
    ``{"errorCode", "message", "fields"}`` objects or as a single object.

    Returns:
        Dict with ``errorCode``, ``message`` and ``fields`` or None
    """
    if isinstance(body, list):
        body = body[0] if body else None
    if not isinstance(body, dict):
        return None

    error_code = body.get("errorCode") or body.get("error_code")
    if not error_code:
        return None

    return {
        "errorCode": str(error_code),
        "message": str(body.get("message", "")),
        "fields": list(body.get("fields") or []),
    }
