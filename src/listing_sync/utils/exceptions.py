"""
Custom exceptions for the listing sync engine.

Every failure the engine reports carries an ``ErrorType`` so callers can tell
terminal connection-level failures (``AUTH_REVOKED``) from entity-level or
transient ones that are accumulated into a run's ``errors`` list.
"""

import enum
from typing import Optional, Dict, Any


class ErrorType(str, enum.Enum):
    """Error taxonomy shared by the fetch client, services and result payloads."""
    AUTH_REVOKED = "AUTH_REVOKED"
    POLICY_BLOCKED = "POLICY_BLOCKED"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    RATE_LIMIT = "RATE_LIMIT"
    SERVER_ERROR = "SERVER_ERROR"
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    NOT_FOUND = "NOT_FOUND"
    CLIENT_ERROR = "CLIENT_ERROR"
    VALIDATION = "VALIDATION"


class ListingSyncError(Exception):
    """Base exception for all listing sync errors."""

    error_type: ErrorType = ErrorType.CLIENT_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception with message and optional details.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(ListingSyncError):
    """Raised when configuration is invalid or missing."""
    pass


class ValidationError(ListingSyncError):
    """Raised when caller input is rejected before any network call."""

    error_type = ErrorType.VALIDATION

    def __init__(self, message: str, field: Optional[str] = None,
                 value: Optional[Any] = None, expected_type: Optional[str] = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(message, details)
        self.field = field
        self.value = value
        self.expected_type = expected_type


class APIError(ListingSyncError):
    """Base class for marketplace API errors."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_data: Optional[Any] = None,
                 endpoint: Optional[str] = None,
                 error_type: Optional[ErrorType] = None,
                 error_code: Optional[str] = None):
        """
        Initialize API error.

        Args:
            message: Error message
            status_code: HTTP status code
            response_data: Decoded response body, if any
            endpoint: API endpoint that failed
            error_type: Taxonomy class, defaults to the subclass value
            error_code: Provider error code from the body (e.g. ``PA_...``)
        """
        details = {}
        if status_code:
            details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        if error_code:
            details["error_code"] = error_code

        super().__init__(message, details)
        self.status_code = status_code
        self.response_data = response_data
        self.endpoint = endpoint
        self.error_code = error_code
        if error_type is not None:
            self.error_type = error_type


class AuthenticationError(APIError):
    """Access token rejected (HTTP 401)."""
    error_type = ErrorType.UNAUTHORIZED


class ForbiddenError(APIError):
    """Generic auth-type forbidden (HTTP 403 without a policy code)."""
    error_type = ErrorType.FORBIDDEN


class PolicyBlockedError(APIError):
    """Provider policy denial for a specific resource; entity-level, non-terminal."""
    error_type = ErrorType.POLICY_BLOCKED


class NotFoundError(APIError):
    error_type = ErrorType.NOT_FOUND


class RateLimitError(APIError):
    """Raised when the provider answers 429."""

    error_type = ErrorType.RATE_LIMIT

    def __init__(self, message: str, retry_after: Optional[int] = None, **kwargs):
        super().__init__(message, status_code=kwargs.pop("status_code", 429), **kwargs)
        self.retry_after = retry_after
        if retry_after:
            self.details["retry_after"] = retry_after


class ServerError(APIError):
    error_type = ErrorType.SERVER_ERROR


class RequestTimeoutError(APIError):
    error_type = ErrorType.TIMEOUT


class NetworkError(APIError):
    error_type = ErrorType.NETWORK


class AuthRevokedError(ListingSyncError):
    """
    Terminal connection-level failure: the refresh grant is gone or rejected.

    Aborts the tenant run; callers surface it as "reconnect required".
    """

    error_type = ErrorType.AUTH_REVOKED

    def __init__(self, message: str, connection_id: Optional[Any] = None,
                 status_code: Optional[int] = None):
        details = {}
        if connection_id:
            details["connection_id"] = str(connection_id)
        if status_code:
            details["status_code"] = status_code
        super().__init__(message, details)
        self.connection_id = connection_id
        self.status_code = status_code


class NoActiveConnectionError(ListingSyncError):
    """Raised when a tenant has no active marketplace connection."""

    error_type = ErrorType.AUTH_REVOKED

    def __init__(self, tenant_id: Any):
        super().__init__(
            "No active marketplace connection for tenant",
            {"tenant_id": str(tenant_id)}
        )
        self.tenant_id = tenant_id


class SyncCancelledError(ListingSyncError):
    """Raised when a run's deadline has passed."""

    error_type = ErrorType.TIMEOUT


def is_policy_block_payload(payload: Any) -> bool:
    """
    Check whether a decoded error body describes a provider policy denial.

    The provider signals these with ``blocked_by: "PolicyAgent"`` and/or a
    ``PA_*`` error code such as ``PA_UNAUTHORIZED_RESULT_FROM_POLICIES``.
    """
    if not isinstance(payload, dict):
        return False

    if payload.get("blocked_by") == "PolicyAgent":
        return True

    code = payload.get("code")
    if isinstance(code, str):
        upper = code.upper()
        return upper.startswith("PA_") or "POLICY" in upper

    return False


def is_discovery_blocked_error(error: Optional[BaseException]) -> bool:
    """Check whether a discovery failure means the search channel is blocked."""
    if error is None:
        return False
    if isinstance(error, PolicyBlockedError):
        return True
    message = str(error)
    return "403" in message or "PolicyAgent" in message


def classify_status_code(status_code: Optional[int], payload: Any = None) -> ErrorType:
    """Taxonomy class for a non-success HTTP status (and decoded body)."""
    if is_policy_block_payload(payload):
        return ErrorType.POLICY_BLOCKED
    if status_code == 401:
        return ErrorType.UNAUTHORIZED
    if status_code == 403:
        return ErrorType.FORBIDDEN
    if status_code == 404:
        return ErrorType.NOT_FOUND
    if status_code == 429:
        return ErrorType.RATE_LIMIT
    if status_code is not None and status_code >= 500:
        return ErrorType.SERVER_ERROR
    return ErrorType.CLIENT_ERROR


def handle_api_error(response, endpoint: str) -> None:
    """
    Handle API error responses and raise the matching exception.

    Args:
        response: HTTP response object
        endpoint: API endpoint that was called

    Raises:
        Appropriate APIError subclass based on response status and body.
    """
    status_code = getattr(response, 'status_code', None)

    try:
        response_data = response.json()
    except ValueError:
        response_data = None

    error_code = None
    provider_message = None
    if isinstance(response_data, dict):
        error_code = response_data.get("code") or response_data.get("error")
        provider_message = response_data.get("message")

    common = {
        "status_code": status_code,
        "response_data": response_data,
        "endpoint": endpoint,
        "error_code": error_code,
    }

    error_type = classify_status_code(status_code, response_data)

    if error_type is ErrorType.POLICY_BLOCKED:
        raise PolicyBlockedError(
            f"{status_code} blocked by PolicyAgent: {provider_message or error_code}", **common
        )
    elif error_type is ErrorType.UNAUTHORIZED:
        raise AuthenticationError(provider_message or "Access token rejected", **common)
    elif error_type is ErrorType.FORBIDDEN:
        raise ForbiddenError(f"403 forbidden: {provider_message or error_code}", **common)
    elif error_type is ErrorType.NOT_FOUND:
        raise NotFoundError(provider_message or "Resource not found", **common)
    elif error_type is ErrorType.RATE_LIMIT:
        headers = getattr(response, 'headers', None) or {}
        retry_after = headers.get('Retry-After')
        try:
            retry_after = int(retry_after) if retry_after else None
        except ValueError:
            retry_after = None
        common.pop("status_code")
        raise RateLimitError("API rate limit exceeded", retry_after=retry_after, **common)
    elif error_type is ErrorType.SERVER_ERROR:
        raise ServerError(f"Server error: {status_code}", **common)
    else:
        raise APIError(f"API request failed: {status_code}", **common)
