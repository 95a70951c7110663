"""
Custom exceptions for bt.

This module defines the error taxonomy returned by the client core. Every
failure of an API call is a :class:`BitbucketError` whose ``error_type`` is
derived from the HTTP status code alone, so callers can react to the kind of
failure without knowing which endpoint produced it.
"""

import json
from enum import Enum
from typing import Any

import requests
from urllib3.exceptions import InvalidHeader
from urllib3.util.retry import Retry


class ErrorType(str, Enum):
    """Classification of a Bitbucket API failure."""

    NOT_FOUND = "not_found"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    NETWORK = "network"
    SERVER = "server"
    UNKNOWN = "unknown"


class BTError(Exception):
    """Base exception for all bt errors."""

    def __init__(
        self,
        message: str,
        exit_code: int = 1,
        suggestion: str | None = None,
    ) -> None:
        """
        Initialize a bt error.

        Args:
            message: The error message to display to the user
            exit_code: The exit code to use when terminating the program
            suggestion: Optional suggestion for how to resolve the error
        """
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.suggestion = suggestion

    def __str__(self) -> str:
        return self.message


class BitbucketError(BTError):
    """Structured error produced by the Bitbucket API client."""

    error_type: ErrorType = ErrorType.UNKNOWN
    default_exit_code = 3
    default_suggestion: str | None = None

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        detail: str | None = None,
        retry_after: float | None = None,
        request_id: str | None = None,
        attempts: int = 1,
        response_data: Any = None,
        suggestion: str | None = None,
        error_type: ErrorType | None = None,
    ) -> None:
        """
        Initialize a Bitbucket error.

        Args:
            message: Human readable error message
            status_code: HTTP status code, or None when no response was received
            detail: Additional detail extracted from the response body
            retry_after: Seconds the server asked us to wait (rate limiting)
            request_id: Request identifier returned by the server
            attempts: Number of attempts performed before giving up
            response_data: Decoded response body, if any
            suggestion: Optional suggestion for resolution
            error_type: Override of the class level error type
        """
        if error_type is not None:
            self.error_type = error_type
        self.status_code = status_code
        self.detail = detail
        self.retry_after = retry_after
        self.request_id = request_id
        self.attempts = attempts
        self.response_data = response_data

        super().__init__(
            message,
            exit_code=self.default_exit_code,
            suggestion=suggestion if suggestion is not None else self.default_suggestion,
        )

    def __str__(self) -> str:
        text = f"{self.error_type.value}: {self.message}"
        if self.detail:
            text = f"{text} ({self.detail})"
        if self.status_code:
            text = f"{text} (HTTP {self.status_code})"
        if self.attempts > 1:
            text = f"{text} after {self.attempts} attempts"
        return text

    @property
    def is_retryable(self) -> bool:
        """Whether retrying the same request could succeed."""
        return self.error_type in (ErrorType.RATE_LIMIT, ErrorType.SERVER, ErrorType.NETWORK)


class NotFoundError(BitbucketError):
    """Raised when a requested resource does not exist (HTTP 404)."""

    error_type = ErrorType.NOT_FOUND
    default_exit_code = 5
    default_suggestion = "Check that the resource exists and you have permission to access it"


class AuthenticationError(BitbucketError):
    """Raised when credentials are missing, invalid or can no longer be refreshed."""

    error_type = ErrorType.AUTHENTICATION
    default_exit_code = 2
    default_suggestion = "Run 'bt auth login' to authenticate again"


class PermissionDeniedError(BitbucketError):
    """Raised when the user lacks permission for an operation (HTTP 403)."""

    error_type = ErrorType.PERMISSION
    default_exit_code = 7
    default_suggestion = "Check that your credentials have the required scopes for this operation"


class RateLimitError(BitbucketError):
    """Raised when the rate limit budget is exhausted (HTTP 429)."""

    error_type = ErrorType.RATE_LIMIT
    default_exit_code = 8

    def __init__(self, message: str, **kwargs: Any) -> None:
        retry_after = kwargs.get("retry_after")
        if retry_after is not None and kwargs.get("suggestion") is None:
            kwargs["suggestion"] = f"Wait {int(retry_after)} seconds before retrying"
        super().__init__(message, **kwargs)


class ValidationError(BitbucketError):
    """Raised when a request is rejected client-side before reaching the network."""

    error_type = ErrorType.VALIDATION
    default_exit_code = 4


class NetworkError(BitbucketError):
    """Raised when the API could not be reached."""

    error_type = ErrorType.NETWORK
    default_exit_code = 9
    default_suggestion = "Check your internet connection and try again"


class ServerError(BitbucketError):
    """Raised when Bitbucket answers with a 5xx status."""

    error_type = ErrorType.SERVER
    default_exit_code = 10
    default_suggestion = "Bitbucket is having trouble, try again later"


class UnknownAPIError(BitbucketError):
    """Raised for any other unexpected response."""

    error_type = ErrorType.UNKNOWN


class CredentialNotFoundError(NotFoundError):
    """Raised when no usable credential is stored."""

    default_exit_code = 2
    default_suggestion = "Run 'bt auth login' to set up authentication"


class ConfigurationError(BTError):
    """Raised when there's an issue with configuration."""

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
    ) -> None:
        super().__init__(message, exit_code=6, suggestion=suggestion)


class RequestCancelledError(BTError):
    """Raised when a request is abandoned because its cancellation token fired."""

    def __init__(self, reason: str = "context canceled") -> None:
        self.reason = reason
        super().__init__(f"request aborted: {reason}", exit_code=130)


_ERROR_CLASSES: dict[ErrorType, type[BitbucketError]] = {
    ErrorType.NOT_FOUND: NotFoundError,
    ErrorType.AUTHENTICATION: AuthenticationError,
    ErrorType.PERMISSION: PermissionDeniedError,
    ErrorType.RATE_LIMIT: RateLimitError,
    ErrorType.VALIDATION: ValidationError,
    ErrorType.NETWORK: NetworkError,
    ErrorType.SERVER: ServerError,
    ErrorType.UNKNOWN: UnknownAPIError,
}

_GENERIC_MESSAGES = {
    400: "Bad request",
    401: "Authentication required",
    403: "Permission denied",
    404: "Resource not found",
    409: "Conflict",
    422: "Unprocessable request",
    429: "Rate limit exceeded",
    500: "Internal server error",
    502: "Bad gateway",
    503: "Service unavailable",
    504: "Gateway timeout",
}

_REQUEST_ID_HEADERS = ("X-Request-Id", "X-Request-ID", "Request-Id", "Request-ID")


def categorize_status(status_code: int) -> ErrorType:
    """
    Map an HTTP status code to an error type.

    The mapping is independent of the endpoint that was called.
    """
    if status_code == 404:
        return ErrorType.NOT_FOUND
    if status_code == 401:
        return ErrorType.AUTHENTICATION
    if status_code == 403:
        return ErrorType.PERMISSION
    if status_code == 429:
        return ErrorType.RATE_LIMIT
    if 500 <= status_code < 600:
        return ErrorType.SERVER
    return ErrorType.UNKNOWN


def generic_message(status_code: int) -> str:
    """Return a user friendly message for an HTTP status code."""
    return _GENERIC_MESSAGES.get(status_code, f"HTTP {status_code} error")


def parse_retry_after(value: str | None) -> float | None:
    """
    Parse a Retry-After header value.

    Both delta-seconds and HTTP-date forms are accepted. Unparseable values
    yield None.
    """
    if not value:
        return None
    try:
        return float(Retry().parse_retry_after(value))
    except InvalidHeader:
        return None


def _request_id(response: requests.Response) -> str | None:
    for header in _REQUEST_ID_HEADERS:
        request_id = response.headers.get(header)
        if request_id:
            return request_id
    return None


def _extract_message(response: requests.Response) -> tuple[str, str | None, Any]:
    """Pull a message and detail out of an error body, falling back to a generic message."""
    status_code = response.status_code
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"], error.get("detail"), data
        if isinstance(error, str) and data.get("error_description"):
            return data["error_description"], error, data
        if isinstance(data.get("message"), str) and data["message"]:
            return data["message"], None, data

    text = (response.text or "").strip() if data is None else json.dumps(data)
    detail = text[:500] if text else (response.reason or None)
    return generic_message(status_code), detail, data


def error_for_type(error_type: ErrorType) -> type[BitbucketError]:
    """Return the exception class used for an error type."""
    return _ERROR_CLASSES[error_type]


def classify_response(response: requests.Response, attempts: int = 1) -> BitbucketError:
    """
    Build a typed error from a non-2xx response.

    Args:
        response: The failed HTTP response
        attempts: Number of attempts performed for this request

    Returns:
        The BitbucketError subclass matching the response status
    """
    error_type = categorize_status(response.status_code)
    message, detail, data = _extract_message(response)
    retry_after = None
    if error_type is ErrorType.RATE_LIMIT:
        retry_after = parse_retry_after(response.headers.get("Retry-After"))

    return error_for_type(error_type)(
        message,
        status_code=response.status_code,
        detail=detail,
        retry_after=retry_after,
        request_id=_request_id(response),
        attempts=attempts,
        response_data=data,
    )
