"""
Tests for the error taxonomy and response classification.
"""

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from bt.core.exceptions import (
    AuthenticationError,
    BitbucketError,
    ConfigurationError,
    CredentialNotFoundError,
    ErrorType,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    RequestCancelledError,
    ServerError,
    UnknownAPIError,
    categorize_status,
    classify_response,
    parse_retry_after,
)


class TestCategorizeStatus:
    """The status mapping does not depend on the endpoint."""

    @pytest.mark.parametrize(
        "status_code, expected",
        [
            (404, ErrorType.NOT_FOUND),
            (401, ErrorType.AUTHENTICATION),
            (403, ErrorType.PERMISSION),
            (429, ErrorType.RATE_LIMIT),
            (500, ErrorType.SERVER),
            (503, ErrorType.SERVER),
            (400, ErrorType.UNKNOWN),
            (409, ErrorType.UNKNOWN),
            (302, ErrorType.UNKNOWN),
        ],
    )
    def test_mapping(self, status_code, expected):
        assert categorize_status(status_code) is expected


class TestClassifyResponse:
    """Test cases for building errors from responses."""

    def test_bitbucket_error_body(self, make_response):
        response = make_response(
            404,
            {"type": "error", "error": {"message": "Repository ghost/ghost not found", "detail": "gone"}},
            headers={"X-Request-Id": "abc123"},
        )

        error = classify_response(response)

        assert isinstance(error, NotFoundError)
        assert error.error_type is ErrorType.NOT_FOUND
        assert error.status_code == 404
        assert error.message == "Repository ghost/ghost not found"
        assert error.detail == "gone"
        assert error.request_id == "abc123"
        assert error.exit_code == 5

    def test_oauth_error_body(self, make_response):
        response = make_response(400, {"error": "invalid_grant", "error_description": "Refresh token expired"})

        error = classify_response(response)

        assert isinstance(error, UnknownAPIError)
        assert error.message == "Refresh token expired"
        assert error.detail == "invalid_grant"

    def test_non_json_body_uses_generic_message(self, make_response):
        response = make_response(502, text="<html>upstream gone</html>")

        error = classify_response(response, attempts=4)

        assert isinstance(error, ServerError)
        assert error.message == "Bad gateway"
        assert error.detail == "<html>upstream gone</html>"
        assert error.attempts == 4

    def test_empty_body(self, make_response):
        error = classify_response(make_response(403))

        assert isinstance(error, PermissionDeniedError)
        assert error.message == "Permission denied"
        assert error.detail == "Forbidden"

    def test_rate_limit_with_retry_after(self, make_response):
        response = make_response(429, {"error": {"message": "Too many requests"}}, headers={"Retry-After": "30"})

        error = classify_response(response)

        assert isinstance(error, RateLimitError)
        assert error.retry_after == 30.0
        assert error.suggestion == "Wait 30 seconds before retrying"

    def test_rate_limit_without_retry_after(self, make_response):
        error = classify_response(make_response(429))

        assert isinstance(error, RateLimitError)
        assert error.retry_after is None
        assert error.suggestion is None

    def test_unauthorized(self, make_response):
        error = classify_response(make_response(401, {"error": {"message": "Invalid credentials"}}))

        assert isinstance(error, AuthenticationError)
        assert error.suggestion == "Run 'bt auth login' to authenticate again"
        assert error.exit_code == 2


class TestParseRetryAfter:
    """Test cases for Retry-After parsing."""

    def test_delta_seconds(self):
        assert parse_retry_after("12") == 12.0

    def test_http_date(self):
        when = datetime.now(timezone.utc) + timedelta(seconds=120)

        delay = parse_retry_after(format_datetime(when, usegmt=True))

        assert 100 <= delay <= 121

    @pytest.mark.parametrize("value", [None, "", "soon", "-5"])
    def test_unparseable(self, value):
        assert parse_retry_after(value) is None


class TestErrorRendering:
    """Test cases for error messages and attributes."""

    def test_str_includes_type_status_and_attempts(self):
        error = ServerError("Service unavailable", status_code=503, attempts=4)

        assert str(error) == "server: Service unavailable (HTTP 503) after 4 attempts"

    def test_str_with_detail(self):
        error = NotFoundError("Resource not found", status_code=404, detail="no such repo")

        assert str(error) == "not_found: Resource not found (no such repo) (HTTP 404)"

    def test_error_type_override(self):
        error = BitbucketError("odd", error_type=ErrorType.VALIDATION)

        assert error.error_type is ErrorType.VALIDATION
        assert BitbucketError("plain").error_type is ErrorType.UNKNOWN

    def test_retryable_kinds(self):
        assert ServerError("x").is_retryable
        assert NetworkError("x").is_retryable
        assert RateLimitError("x").is_retryable
        assert not NotFoundError("x").is_retryable
        assert not AuthenticationError("x").is_retryable

    def test_credential_not_found_is_not_found(self):
        error = CredentialNotFoundError("No stored credentials found")

        assert isinstance(error, NotFoundError)
        assert error.error_type is ErrorType.NOT_FOUND
        assert error.exit_code == 2

    def test_configuration_error(self):
        error = ConfigurationError("bad config", suggestion="fix it")

        assert error.exit_code == 6
        assert str(error) == "bad config"

    def test_request_cancelled(self):
        error = RequestCancelledError("context deadline exceeded")

        assert "context deadline exceeded" in str(error)
        assert error.reason == "context deadline exceeded"
