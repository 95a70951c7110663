"""
HTTP request execution for the Bitbucket API.

:class:`HTTPExecutor` sends one logical request: it builds the URL and
headers, asks the :class:`~bt.core.auth_manager.AuthManager` for the
Authorization header, and repeats the attempt according to a
:class:`~bt.core.retry.RetryPolicy`. Non-2xx responses and transport failures
come back as typed :class:`~bt.core.exceptions.BitbucketError` subclasses.
"""

import functools
import logging
import threading
import time
from typing import Any

import requests

from bt import __version__
from bt.core.cancellation import CancellationToken, run_until_cancelled
from bt.core.config import DEFAULT_BASE_URL
from bt.core.exceptions import NetworkError, ValidationError, classify_response, parse_retry_after
from bt.core.retry import RetryPolicy

logger = logging.getLogger(__name__)


class ExecutorStats:
    """Request counters shared by all threads using one executor."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.requests = 0
        self.retries = 0
        self.failures = 0

    def record_request(self) -> None:
        with self._lock:
            self.requests += 1

    def record_retry(self) -> None:
        with self._lock:
            self.retries += 1

    def record_failure(self) -> None:
        with self._lock:
            self.failures += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {"requests": self.requests, "retries": self.retries, "failures": self.failures}


class HTTPExecutor:
    """Sends authenticated requests with retries, timeouts and cancellation."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        auth_manager=None,
        session: requests.Session | None = None,
        timeout: float = 30,
        retry_policy: RetryPolicy | None = None,
        user_agent: str | None = None,
    ) -> None:
        """
        Initialize the executor.

        Args:
            base_url: Base URL that relative paths are joined to
            auth_manager: Supplies the Authorization header; None sends anonymous requests
            session: HTTP session, shared by all attempts
            timeout: Per-attempt timeout in seconds
            retry_policy: When and how long to retry. Defaults to RetryPolicy()
            user_agent: User-Agent header value
        """
        self.base_url = base_url.rstrip("/")
        self.auth_manager = auth_manager
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.user_agent = user_agent or f"bt/{__version__}"
        self.stats = ExecutorStats()

    def build_url(self, path: str) -> str:
        """Join ``path`` to the base URL. Absolute URLs are used as they are."""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def _build_headers(self, has_body: bool, extra: dict[str, str] | None) -> dict[str, str]:
        headers = {
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }
        if has_body:
            headers["Content-Type"] = "application/json"
        if extra:
            headers.update(extra)
        return headers

    def _attempt_timeout(self, token: CancellationToken) -> float:
        remaining = token.remaining()
        if remaining is None:
            return self.timeout
        return min(self.timeout, remaining)

    def execute(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        token: CancellationToken | None = None,
    ) -> requests.Response:
        """
        Execute an API request.

        Args:
            method: HTTP method
            path: Path relative to the base URL, or an absolute URL
            body: JSON-serializable request body
            params: Query parameters
            headers: Additional headers
            token: Cancellation token bounding the whole call, retries included

        Returns:
            The successful (2xx) response

        Raises:
            ValidationError: If the path is empty
            RequestCancelledError: If the token fired before a response was accepted
            BitbucketError: For any non-2xx response or transport failure
        """
        if not path or not path.strip():
            raise ValidationError("Request path must not be empty")

        method = method.upper()
        url = self.build_url(path)
        token = token or CancellationToken.background()
        policy = self.retry_policy
        started = time.monotonic()
        attempt = 0

        while True:
            token.raise_if_cancelled()

            request_headers = self._build_headers(body is not None, headers)
            if self.auth_manager is not None:
                self.auth_manager.prepare_request(request_headers, token)
                # A refresh can block; nothing may be sent once the caller has given up
                token.raise_if_cancelled()

            self.stats.record_request()
            logger.debug("%s %s (attempt %d)", method, url, attempt + 1)
            request_kwargs = {
                "method": method,
                "url": url,
                "params": params,
                "json": body,
                "headers": request_headers,
                "timeout": self._attempt_timeout(token),
            }
            try:
                response = run_until_cancelled(
                    token,
                    functools.partial(self._send, token, request_kwargs),
                    discard=requests.Response.close,
                )
            except requests.exceptions.RequestException as e:
                if token.cancelled:
                    raise token.error() from e
                if policy.is_retryable_exception(method, e):
                    delay = policy.delay_for(attempt)
                    if self._can_retry(attempt, delay, started, token):
                        self._backoff(method, url, attempt, delay, str(e), token)
                        attempt += 1
                        continue
                self.stats.record_failure()
                raise NetworkError(f"Failed to connect to Bitbucket API: {e}", attempts=attempt + 1) from e

            if token.cancelled:
                # Too late: the caller has already given up on this request
                response.close()
                raise token.error()

            logger.debug("%s %s -> %d", method, url, response.status_code)
            if response.ok:
                return response

            if policy.is_retryable_status(method, response.status_code):
                delay = policy.delay_for(attempt, parse_retry_after(response.headers.get("Retry-After")))
                if self._can_retry(attempt, delay, started, token):
                    response.close()
                    self._backoff(method, url, attempt, delay, f"HTTP {response.status_code}", token)
                    attempt += 1
                    continue

            self.stats.record_failure()
            error = classify_response(response, attempts=attempt + 1)
            if response.status_code == 401 and self.auth_manager is not None:
                self.auth_manager.invalidate("Bitbucket rejected the credentials")
            raise error

    def _send(self, token: CancellationToken, request_kwargs: dict[str, Any]) -> requests.Response:
        """Send one attempt and read its body; cancelling the token closes the response."""
        response = self.session.request(stream=True, **request_kwargs)
        remove = token.on_cancel(response.close)
        try:
            response.content  # noqa: B018
        finally:
            remove()
        return response

    def _can_retry(self, attempt: int, delay: float, started: float, token: CancellationToken) -> bool:
        policy = self.retry_policy
        if not policy.can_retry(attempt):
            return False
        remaining = token.remaining()
        if remaining is not None and delay > remaining:
            logger.debug("Retry delay of %.1fs exceeds the caller's deadline", delay)
            return False
        if policy.max_elapsed is not None and time.monotonic() - started + delay > policy.max_elapsed:
            logger.debug("Retry budget of %.0fs exhausted", policy.max_elapsed)
            return False
        return True

    def _backoff(
        self,
        method: str,
        url: str,
        attempt: int,
        delay: float,
        cause: str,
        token: CancellationToken,
    ) -> None:
        self.stats.record_retry()
        logger.warning(
            "Retrying %s %s in %.1fs after %s (retry %d of %d)",
            method,
            url,
            delay,
            cause,
            attempt + 1,
            self.retry_policy.max_retries,
        )
        self.retry_policy.sleep(delay, token)
        token.raise_if_cancelled()

    def close(self) -> None:
        self.session.close()
