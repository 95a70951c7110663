"""
Bitbucket API client for bt.

:class:`BitbucketClient` is the surface that command implementations use. It
combines an :class:`~bt.core.auth_manager.AuthManager`, an
:class:`~bt.core.executor.HTTPExecutor` and :class:`~bt.core.pagination.Paginator`
behind a handful of verb methods.
"""

import logging
from collections.abc import Iterator
from typing import Any

import requests

from bt.core.auth_manager import AuthManager
from bt.core.cancellation import CancellationToken
from bt.core.config import DEFAULT_BASE_URL, Config, get_config
from bt.core.decoding import decode_into
from bt.core.exceptions import UnknownAPIError
from bt.core.executor import HTTPExecutor
from bt.core.pagination import PageOptions, Paginator
from bt.core.retry import RetryPolicy

logger = logging.getLogger(__name__)


class BitbucketClient:
    """Client for interacting with the Bitbucket Cloud API."""

    def __init__(
        self,
        auth_manager: AuthManager | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        retry_policy: RetryPolicy | None = None,
        session: requests.Session | None = None,
    ) -> None:
        """
        Initialize the API client.

        Args:
            auth_manager: Source of the Authorization header. None sends anonymous requests.
            base_url: Base URL for the Bitbucket API. Defaults to the public API.
            timeout: Per-attempt timeout in seconds. Defaults to 30.
            retry_policy: Retry behaviour. Defaults to RetryPolicy().
            session: HTTP session to use for all requests
        """
        self.auth_manager = auth_manager
        self.executor = HTTPExecutor(
            base_url=base_url or DEFAULT_BASE_URL,
            auth_manager=auth_manager,
            session=session,
            timeout=timeout if timeout is not None else 30,
            retry_policy=retry_policy,
        )

    @property
    def base_url(self) -> str:
        return self.executor.base_url

    def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        token: CancellationToken | None = None,
    ) -> requests.Response:
        """Make an HTTP request and return the successful response."""
        return self.executor.execute(method, path, body=body, params=params, headers=headers, token=token)

    def get(
        self, path: str, params: dict[str, Any] | None = None, token: CancellationToken | None = None
    ) -> requests.Response:
        """Make a GET request."""
        return self.request("GET", path, params=params, token=token)

    def post(self, path: str, body: Any = None, token: CancellationToken | None = None) -> requests.Response:
        """Make a POST request."""
        return self.request("POST", path, body=body, token=token)

    def put(self, path: str, body: Any = None, token: CancellationToken | None = None) -> requests.Response:
        """Make a PUT request."""
        return self.request("PUT", path, body=body, token=token)

    def delete(self, path: str, token: CancellationToken | None = None) -> requests.Response:
        """Make a DELETE request."""
        return self.request("DELETE", path, token=token)

    @staticmethod
    def _decode(response: requests.Response, into: type | None) -> Any:
        if not response.content:
            return None
        try:
            data = response.json()
        except ValueError as e:
            raise UnknownAPIError("Failed to decode response body", status_code=response.status_code) from e
        if into is None:
            return data
        return decode_into(data, into)

    def get_json(
        self,
        path: str,
        into: type | None = None,
        params: dict[str, Any] | None = None,
        token: CancellationToken | None = None,
    ) -> Any:
        """
        GET ``path`` and decode the JSON body.

        Args:
            path: API path
            into: Optional type to decode into, via ``from_dict`` or keyword construction
            params: Query parameters
            token: Cancellation token

        Returns:
            The decoded body, or None for an empty body
        """
        return self._decode(self.get(path, params=params, token=token), into)

    def post_json(
        self, path: str, body: Any = None, into: type | None = None, token: CancellationToken | None = None
    ) -> Any:
        """POST ``body`` and decode the JSON response."""
        return self._decode(self.post(path, body=body, token=token), into)

    def put_json(
        self, path: str, body: Any = None, into: type | None = None, token: CancellationToken | None = None
    ) -> Any:
        """PUT ``body`` and decode the JSON response."""
        return self._decode(self.put(path, body=body, token=token), into)

    def paginate(
        self,
        path: str,
        options: PageOptions | None = None,
        params: dict[str, Any] | None = None,
    ) -> Paginator:
        """Return a paginator over a list endpoint."""
        return Paginator(self.executor, path, options=options, params=params)

    def iter_values(
        self,
        path: str,
        options: PageOptions | None = None,
        params: dict[str, Any] | None = None,
        token: CancellationToken | None = None,
        into: type | None = None,
    ) -> Iterator[Any]:
        """Yield every value of a list endpoint across pages, optionally decoded into ``into``."""
        return self.paginate(path, options=options, params=params).iter_values(token, into=into)

    def stats(self) -> dict[str, int]:
        """Request, retry and failure counts since the client was created."""
        return self.executor.stats.snapshot()

    def close(self) -> None:
        self.executor.close()


def create_client(config: Config | None = None, auth_manager: AuthManager | None = None) -> BitbucketClient:
    """Build a client from configuration."""
    config = config or get_config()
    session = requests.Session()
    if auth_manager is None:
        auth_manager = AuthManager.from_config(config, session=session)
    retry_policy = RetryPolicy(
        max_retries=config.get("api.max_retries", 3),
        max_elapsed=config.get("api.max_elapsed", 120),
    )
    return BitbucketClient(
        auth_manager=auth_manager,
        base_url=config.get("api.base_url", DEFAULT_BASE_URL),
        timeout=config.get("api.timeout", 30),
        retry_policy=retry_policy,
        session=session,
    )


# Global API client instance
_api_client_instance: BitbucketClient | None = None


def get_api_client() -> BitbucketClient:
    """Get the global API client instance."""
    global _api_client_instance
    if _api_client_instance is None:
        _api_client_instance = create_client()
    return _api_client_instance


def reset_api_client() -> None:
    """Drop the global client so the next call rebuilds it from configuration."""
    global _api_client_instance
    if _api_client_instance is not None:
        _api_client_instance.close()
    _api_client_instance = None
