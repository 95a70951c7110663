"""
Authenticators for the Bitbucket credential schemes.

Each authenticator wraps one credential variant and knows how to produce the
``Authorization`` header for it, confirm it against ``GET /user``, and (for
OAuth 2.0) refresh it. :func:`create_authenticator` maps a credential to its
authenticator; the set of variants is closed.
"""

import base64
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import requests

from bt import __version__
from bt.core.cancellation import CancellationToken
from bt.core.config import DEFAULT_BASE_URL
from bt.core.credential_store import CredentialStore
from bt.core.credentials import (
    AccessTokenCredential,
    APITokenCredential,
    AppPasswordCredential,
    AuthMethod,
    Credential,
    OAuth2Credential,
)
from bt.core.exceptions import (
    AuthenticationError,
    NetworkError,
    PermissionDeniedError,
    UnknownAPIError,
    ValidationError,
    classify_response,
)
from bt.core.oauth import OAuthClient

logger = logging.getLogger(__name__)


@dataclass
class User:
    """The authenticated Bitbucket user."""

    username: str = ""
    display_name: str = ""
    account_id: str = ""
    uuid: str = ""
    email: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        return cls(
            username=data.get("username") or data.get("nickname") or "",
            display_name=data.get("display_name", ""),
            account_id=data.get("account_id", ""),
            uuid=(data.get("uuid") or "").strip("{}"),
            email=data.get("email"),
        )


def basic_auth_header(identifier: str, secret: str) -> str:
    """Create a Basic Authentication header value."""
    encoded = base64.b64encode(f"{identifier}:{secret}".encode()).decode("ascii")
    return f"Basic {encoded}"


class Authenticator(ABC):
    """Authentication strategy for a single credential."""

    method: AuthMethod

    def __init__(
        self,
        credential: Credential,
        store: CredentialStore | None = None,
        session: requests.Session | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30,
    ) -> None:
        self._credential = credential
        self.store = store
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._user: User | None = None
        self._lock = threading.Lock()

    @property
    def credential(self) -> Credential:
        return self._credential

    @abstractmethod
    def auth_header(self) -> str:
        """Return the value of the Authorization header."""

    @abstractmethod
    def validate(self) -> None:
        """
        Check the credential shape without touching the network.

        Raises:
            ValidationError: If a required field is missing or malformed
        """

    def needs_refresh(self, skew: timedelta, now: datetime | None = None) -> bool:
        return False

    def refresh(self, token: CancellationToken | None = None) -> Credential:
        """Refresh the credential. Static credentials have nothing to refresh."""
        return self._credential

    def authenticate(self, token: CancellationToken | None = None) -> User:
        """
        Validate the credential and confirm it with an identity probe.

        Raises:
            ValidationError: If the credential is malformed
            AuthenticationError: If Bitbucket rejects the credential
        """
        self.validate()
        user = self._probe(token)
        with self._lock:
            self._user = user
        return user

    def get_authenticated_user(self, token: CancellationToken | None = None) -> User:
        """Return the user probed earlier in this session, probing if needed."""
        with self._lock:
            user = self._user
        if user is not None:
            return user
        return self.authenticate(token)

    def is_authenticated(self, token: CancellationToken | None = None) -> bool:
        try:
            self.authenticate(token)
        except (AuthenticationError, PermissionDeniedError, ValidationError):
            return False
        return True

    def logout(self) -> None:
        """Forget the session and delete the stored credential."""
        if self.store is not None:
            self.store.delete()
        with self._lock:
            self._user = None

    def _probe(self, token: CancellationToken | None) -> User:
        """Fetch the current user with this authenticator's header."""
        token = token or CancellationToken.background()
        token.raise_if_cancelled()
        remaining = token.remaining()
        timeout = self.timeout if remaining is None else min(self.timeout, remaining)

        try:
            response = self.session.get(
                f"{self.base_url}/user",
                headers={
                    "Authorization": self.auth_header(),
                    "Accept": "application/json",
                    "User-Agent": f"bt/{__version__}",
                },
                timeout=timeout,
            )
        except requests.exceptions.RequestException as e:
            token.raise_if_cancelled()
            raise NetworkError(f"Failed to connect to Bitbucket API: {e}") from e

        if not response.ok:
            raise classify_response(response)
        try:
            return User.from_dict(response.json())
        except (ValueError, AttributeError) as e:
            raise UnknownAPIError("Unexpected response from /user", status_code=response.status_code) from e


class APITokenAuthenticator(Authenticator):
    """Atlassian API token sent as Basic auth with the account email."""

    method = AuthMethod.API_TOKEN
    _credential: APITokenCredential

    def auth_header(self) -> str:
        return basic_auth_header(self._credential.email, self._credential.token)

    def validate(self) -> None:
        if not self._credential.email or not self._credential.token:
            raise ValidationError("Email and API token are required")
        if "@" not in self._credential.email:
            raise ValidationError(
                f"'{self._credential.email}' is not an email address",
                suggestion="API tokens authenticate with your Atlassian account email",
            )


class AppPasswordAuthenticator(Authenticator):
    """Legacy username and app password sent as Basic auth."""

    method = AuthMethod.APP_PASSWORD
    _credential: AppPasswordCredential

    def auth_header(self) -> str:
        return basic_auth_header(self._credential.username, self._credential.password)

    def validate(self) -> None:
        if not self._credential.username or not self._credential.password:
            raise ValidationError("Username and app password are required")


class AccessTokenAuthenticator(Authenticator):
    """Repository, project or workspace access token sent as a Bearer token."""

    method = AuthMethod.ACCESS_TOKEN
    _credential: AccessTokenCredential

    def auth_header(self) -> str:
        return f"Bearer {self._credential.token}"

    def validate(self) -> None:
        if not self._credential.token:
            raise ValidationError("Access token is required")


class OAuth2Authenticator(Authenticator):
    """OAuth 2.0 bearer token that can be refreshed."""

    method = AuthMethod.OAUTH
    _credential: OAuth2Credential

    def __init__(self, credential: OAuth2Credential, oauth_client: OAuthClient | None = None, **kwargs: Any) -> None:
        super().__init__(credential, **kwargs)
        self.oauth_client = oauth_client

    def auth_header(self) -> str:
        return f"Bearer {self._credential.access_token}"

    def validate(self) -> None:
        if not self._credential.access_token:
            raise ValidationError("OAuth access token is required")

    def needs_refresh(self, skew: timedelta, now: datetime | None = None) -> bool:
        return self._credential.expires_within(skew, now)

    def refresh(self, token: CancellationToken | None = None) -> OAuth2Credential:
        """
        Exchange the refresh token for a new access token and persist it.

        Raises:
            AuthenticationError: If there is no refresh token, no OAuth
                consumer is configured, or the refresh token is rejected
        """
        if not self._credential.refresh_token:
            raise AuthenticationError("OAuth session has no refresh token")
        if self.oauth_client is None:
            raise AuthenticationError(
                "OAuth consumer is not configured, cannot refresh the access token",
                suggestion="Set auth.oauth.client_id and auth.oauth.client_secret, then run 'bt auth login'",
            )
        if token is not None:
            token.raise_if_cancelled()

        logger.debug("Refreshing OAuth access token")
        credential = self.oauth_client.refresh(self._credential.refresh_token, token=token)
        self._credential = credential
        if self.store is not None:
            self.store.save(credential)
        return credential

    def authenticate(self, token: CancellationToken | None = None) -> User:
        if self.needs_refresh(timedelta(0)):
            self.refresh(token)
        return super().authenticate(token)


def create_authenticator(
    credential: Credential,
    oauth_client: OAuthClient | None = None,
    **kwargs: Any,
) -> Authenticator:
    """Return the authenticator for a credential variant."""
    if isinstance(credential, APITokenCredential):
        return APITokenAuthenticator(credential, **kwargs)
    if isinstance(credential, AppPasswordCredential):
        return AppPasswordAuthenticator(credential, **kwargs)
    if isinstance(credential, AccessTokenCredential):
        return AccessTokenAuthenticator(credential, **kwargs)
    if isinstance(credential, OAuth2Credential):
        return OAuth2Authenticator(credential, oauth_client=oauth_client, **kwargs)
    raise TypeError(f"Unsupported credential type: {type(credential).__name__}")
