"""
Authentication session management for bt.

The :class:`AuthManager` owns the single active authenticator of the process.
It is selected once, at construction, from (highest priority first):

1. A credential passed in by the caller
2. BITBUCKET_EMAIL + BITBUCKET_API_TOKEN
3. BITBUCKET_USERNAME + BITBUCKET_PASSWORD
4. BITBUCKET_TOKEN
5. The session saved in the credential store

Before every request the executor calls :meth:`AuthManager.prepare_request`,
which refreshes an expiring OAuth 2.0 token (one refresh for all concurrent
callers) and injects the Authorization header.
"""

import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import requests

from bt.core.authenticators import Authenticator, User, create_authenticator
from bt.core.cancellation import CancellationToken
from bt.core.config import DEFAULT_BASE_URL, Config
from bt.core.credential_store import CredentialStore, create_credential_store
from bt.core.credentials import AuthMethod, Credential, EnvironmentCredentials
from bt.core.exceptions import AuthenticationError, BTError, CredentialNotFoundError, RequestCancelledError
from bt.core.oauth import OAuthApp, OAuthClient
from bt.core.singleflight import SingleFlight

logger = logging.getLogger(__name__)

REFRESH_SKEW = timedelta(seconds=60)


class SessionState(str, Enum):
    """Lifecycle of the authentication session."""

    NONE = "none"
    ACTIVE = "active"
    UNAUTHENTICATED = "unauthenticated"


class AuthManager:
    """Selects, refreshes and applies the active credential."""

    def __init__(
        self,
        store: CredentialStore | None = None,
        credential: Credential | None = None,
        environment: EnvironmentCredentials | None = None,
        oauth_client: OAuthClient | None = None,
        session: requests.Session | None = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30,
        clock=None,
    ) -> None:
        """
        Initialize the authentication manager.

        Args:
            store: Where the session is persisted
            credential: Explicit credential, overrides everything else
            environment: Credential environment variables, read once by the caller
            oauth_client: Token endpoint client used to refresh OAuth 2.0 sessions
            session: HTTP session used for identity probes
            base_url: Bitbucket API base URL
            timeout: Timeout for identity probes
            clock: Callable returning the current aware datetime, for tests
        """
        self.store = store
        self.oauth_client = oauth_client
        self._session = session or requests.Session()
        self._base_url = base_url
        self._timeout = timeout
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = threading.Lock()
        self._flight = SingleFlight()
        self._authenticator: Authenticator | None = None
        self._source: str | None = None
        self._state = SessionState.NONE

        selected = self._select(credential, environment or EnvironmentCredentials())
        if selected is not None:
            selected_credential, self._source = selected
            self._authenticator = self._build(selected_credential)
            self._state = SessionState.ACTIVE
            logger.debug("Using %s credentials from %s", self._authenticator.method.value, self._source)

    @classmethod
    def from_config(
        cls,
        config: Config,
        credential: Credential | None = None,
        environ: dict[str, str] | None = None,
        session: requests.Session | None = None,
    ) -> "AuthManager":
        """Build an AuthManager from configuration and the process environment."""
        store = create_credential_store(config.get("credentials.backend", "file"), config.config_dir)
        client_id = config.get("auth.oauth.client_id")
        oauth_client = None
        if client_id:
            port = config.get("auth.oauth.callback_port", 8080)
            oauth_client = OAuthClient(
                OAuthApp(
                    client_id=client_id,
                    client_secret=config.get("auth.oauth.client_secret", ""),
                    redirect_uri=f"http://localhost:{port}/callback",
                ),
                session=session,
            )
        return cls(
            store=store,
            credential=credential,
            environment=EnvironmentCredentials.from_environ(os.environ if environ is None else environ),
            oauth_client=oauth_client,
            session=session,
            base_url=config.get("api.base_url", DEFAULT_BASE_URL),
            timeout=config.get("api.timeout", 30),
        )

    def _select(
        self, credential: Credential | None, environment: EnvironmentCredentials
    ) -> tuple[Credential, str] | None:
        if credential is not None:
            return credential, "explicit"

        from_env = environment.resolve()
        if from_env is not None:
            return from_env

        if self.store is not None:
            try:
                return self.store.load(), "stored session"
            except CredentialNotFoundError:
                logger.debug("No stored session found")
        return None

    def _build(self, credential: Credential) -> Authenticator:
        return create_authenticator(
            credential,
            oauth_client=self.oauth_client,
            store=self.store,
            session=self._session,
            base_url=self._base_url,
            timeout=self._timeout,
        )

    @property
    def method(self) -> AuthMethod | None:
        return self._authenticator.method if self._authenticator else None

    @property
    def source(self) -> str | None:
        """Where the active credential came from."""
        return self._source

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def credential(self) -> Credential | None:
        return self._authenticator.credential if self._authenticator else None

    def has_credentials(self) -> bool:
        return self._authenticator is not None

    def _active(self) -> Authenticator:
        with self._lock:
            authenticator = self._authenticator
            state = self._state
        if state is SessionState.UNAUTHENTICATED:
            raise AuthenticationError("Session is no longer authenticated")
        if authenticator is None:
            raise AuthenticationError(
                "No authentication credentials found",
                suggestion="Run 'bt auth login' or set BITBUCKET_EMAIL and BITBUCKET_API_TOKEN",
            )
        return authenticator

    def prepare_request(self, headers: dict[str, str], token: CancellationToken | None = None) -> None:
        """
        Add the Authorization header to an outgoing request.

        Raises:
            AuthenticationError: If there is no usable session
            RequestCancelledError: If ``token`` fires while a refresh is pending
        """
        authenticator = self._active()
        if authenticator.needs_refresh(REFRESH_SKEW, self._clock()):
            self._refresh_coalesced(authenticator, token, force=False)
            if token is not None:
                token.raise_if_cancelled()
            authenticator = self._active()
        headers["Authorization"] = authenticator.auth_header()

    def _refresh_coalesced(self, authenticator: Authenticator, token: CancellationToken | None, force: bool) -> None:
        def run() -> Credential:
            # Callers arriving after a finished flight see the new expiry here
            if not force and not authenticator.needs_refresh(REFRESH_SKEW, self._clock()):
                return authenticator.credential
            try:
                return authenticator.refresh(token)
            except RequestCancelledError:
                raise
            except BTError as e:
                self.invalidate("Token refresh failed")
                if isinstance(e, AuthenticationError):
                    raise
                raise AuthenticationError(f"Failed to refresh the session: {e}") from e

        while True:
            try:
                _, shared = self._flight.do("refresh", run, token=token)
                break
            except RequestCancelledError:
                if token is not None and token.cancelled:
                    raise
                # The flight was started by a caller that has since given up
                logger.debug("Shared token refresh was cancelled, refreshing again")
        if shared:
            logger.debug("Joined an in-flight token refresh")

    def invalidate(self, reason: str) -> None:
        """Put the session in the unauthenticated state until the next login."""
        with self._lock:
            if self._authenticator is None:
                return
            self._state = SessionState.UNAUTHENTICATED
        logger.warning("%s, session is now unauthenticated", reason)

    def refresh(self, token: CancellationToken | None = None) -> None:
        """Refresh the active credential now. A no-op for static credentials."""
        self._refresh_coalesced(self._active(), token, force=True)

    def authenticate(self, token: CancellationToken | None = None) -> User:
        """Confirm the active credential against Bitbucket."""
        return self._active().authenticate(token)

    def is_authenticated(self, token: CancellationToken | None = None) -> bool:
        try:
            authenticator = self._active()
        except AuthenticationError:
            return False
        return authenticator.is_authenticated(token)

    def get_authenticated_user(self, token: CancellationToken | None = None) -> User:
        return self._active().get_authenticated_user(token)

    def login(self, credential: Credential, token: CancellationToken | None = None, save: bool = True) -> User:
        """
        Verify a new credential, persist it and make it the active session.

        Raises:
            ValidationError: If the credential is malformed
            AuthenticationError: If Bitbucket rejects it
        """
        authenticator = self._build(credential)
        user = authenticator.authenticate(token)
        if save and self.store is not None:
            self.store.save(authenticator.credential)
        with self._lock:
            self._authenticator = authenticator
            self._source = "login"
            self._state = SessionState.ACTIVE
        return user

    def logout(self) -> None:
        """Clear the stored session and in-memory state."""
        with self._lock:
            authenticator = self._authenticator
            self._authenticator = None
            self._source = None
            self._state = SessionState.NONE
        if authenticator is not None:
            authenticator.logout()
        elif self.store is not None:
            self.store.delete()

    def get_status(self) -> dict[str, Any]:
        """Summarize the session without touching the network."""
        credential = self.credential
        status: dict[str, Any] = {
            "state": self._state.value,
            "method": self.method.value if self.method else None,
            "source": self._source,
            "storage": self.store.description if self.store else None,
        }
        expires_at = getattr(credential, "expires_at", None)
        if expires_at is not None:
            status["expires_at"] = expires_at.isoformat()
        return status
