"""
OAuth 2.0 support for Bitbucket Cloud.

This module handles the Authorization Code Grant with PKCE: building the
authorization URL, receiving the redirect on a short-lived local callback
server, and exchanging codes and refresh tokens at the token endpoint.
"""

import base64
import hashlib
import logging
import secrets
import threading
import time
import urllib.parse
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any

import requests

from bt.core.cancellation import CancellationToken
from bt.core.credentials import OAuth2Credential
from bt.core.exceptions import AuthenticationError, NetworkError

logger = logging.getLogger(__name__)

AUTHORIZE_URL = "https://bitbucket.org/site/oauth2/authorize"
ACCESS_TOKEN_URL = "https://bitbucket.org/site/oauth2/access_token"  # noqa: S105

DEFAULT_SCOPES = "account repository pullrequest pipeline"
CALLBACK_PATH = "/callback"


@dataclass
class OAuthApp:
    """OAuth 2.0 consumer credentials."""

    client_id: str
    client_secret: str = ""
    redirect_uri: str = "http://localhost:8080/callback"
    scopes: str | None = DEFAULT_SCOPES

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "scopes": self.scopes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthApp":
        return cls(**data)


def generate_pkce_pair() -> tuple[str, str]:
    """
    Generate PKCE code verifier and challenge.

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    code_verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("utf-8").rstrip("=")
    code_challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(code_verifier.encode("utf-8")).digest()).decode("utf-8").rstrip("=")
    )
    return code_verifier, code_challenge


def build_authorization_url(oauth_app: OAuthApp, state: str, code_challenge: str | None = None) -> str:
    """Build the URL the user opens to grant access."""
    params = {
        "client_id": oauth_app.client_id,
        "response_type": "code",
        "redirect_uri": oauth_app.redirect_uri,
        "state": state,
    }
    if oauth_app.scopes:
        params["scope"] = oauth_app.scopes
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    return f"{AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"


class OAuthClient:
    """Talks to the Bitbucket OAuth token endpoint."""

    def __init__(
        self,
        oauth_app: OAuthApp,
        session: requests.Session | None = None,
        token_url: str = ACCESS_TOKEN_URL,
        timeout: float = 30,
    ) -> None:
        self.oauth_app = oauth_app
        self.session = session or requests.Session()
        self.token_url = token_url
        self.timeout = timeout

    def _post_token(
        self, data: dict[str, str], action: str, token: CancellationToken | None = None
    ) -> dict[str, Any]:
        timeout = self.timeout
        if token is not None:
            token.raise_if_cancelled()
            remaining = token.remaining()
            if remaining is not None:
                timeout = min(timeout, remaining)

        try:
            response = self.session.post(
                self.token_url,
                data=data,
                auth=(self.oauth_app.client_id, self.oauth_app.client_secret),
                headers={"Accept": "application/json"},
                timeout=timeout,
            )
        except requests.exceptions.RequestException as e:
            if token is not None and token.cancelled:
                raise token.error() from e
            raise NetworkError(f"Network error during token {action}: {e}") from e

        if not response.ok:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            description = error_data.get("error_description") or error_data.get("error") or response.reason
            raise AuthenticationError(
                f"OAuth token {action} failed: {description}",
                status_code=response.status_code,
                response_data=error_data or None,
            )

        try:
            token_data = response.json()
        except ValueError as e:
            raise AuthenticationError(f"OAuth token {action} returned an invalid response") from e
        if not token_data.get("access_token"):
            raise AuthenticationError(f"OAuth token {action} returned no access token")
        return token_data

    def exchange_code(self, authorization_code: str, code_verifier: str | None = None) -> OAuth2Credential:
        """Exchange an authorization code for a credential."""
        data = {
            "grant_type": "authorization_code",
            "code": authorization_code,
            "redirect_uri": self.oauth_app.redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        return OAuth2Credential.from_token_response(self._post_token(data, "exchange"))

    def refresh(self, refresh_token: str, token: CancellationToken | None = None) -> OAuth2Credential:
        """
        Exchange a refresh token for a new access token.

        Raises:
            AuthenticationError: If the refresh token is rejected
            NetworkError: If the token endpoint cannot be reached
            RequestCancelledError: If ``token`` fires first
        """
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        token_data = self._post_token(data, "refresh", token)
        return OAuth2Credential.from_token_response(token_data, previous_refresh_token=refresh_token)


class OAuthCallbackServer(HTTPServer):
    """HTTP server that records the first OAuth redirect it receives."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.callback_received = threading.Event()
        self.authorization_code: str | None = None
        self.state: str | None = None
        self.error: str | None = None

    def wait_for_callback(self, timeout: float) -> bool:
        """Serve requests until the redirect arrives or ``timeout`` elapses."""
        deadline = time.monotonic() + timeout
        while not self.callback_received.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self.timeout = min(remaining, 1.0)
            self.handle_request()
        return True


class CallbackHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the OAuth redirect."""

    server: OAuthCallbackServer

    def do_GET(self):
        parsed_url = urllib.parse.urlparse(self.path)
        if parsed_url.path != CALLBACK_PATH:
            self.send_error(404)
            return

        query_params = urllib.parse.parse_qs(parsed_url.query)
        self.server.authorization_code = query_params.get("code", [None])[0]
        self.server.state = query_params.get("state", [None])[0]
        self.server.error = query_params.get("error", [None])[0]

        failed = bool(self.server.error) or not self.server.authorization_code
        self.send_response(400 if failed else 200)
        self.send_header("Content-type", "text/html")
        self.end_headers()
        if failed:
            self.wfile.write(
                b"<html><body><h1>Authentication Failed</h1>"
                b"<p>There was an error during authentication. You can close this window.</p></body></html>"
            )
        else:
            self.wfile.write(
                b"<html><body><h1>Authentication Successful</h1>"
                b"<p>You can now close this window and return to the terminal.</p></body></html>"
            )
        self.server.callback_received.set()

    def log_message(self, format, *args):
        logger.debug("callback server: " + format, *args)


@contextmanager
def callback_listener(port: int, host: str = "localhost") -> Iterator[OAuthCallbackServer]:
    """
    Listen for the OAuth redirect for the duration of one login attempt.

    The socket is closed when the block exits, whatever the outcome.
    """
    server = OAuthCallbackServer((host, port), CallbackHandler)
    logger.debug("OAuth callback server listening on %s:%d", host, port)
    try:
        yield server
    finally:
        server.server_close()
        logger.debug("OAuth callback server closed")


def run_authorization_flow(
    oauth_client: OAuthClient,
    port: int,
    open_url,
    timeout: float = 300,
) -> OAuth2Credential:
    """
    Perform the interactive Authorization Code flow.

    Args:
        oauth_client: Client for the token endpoint
        port: Local port the redirect URI points at
        open_url: Callable receiving the authorization URL (opens a browser or prints it)
        timeout: Seconds to wait for the user to finish in the browser

    Returns:
        The new OAuth2 credential

    Raises:
        AuthenticationError: If the user denies access, the state does not
            match, or no redirect arrives before the timeout
    """
    oauth_app = oauth_client.oauth_app
    oauth_app.redirect_uri = f"http://localhost:{port}{CALLBACK_PATH}"
    state = secrets.token_urlsafe(32)
    code_verifier, code_challenge = generate_pkce_pair()
    auth_url = build_authorization_url(oauth_app, state, code_challenge)

    with callback_listener(port) as server:
        open_url(auth_url)
        if not server.wait_for_callback(timeout):
            raise AuthenticationError("Timed out waiting for the OAuth authorization")
        if server.error:
            raise AuthenticationError(f"OAuth authorization failed: {server.error}")
        if not server.authorization_code:
            raise AuthenticationError("No authorization code received")
        if server.state != state:
            raise AuthenticationError("Invalid state parameter in OAuth callback")
        code = server.authorization_code

    return oauth_client.exchange_code(code, code_verifier)
