"""
Tests for the OAuth 2.0 flow and token endpoint client.
"""

import base64
import hashlib
import socket
import threading
import urllib.parse
from unittest.mock import Mock

import pytest
import requests

from bt.core.cancellation import CancellationToken
from bt.core.credentials import OAuth2Credential
from bt.core.exceptions import AuthenticationError, NetworkError, RequestCancelledError
from bt.core.oauth import (
    ACCESS_TOKEN_URL,
    AUTHORIZE_URL,
    OAuthApp,
    OAuthClient,
    build_authorization_url,
    callback_listener,
    generate_pkce_pair,
    run_authorization_flow,
)


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("localhost", 0))
        return sock.getsockname()[1]


def hit_callback(url):
    """Follow the OAuth redirect from a background thread, like a browser would."""

    def run():
        requests.get(url.replace("localhost", "127.0.0.1"), timeout=5)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


@pytest.fixture
def oauth_app():
    return OAuthApp(client_id="consumer-key", client_secret="consumer-secret")


class TestAuthorizationURL:
    """Test cases for PKCE and the authorization URL."""

    def test_pkce_pair(self):
        verifier, challenge = generate_pkce_pair()

        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert challenge == expected
        assert "=" not in verifier
        assert len(verifier) >= 43

    def test_build_authorization_url(self, oauth_app):
        url = build_authorization_url(oauth_app, "state-123", "challenge-abc")

        parsed = urllib.parse.urlparse(url)
        query = urllib.parse.parse_qs(parsed.query)
        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == AUTHORIZE_URL
        assert query["client_id"] == ["consumer-key"]
        assert query["response_type"] == ["code"]
        assert query["state"] == ["state-123"]
        assert query["code_challenge"] == ["challenge-abc"]
        assert query["code_challenge_method"] == ["S256"]


class TestOAuthClient:
    """Test cases for the token endpoint client."""

    @pytest.fixture
    def session(self):
        return Mock(spec=requests.Session)

    def test_refresh(self, oauth_app, session, make_response):
        session.post.return_value = make_response(
            200, {"access_token": "new-access", "refresh_token": "new-refresh", "expires_in": 7200}
        )
        client = OAuthClient(oauth_app, session=session)

        credential = client.refresh("old-refresh")

        assert isinstance(credential, OAuth2Credential)
        assert credential.access_token == "new-access"
        assert credential.refresh_token == "new-refresh"
        assert credential.expires_at is not None
        args, kwargs = session.post.call_args
        assert args[0] == ACCESS_TOKEN_URL
        assert kwargs["data"] == {"grant_type": "refresh_token", "refresh_token": "old-refresh"}
        assert kwargs["auth"] == ("consumer-key", "consumer-secret")

    def test_refresh_keeps_refresh_token(self, oauth_app, session, make_response):
        session.post.return_value = make_response(200, {"access_token": "new-access", "expires_in": 3600})

        credential = OAuthClient(oauth_app, session=session).refresh("old-refresh")

        assert credential.refresh_token == "old-refresh"

    def test_refresh_rejected(self, oauth_app, session, make_response):
        session.post.return_value = make_response(
            400, {"error": "invalid_grant", "error_description": "Refresh token expired"}
        )

        with pytest.raises(AuthenticationError, match="Refresh token expired") as exc_info:
            OAuthClient(oauth_app, session=session).refresh("old-refresh")

        assert exc_info.value.status_code == 400

    def test_refresh_without_access_token(self, oauth_app, session, make_response):
        session.post.return_value = make_response(200, {"token_type": "bearer"})

        with pytest.raises(AuthenticationError, match="no access token"):
            OAuthClient(oauth_app, session=session).refresh("old-refresh")

    def test_network_failure(self, oauth_app, session):
        session.post.side_effect = requests.exceptions.ConnectionError("unreachable")

        with pytest.raises(NetworkError):
            OAuthClient(oauth_app, session=session).refresh("old-refresh")

    def test_exchange_code(self, oauth_app, session, make_response):
        session.post.return_value = make_response(200, {"access_token": "access", "refresh_token": "refresh"})

        credential = OAuthClient(oauth_app, session=session).exchange_code("the-code", "the-verifier")

        assert credential.access_token == "access"
        data = session.post.call_args.kwargs["data"]
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "the-code"
        assert data["code_verifier"] == "the-verifier"


    def test_refresh_timeout_bounded_by_deadline(self, oauth_app, session, make_response):
        session.post.return_value = make_response(200, {"access_token": "new-access", "expires_in": 3600})

        OAuthClient(oauth_app, session=session, timeout=30).refresh("old-refresh", token=CancellationToken(timeout=2))

        assert 0 < session.post.call_args.kwargs["timeout"] <= 2

    def test_refresh_without_deadline_uses_client_timeout(self, oauth_app, session, make_response):
        session.post.return_value = make_response(200, {"access_token": "new-access"})

        OAuthClient(oauth_app, session=session, timeout=12).refresh("old-refresh", token=CancellationToken())

        assert session.post.call_args.kwargs["timeout"] == 12

    def test_refresh_with_cancelled_token(self, oauth_app, session):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(RequestCancelledError, match="context canceled"):
            OAuthClient(oauth_app, session=session).refresh("old-refresh", token=token)

        session.post.assert_not_called()

    def test_deadline_during_refresh(self, oauth_app, session):
        token = CancellationToken(timeout=0.05)

        def timed_out(*args, **kwargs):
            token.wait(1)
            raise requests.exceptions.ReadTimeout("read timed out")

        session.post.side_effect = timed_out

        with pytest.raises(RequestCancelledError, match="context deadline exceeded"):
            OAuthClient(oauth_app, session=session).refresh("old-refresh", token=token)


class TestCallbackListener:
    """Test cases for the local redirect listener."""

    def test_receives_code(self):
        with callback_listener(0) as server:
            port = server.server_address[1]
            thread = hit_callback(f"http://localhost:{port}/callback?code=abc&state=xyz")

            assert server.wait_for_callback(5) is True
            thread.join(5)

        assert server.authorization_code == "abc"
        assert server.state == "xyz"
        assert server.error is None

    def test_times_out(self):
        with callback_listener(0) as server:
            assert server.wait_for_callback(0.2) is False

    def test_socket_closed_after_use(self):
        with callback_listener(0) as server:
            pass

        assert server.socket.fileno() == -1


class TestAuthorizationFlow:
    """Test cases for the interactive login flow."""

    @pytest.fixture
    def oauth_client(self, oauth_app):
        client = Mock(spec=OAuthClient)
        client.oauth_app = oauth_app
        client.exchange_code.return_value = OAuth2Credential("access", "refresh")
        return client

    def test_successful_flow(self, oauth_client):
        port = free_port()
        threads = []

        def open_url(url):
            query = urllib.parse.parse_qs(urllib.parse.urlparse(url).query)
            redirect = query["redirect_uri"][0]
            threads.append(hit_callback(f"{redirect}?code=granted&state={query['state'][0]}"))

        credential = run_authorization_flow(oauth_client, port, open_url, timeout=5)

        assert credential.access_token == "access"
        code, verifier = oauth_client.exchange_code.call_args[0]
        assert code == "granted"
        assert verifier
        for thread in threads:
            thread.join(5)

    def test_state_mismatch(self, oauth_client):
        port = free_port()

        def open_url(url):
            hit_callback(f"http://localhost:{port}/callback?code=granted&state=forged")

        with pytest.raises(AuthenticationError, match="state"):
            run_authorization_flow(oauth_client, port, open_url, timeout=5)
        oauth_client.exchange_code.assert_not_called()

    def test_access_denied(self, oauth_client):
        port = free_port()

        def open_url(url):
            hit_callback(f"http://localhost:{port}/callback?error=access_denied")

        with pytest.raises(AuthenticationError, match="access_denied"):
            run_authorization_flow(oauth_client, port, open_url, timeout=5)

    def test_timeout(self, oauth_client):
        with pytest.raises(AuthenticationError, match="Timed out"):
            run_authorization_flow(oauth_client, free_port(), lambda url: None, timeout=0.2)
