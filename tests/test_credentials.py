"""
Tests for credential types and environment selection.
"""

from datetime import datetime, timedelta, timezone

import pytest

from bt.core.credentials import (
    AccessTokenCredential,
    APITokenCredential,
    AppPasswordCredential,
    AuthMethod,
    EnvironmentCredentials,
    OAuth2Credential,
    credential_from_dict,
)

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestCredentialSerialization:
    """Test cases for tagged credential records."""

    def test_oauth_record(self):
        credential = OAuth2Credential(
            access_token="access",
            refresh_token="refresh",
            expires_at=NOW,
            scope="account repository",
        )

        record = credential.to_dict()
        restored = credential_from_dict(record)

        assert record["method"] == "oauth"
        assert record["expires_at"] == "2026-01-15T12:00:00+00:00"
        assert restored == credential

    def test_method_tags(self):
        assert APITokenCredential("a@b.c", "t").to_dict()["method"] == AuthMethod.API_TOKEN.value
        assert AppPasswordCredential("u", "p").to_dict()["method"] == "app_password"
        assert AccessTokenCredential("t").to_dict()["method"] == "access_token"

    def test_unknown_method(self):
        with pytest.raises(ValueError, match="unknown credential method"):
            credential_from_dict({"method": "kerberos"})

    def test_incomplete_record(self):
        with pytest.raises(ValueError, match="incomplete"):
            credential_from_dict({"method": "api_token", "email": "a@b.c"})

    def test_not_a_mapping(self):
        with pytest.raises(ValueError):
            credential_from_dict(["api_token"])


class TestOAuth2Credential:
    """Test cases for OAuth2 token bookkeeping."""

    def test_from_token_response(self):
        credential = OAuth2Credential.from_token_response(
            {
                "access_token": "new-access",
                "refresh_token": "new-refresh",
                "expires_in": 7200,
                "scopes": "account",
                "token_type": "bearer",
            },
            now=NOW,
        )

        assert credential.access_token == "new-access"
        assert credential.refresh_token == "new-refresh"
        assert credential.expires_at == NOW + timedelta(hours=2)
        assert credential.scope == "account"

    def test_refresh_token_kept_when_not_returned(self):
        credential = OAuth2Credential.from_token_response(
            {"access_token": "new-access", "expires_in": 3600},
            previous_refresh_token="old-refresh",
            now=NOW,
        )

        assert credential.refresh_token == "old-refresh"

    def test_naive_expiry_is_utc(self):
        credential = OAuth2Credential("access", expires_at=datetime(2026, 1, 15, 12, 0))

        assert credential.expires_at == NOW

    def test_expires_within(self):
        credential = OAuth2Credential("access", expires_at=NOW + timedelta(seconds=30))

        assert credential.expires_within(timedelta(seconds=60), now=NOW)
        assert not credential.expires_within(timedelta(seconds=10), now=NOW)
        assert not OAuth2Credential("access").expires_within(timedelta(days=365), now=NOW)


class TestEnvironmentCredentials:
    """The environment precedence order."""

    FULL_ENV = {
        "BITBUCKET_EMAIL": "alice@example.com",
        "BITBUCKET_API_TOKEN": "api-token",
        "BITBUCKET_USERNAME": "alice",
        "BITBUCKET_PASSWORD": "app-password",
        "BITBUCKET_TOKEN": "access-token",
    }

    def test_api_token_first(self):
        credential, source = EnvironmentCredentials.from_environ(self.FULL_ENV).resolve()

        assert credential == APITokenCredential("alice@example.com", "api-token")
        assert source == "BITBUCKET_EMAIL/BITBUCKET_API_TOKEN"

    def test_app_password_second(self):
        env = {k: v for k, v in self.FULL_ENV.items() if k != "BITBUCKET_API_TOKEN"}

        credential, _ = EnvironmentCredentials.from_environ(env).resolve()

        assert credential == AppPasswordCredential("alice", "app-password")

    def test_access_token_last(self):
        env = {"BITBUCKET_EMAIL": "alice@example.com", "BITBUCKET_TOKEN": "access-token"}

        credential, source = EnvironmentCredentials.from_environ(env).resolve()

        assert credential == AccessTokenCredential("access-token")
        assert source == "BITBUCKET_TOKEN"

    def test_empty_values_ignored(self):
        env = {"BITBUCKET_EMAIL": "", "BITBUCKET_API_TOKEN": ""}

        assert EnvironmentCredentials.from_environ(env).resolve() is None

    def test_nothing_set(self):
        assert EnvironmentCredentials().resolve() is None
