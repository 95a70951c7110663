"""
Credential types for bt.

A credential is exactly one of four variants, one per authentication scheme
supported by Bitbucket Cloud. Each variant serializes to a dictionary tagged
with its ``method`` so a stored record can be turned back into the right type.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Union


class AuthMethod(str, Enum):
    """Authentication scheme of a credential."""

    API_TOKEN = "api_token"  # noqa: S105
    APP_PASSWORD = "app_password"  # noqa: S105
    ACCESS_TOKEN = "access_token"  # noqa: S105
    OAUTH = "oauth"


@dataclass
class APITokenCredential:
    """Atlassian API token paired with the account email."""

    email: str
    token: str

    method = AuthMethod.API_TOKEN

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method.value, "email": self.email, "token": self.token}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "APITokenCredential":
        return cls(email=data["email"], token=data["token"])


@dataclass
class AppPasswordCredential:
    """Legacy Bitbucket username and app password."""

    username: str
    password: str

    method = AuthMethod.APP_PASSWORD

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method.value, "username": self.username, "password": self.password}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppPasswordCredential":
        return cls(username=data["username"], password=data["password"])


@dataclass
class AccessTokenCredential:
    """Repository, project or workspace access token."""

    token: str
    scope: str | None = None

    method = AuthMethod.ACCESS_TOKEN

    def to_dict(self) -> dict[str, Any]:
        return {"method": self.method.value, "token": self.token, "scope": self.scope}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccessTokenCredential":
        return cls(token=data["token"], scope=data.get("scope"))


@dataclass
class OAuth2Credential:
    """OAuth 2.0 access token, its refresh token and expiry."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    token_type: str = "Bearer"  # noqa: S105

    method = AuthMethod.OAUTH

    def __post_init__(self) -> None:
        if self.expires_at is not None and self.expires_at.tzinfo is None:
            self.expires_at = self.expires_at.replace(tzinfo=timezone.utc)

    @classmethod
    def from_token_response(
        cls,
        data: dict[str, Any],
        previous_refresh_token: str | None = None,
        now: datetime | None = None,
    ) -> "OAuth2Credential":
        """Build a credential from an OAuth token endpoint response."""
        now = now or datetime.now(timezone.utc)
        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            # Bitbucket may omit the refresh token on refresh; keep the old one
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_at=now + timedelta(seconds=int(expires_in)) if expires_in else None,
            scope=data.get("scopes") or data.get("scope"),
            token_type=data.get("token_type") or "Bearer",
        )

    def expires_within(self, skew: timedelta, now: datetime | None = None) -> bool:
        """Whether the token expires before ``now + skew``."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now + skew >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method.value,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "scope": self.scope,
            "token_type": self.token_type,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuth2Credential":
        expires_at = data.get("expires_at")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            scope=data.get("scope"),
            token_type=data.get("token_type") or "Bearer",
        )


Credential = Union[APITokenCredential, AppPasswordCredential, AccessTokenCredential, OAuth2Credential]

_CREDENTIAL_TYPES: dict[str, type] = {
    AuthMethod.API_TOKEN.value: APITokenCredential,
    AuthMethod.APP_PASSWORD.value: AppPasswordCredential,
    AuthMethod.ACCESS_TOKEN.value: AccessTokenCredential,
    AuthMethod.OAUTH.value: OAuth2Credential,
}


def credential_from_dict(data: dict[str, Any]) -> Credential:
    """
    Rebuild a credential from its serialized form.

    Raises:
        ValueError: If the record is not a known, complete credential
    """
    if not isinstance(data, dict):
        raise ValueError("credential record must be an object")
    credential_type = _CREDENTIAL_TYPES.get(data.get("method", ""))
    if credential_type is None:
        raise ValueError(f"unknown credential method: {data.get('method')!r}")
    try:
        return credential_type.from_dict(data)
    except (KeyError, TypeError) as e:
        raise ValueError(f"incomplete credential record: {e}") from e


@dataclass(frozen=True)
class EnvironmentCredentials:
    """
    Credential-related environment variables, read once at startup.

    Keeping them in a value object means the process environment is never
    consulted again per request.
    """

    email: str | None = None
    api_token: str | None = None
    username: str | None = None
    password: str | None = None
    access_token: str | None = None

    @classmethod
    def from_environ(cls, environ: dict[str, str]) -> "EnvironmentCredentials":
        return cls(
            email=environ.get("BITBUCKET_EMAIL") or None,
            api_token=environ.get("BITBUCKET_API_TOKEN") or None,
            username=environ.get("BITBUCKET_USERNAME") or None,
            password=environ.get("BITBUCKET_PASSWORD") or None,
            access_token=environ.get("BITBUCKET_TOKEN") or None,
        )

    def resolve(self) -> tuple[Credential, str] | None:
        """
        Pick a credential from the environment.

        Priority order:
        1. BITBUCKET_EMAIL + BITBUCKET_API_TOKEN
        2. BITBUCKET_USERNAME + BITBUCKET_PASSWORD
        3. BITBUCKET_TOKEN

        Returns:
            Tuple of (credential, variable names) or None
        """
        if self.email and self.api_token:
            return APITokenCredential(self.email, self.api_token), "BITBUCKET_EMAIL/BITBUCKET_API_TOKEN"
        if self.username and self.password:
            return AppPasswordCredential(self.username, self.password), "BITBUCKET_USERNAME/BITBUCKET_PASSWORD"
        if self.access_token:
            return AccessTokenCredential(self.access_token), "BITBUCKET_TOKEN"
        return None
