"""
Shared fixtures for the bt test suite.
"""

import json
from http import HTTPStatus

import pytest
import requests

from bt.core.api_client import reset_api_client
from bt.core.config import ENV_OVERRIDES, Config

CREDENTIAL_ENV_VARS = (
    "BITBUCKET_EMAIL",
    "BITBUCKET_API_TOKEN",
    "BITBUCKET_USERNAME",
    "BITBUCKET_PASSWORD",
    "BITBUCKET_TOKEN",
)


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Point bt at a throwaway config directory and clear credential variables."""
    config_dir = tmp_path / "bt-config"
    monkeypatch.setenv("BT_CONFIG_DIR", str(config_dir))
    for name in (*CREDENTIAL_ENV_VARS, *ENV_OVERRIDES):
        monkeypatch.delenv(name, raising=False)

    Config.reset_singleton()
    reset_api_client()
    yield config_dir
    Config.reset_singleton()
    reset_api_client()


def build_response(status_code=200, json_body=None, headers=None, text=None, url="https://api.bitbucket.org/2.0/test"):
    """Create a real requests.Response without touching the network."""
    response = requests.Response()
    response.status_code = status_code
    response.url = url
    response.encoding = "utf-8"
    try:
        response.reason = HTTPStatus(status_code).phrase
    except ValueError:
        response.reason = ""

    if json_body is not None:
        response._content = json.dumps(json_body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = (text or "").encode("utf-8")
    response._content_consumed = True
    response.headers.update(headers or {})
    return response


@pytest.fixture
def make_response():
    """Factory fixture for canned HTTP responses."""
    return build_response


class FakeSleep:
    """Records requested backoff delays instead of waiting."""

    def __init__(self):
        self.calls = []

    def __call__(self, seconds, token):
        self.calls.append(seconds)
        token.raise_if_cancelled()


@pytest.fixture
def fake_sleep():
    return FakeSleep()
