"""
Shared pytest fixtures.

The gateway is configured through environment variables, so every test gets
a clean environment pointing the token file into a temporary directory and
the upstream at an in-process mock transport.
"""

import json
from typing import Callable, List

import httpx
import pytest
from fastapi.testclient import TestClient

from config import Config
from main import create_app

CLIENT_ID = "c1"
CLIENT_SECRET = "s1"
REDIRECT_URI = "https://cb"
UPSTREAM = "http://upstream.test/api"


class UpstreamRecorder:
    """Mock upstream API recording every request it receives"""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] = self.default_handler

    @staticmethod
    def default_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"path": request.url.path, "query": request.url.query.decode()})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def tokens_file(tmp_path):
    return tmp_path / "tokens.json"


@pytest.fixture
def env(monkeypatch, tokens_file):
    values = {
        "ENVIRONMENT": "development",
        "OAUTH2_CLIENT_ID": CLIENT_ID,
        "OAUTH2_CLIENT_SECRET": CLIENT_SECRET,
        "OAUTH2_GRANTS": "client_credentials,refresh_token,authorization_code",
        "OAUTH2_REDIRECT_URIS": f"{REDIRECT_URI},https://app.example.com/callback",
        "ACCESS_TOKEN_LIFETIME": "3600",
        "REFRESH_TOKEN_LIFETIME": "86400",
        "TOKENS_FILE": str(tokens_file),
        "UPSTREAM_BASE_URL": UPSTREAM,
        "RATE_LIMIT_ENABLED": "false",
    }
    for name in ("OAUTH2_SCOPES", "PROXY_REQUIRED_SCOPE", "ALLOW_BEARER_IN_QUERY", "OAUTH2_DEFAULT_SCOPE"):
        monkeypatch.delenv(name, raising=False)
    for name, value in values.items():
        monkeypatch.setenv(name, value)
    return values


@pytest.fixture
def config(env):
    return Config()


@pytest.fixture
def upstream():
    return UpstreamRecorder()


@pytest.fixture
def app(config, upstream):
    return create_app(config, upstream_transport=upstream.transport)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def issue_token(client):
    """Obtain a token through the client_credentials grant"""

    def _issue(scope: str = "read write") -> dict:
        response = client.post(
            "/oauth/token",
            data={
                "grant_type": "client_credentials",
                "client_id": CLIENT_ID,
                "client_secret": CLIENT_SECRET,
                "scope": scope,
            },
        )
        assert response.status_code == 200, response.text
        return response.json()

    return _issue


def read_tokens_file(path) -> list:
    return json.loads(path.read_text())
