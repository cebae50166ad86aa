"""Shared fixtures: test config, fake upstream bridge, fake operation catalogue."""

import asyncio
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient
from mcp.types import CallToolResult, Resource, TextContent, Tool

from config import Config
from main import create_app
from oauth.bridge import UpstreamCredential
from oauth.cookies import encode_upstream_state
from oauth.stores import AuthorizationRequest, ClientRegistration

TEST_ENV = {
    "SERVER_URL": "https://bridge.test",
    "MICROSOFT_CLIENT_ID": "app-client-id",
    "MICROSOFT_CLIENT_SECRET": "app-client-secret",
    "UPSTREAM_AUTHORIZE_URL": "https://login.test/authorize",
    "UPSTREAM_TOKEN_URL": "https://login.test/token",
    "GRAPH_API_BASE": "https://graph.test/v1.0",
    "COOKIE_SECRET": "cookie-secret-for-tests-0123456789abcdef",
    "JWT_SECRET": "jwt-secret-for-tests-0123456789abcdefghijklmnop",
}

CALLER_CLIENT_ID = "C1"
CALLER_REDIRECT_URI = "https://cb"


class FakeBridge:
    """Stands in for the upstream token endpoint."""

    def __init__(self, expires_in: int = 3600):
        self.expires_in = expires_in
        self.exchanges = []
        self.refreshes = []
        self.fail_with = None

    async def exchange(self, code, redirect_uri):
        self.exchanges.append((code, redirect_uri))
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        return UpstreamCredential(
            access_token=f"upstream-access-{code}",
            token_type="Bearer",
            scope="User.Read",
            expires_in=self.expires_in,
            refresh_token="upstream-refresh-1",
        )

    async def refresh(self, refresh_token):
        self.refreshes.append(refresh_token)
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        return UpstreamCredential(
            access_token=f"upstream-access-r{len(self.refreshes)}",
            token_type="Bearer",
            scope="User.Read",
            expires_in=self.expires_in,
        )

    async def fetch_identity(self, access_token):
        return {"user_id": "ms-user-1", "display_name": "Ada Lovelace"}

    async def aclose(self):
        pass


class FakeCatalogue:
    """Records every protected call it receives."""

    def __init__(self):
        self.calls = []

    def list_tools(self):
        return [Tool(name="getProfile", description="Get profile", inputSchema={"type": "object", "properties": {}})]

    def list_resources(self):
        return [Resource(uri="microsoft://profile", name="profile", mimeType="application/json")]

    async def call_tool(self, props, name, arguments=None):
        self.calls.append((dict(props), name, arguments))
        return CallToolResult(content=[TextContent(type="text", text=f"{name} ok")])

    async def read_resource(self, props, uri):
        self.calls.append((dict(props), "resources/read", uri))
        return None

    async def aclose(self):
        pass


@pytest.fixture
def config():
    return Config(dict(TEST_ENV))


@pytest.fixture
def fake_bridge():
    return FakeBridge()


@pytest.fixture
def catalogue():
    return FakeCatalogue()


@pytest.fixture
def make_app(fake_bridge, catalogue):
    """Build an app, optionally overriding config keys."""

    def _make(**overrides):
        env = dict(TEST_ENV)
        env.update({k: str(v) for k, v in overrides.items()})
        app = create_app(Config(env), bridge=fake_bridge, catalogue=catalogue)
        app.state.provider.store.save_client(
            ClientRegistration(
                client_id=CALLER_CLIENT_ID,
                client_name="Test Caller",
                redirect_uris=[CALLER_REDIRECT_URI],
            )
        )
        return app

    return _make


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    # https so the Secure approval cookie round-trips
    with TestClient(app, base_url="https://testserver") as test_client:
        yield test_client


def upstream_state_for(config: Config, state: str = "X1", **request_fields) -> str:
    """Signed upstream state as the broker would have produced it."""
    request = AuthorizationRequest(
        client_id=request_fields.pop("client_id", CALLER_CLIENT_ID),
        redirect_uri=request_fields.pop("redirect_uri", CALLER_REDIRECT_URI),
        scope=request_fields.pop("scope", "S"),
        state=state,
        **request_fields,
    )
    return encode_upstream_state(
        {"oauthReqInfo": request.to_dict(), "clientType": "web-connector"},
        config.cookie_secret,
    )


def complete_login(client: TestClient, config: Config, code: str = "ABC", **request_fields) -> str:
    """Run /callback and return the one-time authorization code."""
    response = client.get(
        "/callback",
        params={"code": code, "state": upstream_state_for(config, **request_fields)},
        follow_redirects=False,
    )
    assert response.status_code == 302
    return parse_qs(urlparse(response.headers["location"]).query)["code"][0]


def issue_session_token(client: TestClient, config: Config, code: str = "ABC") -> dict:
    """Full callback + /token round trip; returns the token response."""
    auth_code = complete_login(client, config, code=code)
    response = client.post(
        "/token",
        data={
            "grant_type": "authorization_code",
            "code": auth_code,
            "client_id": CALLER_CLIENT_ID,
            "redirect_uri": CALLER_REDIRECT_URI,
        },
    )
    assert response.status_code == 200, response.text
    return response.json()
