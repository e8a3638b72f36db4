"""
Test fixtures for the extension-side agent.

``identity`` is an in-memory identity service (session, bootstrap and the
delegated vault routes) reached through httpx.MockTransport by a real
IdentityClient. ``logouts`` records the cascade-logout requests sent to
application origins. ``coordinator`` wires both to a BackgroundCoordinator
whose slot shares ``store`` with the page agents under test.
"""

from __future__ import annotations

import json

import httpx
import pytest
import pytest_asyncio

from keyrelay.agent.client import IdentityClient
from keyrelay.agent.coordinator import BackgroundCoordinator
from keyrelay.agent.markers import MarkerStore
from keyrelay.agent.session import SessionSlot
from keyrelay.config import AgentSettings

DEFAULT_SCHEMA = {
    "username": {"selector": "input[name='username']", "type": "text"},
    "password": {"selector": "input[name='password']", "type": "password"},
}
ROLE_SCHEMA = {**DEFAULT_SCHEMA, "role": {"selector": "select[name='role']", "type": "select"}}

APPS = [
    {"appId": "app_a", "origin": "http://localhost:3001", "loginSchema": DEFAULT_SCHEMA},
    {"appId": "app_b", "origin": "http://localhost:3002", "loginSchema": DEFAULT_SCHEMA},
    {"appId": "app_d", "origin": "http://localhost:3004", "loginSchema": ROLE_SCHEMA},
]


class FakeIdentity:
    """Identity service double. ``store`` is keyed by (userId, appId)."""

    def __init__(self) -> None:
        self.user: dict | None = {"userId": 7, "username": "alice"}
        self.apps = list(APPS)
        self.store: dict[tuple[int, str], dict] = {}
        self.tokens: dict[str, int] = {}
        self.expires_in = 3600
        self.reject_tokens = False
        self.down = False
        self.issued = 0
        self.requests: list[tuple[str, str]] = []

    def login(self, user_id: int, username: str) -> None:
        self.user = {"userId": user_id, "username": username}

    def logout(self) -> None:
        self.user = None
        self.tokens.clear()

    def count(self, method: str, path: str) -> int:
        return self.requests.count((method, path))

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        self.requests.append((request.method, path))

        if path == "/api/session/status":
            if self.user is None:
                return httpx.Response(401, json={"authenticated": False})
            return httpx.Response(200, json={"authenticated": True, **self.user, "role": "user"})

        if path == "/api/plugin/bootstrap":
            if self.user is None:
                return httpx.Response(401, json={"error": "Not authenticated", "code": "unauthorized"})
            self.issued += 1
            token = f"ptk_{self.issued}"
            self.tokens[token] = self.user["userId"]
            return httpx.Response(
                200,
                json={
                    "pluginToken": token,
                    "expiresIn": self.expires_in,
                    **self.user,
                    "apps": self.apps,
                },
            )

        user_id = self.tokens.get(request.headers.get("authorization", "").removeprefix("Bearer "))
        if user_id is None or self.reject_tokens:
            return httpx.Response(401, json={"error": "Token not found", "code": "token_rejected"})

        if request.method == "GET" and path == "/api/vault/credentials":
            app_id = request.url.params["appId"]
            fields = self.store.get((user_id, app_id))
            if fields is None:
                return httpx.Response(404, json={"error": "Credentials not found", "code": "not_found"})
            return httpx.Response(200, json={"appId": app_id, "fields": fields})

        body = json.loads(request.content)
        key = (user_id, body["appId"])
        if request.method == "POST" and path == "/api/vault/credentials":
            self.store[key] = dict(body["fields"])
            return httpx.Response(200, json={"success": True, "message": "Credentials saved"})
        if request.method == "PUT" and path == "/api/vault/password":
            if key not in self.store:
                return httpx.Response(404, json={"error": "Credentials not found", "code": "not_found"})
            self.store[key]["password"] = body["newPassword"]
            return httpx.Response(200, json={"success": True, "message": "Password updated"})
        return httpx.Response(404, json={"error": "Not found"})


class LogoutRecorder:
    def __init__(self) -> None:
        self.urls: list[str] = []
        self.unreachable: set[str] = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        origin = f"{request.url.scheme}://{request.url.host}:{request.url.port}"
        if origin in self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)
        self.urls.append(str(request.url))
        return httpx.Response(200)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def logouts() -> LogoutRecorder:
    return LogoutRecorder()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MarkerStore:
    return MarkerStore()


@pytest.fixture
def settings() -> AgentSettings:
    return AgentSettings(success_poll_attempts=1, success_poll_interval=0)


@pytest_asyncio.fixture
async def coordinator(identity, logouts, clock, store, settings):
    client = IdentityClient("http://identity", transport=httpx.MockTransport(identity.handler))
    http = httpx.AsyncClient(transport=httpx.MockTransport(logouts.handler))
    coord = BackgroundCoordinator(
        client, slot=SessionSlot(store, clock=clock), settings=settings, http=http
    )
    yield coord
    await coord.close()
