"""
Test fixtures for the identity service.

``fake_vault`` is an in-memory stand-in for the internal vault API served
through httpx.MockTransport, so the delegation path runs end to end through a
real VaultClient. ``test_client`` wraps an identity app wired to it.
"""

from __future__ import annotations

import json

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

from keyrelay.config import reset_config
from keyrelay.identity.service import create_app
from keyrelay.identity.vault_client import VaultClient


class FakeVault:
    """Records every request; ``down`` makes it unreachable, ``status`` forces a reply."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], dict] = {}
        self.requests: list[tuple[str, dict]] = []
        self.down = False
        self.status: int | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        path = request.url.path
        if path == "/health":
            return httpx.Response(200, json={"status": "ok"})
        body = json.loads(request.content)
        self.requests.append((path, body))
        if self.status is not None:
            return httpx.Response(self.status, json={"error": "forced", "code": "forced"})

        key = (body.get("vaultId"), body.get("appId"))
        if path == "/internal/vault/read":
            if key not in self.records:
                return httpx.Response(404, json={"error": "Credentials not found", "code": "not_found"})
            return httpx.Response(200, json={"fields": self.records[key]})
        if path == "/internal/vault/write":
            self.records[key] = dict(body["fields"])
            return httpx.Response(200, json={"success": True})
        if path == "/internal/vault/update-password":
            if key not in self.records:
                return httpx.Response(404, json={"error": "Credentials not found", "code": "not_found"})
            self.records[key]["password"] = body["newPassword"]
            return httpx.Response(200, json={"success": True})
        if path == "/internal/vault/delete-vault":
            doomed = [k for k in self.records if k[0] == body["vaultId"]]
            for k in doomed:
                del self.records[k]
            return httpx.Response(200, json={"success": True, "deletedCount": len(doomed)})
        return httpx.Response(404, json={"error": "Not found"})

    def paths(self) -> list[str]:
        return [p for p, _ in self.requests]


@pytest.fixture(autouse=True)
def _fresh_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def fake_vault() -> FakeVault:
    return FakeVault()


@pytest_asyncio.fixture
async def vault_client(fake_vault):
    client = VaultClient("http://vault", transport=httpx.MockTransport(fake_vault.handler))
    yield client
    await client.close()


@pytest_asyncio.fixture
async def test_client(vault_client):
    """Async HTTP client wrapping the identity app via ASGITransport."""
    app = create_app(vault_client=vault_client)
    transport = ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
