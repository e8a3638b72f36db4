"""
Test fixtures for the vault package.

``fake_db`` replaces the connection pool with a MagicMock connection so DAL
tests can assert on the SQL issued without a database. ``master_key`` pins a
random key so encrypted blobs can be built and inspected. ``test_client``
wraps a vault app without running its lifespan.
"""

from __future__ import annotations

import secrets
from contextlib import contextmanager
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

from keyrelay.config import reset_config
from keyrelay.vault.crypto import reset_key_cache


@pytest.fixture(autouse=True)
def _fresh_config():
    reset_config()
    reset_key_cache()
    yield
    reset_config()
    reset_key_cache()


@pytest.fixture
def master_key():
    key = secrets.token_bytes(32)
    with patch("keyrelay.vault.dal.get_master_key", return_value=key):
        yield key


@pytest.fixture
def fake_db():
    """Mocked pool: ``fake_db.cur`` is the cursor every DAL call receives."""
    conn = MagicMock()
    cur = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    conn.cursor.return_value.__exit__.return_value = False
    roles: list[str] = []

    @contextmanager
    def fake_get_connection(role="vault", autocommit=False):
        roles.append(role)
        yield conn

    with patch("keyrelay.vault.dal.get_connection", fake_get_connection):
        yield SimpleNamespace(conn=conn, cur=cur, roles=roles)



@pytest_asyncio.fixture
async def test_client():
    """Async HTTP client wrapping a vault app via ASGITransport (no lifespan)."""
    from keyrelay.vault.service import create_app

    app = create_app(wait_for_db=False)
    transport = ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
