"""
Root-level shared test fixtures.

Inherited by the vault, identity and agent suites under keyrelay/ and by
tests/.
"""

from __future__ import annotations

import pytest

from keyrelay.config import reset_config


@pytest.fixture
def clean_env(monkeypatch):
    """Remove KeyRelay env vars that leak between tests and reload config."""
    for key in [
        "KEYRELAY_WORKSPACE",
        "KEYRELAY_VAULT_DB_HOST",
        "KEYRELAY_VAULT_DB_PORT",
        "KEYRELAY_VAULT_DB_NAME",
        "KEYRELAY_VAULT_DB_USER",
        "KEYRELAY_VAULT_DB_PASSWORD",
        "KEYRELAY_VAULT_REPLICA_HOST",
        "KEYRELAY_VAULT_REPLICA_PORT",
        "KEYRELAY_IDENTITY_DB_HOST",
        "KEYRELAY_IDENTITY_DB_NAME",
        "KEYRELAY_VAULT_PORT",
        "KEYRELAY_VAULT_INSTANCE",
        "KEYRELAY_VAULT_KEY_FILE",
        "KEYRELAY_VAULT_URL",
        "KEYRELAY_IDENTITY_PORT",
        "KEYRELAY_IDENTITY_URL",
        "KEYRELAY_TOKEN_TTL",
    ]:
        monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()
