"""
KeyRelay Vault — credential records keyed by (vault_id, app_id).

The vault stores opaque field maps (AES-256-GCM encrypted at rest) and an
append-only audit trail. It has no notion of users, sessions or login forms;
callers identify a record only by an opaque vault_id and an application id.

Public API:
    read_credentials(vault_id, app_id)            → field map
    write_credentials(vault_id, app_id, fields)   → upsert
    update_password(vault_id, app_id, password)   → replace password only
    delete_credentials(vault_id, app_id)          → remove one record
    delete_vault(vault_id)                        → remove all, returns count
"""

from __future__ import annotations

from keyrelay.vault.dal import (
    count_credentials,
    delete_credentials,
    delete_vault,
    read_credentials,
    update_password,
    write_credentials,
)

__all__ = [
    "count_credentials",
    "delete_credentials",
    "delete_vault",
    "read_credentials",
    "update_password",
    "write_credentials",
]
