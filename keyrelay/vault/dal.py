"""
Vault DAL — credential records keyed by (vault_id, app_id).

Every operation runs in a single transaction on the primary and appends its
audit entry with the same cursor. Field maps are stored AES-256-GCM encrypted.

update_password is the only read-modify-write: the row is locked with
SELECT ... FOR UPDATE so a concurrent write or password update on the same key
waits for this transaction instead of being silently overwritten.

Usage:
    from keyrelay.vault import dal

    dal.write_credentials("v1", "app_a", {"username": "a", "password": "p"})
    dal.update_password("v1", "app_a", "p2")
    dal.read_credentials("v1", "app_a")     # {"username": "a", "password": "p2"}
"""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

import psycopg2
from cryptography.exceptions import InvalidTag

from keyrelay.config import get_config
from keyrelay.db.connection import VAULT, VAULT_REPLICA, get_connection, has_replica, ping
from keyrelay.errors import CredentialNotFound, StorageError
from keyrelay.vault.audit import ALL_APPS, AuditAction, record_event
from keyrelay.vault.crypto import decrypt_fields, encrypt_fields, get_master_key

logger = logging.getLogger(__name__)


def _instance() -> str:
    return get_config().vault.instance


@contextmanager
def _transaction(role: str = VAULT) -> Generator[Any, None, None]:
    """Primary-side transaction; storage failures become StorageError."""
    try:
        with get_connection(role) as conn:
            yield conn
    except (psycopg2.Error, ConnectionError) as e:
        logger.error("[%s] Storage error: %s", _instance(), e)
        raise StorageError("Internal server error") from e


def _open(blob: Any, master_key: bytes) -> dict[str, Any]:
    try:
        return decrypt_fields(bytes(blob), master_key)
    except (InvalidTag, ValueError) as e:
        logger.error("[%s] Cannot decrypt stored credential: %s", _instance(), e)
        raise StorageError("Internal server error") from e


def read_credentials(vault_id: str, app_id: str) -> dict[str, Any]:
    """Return the stored field map. Raises CredentialNotFound if absent."""
    master_key = get_master_key()
    with _transaction() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT encrypted_fields FROM vault_credentials WHERE vault_id = %s AND app_id = %s",
                (vault_id, app_id),
            )
            row = cur.fetchone()
            if not row:
                logger.debug("[%s] No credentials for vault_id=%s app_id=%s", _instance(), vault_id, app_id)
                raise CredentialNotFound("Credentials not found")
            fields = _open(row[0], master_key)
            record_event(cur, vault_id, app_id, AuditAction.READ, instance=_instance())
    return fields


def write_credentials(vault_id: str, app_id: str, fields: dict[str, Any]) -> None:
    """Upsert a record, replacing its whole field map."""
    blob = encrypt_fields(fields, get_master_key())
    with _transaction() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO vault_credentials (vault_id, app_id, encrypted_fields, created_at, updated_at)
                VALUES (%s, %s, %s, NOW(), NOW())
                ON CONFLICT (vault_id, app_id)
                DO UPDATE SET encrypted_fields = EXCLUDED.encrypted_fields,
                              updated_at = GREATEST(vault_credentials.updated_at, EXCLUDED.updated_at)
                """,
                (vault_id, app_id, psycopg2.Binary(blob)),
            )
            record_event(cur, vault_id, app_id, AuditAction.WRITE, instance=_instance())
    logger.info("[%s] Write: vault_id=%s, app_id=%s", _instance(), vault_id, app_id)


def update_password(vault_id: str, app_id: str, new_password: str) -> None:
    """Replace only the password key of an existing record, atomically.

    Raises CredentialNotFound when there is no record to update.
    """
    master_key = get_master_key()
    with _transaction() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT encrypted_fields FROM vault_credentials "
                "WHERE vault_id = %s AND app_id = %s FOR UPDATE",
                (vault_id, app_id),
            )
            row = cur.fetchone()
            if not row:
                raise CredentialNotFound("Credentials not found")

            fields = _open(row[0], master_key)
            fields["password"] = new_password

            cur.execute(
                """
                UPDATE vault_credentials
                SET encrypted_fields = %s, updated_at = GREATEST(updated_at, NOW())
                WHERE vault_id = %s AND app_id = %s
                """,
                (psycopg2.Binary(encrypt_fields(fields, master_key)), vault_id, app_id),
            )
            record_event(cur, vault_id, app_id, AuditAction.UPDATE, instance=_instance())
    logger.info("[%s] Password updated: vault_id=%s, app_id=%s", _instance(), vault_id, app_id)


def delete_credentials(vault_id: str, app_id: str) -> None:
    """Delete one record. Raises CredentialNotFound if it does not exist."""
    with _transaction() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "DELETE FROM vault_credentials WHERE vault_id = %s AND app_id = %s",
                (vault_id, app_id),
            )
            if cur.rowcount == 0:
                raise CredentialNotFound("Credentials not found")
            record_event(cur, vault_id, app_id, AuditAction.DELETE, instance=_instance())
    logger.info("[%s] Deleted: vault_id=%s, app_id=%s", _instance(), vault_id, app_id)


def delete_vault(vault_id: str) -> int:
    """Cascade-delete every record of a vault_id. Returns the number removed."""
    with _transaction() as conn:
        with conn.cursor() as cur:
            cur.execute("DELETE FROM vault_credentials WHERE vault_id = %s", (vault_id,))
            deleted: int = cur.rowcount
            record_event(cur, vault_id, ALL_APPS, AuditAction.DELETE_VAULT, instance=_instance())
    logger.info("[%s] Deleted all for vault_id=%s (%d rows)", _instance(), vault_id, deleted)
    return deleted


def count_credentials(vault_id: str | None = None) -> int:
    """Count stored records, optionally for one vault_id."""
    with _transaction(VAULT_REPLICA) as conn:
        with conn.cursor() as cur:
            if vault_id:
                cur.execute("SELECT COUNT(*) FROM vault_credentials WHERE vault_id = %s", (vault_id,))
            else:
                cur.execute("SELECT COUNT(*) FROM vault_credentials")
            row = cur.fetchone()
            return row[0] if row else 0


def check_health() -> dict:
    """Reachability of the backing store only."""
    primary = ping(VAULT)
    if has_replica():
        replica = "ok" if ping(VAULT_REPLICA) else "error"
    else:
        replica = "none"
    return {"status": "ok" if primary else "degraded", "primary": "ok" if primary else "error", "replica": replica}
