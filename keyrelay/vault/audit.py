"""
Vault audit log — append-only record of credential operations.

Actions:
  - read, write, update, delete   one (vault_id, app_id) record
  - delete-vault                  every record of a vault_id (app_id = "*")

Entries are written with the caller's cursor so the audit row commits or rolls
back together with the operation it records. Queries go to the read replica
when one is configured.

Usage:
    from keyrelay.vault.audit import AuditAction, record_event, query_log

    with get_connection() as conn:
        with conn.cursor() as cur:
            ...
            record_event(cur, vault_id, app_id, AuditAction.WRITE, instance="vault-1")
"""

from __future__ import annotations

import logging
from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from enum import StrEnum
from typing import Any

import psycopg2
from psycopg2.extras import RealDictCursor

from keyrelay.db.connection import VAULT_REPLICA, get_connection
from keyrelay.errors import StorageError

logger = logging.getLogger(__name__)

ALL_APPS = "*"


class AuditAction(StrEnum):
    READ = "read"
    WRITE = "write"
    UPDATE = "update"
    DELETE = "delete"
    DELETE_VAULT = "delete-vault"


def record_event(cur, vault_id: str, app_id: str, action: AuditAction | str, *, instance: str) -> None:
    """Append one audit entry using an open cursor (same transaction as the operation)."""
    cur.execute(
        "INSERT INTO vault_audit_log (vault_id, app_id, action, instance) VALUES (%s, %s, %s, %s)",
        (vault_id, app_id, str(AuditAction(action)), instance),
    )


@contextmanager
def _replica() -> Generator[Any, None, None]:
    try:
        with get_connection(VAULT_REPLICA) as conn:
            yield conn
    except (psycopg2.Error, ConnectionError) as e:
        logger.error("Audit query failed: %s", e)
        raise StorageError("Internal server error") from e


def _entry_to_dict(row: dict) -> dict:
    return {
        "id": row["id"],
        "vaultId": row["vault_id"],
        "appId": row["app_id"],
        "action": row["action"],
        "timestamp": row["timestamp"].isoformat(),
        "instance": row["instance"],
    }


def query_log(
    limit: int = 50,
    vault_id: str | None = None,
    app_id: str | None = None,
    action: str | None = None,
    since: datetime | None = None,
) -> list[dict]:
    """Query the audit log with filters, newest first."""
    query = (
        "SELECT id, vault_id, app_id, action, timestamp, instance "
        "FROM vault_audit_log WHERE 1=1"
    )
    params: list = []

    if vault_id:
        query += " AND vault_id = %s"
        params.append(vault_id)
    if app_id:
        query += " AND app_id = %s"
        params.append(app_id)
    if action:
        query += " AND action = %s"
        params.append(str(AuditAction(action)))
    if since:
        query += " AND timestamp >= %s"
        params.append(since)

    query += " ORDER BY timestamp DESC, id DESC LIMIT %s"
    params.append(limit)

    with _replica() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(query, params)
        return [_entry_to_dict(r) for r in cur.fetchall()]


def stats() -> dict:
    """Audit entry counts per action."""
    with _replica() as conn:
        cur = conn.cursor()
        cur.execute("SELECT action, COUNT(*) FROM vault_audit_log GROUP BY action ORDER BY action")
        by_action = {row[0]: row[1] for row in cur.fetchall()}
    return {"total": sum(by_action.values()), "by_action": by_action}
