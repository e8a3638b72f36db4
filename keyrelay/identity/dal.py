"""
Identity Data Access Layer — users, applications, plugin tokens, sessions.

Everything the identity service knows lives here; credential values never do.
Each user owns an opaque ``vault_id`` that is the only key the vault sees.
Issued vault ids are recorded in ``identity_vault_ids`` and never handed out
again, even after the user is deleted.

Usage:
    from keyrelay.identity.dal import create_user, issue_plugin_token

    user = create_user("alice", "s3cret")
    token, expires_in = issue_plugin_token(user["id"])
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

import psycopg2
import psycopg2.errors
from psycopg2.extras import Json, RealDictCursor

from keyrelay.config import get_config
from keyrelay.db.connection import IDENTITY, get_connection, ping
from keyrelay.errors import NotFound, StorageError, ValidationError
from keyrelay.identity.models import app_to_dict, user_to_dict
from keyrelay.identity.passwords import hash_password, verify_password

logger = logging.getLogger(__name__)

ROLES = ("admin", "user")
DEFAULT_SCOPES = ("vault:read", "vault:write")
TOKEN_PREFIX = "ptk_"
VAULT_ID_PREFIX = "vlt_"

DEFAULT_SCHEMA = {
    "username": {"selector": "input[name='username']", "type": "text"},
    "password": {"selector": "input[name='password']", "type": "password"},
}

ROLE_SCHEMA = {
    **DEFAULT_SCHEMA,
    "role": {"selector": "select[name='role']", "type": "select"},
}

DEMO_APPS = [
    ("app_a", "http://localhost:3001", DEFAULT_SCHEMA),
    ("app_b", "http://localhost:3002", DEFAULT_SCHEMA),
    ("app_c", "http://localhost:3003", DEFAULT_SCHEMA),
    ("app_d", "http://localhost:3004", ROLE_SCHEMA),
]

DEMO_USERS = [
    ("admin", "admin123", "admin"),
    ("testuser", "TestPass123!", "user"),
]


@contextmanager
def _transaction() -> Generator[Any, None, None]:
    try:
        with get_connection(IDENTITY) as conn:
            yield conn
    except (psycopg2.Error, ConnectionError) as e:
        logger.error("Identity storage error: %s", e)
        raise StorageError("Internal server error") from e


# ─── Users ───────────────────────────────────────────────────────────────


def _issue_vault_id(cur) -> str:
    for _ in range(5):
        candidate = VAULT_ID_PREFIX + secrets.token_hex(16)
        cur.execute(
            "INSERT INTO identity_vault_ids (vault_id) VALUES (%s) ON CONFLICT DO NOTHING",
            (candidate,),
        )
        if cur.rowcount == 1:
            return candidate
    raise StorageError("Could not issue a unique vault id")


def create_user(username: str, password: str, role: str = "user") -> dict:
    """Create a user with a freshly issued vault_id."""
    if not username or not password:
        raise ValidationError("username and password are required")
    if role not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")

    password_hash = hash_password(password)
    with _transaction() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        vault_id = _issue_vault_id(cur)
        try:
            cur.execute(
                """
                INSERT INTO identity_users (username, password_hash, role, vault_id)
                VALUES (%s, %s, %s, %s)
                RETURNING id, username, role, vault_id
                """,
                (username, password_hash, role, vault_id),
            )
        except psycopg2.errors.UniqueViolation as e:
            raise ValidationError("Username already exists") from e
        row = cur.fetchone()
    logger.info("Created user %s with id=%s", username, row["id"])
    return user_to_dict(row)


def get_user(user_id: int) -> dict | None:
    with _transaction() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            "SELECT id, username, role, vault_id FROM identity_users WHERE id = %s", (user_id,)
        )
        row = cur.fetchone()
        return user_to_dict(row) if row else None


def list_users() -> list[dict]:
    with _transaction() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute("SELECT id, username, role, vault_id FROM identity_users ORDER BY id")
        return [user_to_dict(r) for r in cur.fetchall()]


def authenticate(username: str, password: str) -> dict | None:
    """Return the user when the password matches, else None."""
    with _transaction() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            "SELECT id, username, role, vault_id, password_hash FROM identity_users WHERE username = %s",
            (username,),
        )
        row = cur.fetchone()
    if not row or not verify_password(password, row["password_hash"]):
        return None
    return user_to_dict(row)


def get_vault_id(user_id: int) -> str | None:
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute("SELECT vault_id FROM identity_users WHERE id = %s", (user_id,))
        row = cur.fetchone()
        return row[0] if row else None


def delete_user_rows(user_id: int) -> bool:
    """Remove a user with its sessions, tokens and app assignments in one transaction.

    The issued vault_id stays recorded in identity_vault_ids.
    """
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM identity_sessions WHERE user_id = %s", (user_id,))
        cur.execute("DELETE FROM identity_plugin_tokens WHERE user_id = %s", (user_id,))
        cur.execute("DELETE FROM identity_user_apps WHERE user_id = %s", (user_id,))
        cur.execute("DELETE FROM identity_users WHERE id = %s", (user_id,))
        deleted = cur.rowcount > 0
    if deleted:
        logger.info("Deleted user %s and all related data", user_id)
    return deleted


# ─── Applications ────────────────────────────────────────────────────────


def register_app(app_id: str, origin: str, login_schema: dict | None = None) -> dict:
    """Register (or re-register) an application by app_id."""
    with _transaction() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            """
            INSERT INTO identity_apps (app_id, origin, login_schema)
            VALUES (%s, %s, %s)
            ON CONFLICT (app_id) DO UPDATE
                SET origin = EXCLUDED.origin, login_schema = EXCLUDED.login_schema
            RETURNING id, app_id, origin, login_schema
            """,
            (app_id, origin, Json(login_schema) if login_schema is not None else None),
        )
        return app_to_dict(cur.fetchone())


def get_user_apps(user_id: int) -> list[dict]:
    """Applications assigned to a user, with their login schemas."""
    with _transaction() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            """
            SELECT a.id, a.app_id, a.origin, a.login_schema
            FROM identity_apps a
            JOIN identity_user_apps ua ON ua.app_id = a.id
            WHERE ua.user_id = %s
            ORDER BY a.app_id
            """,
            (user_id,),
        )
        return [app_to_dict(r) for r in cur.fetchall()]


def _app_pk(cur, app_id: str) -> int:
    cur.execute("SELECT id FROM identity_apps WHERE app_id = %s", (app_id,))
    row = cur.fetchone()
    if not row:
        raise NotFound("App not found")
    return row[0]


def assign_app(user_id: int, app_id: str) -> None:
    with _transaction() as conn:
        cur = conn.cursor()
        pk = _app_pk(cur, app_id)
        try:
            cur.execute(
                "INSERT INTO identity_user_apps (user_id, app_id) VALUES (%s, %s) ON CONFLICT DO NOTHING",
                (user_id, pk),
            )
        except psycopg2.errors.ForeignKeyViolation as e:
            raise NotFound("User not found") from e
    logger.info("Assigned %s to user %s", app_id, user_id)


def remove_app(user_id: int, app_id: str) -> None:
    with _transaction() as conn:
        cur = conn.cursor()
        pk = _app_pk(cur, app_id)
        cur.execute(
            "DELETE FROM identity_user_apps WHERE user_id = %s AND app_id = %s", (user_id, pk)
        )
    logger.info("Removed %s from user %s", app_id, user_id)


def is_user_allowed_app(user_id: int, app_id: str) -> bool:
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            SELECT 1 FROM identity_user_apps ua
            JOIN identity_apps a ON a.id = ua.app_id
            WHERE ua.user_id = %s AND a.app_id = %s
            """,
            (user_id, app_id),
        )
        return cur.fetchone() is not None


# ─── Plugin tokens ───────────────────────────────────────────────────────


def issue_plugin_token(
    user_id: int, scopes: tuple[str, ...] = DEFAULT_SCOPES, ttl: int | None = None
) -> tuple[str, int]:
    """Mint a capability token. Returns (token, expires_in_seconds)."""
    expires_in = ttl if ttl is not None else get_config().identity.token_ttl
    token = TOKEN_PREFIX + secrets.token_hex(32)
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO identity_plugin_tokens (token, user_id, scopes, expires_at)
            VALUES (%s, %s, %s, NOW() + make_interval(secs => %s))
            """,
            (token, user_id, list(scopes), expires_in),
        )
    return token, expires_in


def introspect_token(token: str) -> dict:
    """Resolve a token to ``{active, userId, username, scopes}``.

    Expired tokens are deleted when seen.
    """
    with _transaction() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            """
            SELECT t.user_id, t.scopes, t.expires_at <= NOW() AS expired, u.username
            FROM identity_plugin_tokens t
            LEFT JOIN identity_users u ON u.id = t.user_id
            WHERE t.token = %s
            """,
            (token,),
        )
        row = cur.fetchone()
        if not row:
            return {"active": False, "error": "Token not found"}
        if row["expired"]:
            cur.execute("DELETE FROM identity_plugin_tokens WHERE token = %s", (token,))
            return {"active": False, "error": "Token expired"}
    if row["username"] is None:
        return {"active": False, "error": "User not found"}
    return {
        "active": True,
        "userId": row["user_id"],
        "username": row["username"],
        "scopes": list(row["scopes"]),
    }


def revoke_user_tokens(user_id: int) -> int:
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM identity_plugin_tokens WHERE user_id = %s", (user_id,))
        return cur.rowcount


def revoke_user_access(user_id: int) -> int:
    """Drop every session and plugin token of a user. Returns rows removed."""
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM identity_plugin_tokens WHERE user_id = %s", (user_id,))
        removed = cur.rowcount
        cur.execute("DELETE FROM identity_sessions WHERE user_id = %s", (user_id,))
        return removed + cur.rowcount


# ─── Sessions ────────────────────────────────────────────────────────────


def create_session(user_id: int, ttl: int | None = None) -> str:
    session_ttl = ttl if ttl is not None else get_config().identity.session_ttl
    session_id = secrets.token_urlsafe(32)
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO identity_sessions (session_id, user_id, expires_at)
            VALUES (%s, %s, NOW() + make_interval(secs => %s))
            """,
            (session_id, user_id, session_ttl),
        )
    return session_id


def get_session(session_id: str) -> dict | None:
    """Return ``{user_id, username, role}`` for a live session, else None."""
    with _transaction() as conn:
        cur = conn.cursor(cursor_factory=RealDictCursor)
        cur.execute(
            """
            SELECT s.user_id, s.expires_at <= NOW() AS expired, u.username, u.role
            FROM identity_sessions s
            JOIN identity_users u ON u.id = s.user_id
            WHERE s.session_id = %s
            """,
            (session_id,),
        )
        row = cur.fetchone()
        if not row:
            return None
        if row["expired"]:
            cur.execute("DELETE FROM identity_sessions WHERE session_id = %s", (session_id,))
            return None
    return {"user_id": row["user_id"], "username": row["username"], "role": row["role"]}


def delete_session(session_id: str) -> None:
    with _transaction() as conn:
        cur = conn.cursor()
        cur.execute("DELETE FROM identity_sessions WHERE session_id = %s", (session_id,))


# ─── Health / seed ───────────────────────────────────────────────────────


def check_health() -> bool:
    return ping(IDENTITY)


def seed_demo_data() -> dict:
    """Register the demo apps and users. Idempotent.

    Returns ``{"apps": [...], "users": [...], "assigned": {...}}`` where
    ``assigned`` maps usernames of newly created non-admin users to their
    vault_id, so the caller can seed vault credentials for them.
    """
    apps = [register_app(app_id, origin, schema)["appId"] for app_id, origin, schema in DEMO_APPS]

    existing = {u["username"] for u in list_users()}
    created: list[str] = []
    assigned: dict[str, str] = {}
    for username, password, role in DEMO_USERS:
        if username in existing:
            continue
        user = create_user(username, password, role)
        created.append(username)
        if role == "user":
            for app_id in apps:
                assign_app(user["id"], app_id)
            assigned[username] = user["vaultId"]

    logger.info("Seeded %d apps, created users: %s", len(apps), ", ".join(created) or "none")
    return {"apps": apps, "users": created, "assigned": assigned}
