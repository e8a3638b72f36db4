"""
Connection factory with pooling for the KeyRelay PostgreSQL databases.

Three pools exist, created lazily:
    vault           primary of the vault database (all writes)
    vault_replica   read replica, falls back to the primary when unconfigured
    identity        identity service database

Usage:
    from keyrelay.db import get_connection

    with get_connection("vault") as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Generator
from contextlib import contextmanager

import psycopg2
import psycopg2.pool

from keyrelay.config import DatabaseConfig, get_config

logger = logging.getLogger(__name__)

VAULT = "vault"
VAULT_REPLICA = "vault_replica"
IDENTITY = "identity"

_pools: dict[str, psycopg2.pool.ThreadedConnectionPool] = {}
_pool_lock = threading.Lock()


def _database_for(role: str) -> DatabaseConfig:
    cfg = get_config()
    if role == VAULT:
        return cfg.vault_db
    if role == VAULT_REPLICA:
        return cfg.vault_replica or cfg.vault_db
    if role == IDENTITY:
        return cfg.identity_db
    raise ValueError(f"Unknown database role: {role}")


def has_replica() -> bool:
    """True when a dedicated vault read replica is configured."""
    return get_config().vault_replica is not None


def get_pool(
    role: str = VAULT, minconn: int = 1, maxconn: int = 10
) -> psycopg2.pool.ThreadedConnectionPool:
    """Get or create the connection pool for a database role."""
    if role == VAULT_REPLICA and not has_replica():
        role = VAULT

    pool = _pools.get(role)
    if pool is not None and not pool.closed:
        return pool

    with _pool_lock:
        pool = _pools.get(role)
        if pool is not None and not pool.closed:
            return pool

        cfg = _database_for(role)
        logger.info(
            "Creating %s connection pool: %s@%s:%s/%s (min=%d, max=%d)",
            role,
            cfg.user,
            cfg.host,
            cfg.port,
            cfg.name,
            minconn,
            maxconn,
        )
        try:
            pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=minconn,
                maxconn=maxconn,
                connect_timeout=5,
                **cfg.dict,
            )
        except psycopg2.OperationalError as e:
            raise ConnectionError(
                f"Cannot connect to PostgreSQL at {cfg.host}:{cfg.port}/{cfg.name}: {e}\n"
                f"Check KEYRELAY_*_DB_* environment variables and ensure PostgreSQL is running."
            ) from e
        _pools[role] = pool
        return pool


@contextmanager
def get_connection(
    role: str = VAULT,
    autocommit: bool = False,
) -> Generator[psycopg2.extensions.connection, None, None]:
    """Get a connection from the pool for ``role``.

    Usage:
        with get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
        # Connection is returned to pool automatically.
        # On exception, transaction is rolled back.
    """
    pool = get_pool(role)
    conn = pool.getconn()
    try:
        if autocommit:
            conn.autocommit = True
        yield conn
        if not autocommit:
            conn.commit()
    except Exception:
        if not autocommit:
            conn.rollback()
        raise
    finally:
        if autocommit:
            conn.autocommit = False
        pool.putconn(conn)


def ping(role: str = VAULT) -> bool:
    """Return True when a trivial query succeeds against ``role``."""
    try:
        with get_connection(role) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
        return True
    except Exception as e:
        logger.warning("Database ping failed for %s: %s", role, e)
        return False


def close_pool(role: str | None = None) -> None:
    """Close the pool for ``role``, or every pool when role is None."""
    roles = [role] if role else list(_pools)
    for r in roles:
        pool = _pools.pop(r, None)
        if pool is not None:
            pool.closeall()
