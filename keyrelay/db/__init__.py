"""Database connection management for KeyRelay."""

from keyrelay.db.connection import (
    IDENTITY,
    VAULT,
    VAULT_REPLICA,
    close_pool,
    get_connection,
    get_pool,
    ping,
)

__all__ = [
    "IDENTITY",
    "VAULT",
    "VAULT_REPLICA",
    "close_pool",
    "get_connection",
    "get_pool",
    "ping",
]
