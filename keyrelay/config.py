"""
Centralized configuration for KeyRelay.

All configuration is loaded from environment variables with sensible defaults.
The vault service, the identity service and the extension-side agent each read
their own section; nothing here is specific to one deployment.

Usage:
    from keyrelay.config import get_config
    cfg = get_config()
    print(cfg.vault_db.name)     # "vault_db"
    print(cfg.identity.port)     # 4000
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL connection parameters."""

    host: str = ""  # empty = Unix socket (peer auth); set to 127.0.0.1 for TCP
    port: int = 5432
    name: str = "vault_db"
    user: str = "vault_user"
    password: str = ""

    @property
    def dsn(self) -> str:
        """Return a psycopg2-compatible DSN string."""
        parts = [f"dbname={self.name}"]
        if self.host:
            parts.append(f"host={self.host}")
        parts.append(f"port={self.port}")
        if self.user:
            parts.append(f"user={self.user}")
        if self.password:
            parts.append(f"password={self.password}")
        return " ".join(parts)

    @property
    def dict(self) -> dict[str, str | int]:
        """Return a psycopg2.connect() kwargs dict."""
        d: dict[str, str | int] = {
            "dbname": self.name,
            "port": self.port,
        }
        if self.host:
            d["host"] = self.host
        if self.user:
            d["user"] = self.user
        if self.password:
            d["password"] = self.password
        return d


@dataclass(frozen=True)
class VaultConfig:
    """Vault service parameters (one instance of a replicated pool)."""

    host: str = "127.0.0.1"
    port: int = 5000
    instance: str = "vault"
    key_file: Path = field(default_factory=lambda: Path.home() / "keyrelay" / ".vault-key")
    startup_attempts: int = 5
    startup_delay: float = 2.0


@dataclass(frozen=True)
class IdentityConfig:
    """Identity service parameters."""

    host: str = "127.0.0.1"
    port: int = 4000
    vault_url: str = "http://127.0.0.1:5000"
    vault_timeout: float = 5.0
    token_ttl: int = 3600
    session_ttl: int = 24 * 60 * 60
    session_cookie: str = "KR_SESSION"
    cookie_secure: bool = False


@dataclass(frozen=True)
class AgentSettings:
    """Extension-side settings for the coordinator and page agents."""

    identity_url: str = "http://127.0.0.1:4000"
    request_timeout: float = 10.0
    logout_path: str = "/logout"
    success_poll_attempts: int = 3
    success_poll_interval: float = 0.25


@dataclass(frozen=True)
class Config:
    """Top-level KeyRelay configuration."""

    workspace: Path = field(default_factory=lambda: Path.home() / "keyrelay")

    vault_db: DatabaseConfig = field(default_factory=DatabaseConfig)
    # Read replica of the vault database; None when reads go to the primary
    vault_replica: DatabaseConfig | None = None
    identity_db: DatabaseConfig = field(
        default_factory=lambda: DatabaseConfig(name="identity_db", user="identity_user")
    )

    vault: VaultConfig = field(default_factory=VaultConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    agent: AgentSettings = field(default_factory=AgentSettings)


# Singleton
_config: Config | None = None


def get_config() -> Config:
    """Get or create the singleton config from environment variables."""
    global _config
    if _config is not None:
        return _config
    _config = _load_from_env()
    return _config


def _db_from_env(prefix: str, default_name: str, default_user: str) -> DatabaseConfig:
    return DatabaseConfig(
        host=os.environ.get(f"{prefix}_HOST", ""),
        port=int(os.environ.get(f"{prefix}_PORT", "5432")),
        name=os.environ.get(f"{prefix}_NAME", default_name),
        user=os.environ.get(f"{prefix}_USER", default_user),
        password=os.environ.get(f"{prefix}_PASSWORD", ""),
    )


def _load_from_env() -> Config:
    """Load configuration from environment variables."""
    workspace = Path(os.environ.get("KEYRELAY_WORKSPACE", Path.home() / "keyrelay"))

    vault_db = _db_from_env("KEYRELAY_VAULT_DB", "vault_db", "vault_user")

    replica_host = os.environ.get("KEYRELAY_VAULT_REPLICA_HOST", "")
    vault_replica = None
    if replica_host:
        vault_replica = DatabaseConfig(
            host=replica_host,
            port=int(os.environ.get("KEYRELAY_VAULT_REPLICA_PORT", str(vault_db.port))),
            name=vault_db.name,
            user=vault_db.user,
            password=vault_db.password,
        )

    identity_db = _db_from_env("KEYRELAY_IDENTITY_DB", "identity_db", "identity_user")

    vault_port = int(os.environ.get("KEYRELAY_VAULT_PORT", "5000"))
    vault_cfg = VaultConfig(
        host=os.environ.get("KEYRELAY_VAULT_HOST", "127.0.0.1"),
        port=vault_port,
        instance=os.environ.get("KEYRELAY_VAULT_INSTANCE", "vault"),
        key_file=Path(os.environ.get("KEYRELAY_VAULT_KEY_FILE", workspace / ".vault-key")),
        startup_attempts=int(os.environ.get("KEYRELAY_VAULT_STARTUP_ATTEMPTS", "5")),
        startup_delay=float(os.environ.get("KEYRELAY_VAULT_STARTUP_DELAY", "2.0")),
    )

    identity_port = int(os.environ.get("KEYRELAY_IDENTITY_PORT", "4000"))
    identity_cfg = IdentityConfig(
        host=os.environ.get("KEYRELAY_IDENTITY_HOST", "127.0.0.1"),
        port=identity_port,
        vault_url=os.environ.get("KEYRELAY_VAULT_URL", f"http://127.0.0.1:{vault_port}"),
        vault_timeout=float(os.environ.get("KEYRELAY_VAULT_TIMEOUT", "5.0")),
        token_ttl=int(os.environ.get("KEYRELAY_TOKEN_TTL", "3600")),
        session_ttl=int(os.environ.get("KEYRELAY_SESSION_TTL", str(24 * 60 * 60))),
        cookie_secure=os.environ.get("KEYRELAY_COOKIE_SECURE", "").lower() in ("1", "true", "yes"),
    )

    agent_cfg = AgentSettings(
        identity_url=os.environ.get(
            "KEYRELAY_IDENTITY_URL", f"http://127.0.0.1:{identity_port}"
        ),
        request_timeout=float(os.environ.get("KEYRELAY_AGENT_TIMEOUT", "10.0")),
        logout_path=os.environ.get("KEYRELAY_LOGOUT_PATH", "/logout"),
        success_poll_attempts=int(os.environ.get("KEYRELAY_SUCCESS_POLL_ATTEMPTS", "3")),
        success_poll_interval=float(os.environ.get("KEYRELAY_SUCCESS_POLL_INTERVAL", "0.25")),
    )

    return Config(
        workspace=workspace,
        vault_db=vault_db,
        vault_replica=vault_replica,
        identity_db=identity_db,
        vault=vault_cfg,
        identity=identity_cfg,
        agent=agent_cfg,
    )


def reset_config() -> None:
    """Reset the singleton config (for testing)."""
    global _config
    _config = None
