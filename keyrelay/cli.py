"""
KeyRelay CLI — entry point for all operations.

Usage:
    keyrelay version                          # Show version
    keyrelay status                           # Databases, services, key file
    keyrelay migrate --target vault           # Apply the vault schema
    keyrelay migrate --target identity        # Apply the identity schema
    keyrelay serve vault|identity             # Start a service
    keyrelay vault init-key                   # Create the vault master key
    keyrelay vault audit                      # Show recent vault audit entries
    keyrelay seed                             # Register demo apps and users
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"

MIGRATIONS = {
    "vault": "001_vault.sql",
    "identity": "002_identity.sql",
}

# Tables each database must have for a working installation
REQUIRED_TABLES = {
    "vault": ["vault_credentials", "vault_audit_log"],
    "identity": [
        "identity_users",
        "identity_vault_ids",
        "identity_apps",
        "identity_user_apps",
        "identity_plugin_tokens",
        "identity_sessions",
    ],
}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="keyrelay",
        description="KeyRelay — credential replay for legacy web logins.",
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")

    subparsers = parser.add_subparsers(dest="command")

    # migrate
    migrate_parser = subparsers.add_parser("migrate", help="Run database migrations")
    migrate_parser.add_argument(
        "--target", choices=sorted(MIGRATIONS), default="vault", help="Database to migrate"
    )
    migrate_parser.add_argument(
        "--dry-run", action="store_true", help="Print SQL without executing"
    )
    migrate_parser.add_argument(
        "--check", action="store_true", help="Check if required tables exist"
    )

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start a service")
    serve_parser.add_argument("service", choices=["vault", "identity"], help="Service to start")
    serve_parser.add_argument("--host", default=None, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Port")

    # vault
    vault_parser = subparsers.add_parser("vault", help="Vault key and audit tools")
    vault_sub = vault_parser.add_subparsers(dest="vault_command")
    vault_sub.add_parser("init-key", help="Create the master key file if missing")
    audit_parser = vault_sub.add_parser("audit", help="Show recent audit entries")
    audit_parser.add_argument("--limit", type=int, default=20, help="Number of entries")
    audit_parser.add_argument("--vault-id", default=None, help="Filter by vault id")

    # seed
    subparsers.add_parser("seed", help="Register demo apps and users")

    # status
    subparsers.add_parser("status", help="Show system status")

    subparsers.add_parser("version", help="Show version")

    args = parser.parse_args(argv)

    if args.version or args.command == "version":
        from keyrelay import __version__

        print(f"keyrelay {__version__}")
        return 0

    if args.command == "migrate":
        return _cmd_migrate(args)
    elif args.command == "serve":
        return _cmd_serve(args)
    elif args.command == "vault":
        return _cmd_vault(args)
    elif args.command == "seed":
        return _cmd_seed(args)
    elif args.command == "status":
        return _cmd_status(args)
    else:
        parser.print_help()
        return 0


def _find_migration_sql(target: str) -> str | None:
    """Find the migration SQL file bundled with the package."""
    path = Path(__file__).parent / "migrations" / MIGRATIONS[target]
    if path.exists():
        return path.read_text()
    return None


def _database(target: str):
    from keyrelay.config import get_config

    cfg = get_config()
    return cfg.vault_db if target == "vault" else cfg.identity_db


def _cmd_migrate(args: argparse.Namespace) -> int:
    sql = _find_migration_sql(args.target)
    if sql is None:
        print("Error: Migration SQL not found.")
        print(f"Expected at: keyrelay/migrations/{MIGRATIONS[args.target]}")
        return 1

    if args.check:
        return _cmd_migrate_check(args.target)

    if args.dry_run:
        print(f"-- Dry run: the following SQL would be executed on {args.target} --")
        print(sql)
        return 0

    import psycopg2

    cfg = _database(args.target)
    try:
        print(f"Connecting to {cfg.host}:{cfg.port}/{cfg.name}...")
        conn = psycopg2.connect(**cfg.dict, connect_timeout=5)
        conn.autocommit = True
        with conn.cursor() as cur:
            cur.execute(sql)
        conn.close()
    except psycopg2.Error as e:
        print(f"Error: Migration failed: {e}")
        print("Check KEYRELAY_*_DB_* environment variables and ensure PostgreSQL is running.")
        return 1
    print("Migration completed successfully.")

    return _cmd_migrate_check(args.target)


def _cmd_migrate_check(target: str) -> int:
    """Check if required tables exist in the target database."""
    import psycopg2

    required = REQUIRED_TABLES[target]
    try:
        conn = psycopg2.connect(**_database(target).dict, connect_timeout=5)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = 'public'"
            )
            existing = {row[0] for row in cur.fetchall()}
        conn.close()
    except psycopg2.Error as e:
        print(f"Error: Cannot check tables: {e}")
        return 1

    missing = [t for t in required if t not in existing]
    if missing:
        print(f"Missing tables ({len(missing)}/{len(required)}):")
        for t in missing:
            print(f"  - {t}")
        print(f"\nRun 'keyrelay migrate --target {target}' to create them.")
        return 1
    print(f"All {len(required)} required {target} tables present.")
    return 0


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from keyrelay.config import get_config

    cfg = get_config()
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    if args.service == "vault":
        from keyrelay.vault.service import create_app

        host = args.host or cfg.vault.host
        port = args.port or cfg.vault.port
        print(f"Starting KeyRelay vault '{cfg.vault.instance}' on {host}:{port}...")
    else:
        from keyrelay.identity.service import create_app

        host = args.host or cfg.identity.host
        port = args.port or cfg.identity.port
        print(f"Starting KeyRelay identity service on {host}:{port}...")

    uvicorn.run(create_app(cfg), host=host, port=port, log_config=None)
    return 0


def _cmd_vault(args: argparse.Namespace) -> int:
    from keyrelay.config import get_config

    if args.vault_command == "init-key":
        from keyrelay.vault.crypto import init_master_key

        key_file = get_config().vault.key_file
        existed = key_file.exists()
        init_master_key(key_file)
        print(f"Master key {'already present' if existed else 'created'}: {key_file}")
        return 0

    if args.vault_command == "audit":
        from keyrelay.errors import KeyRelayError
        from keyrelay.vault.audit import query_log

        try:
            entries = query_log(limit=args.limit, vault_id=args.vault_id)
        except KeyRelayError as e:
            print(f"Error: Cannot read audit log: {e.message}")
            return 1
        for e in entries:
            print(f"  {e['timestamp']}  {e['action']:<13} {e['vaultId']} / {e['appId']}  [{e['instance']}]")
        print(f"{len(entries)} entries")
        return 0

    print("Usage: keyrelay vault {init-key,audit}")
    return 1


def _cmd_seed(args: argparse.Namespace) -> int:
    import asyncio

    from keyrelay.config import get_config
    from keyrelay.errors import KeyRelayError
    from keyrelay.identity.dal import DEMO_USERS, seed_demo_data
    from keyrelay.identity.vault_client import VaultClient

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    cfg = get_config()

    try:
        result = seed_demo_data()
    except KeyRelayError as e:
        print(f"Error: Seeding failed: {e.message}")
        return 1
    print(f"Apps registered: {', '.join(result['apps'])}")
    print(f"Users created:   {', '.join(result['users']) or 'none (already seeded)'}")

    async def seed_vault() -> int:
        client = VaultClient(cfg.identity.vault_url, timeout=cfg.identity.vault_timeout)
        failures = 0
        try:
            for username, vault_id in result["assigned"].items():
                password = next(p for u, p, _ in DEMO_USERS if u == username)
                for app_id in result["apps"]:
                    try:
                        await client.write(
                            vault_id, app_id, {"username": username, "password": password}
                        )
                    except KeyRelayError as e:
                        failures += 1
                        print(f"  Warning: could not seed vault for {app_id}: {e.message}")
        finally:
            await client.close()
        return failures

    failures = asyncio.run(seed_vault())
    print("Seed complete." if not failures else f"Seed complete with {failures} vault warning(s).")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    import httpx
    import psycopg2

    from keyrelay import __version__
    from keyrelay.config import get_config

    cfg = get_config()
    print(f"KeyRelay v{__version__}")
    print()

    for label, db in (("Vault DB:", cfg.vault_db), ("Identity DB:", cfg.identity_db)):
        print(f"  {label:<13}{db.host}:{db.port}/{db.name}")
        try:
            conn = psycopg2.connect(**db.dict, connect_timeout=3)
            with conn.cursor() as cur:
                cur.execute("SELECT version()")
                pg_version = cur.fetchone()[0].split(",")[0]
            conn.close()
            print(f"               Connected — {pg_version}")
        except psycopg2.Error as e:
            print(f"               UNREACHABLE — {e}")

    if cfg.vault_replica is not None:
        print(f"  Replica:     {cfg.vault_replica.host}:{cfg.vault_replica.port}")

    for label, url in (("Vault:", cfg.identity.vault_url), ("Identity:", cfg.agent.identity_url)):
        print(f"  {label:<13}{url}")
        try:
            resp = httpx.get(f"{url}/health", timeout=3)
            print(f"               {resp.json().get('status', resp.status_code)}")
        except (httpx.HTTPError, ValueError) as e:
            print(f"               UNREACHABLE — {e}")

    key_file = cfg.vault.key_file
    print()
    print(f"  Master key:  {key_file} ({'present' if key_file.exists() else 'missing'})")
    print(f"  Workspace:   {cfg.workspace}")
    return 0
