"""
Vault Service — stateless credential store, internal API only.

Called exclusively by the identity service; it does not authenticate requests,
manage sessions, or know about users or login schemas. Any instance may serve
any request, so several can run behind one load balancer.

Endpoints:
    GET  /health                          Backing store reachability
    POST /internal/vault/read             Read credentials
    POST /internal/vault/write            Upsert credentials
    POST /internal/vault/update-password  Replace only the password, atomically
    POST /internal/vault/delete           Delete one record
    POST /internal/vault/delete-vault     Delete every record of a vault_id
    GET  /internal/vault/audit            Query the audit log

Start:
    keyrelay serve vault
    # or
    uvicorn keyrelay.vault.service:app --port 5000
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from keyrelay.config import Config, get_config
from keyrelay.db.connection import VAULT, close_pool, ping
from keyrelay.middleware import CorrelationMiddleware, RequestLogMiddleware, install_error_handlers
from keyrelay.vault import audit, dal
from keyrelay.vault.models import (
    DeleteVaultRequest,
    UpdatePasswordRequest,
    VaultKeyRequest,
    WriteRequest,
)

logger = logging.getLogger(__name__)


async def wait_for_database(attempts: int, delay: float) -> bool:
    """Poll the primary until reachable, at most ``attempts`` times."""
    for attempt in range(1, attempts + 1):
        if await run_in_threadpool(ping, VAULT):
            logger.info("Database connected successfully")
            return True
        if attempt < attempts:
            logger.warning(
                "Database not ready, retrying... (%d attempts left)", attempts - attempt
            )
            await asyncio.sleep(delay)
    logger.error("Cannot connect to database after %d attempts", attempts)
    return False


def create_app(config: Config | None = None, *, wait_for_db: bool = True) -> FastAPI:
    """Build the vault FastAPI app for one instance."""
    cfg = config or get_config()
    instance = cfg.vault.instance

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if wait_for_db:
            ok = await wait_for_database(cfg.vault.startup_attempts, cfg.vault.startup_delay)
            if not ok:
                raise RuntimeError("vault database unreachable")
        logger.info("[%s] Vault service ready on port %d", instance, cfg.vault.port)
        yield
        close_pool()
        logger.info("[%s] Connection pools closed", instance)

    app = FastAPI(title="KeyRelay Vault", version="1.0.0", lifespan=lifespan)
    app.add_middleware(RequestLogMiddleware, service=instance, instance_header="X-Vault-Instance")
    app.add_middleware(CorrelationMiddleware)
    install_error_handlers(app)

    @app.get("/health")
    async def health():
        h = await run_in_threadpool(dal.check_health)
        body = {
            "status": "ok" if h["status"] == "ok" else "unhealthy",
            "service": "vault-service",
            "instance": instance,
            "replica": h["replica"],
            "timestamp": datetime.now(UTC).isoformat(),
        }
        if h["status"] != "ok":
            body["error"] = "Database connection failed"
            return JSONResponse(body, status_code=503)
        return body

    @app.post("/internal/vault/read")
    async def read(body: VaultKeyRequest):
        fields = await run_in_threadpool(dal.read_credentials, body.vaultId, body.appId)
        return {"fields": fields}

    @app.post("/internal/vault/write")
    async def write(body: WriteRequest):
        await run_in_threadpool(dal.write_credentials, body.vaultId, body.appId, body.fields)
        return {"success": True}

    @app.post("/internal/vault/update-password")
    async def update_password(body: UpdatePasswordRequest):
        await run_in_threadpool(dal.update_password, body.vaultId, body.appId, body.newPassword)
        return {"success": True}

    @app.post("/internal/vault/delete")
    async def delete(body: VaultKeyRequest):
        await run_in_threadpool(dal.delete_credentials, body.vaultId, body.appId)
        return {"success": True}

    @app.post("/internal/vault/delete-vault")
    async def delete_vault(body: DeleteVaultRequest):
        deleted = await run_in_threadpool(dal.delete_vault, body.vaultId)
        return {"success": True, "deletedCount": deleted}

    @app.get("/internal/vault/audit")
    async def query_audit(
        vault_id: str | None = Query(None, alias="vaultId"),
        app_id: str | None = Query(None, alias="appId"),
        action: str | None = Query(None),
        since: datetime | None = Query(None),
        limit: int = Query(50, ge=1, le=1000),
    ):
        if action is not None and action not in set(audit.AuditAction):
            return JSONResponse(
                {"error": f"unknown action: {action}", "code": "validation_error"}, status_code=400
            )
        events = await run_in_threadpool(
            audit.query_log, limit, vault_id, app_id, action, since
        )
        return {"events": events, "count": len(events)}

    @app.get("/internal/vault/audit/stats")
    async def audit_stats():
        return await run_in_threadpool(audit.stats)

    return app


app = create_app()
