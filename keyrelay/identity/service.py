"""
Identity Service — users, sessions, plugin tokens and the delegated vault API.

The extension never talks to the vault directly. It bootstraps a capability
token here with its browser session, then calls /api/vault/* with that token;
this service authorizes the request and forwards it to the vault using the
user's opaque vault_id.

Start:
    keyrelay serve identity
    # or
    uvicorn keyrelay.identity.service:app --port 4000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from keyrelay.config import Config, get_config
from keyrelay.db.connection import IDENTITY, close_pool
from keyrelay.identity.routers.admin import router as admin_router
from keyrelay.identity.routers.health import router as health_router
from keyrelay.identity.routers.plugin import router as plugin_router
from keyrelay.identity.routers.session import router as session_router
from keyrelay.identity.routers.vault import router as vault_router
from keyrelay.identity.vault_client import VaultClient
from keyrelay.middleware import CorrelationMiddleware, RequestLogMiddleware, install_error_handlers

logger = logging.getLogger(__name__)


def create_app(config: Config | None = None, vault_client: VaultClient | None = None) -> FastAPI:
    """Build the identity FastAPI app.

    ``vault_client`` overrides the client built from config (tests inject one
    backed by a mock transport).
    """
    cfg = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_client = vault_client is None
        app.state.vault_client = vault_client or VaultClient(
            cfg.identity.vault_url, timeout=cfg.identity.vault_timeout
        )
        logger.info(
            "Identity service on port %d, vault at %s", cfg.identity.port, cfg.identity.vault_url
        )
        yield
        if owns_client:
            await app.state.vault_client.close()
        close_pool(IDENTITY)

    app = FastAPI(title="KeyRelay Identity", version="1.0.0", lifespan=lifespan)
    app.add_middleware(RequestLogMiddleware, service="identity")
    app.add_middleware(CorrelationMiddleware)
    install_error_handlers(app)

    app.include_router(health_router)
    app.include_router(session_router)
    app.include_router(plugin_router)
    app.include_router(vault_router)
    app.include_router(admin_router)

    # Available without a lifespan run (ASGITransport does not send startup)
    if vault_client is not None:
        app.state.vault_client = vault_client

    return app


app = create_app()
