"""Health route — identity database and vault reachability."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from keyrelay.identity.dal import check_health
from keyrelay.identity.deps import get_vault_client
from keyrelay.identity.vault_client import VaultClient

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(vault: VaultClient = Depends(get_vault_client)):
    """Check connectivity to the identity database and the vault."""
    services = {
        "database": "ok" if check_health() else "error",
        "vault": "ok" if await vault.check_health() else "error",
    }
    all_ok = all(v == "ok" for v in services.values())
    status = "ok" if all_ok else "degraded"
    status_code = 200 if all_ok else 503
    return JSONResponse(
        {"status": status, "service": "identity-service", "services": services},
        status_code=status_code,
    )
