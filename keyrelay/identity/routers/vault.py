"""
Delegated vault routes — the extension's only path to credentials.

Every request is checked in this order before the vault is contacted:
bearer token (401), identity authorized for the application (403), token
scope (403). The vault is then called with the identity's opaque vault_id,
never with user-controlled identifiers.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from keyrelay.errors import Forbidden, TokenRejected, ValidationError
from keyrelay.identity.dal import get_vault_id, is_user_allowed_app
from keyrelay.identity.deps import check_scope, get_vault_client, require_token
from keyrelay.identity.models import SaveCredentialsRequest, UpdatePasswordRequest
from keyrelay.identity.vault_client import VaultClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/vault", tags=["vault"])


def _authorize(token: dict, app_id: str, scope: str) -> str:
    """Return the vault_id to use for ``app_id``, or raise."""
    if not is_user_allowed_app(token["userId"], app_id):
        raise Forbidden("User not authorized for this app")
    check_scope(token, scope)
    vault_id = get_vault_id(token["userId"])
    if not vault_id:
        raise TokenRejected("User not found")
    return vault_id


@router.get("/credentials")
async def get_credentials(
    app_id: str | None = Query(None, alias="appId"),
    token: dict = Depends(require_token),
    vault: VaultClient = Depends(get_vault_client),
):
    if not app_id:
        raise ValidationError("appId query parameter is required")
    vault_id = _authorize(token, app_id, "vault:read")

    fields = await vault.read(vault_id, app_id)
    logger.info("Returned credentials for %s -> %s", token["username"], app_id)
    return {"appId": app_id, "fields": fields}


@router.post("/credentials")
async def save_credentials(
    body: SaveCredentialsRequest,
    token: dict = Depends(require_token),
    vault: VaultClient = Depends(get_vault_client),
):
    fields = body.resolved_fields()
    if not body.appId or not fields or not fields.get("username") or not fields.get("password"):
        raise ValidationError("appId and fields (with username, password) are required")
    vault_id = _authorize(token, body.appId, "vault:write")

    await vault.write(vault_id, body.appId, fields)
    logger.info("Saved credentials for %s -> %s", token["username"], body.appId)
    return {"success": True, "message": "Credentials saved"}


@router.put("/password")
async def update_password(
    body: UpdatePasswordRequest,
    token: dict = Depends(require_token),
    vault: VaultClient = Depends(get_vault_client),
):
    """Replace only the stored password; other fields are kept by the vault."""
    if not body.appId or not body.newPassword:
        raise ValidationError("appId and newPassword are required")
    vault_id = _authorize(token, body.appId, "vault:write")

    await vault.update_password(vault_id, body.appId, body.newPassword)
    logger.info("Updated password for %s -> %s", token["username"], body.appId)
    return {"success": True, "message": "Password updated"}
