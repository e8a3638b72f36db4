"""Admin JSON API — users and application assignments."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from keyrelay.errors import Forbidden, NotFound, UpstreamUnavailable
from keyrelay.identity.dal import (
    assign_app,
    create_user,
    delete_user_rows,
    get_user,
    list_users,
    remove_app,
    revoke_user_access,
)
from keyrelay.identity.deps import get_vault_client, require_admin
from keyrelay.identity.models import AssignAppRequest, CreateUserRequest
from keyrelay.identity.vault_client import VaultClient

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/users")
async def api_list_users():
    return {"users": list_users()}


@router.post("/users", status_code=201)
async def api_create_user(body: CreateUserRequest):
    user = create_user(body.username, body.password, body.role)
    logger.info("Created user: %s", body.username)
    return user


@router.delete("/users/{user_id}")
async def api_delete_user(user_id: int, vault: VaultClient = Depends(get_vault_client)):
    """Delete a user after the vault confirmed removal of its credentials.

    Sessions and plugin tokens are revoked before the cascade so no delegated
    write can land under the vault_id while it is in flight. If the vault
    cannot be reached the user row is kept and the caller gets a 503; the user
    simply signs in again.
    """
    user = get_user(user_id)
    if user is None:
        raise NotFound("User not found")
    if user["role"] == "admin":
        raise Forbidden("Cannot delete admin users")

    revoke_user_access(user_id)
    try:
        deleted = await vault.delete_vault(user["vaultId"])
    except UpstreamUnavailable as e:
        logger.error("Failed to delete vault for user %s: %s", user_id, e.message)
        raise UpstreamUnavailable("Failed to delete vault credentials") from e

    delete_user_rows(user_id)
    logger.info("Deleted user %s (%d vault records)", user_id, deleted)
    return {"success": True, "deletedCredentials": deleted}


@router.post("/users/{user_id}/apps")
async def api_assign_app(user_id: int, body: AssignAppRequest):
    if get_user(user_id) is None:
        raise NotFound("User not found")
    assign_app(user_id, body.appId)
    return {"success": True}


@router.delete("/users/{user_id}/apps/{app_id}")
async def api_remove_app(user_id: int, app_id: str):
    remove_app(user_id, app_id)
    return {"success": True}
