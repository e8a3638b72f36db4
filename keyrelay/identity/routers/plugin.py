"""Extension bootstrap and token introspection."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from keyrelay.identity.dal import get_user_apps, introspect_token, issue_plugin_token
from keyrelay.identity.deps import require_session
from keyrelay.identity.models import IntrospectRequest, app_for_plugin

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["plugin"])


@router.post("/plugin/bootstrap")
async def bootstrap(session: dict = Depends(require_session)):
    """Mint a plugin token and return the user's applications with login schemas."""
    user_id = session["user_id"]
    token, expires_in = issue_plugin_token(user_id)
    apps = [app_for_plugin(a) for a in get_user_apps(user_id)]
    logger.info(
        "Generated plugin token for %s, apps: %s",
        session["username"],
        ", ".join(a["appId"] for a in apps),
    )
    return {
        "pluginToken": token,
        "expiresIn": expires_in,
        "userId": user_id,
        "username": session["username"],
        "apps": apps,
    }


@router.post("/token/introspect")
async def introspect(body: IntrospectRequest):
    if not body.pluginToken:
        return JSONResponse(
            {"active": False, "error": "pluginToken is required"}, status_code=400
        )
    return introspect_token(body.pluginToken)
