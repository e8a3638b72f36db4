"""Browser session routes — login, logout, status."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse

from keyrelay.config import get_config
from keyrelay.errors import Unauthorized, ValidationError
from keyrelay.identity.dal import authenticate, create_session, delete_session, revoke_user_tokens
from keyrelay.identity.deps import current_session
from keyrelay.identity.models import LoginRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/session", tags=["session"])


@router.post("/login")
async def login(body: LoginRequest, response: Response):
    if not body.username or not body.password:
        raise ValidationError("Username and password are required")

    user = authenticate(body.username, body.password)
    if user is None:
        raise Unauthorized("Invalid username or password")

    cfg = get_config().identity
    session_id = create_session(user["id"])
    response.set_cookie(
        cfg.session_cookie,
        session_id,
        max_age=cfg.session_ttl,
        httponly=True,
        secure=cfg.cookie_secure,
        samesite="lax",
    )
    logger.info("User logged in: %s (%s)", user["username"], user["role"])
    return {
        "authenticated": True,
        "userId": user["id"],
        "username": user["username"],
        "role": user["role"],
    }


@router.post("/logout")
async def logout(request: Request, response: Response):
    """End the session and revoke every plugin token of the user."""
    cfg = get_config().identity
    session = current_session(request)
    if session is not None:
        revoked = revoke_user_tokens(session["user_id"])
        delete_session(request.cookies[cfg.session_cookie])
        logger.info("User logged out: %s (%d tokens revoked)", session["username"], revoked)
    response.delete_cookie(cfg.session_cookie)
    return {"success": True}


@router.get("/status")
async def status(request: Request):
    session = current_session(request)
    if session is None:
        return JSONResponse({"authenticated": False}, status_code=401)
    return {
        "authenticated": True,
        "userId": session["user_id"],
        "username": session["username"],
        "role": session["role"],
    }
