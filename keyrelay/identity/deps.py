"""Identity service dependency injection — sessions, bearer tokens, vault client."""

from __future__ import annotations

from fastapi import Depends, Header, Request

from keyrelay.config import get_config
from keyrelay.errors import Forbidden, TokenRejected, Unauthorized
from keyrelay.identity.dal import get_session, introspect_token
from keyrelay.identity.vault_client import VaultClient


def get_vault_client(request: Request) -> VaultClient:
    """The shared VaultClient created in the app lifespan."""
    return request.app.state.vault_client


def current_session(request: Request) -> dict | None:
    session_id = request.cookies.get(get_config().identity.session_cookie)
    if not session_id:
        return None
    return get_session(session_id)


def require_session(request: Request) -> dict:
    session = current_session(request)
    if session is None:
        raise Unauthorized("Not authenticated")
    return session


def require_admin(session: dict = Depends(require_session)) -> dict:
    if session["role"] != "admin":
        raise Forbidden("Admin access required")
    return session


def require_token(authorization: str | None = Header(None)) -> dict:
    """Resolve the bearer capability token; 401 when missing, unknown or expired."""
    if not authorization or not authorization.startswith("Bearer "):
        raise TokenRejected("Missing or invalid Authorization header")
    result = introspect_token(authorization[len("Bearer "):])
    if not result["active"]:
        raise TokenRejected(result.get("error") or "Invalid token")
    return result


def check_scope(token: dict, scope: str) -> None:
    if scope not in token["scopes"]:
        raise Forbidden(f"Token does not have {scope} scope")
