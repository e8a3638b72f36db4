"""Identity service models — request bodies and row-to-dict converters."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


def user_to_dict(row: dict) -> dict:
    return {
        "id": row["id"],
        "username": row["username"],
        "role": row["role"],
        "vaultId": row["vault_id"],
    }


def app_to_dict(row: dict) -> dict:
    return {
        "id": row["id"],
        "appId": row["app_id"],
        "origin": row["origin"],
        "loginSchema": row["login_schema"],
    }


def app_for_plugin(app: dict) -> dict:
    """Shape an app for the bootstrap response (no internal id)."""
    return {"appId": app["appId"], "origin": app["origin"], "loginSchema": app["loginSchema"]}


# ─── Requests ────────────────────────────────────────────────────────────


class LoginRequest(BaseModel):
    username: str = ""
    password: str = ""


class IntrospectRequest(BaseModel):
    pluginToken: str | None = None


class SaveCredentialsRequest(BaseModel):
    appId: str | None = None
    fields: dict[str, Any] | None = None
    # Older clients send username/password at the top level
    username: str | None = None
    password: str | None = None

    def resolved_fields(self) -> dict[str, Any] | None:
        if self.fields is not None:
            return self.fields
        if self.username and self.password:
            return {"username": self.username, "password": self.password}
        return None


class UpdatePasswordRequest(BaseModel):
    appId: str | None = None
    newPassword: str | None = None


class CreateUserRequest(BaseModel):
    username: str
    password: str
    role: str = "user"


class AssignAppRequest(BaseModel):
    appId: str
