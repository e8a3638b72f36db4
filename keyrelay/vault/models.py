"""Pydantic request models for the internal vault API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, field_validator


def _non_empty(v: Any, name: str) -> str:
    if not isinstance(v, str) or not v.strip():
        raise ValueError(f"{name} is required and must be a non-empty string")
    return v


class VaultKeyRequest(BaseModel):
    vaultId: str
    appId: str

    @field_validator("vaultId", "appId", mode="before")
    @classmethod
    def check_ids(cls, v: Any, info) -> str:
        return _non_empty(v, info.field_name)


class WriteRequest(VaultKeyRequest):
    fields: dict[str, Any]

    @field_validator("fields", mode="before")
    @classmethod
    def check_fields(cls, v: Any) -> dict[str, Any]:
        if not isinstance(v, dict):
            raise ValueError("fields is required and must be a JSON object")
        return v


class UpdatePasswordRequest(VaultKeyRequest):
    newPassword: str

    @field_validator("newPassword", mode="before")
    @classmethod
    def check_password(cls, v: Any) -> str:
        return _non_empty(v, "newPassword")


class DeleteVaultRequest(BaseModel):
    vaultId: str

    @field_validator("vaultId", mode="before")
    @classmethod
    def check_vault_id(cls, v: Any) -> str:
        return _non_empty(v, "vaultId")
