"""
Async HTTP client for the internal vault API.

All calls are POST with JSON bodies, 5 second timeout, no automatic retries.
Credential fields and passwords are never logged.

Errors:
    404 from the vault           -> CredentialNotFound
    400 from the vault           -> ValidationError
    network error, timeout, 5xx  -> UpstreamUnavailable
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from keyrelay.errors import CredentialNotFound, UpstreamUnavailable, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


class VaultClient:
    """Client used by the identity service to reach the vault."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:5000",
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, endpoint: str, body: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(endpoint, json=body)
        except httpx.TimeoutException as e:
            logger.error("Vault request timeout: %s", endpoint)
            raise UpstreamUnavailable("Vault service timeout") from e
        except httpx.HTTPError as e:
            logger.error("Vault network error on %s: %s", endpoint, e)
            raise UpstreamUnavailable("Vault service unavailable") from e

        if resp.is_success:
            return dict(resp.json())

        try:
            error = resp.json().get("error", "")
        except ValueError:
            error = ""
        if resp.status_code == 404:
            raise CredentialNotFound(error or "Credentials not found")
        if resp.status_code >= 500:
            logger.error("Vault error %d on %s: %s", resp.status_code, endpoint, error)
            raise UpstreamUnavailable("Vault internal error")
        if resp.status_code == 400:
            raise ValidationError(error or "Vault rejected the request")
        logger.error("Unexpected vault status %d on %s", resp.status_code, endpoint)
        raise UpstreamUnavailable("Vault request failed")

    async def read(self, vault_id: str, app_id: str) -> dict[str, Any]:
        logger.info("read(vault_id=%s, app_id=%s)", vault_id, app_id)
        data = await self._post("/internal/vault/read", {"vaultId": vault_id, "appId": app_id})
        return dict(data["fields"])

    async def write(self, vault_id: str, app_id: str, fields: dict[str, Any]) -> None:
        logger.info("write(vault_id=%s, app_id=%s) [fields not logged]", vault_id, app_id)
        await self._post(
            "/internal/vault/write", {"vaultId": vault_id, "appId": app_id, "fields": fields}
        )

    async def update_password(self, vault_id: str, app_id: str, new_password: str) -> None:
        logger.info("update_password(vault_id=%s, app_id=%s) [password not logged]", vault_id, app_id)
        await self._post(
            "/internal/vault/update-password",
            {"vaultId": vault_id, "appId": app_id, "newPassword": new_password},
        )

    async def delete_vault(self, vault_id: str) -> int:
        """Delete every credential of ``vault_id``. Returns the number removed."""
        logger.info("delete_vault(vault_id=%s)", vault_id)
        data = await self._post("/internal/vault/delete-vault", {"vaultId": vault_id})
        return int(data.get("deletedCount", 0))

    async def check_health(self) -> bool:
        try:
            resp = await self._client.get("/health")
            return resp.status_code == 200
        except httpx.HTTPError:
            return False
