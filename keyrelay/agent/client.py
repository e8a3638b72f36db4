"""
Async client for the identity service, as used by the background coordinator.

Holds the browser's identity-service session cookie. Delegated calls carry
the plugin token as a bearer token. Status codes map onto the error taxonomy:

    401 -> TokenRejected     403 -> Forbidden
    404 -> CredentialNotFound (credential fetch)
    400 -> ValidationError   transport error / 5xx -> UpstreamUnavailable
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from keyrelay.errors import (
    CredentialNotFound,
    Forbidden,
    NotFound,
    TokenRejected,
    Unauthorized,
    UpstreamUnavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)


class IdentityClient:
    def __init__(
        self,
        base_url: str = "http://127.0.0.1:4000",
        timeout: float = 10.0,
        cookies: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, cookies=cookies, transport=transport
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Identity service unreachable (%s %s): %s", method, path, e)
            raise UpstreamUnavailable("Identity service unavailable") from e

    @staticmethod
    def _raise_for(resp: httpx.Response) -> None:
        if resp.is_success:
            return
        try:
            body = resp.json()
        except ValueError:
            body = {}
        message = body.get("error", "") if isinstance(body, dict) else ""
        code = body.get("code", "") if isinstance(body, dict) else ""

        if resp.status_code == 401:
            raise TokenRejected(message or "Token rejected")
        if resp.status_code == 403:
            raise Forbidden(message or "Forbidden")
        if resp.status_code == 404:
            raise NotFound(message or "Not found")
        if resp.status_code == 400:
            raise ValidationError(message or "Invalid request")
        if code == "upstream_unavailable" or resp.status_code >= 500:
            raise UpstreamUnavailable(message or "Upstream unavailable")
        raise UpstreamUnavailable(f"Unexpected status {resp.status_code}")

    def _bearer(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def session_status(self) -> dict[str, Any] | None:
        """Live session info, or None when the user is logged out."""
        resp = await self._request("GET", "/api/session/status")
        if resp.status_code == 401:
            return None
        self._raise_for(resp)
        return dict(resp.json())

    async def bootstrap(self) -> dict[str, Any]:
        resp = await self._request("POST", "/api/plugin/bootstrap")
        if resp.status_code == 401:
            raise Unauthorized("Not authenticated")
        self._raise_for(resp)
        return dict(resp.json())

    async def fetch_credentials(self, token: str, app_id: str) -> dict[str, Any]:
        """``{appId, fields}`` for the app. Raises CredentialNotFound when none stored."""
        resp = await self._request(
            "GET", "/api/vault/credentials", params={"appId": app_id}, headers=self._bearer(token)
        )
        if resp.status_code == 404:
            logger.info("No credentials for %s (first-time login)", app_id)
            raise CredentialNotFound("No credentials found for this app")
        self._raise_for(resp)
        return dict(resp.json())

    async def save_credentials(self, token: str, app_id: str, fields: dict[str, Any]) -> None:
        resp = await self._request(
            "POST",
            "/api/vault/credentials",
            json={"appId": app_id, "fields": fields},
            headers=self._bearer(token),
        )
        self._raise_for(resp)

    async def update_password(self, token: str, app_id: str, new_password: str) -> None:
        resp = await self._request(
            "PUT",
            "/api/vault/password",
            json={"appId": app_id, "newPassword": new_password},
            headers=self._bearer(token),
        )
        self._raise_for(resp)
