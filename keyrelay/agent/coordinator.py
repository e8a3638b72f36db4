"""
Background Coordinator — the single source of truth for replay decisions.

Page agents talk to it only through ``handle_message`` with the message
contract below; it never touches a page.

    isManaged       {origin}               -> {success, managed}
    getCredentials  {origin}               -> {success, credentials?, loginSchema?, needsLearning?}
    saveCredentials {origin, fields}       -> {success}
    updatePassword  {origin, newPassword}  -> {success}

Failures come back as ``{"success": False, "error": ..., "code": ...}``.

Before serving anything the upstream session is checked. A logged-out user
resets the slot and fails closed; an expired token is re-bootstrapped
silently; a different identity in a bootstrap resets the slot before the new
one is installed and ends the prior identity's sessions on every origin it
was served on (in the background).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from keyrelay.agent.client import IdentityClient
from keyrelay.agent.session import AppEntry, PriorIdentity, SessionSlot
from keyrelay.config import AgentSettings, get_config
from keyrelay.errors import (
    CredentialNotFound,
    Forbidden,
    KeyRelayError,
    TokenRejected,
    Unauthorized,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackgroundCoordinator:
    def __init__(
        self,
        client: IdentityClient,
        slot: SessionSlot | None = None,
        settings: AgentSettings | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.client = client
        self.slot = slot or SessionSlot()
        self.settings = settings or get_config().agent
        self._http = http or httpx.AsyncClient(timeout=self.settings.request_timeout)
        self._tasks: set[asyncio.Task] = set()

    async def close(self) -> None:
        await self.drain()
        await self._http.aclose()
        await self.client.close()

    # ─── Message entry point ─────────────────────────────────────────────

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any]:
        action = message.get("action")
        origin = message.get("origin")
        logger.info("Message: %s from %s", action, origin)
        try:
            if not origin:
                raise ValidationError("origin is required")
            if action == "isManaged":
                return await self.is_managed(origin)
            if action == "getCredentials":
                return await self.get_credentials(origin)
            if action == "saveCredentials":
                fields = message.get("fields") or {
                    "username": message.get("username"),
                    "password": message.get("password"),
                }
                return await self.save_credentials(origin, fields)
            if action == "updatePassword":
                return await self.update_password(origin, message.get("newPassword") or "")
            raise ValidationError("Unknown action")
        except KeyRelayError as e:
            logger.info("%s for %s failed: %s (%s)", action, origin, e.message, e.code)
            return {"success": False, "error": e.message, "code": e.code}

    async def is_managed(self, origin: str) -> dict[str, Any]:
        await self.ensure_ready()
        return {"success": True, "managed": self.slot.app_for_origin(origin) is not None}

    async def get_credentials(self, origin: str) -> dict[str, Any]:
        await self.ensure_ready()
        self._app(origin)

        async def fetch(token: str, app: AppEntry) -> dict[str, Any]:
            return await self.client.fetch_credentials(token, app.app_id)

        try:
            creds, app = await self._delegate(origin, fetch)
        except CredentialNotFound:
            schema = self._app(origin).login_schema
            return {"success": False, "needsLearning": True, "loginSchema": schema}

        self.slot.mark_visited(origin)
        return {"success": True, "credentials": creds, "loginSchema": app.login_schema}

    async def save_credentials(self, origin: str, fields: dict[str, Any]) -> dict[str, Any]:
        await self.ensure_ready()

        async def save(token: str, app: AppEntry) -> None:
            await self.client.save_credentials(token, app.app_id, fields)

        await self._delegate(origin, save)
        self.slot.mark_visited(origin)
        return {"success": True}

    async def update_password(self, origin: str, new_password: str) -> dict[str, Any]:
        await self.ensure_ready()

        async def update(token: str, app: AppEntry) -> None:
            await self.client.update_password(token, app.app_id, new_password)

        await self._delegate(origin, update)
        return {"success": True}

    # ─── Session slot management ─────────────────────────────────────────

    async def ensure_ready(self) -> None:
        """Check the upstream session and make sure a valid token is held.

        Raises Unauthorized when the user is not logged in upstream.
        """
        status = await self.client.session_status()
        if status is None:
            prior = self.slot.reset()
            if prior is not None:
                logger.info("Not logged in - disabled (was %s)", prior.username)
                self._schedule_cascade_logout(prior)
            raise Unauthorized("Not authenticated")

        switched = self.slot.identity is not None and status.get("userId") != self.slot.identity
        if switched or not self.slot.token_valid():
            await self._bootstrap()

    async def _bootstrap(self) -> None:
        data = await self.client.bootstrap()
        prior = self.slot.install(data)
        if prior is not None:
            self._schedule_cascade_logout(prior)

    def _app(self, origin: str) -> AppEntry:
        app = self.slot.app_for_origin(origin)
        if app is None:
            raise Forbidden("Origin not allowed")
        return app

    async def _delegate(
        self, origin: str, call: Callable[[str, AppEntry], Awaitable[T]]
    ) -> tuple[T, AppEntry]:
        """Run a delegated call, retrying once with a fresh token on TokenRejected."""
        app = self._app(origin)
        try:
            return await call(self.slot.token or "", app), app
        except TokenRejected:
            logger.info("Token rejected for %s, re-bootstrapping once", origin)

        await self._bootstrap()
        app = self._app(origin)
        return await call(self.slot.token or "", app), app

    # ─── Cascade logout ──────────────────────────────────────────────────

    def _schedule_cascade_logout(self, prior: PriorIdentity) -> None:
        if not prior.visited:
            return
        task = asyncio.get_running_loop().create_task(self.cascade_logout(prior.visited))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def cascade_logout(self, origins: frozenset[str] | set[str]) -> None:
        """End the application session on every origin. Failures are logged and ignored."""
        for origin in sorted(origins):
            url = f"{origin}{self.settings.logout_path}"
            try:
                await self._http.get(url)
                logger.info("Cascade logout: %s", url)
            except httpx.HTTPError as e:
                logger.warning("Cascade logout failed for %s: %s", url, e)

    async def drain(self) -> None:
        """Wait for pending cascade logouts."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
