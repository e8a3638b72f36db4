"""
Page Agent — runs once per page load and decides what to do with the page.

It has no memory of its own: everything that must outlive a navigation is an
origin-scoped marker (see keyrelay.agent.markers), written before the risky
step and cleared once consumed. A marker is always cleared before the
credential it holds is sent to the coordinator, so a duplicate run cannot
send the same capture twice.

Decision tree, in order:
    1. pending password change  -> poll for success, forward or wait one more load
    2. password-change form     -> capture the new password on submit
    3. login form               -> skip unmanaged origins quietly, recovery choice
                                   after a failed replay, presence check, then
                                   SilentReplay or Learning
    4. no login form            -> clear the replay flag, save a pending capture
"""

from __future__ import annotations

import asyncio
import logging
from enum import StrEnum
from typing import Any, Protocol

from keyrelay.agent.detection import (
    SuccessPredicate,
    find_change_form,
    find_login_form,
    login_form_absent,
    password_change_succeeded,
)
from keyrelay.agent.markers import MarkerStore, OriginMarkers
from keyrelay.agent.page import Field, Form, Page
from keyrelay.agent.prompts import Prompter, Recovery
from keyrelay.config import AgentSettings, get_config

logger = logging.getLogger(__name__)

# Extra page loads a password-change capture may wait for a clear result
PASSWORD_CHANGE_GRACE_LOADS = 1


class Outcome(StrEnum):
    IDLE = "idle"
    PASSWORD_UPDATED = "password_updated"
    PASSWORD_UPDATE_FAILED = "password_update_failed"
    PASSWORD_CHANGE_PENDING = "password_change_pending"
    PASSWORD_CHANGE_ABANDONED = "password_change_abandoned"
    CAPTURING_PASSWORD_CHANGE = "capturing_password_change"
    LEARNING = "learning"
    REPLAYED = "replayed"
    MANUAL = "manual"
    PRESENCE_FAILED = "presence_failed"
    UNAVAILABLE = "unavailable"
    DISABLED = "disabled"
    LOGIN_SUCCEEDED = "login_succeeded"
    CREDENTIALS_SAVED = "credentials_saved"
    SAVE_FAILED = "save_failed"
    SAVE_DECLINED = "save_declined"


class MessageChannel(Protocol):
    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any]: ...


class PageAgent:
    def __init__(
        self,
        page: Page,
        coordinator: MessageChannel,
        prompter: Prompter,
        markers: MarkerStore,
        settings: AgentSettings | None = None,
        login_succeeded: SuccessPredicate = login_form_absent,
        change_succeeded: SuccessPredicate = password_change_succeeded,
    ) -> None:
        self.page = page
        self.coordinator = coordinator
        self.prompter = prompter
        self.markers = OriginMarkers(markers, page.origin)
        self.settings = settings or get_config().agent
        self.login_succeeded = login_succeeded
        self.change_succeeded = change_succeeded

    @property
    def origin(self) -> str:
        return self.page.origin

    async def run(self) -> Outcome:
        logger.info("Page agent loaded on %s", self.origin)
        outcome = await self._check_password_change()

        change = find_change_form(self.page)
        if change is not None:
            self._capture_password_change(*change)
            return outcome if outcome is not Outcome.IDLE else Outcome.CAPTURING_PASSWORD_CHANGE

        if find_login_form(self.page) is not None:
            return await self._handle_login_form()

        after_login = await self._check_login_success()
        return after_login if after_login is not Outcome.IDLE else outcome

    # ─── Password change ─────────────────────────────────────────────────

    async def _poll(self, predicate: SuccessPredicate) -> bool:
        attempts = max(1, self.settings.success_poll_attempts)
        for i in range(attempts):
            if predicate(self.page):
                return True
            if i < attempts - 1:
                await asyncio.sleep(self.settings.success_poll_interval)
        return False

    async def _check_password_change(self) -> Outcome:
        capture = self.markers.password_change()
        if capture is None:
            return Outcome.IDLE

        if await self._poll(self.change_succeeded):
            self.markers.clear_password_change()
            logger.info("Password change appears successful, updating vault")
            resp = await self.coordinator.handle_message(
                {"action": "updatePassword", "origin": self.origin, "newPassword": capture.new_password}
            )
            if resp.get("success"):
                await self.prompter.notify("Password Updated", "Your new password has been saved.")
                return Outcome.PASSWORD_UPDATED
            logger.warning("Failed to update password: %s", resp.get("error"))
            await self.prompter.notify("Password Not Saved", self._failure_message(resp))
            return Outcome.PASSWORD_UPDATE_FAILED

        if capture.attempts < PASSWORD_CHANGE_GRACE_LOADS:
            logger.info("Password change result unclear, waiting one more page load")
            self.markers.save_password_change(capture.new_password, attempts=capture.attempts + 1)
            return Outcome.PASSWORD_CHANGE_PENDING

        logger.info("Password change did not succeed, discarding capture")
        self.markers.clear_password_change()
        return Outcome.PASSWORD_CHANGE_ABANDONED

    def _capture_password_change(self, form: Form, new_password: Field) -> None:
        logger.info("Password change form detected")

        def on_submit(_form: Form) -> None:
            if new_password.value:
                self.markers.save_password_change(new_password.value)
                logger.info("Password change: captured new password")

        self.page.on_submit(form, on_submit)

    # ─── Login form ──────────────────────────────────────────────────────

    async def _handle_login_form(self) -> Outcome:
        logger.info("Login form detected")

        if self.markers.learning() is not None:
            logger.info("Learning capture still on a login page, discarding")
            self.markers.clear_learning()

        managed = await self.coordinator.handle_message({"action": "isManaged", "origin": self.origin})
        if not managed.get("success"):
            return await self._cannot_proceed(managed)
        if not managed["managed"]:
            logger.info("Cannot proceed: %s is not a managed application", self.origin)
            self.markers.clear_auto_login_attempt()
            return Outcome.DISABLED

        relearn = False
        if self.markers.auto_login_attempted():
            # The previous load already replayed silently and we are back here
            self.markers.clear_auto_login_attempt()
            choice = await self.prompter.choose_recovery(self.origin)
            logger.info("Auto-login failed once, user chose %s", choice)
            if choice == Recovery.MANUAL:
                await self.prompter.notify("SSO Skipped", "You can now enter credentials manually.")
                return Outcome.MANUAL
            relearn = choice == Recovery.RELEARN

        if not await self._verify_presence():
            return Outcome.PRESENCE_FAILED

        resp = await self.coordinator.handle_message({"action": "getCredentials", "origin": self.origin})
        schema = resp.get("loginSchema")

        if not resp.get("success"):
            if resp.get("needsLearning"):
                return await self._enter_learning(schema, first_time=True)
            return await self._cannot_proceed(resp)

        # A different identity was installed during the fetch; verification was reset
        if not await self._verify_presence():
            return Outcome.PRESENCE_FAILED

        if relearn:
            return await self._enter_learning(schema, first_time=False)
        return await self._replay(schema, resp["credentials"].get("fields") or {})

    async def _cannot_proceed(self, resp: dict[str, Any]) -> Outcome:
        logger.info("Cannot proceed: %s", resp.get("error"))
        await self.prompter.notify("SSO Unavailable", self._failure_message(resp))
        if resp.get("code") == "upstream_unavailable":
            return Outcome.UNAVAILABLE
        return Outcome.DISABLED

    async def _verify_presence(self) -> bool:
        if self.markers.is_verified():
            return True
        if not await self.prompter.verify_presence(self.origin):
            logger.info("Presence check failed, manual entry for this load")
            await self.prompter.notify("SSO Skipped", "Verification failed. Please log in manually.")
            return False
        self.markers.mark_verified()
        return True

    async def _enter_learning(self, schema: dict[str, Any] | None, first_time: bool) -> Outcome:
        form = find_login_form(self.page, schema)
        if form is None:
            return Outcome.MANUAL

        if first_time:
            await self.prompter.notify(
                "First-Time Login", "No saved credentials found. Please log in manually."
            )
        else:
            await self.prompter.notify(
                "Update Mode", "Enter your new credentials. They will be saved after a successful login."
            )

        def on_submit(_form: Form) -> None:
            fields = self._capture_fields(schema)
            if fields.get("username") and fields.get("password"):
                self.markers.save_learning(fields)
                logger.info("Learning mode: captured fields %s", list(fields))

        self.page.on_submit(form, on_submit)
        logger.info("Learning mode: watching for manual login")
        return Outcome.LEARNING

    def _capture_fields(self, schema: dict[str, Any] | None) -> dict[str, str]:
        fields: dict[str, str] = {}
        if schema:
            for name, spec in schema.items():
                target = self.page.query(spec["selector"])
                if target is not None and target.value:
                    fields[name] = target.value
            return fields
        for name in ("username", "password"):
            target = self.page.query(f"input[name='{name}']")
            if target is not None and target.value:
                fields[name] = target.value
        return fields

    async def _replay(self, schema: dict[str, Any] | None, fields: dict[str, Any]) -> Outcome:
        form = find_login_form(self.page, schema)
        if form is None:
            return Outcome.MANUAL

        spec = schema or {
            "username": {"selector": "input[name='username']", "type": "text"},
            "password": {"selector": "input[name='password']", "type": "password"},
        }
        filled = 0
        for name, field_spec in spec.items():
            value = fields.get(name)
            if not value:
                logger.debug("Skipping field %s - no value", name)
                continue
            target = self.page.query(field_spec["selector"])
            if target is None:
                logger.info("Field %s not found with selector: %s", name, field_spec["selector"])
                continue
            target.value = str(value)
            filled += 1

        if filled == 0:
            logger.info("Nothing filled, leaving the form to the user")
            return Outcome.MANUAL

        await self.prompter.notify("SSO Active", "Logging you in automatically...")
        self.markers.set_auto_login_attempt()
        self.page.submit(form)
        logger.info("Form filled (%d fields) and submitted", filled)
        return Outcome.REPLAYED

    # ─── After login ─────────────────────────────────────────────────────

    async def _check_login_success(self) -> Outcome:
        if not self.login_succeeded(self.page):
            return Outcome.IDLE

        outcome = Outcome.IDLE
        if self.markers.auto_login_attempted():
            self.markers.clear_auto_login_attempt()
            outcome = Outcome.LOGIN_SUCCEEDED

        capture = self.markers.learning()
        if capture is None:
            return outcome

        logger.info("Learning mode: login appears successful")
        consent = await self.prompter.ask_consent(
            "Login successful. Save credentials for future automatic login?"
        )
        self.markers.clear_learning()
        if not consent:
            return Outcome.SAVE_DECLINED

        resp = await self.coordinator.handle_message(
            {"action": "saveCredentials", "origin": self.origin, "fields": capture.fields}
        )
        if resp.get("success"):
            await self.prompter.notify("Credentials Saved", "SSO is now enabled for this application.")
            return Outcome.CREDENTIALS_SAVED
        logger.warning("Failed to save credentials: %s", resp.get("error"))
        await self.prompter.notify("Credentials Not Saved", self._failure_message(resp))
        return Outcome.SAVE_FAILED

    @staticmethod
    def _failure_message(resp: dict[str, Any]) -> str:
        if resp.get("code") == "upstream_unavailable":
            return "The credential service is temporarily unavailable. Try again later."
        if resp.get("code") in ("unauthorized", "token_rejected"):
            return "You are not signed in to the identity service."
        return resp.get("error") or "Request failed"
