"""
Page agent flows across page loads.

Each ``load`` builds a fresh PageAgent for a new page, as a navigation would;
only the shared MarkerStore and the coordinator carry state between loads.
"""

from typing import Any

import pytest

from keyrelay.agent.markers import OriginMarkers
from keyrelay.agent.page import change_password_page, content_page, login_page
from keyrelay.agent.page_agent import Outcome, PageAgent
from keyrelay.agent.prompts import PresetPrompter, Recovery

A = "http://localhost:3001"
D = "http://localhost:3004"


class CountingPrompter(PresetPrompter):
    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.presence_checks: list[str] = []
        self.consent_requests = 0

    async def verify_presence(self, origin: str) -> bool:
        self.presence_checks.append(origin)
        return await super().verify_presence(origin)

    async def ask_consent(self, message: str) -> bool:
        self.consent_requests += 1
        return await super().ask_consent(message)


@pytest.fixture
def prompter():
    return CountingPrompter()


@pytest.fixture
def load(coordinator, store, settings, prompter):
    async def run(page, with_prompter=None) -> Outcome:
        agent = PageAgent(page, coordinator, with_prompter or prompter, store, settings=settings)
        return await agent.run()

    return run


def titles(prompter) -> list[str]:
    return [t for t, _ in prompter.notifications]


class TestLearning:
    @pytest.mark.asyncio
    async def test_first_login_learned_and_saved(self, load, identity, store, prompter):
        page = login_page(A)
        assert await load(page) == Outcome.LEARNING
        assert "First-Time Login" in titles(prompter)
        assert page.forms[0].submissions == 0

        page.fill({"username": "alice", "password": "p1"})
        page.submit(page.forms[0])
        assert OriginMarkers(store, A).learning() is not None

        assert await load(content_page(A, "Welcome, alice")) == Outcome.CREDENTIALS_SAVED
        assert identity.store[(7, "app_a")] == {"username": "alice", "password": "p1"}
        assert OriginMarkers(store, A).learning() is None

    @pytest.mark.asyncio
    async def test_schema_fields_captured(self, load, identity):
        page = login_page(D, with_role=True)
        await load(page)
        page.fill({"username": "alice", "password": "p1", "role": "admin"})
        page.submit(page.forms[0])

        assert await load(content_page(D)) == Outcome.CREDENTIALS_SAVED
        assert identity.store[(7, "app_d")] == {"username": "alice", "password": "p1", "role": "admin"}

    @pytest.mark.asyncio
    async def test_consent_declined(self, load, identity, store):
        page = login_page(A)
        await load(page)
        page.fill({"username": "alice", "password": "p1"})
        page.submit(page.forms[0])

        outcome = await load(content_page(A), with_prompter=PresetPrompter(consent=False))
        assert outcome == Outcome.SAVE_DECLINED
        assert identity.store == {}
        assert OriginMarkers(store, A).learning() is None

    @pytest.mark.asyncio
    async def test_failed_manual_login_discards_capture(self, load, identity, store, prompter):
        page = login_page(A)
        await load(page)
        page.fill({"username": "alice", "password": "typo"})
        page.submit(page.forms[0])

        assert await load(login_page(A, text="Invalid password")) == Outcome.LEARNING
        assert OriginMarkers(store, A).learning() is None
        assert await load(content_page(A)) == Outcome.IDLE
        assert prompter.consent_requests == 0
        assert identity.store == {}

    @pytest.mark.asyncio
    async def test_incomplete_capture_not_saved(self, load, store):
        page = login_page(A)
        await load(page)
        page.fill({"username": "alice"})
        page.submit(page.forms[0])
        assert OriginMarkers(store, A).learning() is None


class TestSilentReplay:
    @pytest.mark.asyncio
    async def test_replays_and_confirms(self, load, identity, store):
        identity.store[(7, "app_a")] = {"username": "alice", "password": "p1"}
        page = login_page(A)

        assert await load(page) == Outcome.REPLAYED
        assert page.query("input[name='username']").value == "alice"
        assert page.query("input[name='password']").value == "p1"
        assert page.forms[0].submissions == 1
        assert OriginMarkers(store, A).auto_login_attempted()

        assert await load(content_page(A)) == Outcome.LOGIN_SUCCEEDED
        assert not OriginMarkers(store, A).auto_login_attempted()

    @pytest.mark.asyncio
    async def test_replays_every_schema_field(self, load, identity):
        identity.store[(7, "app_d")] = {"username": "alice", "password": "p1", "role": "admin"}
        page = login_page(D, with_role=True)
        assert await load(page) == Outcome.REPLAYED
        assert page.query("select[name='role']").value == "admin"


class TestFailedReplay:
    @pytest.fixture
    def stale(self, identity):
        identity.store[(7, "app_a")] = {"username": "alice", "password": "old"}

    @pytest.mark.asyncio
    async def test_no_second_silent_attempt(self, load, stale, prompter):
        await load(login_page(A))
        second = login_page(A, text="Invalid password")

        assert await load(second) == Outcome.MANUAL
        assert second.forms[0].submissions == 0
        assert prompter.recovery_requests == [A]
        assert "SSO Skipped" in titles(prompter)

    @pytest.mark.asyncio
    async def test_relearn_saves_new_credentials(self, load, identity, stale):
        relearn = PresetPrompter(recovery=Recovery.RELEARN)
        await load(login_page(A))
        second = login_page(A, text="Invalid password")

        assert await load(second, with_prompter=relearn) == Outcome.LEARNING
        assert second.forms[0].submissions == 0
        assert "Update Mode" in titles(relearn)

        second.fill({"username": "alice", "password": "new"})
        second.submit(second.forms[0])
        assert await load(content_page(A)) == Outcome.CREDENTIALS_SAVED
        assert identity.store[(7, "app_a")]["password"] == "new"

    @pytest.mark.asyncio
    async def test_retry_replays_once_more(self, load, stale):
        retry = PresetPrompter(recovery=Recovery.RETRY)
        await load(login_page(A))
        second = login_page(A, text="Invalid password")
        assert await load(second, with_prompter=retry) == Outcome.REPLAYED
        assert second.forms[0].submissions == 1

    @pytest.mark.asyncio
    async def test_plain_string_choice_accepted(self, load, stale):
        class StringPrompter(PresetPrompter):
            async def choose_recovery(self, origin: str):
                return "manual"

        await load(login_page(A))
        assert await load(login_page(A), with_prompter=StringPrompter()) == Outcome.MANUAL


class TestPresence:
    @pytest.mark.asyncio
    async def test_failed_presence_blocks_fetch(self, load, identity):
        identity.store[(7, "app_a")] = {"username": "alice", "password": "p1"}
        page = login_page(A)
        outcome = await load(page, with_prompter=PresetPrompter(presence=False))

        assert outcome == Outcome.PRESENCE_FAILED
        assert page.forms[0].submissions == 0
        assert identity.count("GET", "/api/vault/credentials") == 0

    @pytest.mark.asyncio
    async def test_verified_once_per_origin(self, load, identity, prompter):
        identity.store[(7, "app_a")] = {"username": "alice", "password": "p1"}
        await load(login_page(A))
        await load(content_page(A))
        await load(login_page(A))
        assert prompter.presence_checks == [A]

    @pytest.mark.asyncio
    async def test_identity_switch_requires_new_verification(self, load, identity, prompter):
        identity.store[(7, "app_a")] = {"username": "alice", "password": "p1"}
        identity.store[(9, "app_a")] = {"username": "bob", "password": "b1"}
        await load(login_page(A))
        await load(content_page(A))

        identity.login(9, "bob")
        page = login_page(A)
        assert await load(page) == Outcome.REPLAYED
        assert page.query("input[name='username']").value == "bob"
        assert prompter.presence_checks == [A, A]

    @pytest.mark.asyncio
    async def test_switch_with_failed_verification_not_replayed(self, load, identity):
        identity.store[(7, "app_a")] = {"username": "alice", "password": "p1"}
        identity.store[(9, "app_a")] = {"username": "bob", "password": "b1"}
        await load(login_page(A))
        await load(content_page(A))

        identity.login(9, "bob")
        page = login_page(A)
        assert await load(page, with_prompter=PresetPrompter(presence=False)) == Outcome.PRESENCE_FAILED
        assert page.forms[0].submissions == 0
        assert page.query("input[name='password']").value == ""


class TestPasswordChange:
    @pytest.fixture
    def saved(self, identity):
        identity.store[(7, "app_d")] = {"username": "alice", "password": "p1", "role": "admin"}

    async def _submit_change(self, load, new_password="p2"):
        page = change_password_page(D)
        assert await load(page) == Outcome.CAPTURING_PASSWORD_CHANGE
        page.fill(
            {"current_password": "p1", "new_password": new_password, "confirm_password": new_password}
        )
        page.submit(page.forms[0])

    @pytest.mark.asyncio
    async def test_success_updates_vault(self, load, identity, store, saved, prompter):
        await self._submit_change(load)
        outcome = await load(content_page(D, "Your password has been changed."))

        assert outcome == Outcome.PASSWORD_UPDATED
        assert identity.store[(7, "app_d")] == {"username": "alice", "password": "p2", "role": "admin"}
        assert OriginMarkers(store, D).password_change() is None
        assert prompter.consent_requests == 0

    @pytest.mark.asyncio
    async def test_ambiguous_result_waits_one_load(self, load, identity, store, saved):
        await self._submit_change(load)

        assert await load(change_password_page(D, text="Please try again")) == Outcome.PASSWORD_CHANGE_PENDING
        assert OriginMarkers(store, D).password_change().attempts == 1

        assert await load(change_password_page(D)) == Outcome.PASSWORD_CHANGE_ABANDONED
        assert OriginMarkers(store, D).password_change() is None
        assert identity.store[(7, "app_d")]["password"] == "p1"

    @pytest.mark.asyncio
    async def test_resubmission_replaces_capture(self, load, store, saved):
        await self._submit_change(load, "p2")
        page = change_password_page(D, text="Passwords do not match")
        await load(page)
        page.fill({"new_password": "p3"})
        page.submit(page.forms[0])

        capture = OriginMarkers(store, D).password_change()
        assert capture.new_password == "p3"
        assert capture.attempts == 0

    @pytest.mark.asyncio
    async def test_update_without_stored_record(self, load, identity, store):
        await self._submit_change(load)
        assert await load(content_page(D, "Password updated")) == Outcome.PASSWORD_UPDATE_FAILED
        assert identity.store == {}
        assert OriginMarkers(store, D).password_change() is None


class TestUnavailable:
    @pytest.mark.asyncio
    async def test_identity_down(self, load, identity, prompter):
        identity.down = True
        page = login_page(A)
        assert await load(page) == Outcome.UNAVAILABLE
        assert "SSO Unavailable" in titles(prompter)
        assert page.forms[0].submissions == 0

    @pytest.mark.asyncio
    async def test_logged_out_disables(self, load, identity):
        identity.logout()
        assert await load(login_page(A)) == Outcome.DISABLED

    @pytest.mark.asyncio
    async def test_unknown_origin_left_alone(self, load, identity, store, prompter):
        other = "http://unrelated.example"
        page = login_page(other)
        assert await load(page) == Outcome.DISABLED
        assert prompter.presence_checks == []
        assert prompter.notifications == []
        assert not OriginMarkers(store, other).is_verified()
        assert identity.count("GET", "/api/vault/credentials") == 0
        assert page.forms[0].submissions == 0

    @pytest.mark.asyncio
    async def test_page_without_forms(self, load, identity):
        assert await load(content_page(A, "Dashboard")) == Outcome.IDLE
        assert identity.requests == []
