"""User interaction seam for the page agent."""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import Protocol

logger = logging.getLogger(__name__)


class Recovery(StrEnum):
    """User's choice after a silent replay already failed once."""

    RETRY = "retry"
    MANUAL = "manual"
    RELEARN = "relearn"


class Prompter(Protocol):
    async def notify(self, title: str, message: str) -> None: ...

    async def ask_consent(self, message: str) -> bool: ...

    async def choose_recovery(self, origin: str) -> Recovery: ...

    async def verify_presence(self, origin: str) -> bool: ...


class PresetPrompter:
    """Answers every prompt from fixed settings and logs notifications.

    Used for unattended runs; records what was shown in ``notifications``.
    """

    def __init__(
        self,
        consent: bool = True,
        recovery: Recovery = Recovery.MANUAL,
        presence: bool = True,
    ) -> None:
        self.consent = consent
        self.recovery = recovery
        self.presence = presence
        self.notifications: list[tuple[str, str]] = []
        self.recovery_requests: list[str] = []

    async def notify(self, title: str, message: str) -> None:
        logger.info("[Notification] %s: %s", title, message)
        self.notifications.append((title, message))

    async def ask_consent(self, message: str) -> bool:
        logger.info("Consent requested: %s -> %s", message, self.consent)
        return self.consent

    async def choose_recovery(self, origin: str) -> Recovery:
        self.recovery_requests.append(origin)
        return self.recovery

    async def verify_presence(self, origin: str) -> bool:
        return self.presence
