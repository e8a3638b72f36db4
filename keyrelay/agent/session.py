"""
The background coordinator's single session slot.

One live token and one application list at a time, shared by every tab.
When a bootstrap reports a different identity than the one held, the slot is
hard-reset (token, apps, visited origins, verification markers) before the
new identity is installed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from keyrelay.agent.markers import MarkerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppEntry:
    app_id: str
    origin: str
    login_schema: dict[str, Any] | None = None


@dataclass(frozen=True)
class PriorIdentity:
    """What a reset discarded: who held the slot and where they were served."""

    identity: int
    username: str | None
    visited: frozenset[str] = field(default_factory=frozenset)


class SessionSlot:
    def __init__(
        self,
        markers: MarkerStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.markers = markers or MarkerStore()
        self.clock = clock
        self.identity: int | None = None
        self.username: str | None = None
        self.token: str | None = None
        self.expires_at: float | None = None
        self.apps: list[AppEntry] = []
        self.visited: set[str] = set()

    @property
    def bootstrapped(self) -> bool:
        return self.identity is not None and self.token is not None

    def token_valid(self) -> bool:
        return (
            self.token is not None
            and self.expires_at is not None
            and self.clock() < self.expires_at
        )

    def reset(self) -> PriorIdentity | None:
        """Discard everything held. Returns the identity that was cleared, if any."""
        prior = None
        if self.identity is not None:
            prior = PriorIdentity(self.identity, self.username, frozenset(self.visited))
        self.identity = None
        self.username = None
        self.token = None
        self.expires_at = None
        self.apps = []
        self.visited = set()
        self.markers.clear_verified()
        return prior

    def install(self, bootstrap: dict[str, Any]) -> PriorIdentity | None:
        """Install a bootstrap response.

        Returns the previous identity when the response belongs to someone
        else; the slot has been reset before the new identity is stored.
        """
        prior = None
        if self.identity is not None and bootstrap["userId"] != self.identity:
            logger.warning(
                "User changed: %s -> %s, clearing session state",
                self.username,
                bootstrap["username"],
            )
            prior = self.reset()

        self.identity = bootstrap["userId"]
        self.username = bootstrap["username"]
        self.token = bootstrap["pluginToken"]
        self.expires_at = self.clock() + float(bootstrap["expiresIn"])
        self.apps = [
            AppEntry(a["appId"], a["origin"], a.get("loginSchema")) for a in bootstrap.get("apps", [])
        ]
        logger.info("Bootstrapped for %s: %d apps", self.username, len(self.apps))
        return prior

    def app_for_origin(self, origin: str) -> AppEntry | None:
        for app in self.apps:
            if app.origin == origin:
                return app
        return None

    def mark_visited(self, origin: str) -> None:
        self.visited.add(origin)
