"""
Page-scoped markers — the page agent's only memory across navigations.

A page navigation destroys the agent. Anything that has to survive (a
captured login, a captured new password, "a silent replay was just tried")
is written here before the risky step and cleared by the agent once
consumed. Markers are scoped to an origin and live as long as the browser
session, which the MarkerStore stands in for.

Usage:
    store = MarkerStore()
    markers = OriginMarkers(store, "http://localhost:3001")
    markers.save_learning({"username": "a", "password": "p"})
    markers.learning()          # LearningCapture(fields=..., origin=...)
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

LEARNING = "learning"
PASSWORD_CHANGE = "password_change"
AUTO_LOGIN = "auto_login_attempt"
VERIFIED_KEY = "keyrelay:verified"


@dataclass(frozen=True)
class LearningCapture:
    fields: dict[str, Any]
    origin: str


@dataclass(frozen=True)
class PasswordChangeCapture:
    new_password: str
    origin: str
    # Page loads already spent waiting for an ambiguous result
    attempts: int = 0


class MarkerStore:
    """Browser-session key/value store. Values are JSON-serialized strings.

    With ``path`` set, every mutation is flushed to that file so separate
    processes (one per page load) share the same markers.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self._data: dict[str, str] = {}
        if path is not None and path.exists():
            self._data = json.loads(path.read_text())

    def _flush(self) -> None:
        if self.path is not None:
            self.path.write_text(json.dumps(self._data))

    def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)
        self._flush()

    def delete(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()

    def clear_verified(self) -> None:
        """Forget every presence verification (identity switch or logout)."""
        self.delete(VERIFIED_KEY)


class OriginMarkers:
    """Typed accessors for the markers of one origin."""

    def __init__(self, store: MarkerStore, origin: str) -> None:
        self.store = store
        self.origin = origin

    def _key(self, name: str) -> str:
        return f"keyrelay:{self.origin}:{name}"

    # Learning

    def learning(self) -> LearningCapture | None:
        data = self.store.get(self._key(LEARNING))
        if not data or data.get("origin") != self.origin:
            return None
        return LearningCapture(fields=data["fields"], origin=data["origin"])

    def save_learning(self, fields: dict[str, Any]) -> None:
        self.store.set(self._key(LEARNING), {"fields": fields, "origin": self.origin})

    def clear_learning(self) -> None:
        self.store.delete(self._key(LEARNING))

    # Password change

    def password_change(self) -> PasswordChangeCapture | None:
        data = self.store.get(self._key(PASSWORD_CHANGE))
        if not data or data.get("origin") != self.origin:
            return None
        return PasswordChangeCapture(
            new_password=data["newPassword"], origin=data["origin"], attempts=data.get("attempts", 0)
        )

    def save_password_change(self, new_password: str, attempts: int = 0) -> None:
        self.store.set(
            self._key(PASSWORD_CHANGE),
            {"newPassword": new_password, "origin": self.origin, "attempts": attempts},
        )

    def clear_password_change(self) -> None:
        self.store.delete(self._key(PASSWORD_CHANGE))

    # Auto-login attempt

    def auto_login_attempted(self) -> bool:
        return bool(self.store.get(self._key(AUTO_LOGIN)))

    def set_auto_login_attempt(self) -> None:
        self.store.set(self._key(AUTO_LOGIN), {"origin": self.origin})

    def clear_auto_login_attempt(self) -> None:
        self.store.delete(self._key(AUTO_LOGIN))

    # Presence verification (session-wide set of verified origins)

    def is_verified(self) -> bool:
        return self.origin in (self.store.get(VERIFIED_KEY) or [])

    def mark_verified(self) -> None:
        verified = self.store.get(VERIFIED_KEY) or []
        if self.origin not in verified:
            verified.append(self.origin)
            self.store.set(VERIFIED_KEY, verified)
