"""
KeyRelay Agent — the extension side of credential replay.

BackgroundCoordinator holds the single session slot and talks to the
identity service; PageAgent runs once per page load and drives learning,
silent replay and password-change capture through page-scoped markers.
"""

from keyrelay.agent.coordinator import BackgroundCoordinator
from keyrelay.agent.markers import MarkerStore, OriginMarkers
from keyrelay.agent.page_agent import Outcome, PageAgent
from keyrelay.agent.session import SessionSlot

__all__ = [
    "BackgroundCoordinator",
    "MarkerStore",
    "OriginMarkers",
    "Outcome",
    "PageAgent",
    "SessionSlot",
]
