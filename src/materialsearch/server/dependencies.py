from __future__ import annotations

import logging
from typing import Optional

from ..config import SettingsStore
from ..orchestration.orchestrator import TurnOrchestrator

logger = logging.getLogger(__name__)

_ORCHESTRATOR: Optional[TurnOrchestrator] = None
_SETTINGS_STORE: Optional[SettingsStore] = None


def set_orchestrator(orchestrator: Optional[TurnOrchestrator]) -> None:
    global _ORCHESTRATOR
    _ORCHESTRATOR = orchestrator


def set_settings_store(store: Optional[SettingsStore]) -> None:
    global _SETTINGS_STORE
    _SETTINGS_STORE = store


def get_orchestrator() -> TurnOrchestrator:
    if _ORCHESTRATOR is None:
        raise RuntimeError("Turn orchestrator has not been initialised")
    return _ORCHESTRATOR


def get_settings_store() -> Optional[SettingsStore]:
    return _SETTINGS_STORE
