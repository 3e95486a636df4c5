"""Turn orchestration, event translation, and usage accounting."""

from .cancellation import CancellationHandle, CancellationRegistry
from .events import EventKind, TranslatedEvent, translate_event
from .orchestrator import EnsuredThread, TurnOrchestrator
from .runtime import AgentRequest, AgentRunResult, AgentRuntime, OpenAIAgentsRuntime
from .turn_log import TurnLogger
from .types import ReasoningEvent, Turn, TurnResult, TurnStatus, new_turn_id

__all__ = [
    "AgentRequest",
    "AgentRunResult",
    "AgentRuntime",
    "CancellationHandle",
    "CancellationRegistry",
    "EnsuredThread",
    "EventKind",
    "OpenAIAgentsRuntime",
    "ReasoningEvent",
    "TranslatedEvent",
    "Turn",
    "TurnLogger",
    "TurnOrchestrator",
    "TurnResult",
    "TurnStatus",
    "new_turn_id",
    "translate_event",
]
