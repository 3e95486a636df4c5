"""Conversation sessions, history chunking, and thread metadata."""

from .chunking import MAX_ITEMS_PER_WRITE, BatchPlan, plan_batches
from .store import ChunkedConversationSession, ConversationMessage, SessionStore
from .threads import PREVIEW_CHARS, ThreadRecord, ThreadStore, make_preview

__all__ = [
    "MAX_ITEMS_PER_WRITE",
    "BatchPlan",
    "plan_batches",
    "ChunkedConversationSession",
    "ConversationMessage",
    "SessionStore",
    "PREVIEW_CHARS",
    "ThreadRecord",
    "ThreadStore",
    "make_preview",
]
