"""Short-term memory: conversation turns and recent actions."""

from sportello.cache.actions import ActionCache, ActionRecord, ActionType
from sportello.cache.conversation import CacheEntry, ConversationCache, EntryState, Turn

__all__ = [
    "ActionCache",
    "ActionRecord",
    "ActionType",
    "CacheEntry",
    "ConversationCache",
    "EntryState",
    "Turn",
]
