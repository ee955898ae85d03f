"""
Per-conversation cache of recent chat turns.

Entries move between three states computed by `CacheEntry.state`:
- FRESH: filled by a bulk fetch and younger than the TTL
- PARTIAL: seeded by single live turns, never trusted as full history
- STALE: filled by a bulk fetch but older than the TTL

Concurrent `get` calls for the same conversation share one upstream fetch.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Literal

from loguru import logger

HistoryFetcher = Callable[[str, int], Awaitable[list["Turn"]]]


@dataclass(frozen=True)
class Turn:
    """One message exchanged in a conversation."""

    message_id: str
    role: Literal["user", "assistant"]
    text: str
    timestamp: datetime
    author: str = ""
    reactions: str | None = None  # e.g. "👍 2, 🎉 1"

    def to_message(self) -> dict[str, str]:
        """Render as a chat-completion message."""
        content = self.text
        if self.role == "user" and self.author:
            content = f"{self.author}: {content}"
        if self.reactions:
            content = f"{content}\n[reactions: {self.reactions}]"
        return {"role": self.role, "content": content}


class EntryState(str, Enum):
    """Freshness of a cached conversation."""

    FRESH = "fresh"
    PARTIAL = "partial"
    STALE = "stale"


@dataclass
class CacheEntry:
    """Cached turns for one conversation."""

    conversation_id: str
    turns: list[Turn] = field(default_factory=list)
    last_refresh: float = 0.0
    complete: bool = False

    def state(self, now: float, ttl: float) -> EntryState:
        """The single authority on whether an entry can be served."""
        if not self.complete:
            return EntryState.PARTIAL
        if now - self.last_refresh > ttl:
            return EntryState.STALE
        return EntryState.FRESH


class ConversationCache:
    """
    Bounded, TTL'd store of recent turns keyed by conversation id.

    The fetcher is the chat transport's bulk history call. A failing fetch
    yields an empty list: missing context is a valid state, not an error.
    """

    def __init__(
        self,
        fetcher: HistoryFetcher,
        max_conversations: int = 50,
        max_turns: int = 100,
        ttl_s: float = 300.0,
        fetch_timeout_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetcher = fetcher
        self.max_conversations = max_conversations
        self.max_turns = max_turns
        self.ttl_s = ttl_s
        self.fetch_timeout_s = fetch_timeout_s
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, asyncio.Task[list[Turn]]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def state(self, conversation_id: str) -> EntryState | None:
        """State of a conversation's entry, or None when not cached."""
        entry = self._entries.get(conversation_id)
        if entry is None:
            return None
        return entry.state(self._clock(), self.ttl_s)

    async def get(self, conversation_id: str, max_messages: int) -> list[Turn]:
        """
        Return up to `max_messages` most recent turns, oldest first.

        Serves fresh entries directly; otherwise joins or starts a refresh.
        """
        entry = self._entries.get(conversation_id)
        if entry is not None and entry.state(self._clock(), self.ttl_s) is EntryState.FRESH:
            logger.debug("Conversation cache hit: {}", conversation_id)
            return self._trim(entry.turns, max_messages)

        task = self._inflight.get(conversation_id)
        if task is None:
            task = asyncio.create_task(self._refresh(conversation_id), name=f"history:{conversation_id}")
            self._inflight[conversation_id] = task
        else:
            logger.debug("Joining in-flight history fetch: {}", conversation_id)

        # Shield so one cancelled waiter does not cancel the fetch for the others
        turns = await asyncio.shield(task)
        return self._trim(turns, max_messages)

    async def _refresh(self, conversation_id: str) -> list[Turn]:
        """Bulk fetch and store a conversation as a complete entry."""
        try:
            fetched = await asyncio.wait_for(
                self.fetcher(conversation_id, self.max_turns),
                timeout=self.fetch_timeout_s,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("History fetch failed for {}: {}", conversation_id, e)
            return []
        finally:
            self._inflight.pop(conversation_id, None)

        turns = self._normalize(fetched)
        self._store(CacheEntry(
            conversation_id=conversation_id,
            turns=turns,
            last_refresh=self._clock(),
            complete=True,
        ))
        logger.debug("Conversation cache refreshed: {} ({} turns)", conversation_id, len(turns))
        return turns

    def upsert(self, conversation_id: str, turn: Turn) -> None:
        """
        Insert or replace a single turn, keeping the entry's completeness.

        A conversation first seen through upsert becomes a PARTIAL entry so
        the next `get` still performs a real bulk fetch.
        """
        entry = self._entries.get(conversation_id)
        if entry is None:
            entry = CacheEntry(conversation_id=conversation_id, last_refresh=self._clock(), complete=False)
            self._store(entry)

        turns = [t for t in entry.turns if t.message_id != turn.message_id]
        turns.append(turn)
        entry.turns = self._normalize(turns)

    def invalidate(self, conversation_id: str) -> None:
        """Drop a conversation so the next `get` refetches it."""
        if self._entries.pop(conversation_id, None) is not None:
            logger.debug("Conversation cache invalidated: {}", conversation_id)

    def clear(self) -> None:
        """Drop every cached conversation."""
        self._entries.clear()

    def _store(self, entry: CacheEntry) -> None:
        if entry.conversation_id not in self._entries:
            while len(self._entries) >= self.max_conversations:
                self._evict_oldest()
        self._entries[entry.conversation_id] = entry

    def _evict_oldest(self) -> None:
        oldest = min(self._entries.values(), key=lambda e: e.last_refresh)
        del self._entries[oldest.conversation_id]
        logger.debug("Conversation cache evicted: {}", oldest.conversation_id)

    def _normalize(self, turns: list[Turn]) -> list[Turn]:
        ordered = sorted(turns, key=lambda t: t.timestamp)
        return ordered[-self.max_turns:]

    @staticmethod
    def _trim(turns: list[Turn], max_messages: int) -> list[Turn]:
        if max_messages <= 0:
            return []
        return list(turns[-max_messages:])
