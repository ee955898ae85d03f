"""Recent mutating actions per conversation, for follow-up continuity."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from loguru import logger


class ActionType(str, Enum):
    """Kinds of mutation worth remembering across turns."""

    WRITE = "write"
    EDIT = "edit"
    DELETE = "delete"
    MOVE = "move"
    COMMIT = "commit"


_VERBS = {
    ActionType.WRITE: "wrote",
    ActionType.EDIT: "edited",
    ActionType.DELETE: "deleted",
    ActionType.MOVE: "moved",
    ActionType.COMMIT: "committed",
}


@dataclass(frozen=True)
class ActionRecord:
    """A successful mutating tool call."""

    type: ActionType
    paths: tuple[str, ...]
    summary: str
    timestamp: float


@dataclass
class _ActionLog:
    actions: list[ActionRecord] = field(default_factory=list)
    timestamp: float = 0.0


class ActionCache:
    """
    Bounded, TTL'd list of recent actions per conversation.

    Expiry is lazy: a conversation whose list has not been touched for
    `ttl_s` is dropped the next time it is read. `sweep` does the same
    for every conversation and is run by the agent's maintenance task.
    """

    def __init__(
        self,
        max_actions: int = 10,
        ttl_s: float = 1800.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_actions = max_actions
        self.ttl_s = ttl_s
        self._clock = clock
        self._logs: dict[str, _ActionLog] = {}

    def record(self, conversation_id: str, action: ActionRecord) -> None:
        """Append an action, keeping only the most recent `max_actions`."""
        log = self._logs.get(conversation_id)
        if log is None or self._expired(log):
            log = _ActionLog()
            self._logs[conversation_id] = log
        log.actions.append(action)
        del log.actions[:-self.max_actions]
        log.timestamp = self._clock()
        logger.debug("Recorded {} action for {}: {}", action.type.value, conversation_id, ", ".join(action.paths))

    def add(
        self,
        conversation_id: str,
        type: ActionType,
        paths: tuple[str, ...] | list[str],
        summary: str = "",
    ) -> ActionRecord:
        """Build a record stamped with this cache's clock and store it."""
        action = ActionRecord(type=type, paths=tuple(paths), summary=summary, timestamp=self._clock())
        self.record(conversation_id, action)
        return action

    def recent(self, conversation_id: str) -> list[ActionRecord]:
        """Actions for a conversation, oldest first; [] once the TTL elapsed."""
        log = self._logs.get(conversation_id)
        if log is None:
            return []
        if self._expired(log):
            del self._logs[conversation_id]
            return []
        return list(log.actions)

    def recent_paths(self, conversation_id: str) -> list[str]:
        """Paths touched recently, most recent first, without duplicates."""
        seen: dict[str, None] = {}
        for action in reversed(self.recent(conversation_id)):
            for path in action.paths:
                seen.setdefault(path, None)
        return list(seen)

    def summarize(self, conversation_id: str) -> str | None:
        """Render recent actions as a context block, or None when empty."""
        actions = self.recent(conversation_id)
        if not actions:
            return None
        now = self._clock()
        lines = ["## Recent actions in this conversation"]
        for action in actions:
            target = ", ".join(action.paths) or "repository"
            line = f"- {_VERBS[action.type]} {target} ({_age(now - action.timestamp)} ago)"
            if action.summary:
                line += f": {action.summary}"
            lines.append(line)
        lines.append(
            'When the user refers to "it", "the page" or "the file", they most likely mean '
            "the most recent path above."
        )
        return "\n".join(lines)

    def clear(self, conversation_id: str) -> None:
        """Forget a conversation's actions."""
        self._logs.pop(conversation_id, None)

    def sweep(self) -> int:
        """Drop every expired conversation. Returns how many were removed."""
        expired = [cid for cid, log in self._logs.items() if self._expired(log)]
        for cid in expired:
            del self._logs[cid]
        return len(expired)

    def _expired(self, log: _ActionLog) -> bool:
        return self._clock() - log.timestamp > self.ttl_s


def _age(seconds: float) -> str:
    if seconds < 60:
        return f"{int(seconds)}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m"
    return f"{int(seconds // 3600)}h"
