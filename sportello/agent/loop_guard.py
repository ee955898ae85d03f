"""Error-loop guard: refuse commands an actor keeps re-triggering while they fail."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from loguru import logger


@dataclass
class ErrorCounter:
    count: int
    last_error: float


class ErrorLoopGuard:
    """
    Counts attempts per (actor, command) pair.

    Every incoming turn is recorded; a successful turn clears the pair.
    Once `threshold` attempts pile up within `reset_window_s` of each
    other the pair is in a loop and the caller must refuse it.
    """

    def __init__(
        self,
        threshold: int = 3,
        reset_window_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.reset_window_s = reset_window_s
        self._clock = clock
        self._counters: dict[tuple[str, str], ErrorCounter] = {}

    def check_and_record(self, actor_id: str, command_id: str) -> bool:
        """Record an attempt and report whether the pair is in an error loop."""
        key = (actor_id, command_id)
        now = self._clock()
        counter = self._counters.get(key)

        if counter is None or now - counter.last_error > self.reset_window_s:
            self._counters[key] = ErrorCounter(count=1, last_error=now)
            return False

        counter.count += 1
        counter.last_error = now
        if counter.count >= self.threshold:
            logger.warning("Error loop detected for {} command {} ({} attempts)", actor_id, command_id, counter.count)
            return True
        return False

    def clear(self, actor_id: str, command_id: str) -> None:
        """Forget a pair after it succeeded."""
        self._counters.pop((actor_id, command_id), None)

    def sweep(self) -> int:
        """Remove counters idle for longer than the reset window."""
        now = self._clock()
        stale = [k for k, c in self._counters.items() if now - c.last_error > self.reset_window_s]
        for key in stale:
            del self._counters[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._counters)
