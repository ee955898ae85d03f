"""Tests for ActionCache."""

from sportello.cache.actions import ActionCache, ActionRecord, ActionType


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_recent_is_stable_within_ttl_and_empty_after() -> None:
    clock = FakeClock()
    cache = ActionCache(ttl_s=1800, clock=clock)
    cache.add("c1", ActionType.EDIT, ["src/game.js"], "timer fix")

    first = cache.recent("c1")
    second = cache.recent("c1")
    assert first == second
    assert [a.paths for a in first] == [("src/game.js",)]

    clock.now += 1801
    assert cache.recent("c1") == []
    assert "c1" not in cache._logs


def test_keeps_only_most_recent_actions() -> None:
    cache = ActionCache(max_actions=3, clock=FakeClock())
    for i in range(5):
        cache.add("c1", ActionType.WRITE, [f"src/page{i}.html"])

    assert [a.paths[0] for a in cache.recent("c1")] == ["src/page2.html", "src/page3.html", "src/page4.html"]


def test_ttl_counts_from_last_update() -> None:
    clock = FakeClock()
    cache = ActionCache(ttl_s=100, clock=clock)
    cache.add("c1", ActionType.WRITE, ["a.html"])
    clock.now = 90
    cache.add("c1", ActionType.EDIT, ["a.html"])
    clock.now = 150

    assert len(cache.recent("c1")) == 2


def test_recent_paths_most_recent_first_without_duplicates() -> None:
    cache = ActionCache(clock=FakeClock())
    cache.add("c1", ActionType.WRITE, ["a.html"])
    cache.add("c1", ActionType.EDIT, ["b.js"])
    cache.add("c1", ActionType.EDIT, ["a.html"])

    assert cache.recent_paths("c1") == ["a.html", "b.js"]


def test_summarize_renders_ages() -> None:
    clock = FakeClock()
    cache = ActionCache(clock=clock)
    assert cache.summarize("c1") is None

    cache.record("c1", ActionRecord(ActionType.EDIT, ("src/game.js",), "'30' -> '60'", timestamp=0.0))
    clock.now = 125
    summary = cache.summarize("c1")

    assert summary is not None
    assert summary.startswith("## Recent actions in this conversation")
    assert "- edited src/game.js (2m ago): '30' -> '60'" in summary


def test_sweep_drops_expired_conversations() -> None:
    clock = FakeClock()
    cache = ActionCache(ttl_s=10, clock=clock)
    cache.add("old", ActionType.COMMIT, [], "deploy")
    clock.now = 8
    cache.add("new", ActionType.DELETE, ["x.html"])
    clock.now = 15

    assert cache.sweep() == 1
    assert cache.recent("old") == []
    assert len(cache.recent("new")) == 1


def test_clear_forgets_conversation() -> None:
    cache = ActionCache(clock=FakeClock())
    cache.add("c1", ActionType.MOVE, ["a.html", "b.html"])
    cache.clear("c1")

    assert cache.recent("c1") == []
