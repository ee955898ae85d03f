"""Tests for the tool-calling agent loop."""

import asyncio
from pathlib import Path

import pytest

from sportello.agent.context import ContextBuilder
from sportello.agent.runner import (
    AUTH_FAILURE,
    HONEST_NO_CHANGE,
    SIMPLER_APPROACH,
    AgentRunner,
    StopReason,
)
from sportello.agent.tools import build_registry
from sportello.agent.tools.base import Tool, ToolArgs, ToolKind, ToolName
from sportello.agent.tools.registry import ToolRegistry
from sportello.cache.actions import ActionCache, ActionType
from sportello.config.schema import ModelsConfig, ToolsConfig
from sportello.providers.errors import ErrorKind

from scripted import ScriptedProvider, error, malformed, reply, tool_calls


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class Tracker:
    def __init__(self) -> None:
        self.active = 0
        self.peak = 0
        self.order: list[str] = []


class Probe(Tool):
    """Records concurrency; kind is set per instance."""

    def __init__(self, name: ToolName, tracker: Tracker, kind: ToolKind = ToolKind.READ_ONLY):
        self._name = name
        self.tracker = tracker
        self.kind = kind

    @property
    def name(self) -> ToolName:
        return self._name

    @property
    def description(self) -> str:
        return "probe"

    async def execute(self, args: ToolArgs) -> str:
        self.tracker.active += 1
        self.tracker.peak = max(self.tracker.peak, self.tracker.active)
        self.tracker.order.append(self._name.value)
        await asyncio.sleep(0.01)
        self.tracker.active -= 1
        return f"{self._name.value} ok"


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "game.js").write_text("let timer = 30;\n")
    (tmp_path / "src" / "index.html").write_text("<h1>Arcade</h1>\n")
    return tmp_path


@pytest.fixture
def registry(repo: Path) -> ToolRegistry:
    return build_registry(repo, ToolsConfig(), ModelsConfig())


def _runner(provider, registry, actions=None, **kwargs) -> AgentRunner:
    kwargs.setdefault("sleep", RecordingSleep())
    return AgentRunner(provider, registry, ContextBuilder(Path("/repo")), actions, **kwargs)


def _messages(text: str = "hello") -> list[dict]:
    return ContextBuilder(Path("/repo")).build_messages([], text)


@pytest.mark.asyncio
async def test_plain_answer_ends_loop(registry: ToolRegistry) -> None:
    provider = ScriptedProvider([reply("Yeah man, all good.")])
    runner = _runner(provider, registry)

    result = await runner.run(_messages(), "m", tool_names=registry.tool_names)

    assert result.content == "Yeah man, all good."
    assert result.stop_reason is StopReason.COMPLETED
    assert result.iterations == 1
    assert len(provider.calls[0]["tools"]) == len(registry)


@pytest.mark.asyncio
async def test_think_blocks_are_stripped(registry: ToolRegistry) -> None:
    runner = _runner(ScriptedProvider([reply("<think>hmm</think>Right on, dude.")]), registry)

    result = await runner.run(_messages(), "m")

    assert result.content == "Right on, dude."


@pytest.mark.asyncio
async def test_list_files_then_answer(registry: ToolRegistry) -> None:
    provider = ScriptedProvider([
        tool_calls(("list_files", {"path": "src"})),
        reply("src has game.js and index.html"),
    ])
    hints: list[tuple[str, bool]] = []

    async def on_progress(content: str, tool_hint: bool = False) -> None:
        hints.append((content, tool_hint))

    result = await _runner(provider, registry).run(
        _messages("list the files in src"), "m",
        tool_names=registry.names([ToolKind.READ_ONLY]), on_progress=on_progress,
    )

    assert result.content == "src has game.js and index.html"
    assert result.primary_actions == 0
    assert [r.name for r in result.tool_calls] == ["list_files"]
    assert ".js (1): game.js" in result.tool_calls[0].result
    assert hints == [('list_files("src")', True)]
    tool_msg = provider.calls[1]["messages"][-1]
    assert tool_msg["role"] == "tool" and tool_msg["tool_call_id"] == "call_0"


@pytest.mark.asyncio
async def test_primary_action_short_circuits_to_final_completion(registry: ToolRegistry, repo: Path) -> None:
    provider = ScriptedProvider([
        tool_calls(("read_file", {"path": "src/game.js"})),
        tool_calls(("edit_file", {"path": "src/game.js", "old_string": "30", "new_string": "60"})),
        reply("Bumped the timer to 60 seconds."),
        reply("this should never be requested"),
    ])
    actions = ActionCache()

    result = await _runner(provider, registry, actions).run(
        _messages("fix the timer bug in game.js"), "m",
        tool_names=registry.tool_names, write_intent=True, conversation_id="c1",
    )

    assert result.stop_reason is StopReason.PRIMARY_ACTION
    assert result.primary_actions == 1
    assert result.iterations == 2
    assert result.content == "Bumped the timer to 60 seconds."
    assert result.edited_paths == {"src/game.js"}
    assert len(provider.calls) == 3
    assert provider.calls[2]["tools"] is None
    assert (repo / "src" / "game.js").read_text() == "let timer = 60;\n"
    recorded = actions.recent("c1")
    assert [(a.type, a.paths) for a in recorded] == [(ActionType.EDIT, ("src/game.js",))]


@pytest.mark.asyncio
async def test_failed_mutation_is_not_a_primary_action(registry: ToolRegistry) -> None:
    provider = ScriptedProvider([
        tool_calls(("edit_file", {"path": "src/game.js", "old_string": "nope", "new_string": "x"})),
        reply("Couldn't find that text."),
    ])
    actions = ActionCache()

    result = await _runner(provider, registry, actions).run(
        _messages(), "m", tool_names=registry.tool_names, conversation_id="c1",
    )

    assert result.primary_actions == 0
    assert result.stop_reason is StopReason.COMPLETED
    assert result.tool_calls[0].is_error
    assert actions.recent("c1") == []


@pytest.mark.asyncio
async def test_redundant_edit_in_same_batch_is_refused(registry: ToolRegistry, repo: Path) -> None:
    provider = ScriptedProvider([
        tool_calls(
            ("edit_file", {"path": "src/game.js", "old_string": "30", "new_string": "45"}),
            ("edit_file", {"path": "./src/game.js", "old_string": "45", "new_string": "90"}),
        ),
        reply("Timer set to 45."),
    ])

    result = await _runner(provider, registry).run(_messages(), "m", tool_names=registry.tool_names)

    assert result.primary_actions == 1
    assert not result.tool_calls[0].is_error
    assert result.tool_calls[1].is_error
    assert "already modified" in result.tool_calls[1].result
    assert (repo / "src" / "game.js").read_text() == "let timer = 45;\n"


@pytest.mark.asyncio
async def test_edit_after_write_in_same_batch_is_allowed(registry: ToolRegistry, repo: Path) -> None:
    provider = ScriptedProvider([
        tool_calls(
            ("write_file", {"path": "src/new.js", "content": "let a = 1;"}),
            ("edit_file", {"path": "src/new.js", "old_string": "1", "new_string": "2"}),
            ("write_file", {"path": "./src/new.js", "content": "let a = 3;"}),
        ),
        reply("Created src/new.js."),
    ])

    result = await _runner(provider, registry).run(_messages(), "m", tool_names=registry.tool_names)

    assert [r.is_error for r in result.tool_calls] == [False, False, True]
    assert "already modified" in result.tool_calls[2].result
    assert result.primary_actions == 2
    assert (repo / "src" / "new.js").read_text() == "let a = 2;"


@pytest.mark.asyncio
async def test_mutating_calls_run_in_order(registry: ToolRegistry, repo: Path) -> None:
    provider = ScriptedProvider([
        tool_calls(
            ("write_file", {"path": "src/new.html", "content": "<p>new</p>"}),
            ("move_file", {"source": "src/new.html", "destination": "src/pages/new.html"}),
        ),
        reply("Created and moved the page."),
    ])

    result = await _runner(provider, registry, ActionCache()).run(
        _messages(), "m", tool_names=registry.tool_names, conversation_id="c1",
    )

    assert [r.is_error for r in result.tool_calls] == [False, False]
    assert result.primary_actions == 2
    assert (repo / "src" / "pages" / "new.html").exists()


@pytest.mark.asyncio
async def test_read_only_calls_run_concurrently_and_mutating_alone() -> None:
    tracker = Tracker()
    registry = ToolRegistry()
    registry.register(Probe(ToolName.LIST_FILES, tracker))
    registry.register(Probe(ToolName.SEARCH_FILES, tracker))
    registry.register(Probe(ToolName.GIT_LOG, tracker))
    registry.register(Probe(ToolName.SET_MODEL, tracker, ToolKind.MUTATING))
    registry.register(Probe(ToolName.DELETE_FILE, tracker, ToolKind.MUTATING))

    provider = ScriptedProvider([
        tool_calls(("set_model", {}), ("list_files", {}), ("delete_file", {}), ("search_files", {}), ("git_log", {})),
        reply("All done with the probes."),
    ])
    result = await _runner(provider, registry).run(_messages(), "m", tool_names=registry.tool_names)

    assert tracker.peak == 3
    assert tracker.order[-2:] == ["set_model", "delete_file"]
    # Results go back in the order the model asked for them
    assert [r.name for r in result.tool_calls] == ["set_model", "list_files", "delete_file", "search_files", "git_log"]
    tool_ids = [m["tool_call_id"] for m in provider.calls[1]["messages"] if m["role"] == "tool"]
    assert tool_ids == ["call_0", "call_1", "call_2", "call_3", "call_4"]


@pytest.mark.asyncio
async def test_tool_outside_offered_set_is_refused(registry: ToolRegistry, repo: Path) -> None:
    provider = ScriptedProvider([
        tool_calls(("write_file", {"path": "src/x.html", "content": "x"})),
        reply("I can only read files right now."),
    ])

    result = await _runner(provider, registry).run(
        _messages(), "m", tool_names=registry.names([ToolKind.READ_ONLY]),
    )

    assert result.tool_calls[0].is_error
    assert "not available" in result.tool_calls[0].result
    assert not (repo / "src" / "x.html").exists()


@pytest.mark.asyncio
async def test_refused_writes_still_count_toward_read_only_cap(registry: ToolRegistry, repo: Path) -> None:
    provider = ScriptedProvider(
        [tool_calls(("write_file", {"path": "src/x.html", "content": "x"})) for _ in range(3)]
        + [reply("I can only read files right now.")]
    )

    result = await _runner(provider, registry).run(
        _messages(), "m", tool_names=registry.names([ToolKind.READ_ONLY]),
    )

    assert result.stop_reason is StopReason.READ_ONLY_EXHAUSTED
    assert result.iterations == 3
    assert all(r.is_error for r in result.tool_calls)
    assert provider.calls[3]["tools"] is None
    assert not (repo / "src" / "x.html").exists()


@pytest.mark.asyncio
async def test_read_only_exhaustion_forces_final_completion(registry: ToolRegistry) -> None:
    provider = ScriptedProvider(
        [tool_calls(("search_files", {"pattern": "score"})) for _ in range(3)]
        + [reply("Couldn't find a score variable anywhere.")]
    )

    result = await _runner(provider, registry).run(_messages(), "m", tool_names=registry.tool_names)

    assert result.stop_reason is StopReason.READ_ONLY_EXHAUSTED
    assert result.iterations == 3
    assert len(provider.calls) == 4
    assert provider.calls[3]["tools"] is None
    assert result.content == "Couldn't find a score variable anywhere."


@pytest.mark.asyncio
async def test_write_intent_skips_read_only_cap_until_iteration_cap(registry: ToolRegistry) -> None:
    provider = ScriptedProvider([tool_calls(("list_files", {"path": "src"})) for _ in range(10)])

    result = await _runner(provider, registry, max_iterations=6).run(
        _messages(), "m", tool_names=registry.tool_names, write_intent=True,
    )

    assert result.stop_reason is StopReason.MAX_ITERATIONS
    assert result.iterations == 6
    assert len(provider.calls) == 6
    assert result.content and "no changes were made" in result.content


@pytest.mark.asyncio
async def test_read_only_cap_always_applies_to_write_intent(registry: ToolRegistry) -> None:
    provider = ScriptedProvider([tool_calls(("list_files", {"path": "src"})) for _ in range(3)] + [reply("Nothing to change here.")])

    result = await _runner(provider, registry, read_only_cap_always=True).run(
        _messages(), "m", tool_names=registry.tool_names, write_intent=True,
    )

    assert result.stop_reason is StopReason.READ_ONLY_EXHAUSTED


@pytest.mark.asyncio
async def test_hallucinated_success_is_replaced(registry: ToolRegistry) -> None:
    runner = _runner(ScriptedProvider([reply("Done! I updated the title.")]), registry)

    result = await runner.run(_messages("change the title"), "m", tool_names=registry.tool_names, write_intent=True)

    assert result.content == HONEST_NO_CHANGE


@pytest.mark.asyncio
async def test_success_language_is_fine_without_write_intent(registry: ToolRegistry) -> None:
    runner = _runner(ScriptedProvider([reply("The page was updated last week.")]), registry)

    result = await runner.run(_messages(), "m", tool_names=registry.tool_names)

    assert result.content == "The page was updated last week."


@pytest.mark.asyncio
async def test_empty_final_completion_reports_action_count(registry: ToolRegistry) -> None:
    provider = ScriptedProvider([
        tool_calls(("write_file", {"path": "src/a.html", "content": "a"})),
        reply(""),
    ])

    result = await _runner(provider, registry).run(_messages(), "m", tool_names=registry.tool_names)

    assert result.content == "Completed 1 action(s)."


@pytest.mark.asyncio
async def test_transient_errors_retry_and_switch_to_reliable_model(registry: ToolRegistry) -> None:
    provider = ScriptedProvider([error(503), error(429), reply("Finally got through.")])
    sleep = RecordingSleep()

    result = await _runner(provider, registry, reliable_model="reliable", sleep=sleep).run(_messages(), "m")

    assert result.content == "Finally got through."
    assert [c["model"] for c in provider.calls] == ["m", "m", "reliable"]
    assert len(sleep.delays) == 2
    assert 1.0 <= sleep.delays[0] <= 2.0
    assert 2.0 <= sleep.delays[1] <= 3.0


@pytest.mark.asyncio
async def test_malformed_payload_is_retried(registry: ToolRegistry) -> None:
    provider = ScriptedProvider([malformed(), reply("Second time lucky.")])

    result = await _runner(provider, registry).run(_messages(), "m")

    assert result.content == "Second time lucky."
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_retries_exhausted_returns_placeholder(registry: ToolRegistry) -> None:
    provider = ScriptedProvider([error(429) for _ in range(5)])

    result = await _runner(provider, registry, retries=3).run(_messages(), "m")

    assert len(provider.calls) == 4
    assert result.error_kind is ErrorKind.RATE_LIMIT
    assert result.stop_reason is StopReason.UPSTREAM_ERROR
    assert result.content == SIMPLER_APPROACH


@pytest.mark.asyncio
async def test_client_error_is_terminal_without_retry(registry: ToolRegistry) -> None:
    provider = ScriptedProvider([error(400), reply("unreachable")])

    result = await _runner(provider, registry).run(_messages(), "m")

    assert len(provider.calls) == 1
    assert result.error_kind is ErrorKind.CLIENT
    assert result.content == SIMPLER_APPROACH


@pytest.mark.asyncio
async def test_auth_error_gets_its_own_text(registry: ToolRegistry) -> None:
    result = await _runner(ScriptedProvider([error(401)]), registry).run(_messages(), "m")

    assert result.error_kind is ErrorKind.AUTH
    assert result.content == AUTH_FAILURE


@pytest.mark.asyncio
async def test_payment_error_retries_with_fewer_tokens(registry: ToolRegistry) -> None:
    provider = ScriptedProvider([
        error(402, "Error calling LLM: You requested up to 10000 tokens, but can only afford 1000."),
        reply("Short and sweet answer."),
    ])

    result = await _runner(provider, registry, max_tokens=10000).run(_messages(), "m")

    assert result.content == "Short and sweet answer."
    assert [c["max_tokens"] for c in provider.calls] == [10000, 800]
