"""Tests for the strategy ladder."""

import asyncio
from datetime import datetime
from pathlib import Path

import pytest

from sportello.agent.context import MINIMAL, ContextBuilder
from sportello.agent.intent import Classification, IntentType
from sportello.agent.orchestrator import (
    EDIT_TOOLS,
    ISOLATED,
    LAST_RESORT,
    PRIMARY,
    OrchestrationError,
    Orchestrator,
    TurnContext,
    build_ladder,
    validate,
)
from sportello.agent.routing import RoutingPlan
from sportello.agent.runner import AgentRunner, RunResult
from sportello.agent.tools import build_registry
from sportello.agent.tools.base import ToolKind
from sportello.cache.conversation import Turn
from sportello.config.schema import ModelsConfig, ToolsConfig
from sportello.providers.base import LLMResponse
from sportello.providers.errors import ErrorKind

from scripted import ScriptedProvider, error, no_sleep, reply


def _classification(type: IntentType) -> Classification:
    return Classification(type, "heuristic")


def _history(n: int) -> list[Turn]:
    return [
        Turn(str(i), "user" if i % 2 == 0 else "assistant", f"message {i}", datetime(2026, 1, 1))
        for i in range(n)
    ]


def _turn(type: IntentType = IntentType.CONVERSATION, **kwargs) -> TurnContext:
    kwargs.setdefault("history", [])
    return TurnContext("discord:1", kwargs.pop("text", "hey, what's up?"), classification=_classification(type), **kwargs)


@pytest.fixture
def models() -> ModelsConfig:
    return ModelsConfig()


def _orchestrator(provider, tmp_path: Path, models: ModelsConfig) -> Orchestrator:
    registry = build_registry(tmp_path, ToolsConfig(), models)
    context = ContextBuilder(tmp_path)
    runner = AgentRunner(provider, registry, context, sleep=no_sleep)
    return Orchestrator(runner, context, registry, models)


def test_ladder_order() -> None:
    default = build_ladder(_classification(IntentType.SIMPLE_EDIT))
    fix = build_ladder(_classification(IntentType.FUNCTIONALITY_FIX))

    assert [s.name for s in default] == ["primary", "reduced_context", "isolated", "last_resort"]
    assert [s.name for s in fix] == ["fix_full_context", "reduced_context", "isolated", "last_resort"]
    assert [s.check_error_marker for s in default] == [True, True, True, False]


def test_validate_rejections() -> None:
    assert validate(RunResult(content="   "), PRIMARY, 10) == "empty response"
    assert validate(RunResult(content="ok"), PRIMARY, 10).startswith("response too short")
    assert validate(RunResult(content="Error: file not found, sorry"), PRIMARY, 10) == "error marker in response"
    assert validate(
        RunResult(content="Try a simpler approach please.", error_kind=ErrorKind.SERVER), ISOLATED, 10
    ) == "upstream error (server)"
    assert validate(RunResult(content="Error: file not found, sorry"), build_ladder(
        _classification(IntentType.CONVERSATION))[-1], 10) is None
    assert validate(RunResult(content="All good over here."), PRIMARY, 10) is None


def test_last_rung_rejects_upstream_errors() -> None:
    last = build_ladder(_classification(IntentType.CONVERSATION))[-1]
    failed = RunResult(content="Try a simpler approach please.", error_kind=ErrorKind.RATE_LIMIT)

    assert not last.check_error_marker
    assert validate(failed, last, 10) == "upstream error (rate_limit)"


@pytest.mark.asyncio
async def test_ladder_escalates_until_valid(tmp_path: Path, models: ModelsConfig) -> None:
    provider = ScriptedProvider([
        reply(""),
        reply("Error: could not read the page"),
        reply("The page has three sections."),
    ])
    orchestrator = _orchestrator(provider, tmp_path, models)

    result = await orchestrator.run(_turn(history=_history(8), action_summary="## Recent actions"))

    assert result.content == "The page has three sections."
    assert [c["model"] for c in provider.calls] == [
        models.resolve(models.primary), models.resolve(models.fast), models.resolve(models.alternate),
    ]
    assert [len(c["messages"]) for c in provider.calls] == [10, 7, 2]
    assert "## Recent actions" in provider.calls[0]["messages"][0]["content"]
    assert "## Recent actions" not in provider.calls[2]["messages"][0]["content"]


@pytest.mark.asyncio
async def test_last_resort_has_no_tools_and_minimal_prompt(tmp_path: Path, models: ModelsConfig) -> None:
    provider = ScriptedProvider([error(400), error(400), error(400), reply("Sorry man, can't do that right now.")])
    orchestrator = _orchestrator(provider, tmp_path, models)

    result = await orchestrator.run(_turn(IntentType.CREATE_NEW, text="create a page about frogs"))

    assert result.content == "Sorry man, can't do that right now."
    last = provider.calls[-1]
    assert last["model"] == models.resolve(models.fastest)
    assert last["tools"] is None
    assert last["messages"][0]["content"] == MINIMAL


@pytest.mark.asyncio
async def test_exhaustion_raises(tmp_path: Path, models: ModelsConfig) -> None:
    provider = ScriptedProvider([reply("") for _ in range(4)])
    orchestrator = _orchestrator(provider, tmp_path, models)

    with pytest.raises(OrchestrationError) as exc_info:
        await orchestrator.run(_turn())

    assert exc_info.value.attempts == 4
    assert exc_info.value.last_reason == "last_resort: empty response"
    assert len(provider.calls) == 4


@pytest.mark.asyncio
async def test_auth_failure_stops_ladder(tmp_path: Path, models: ModelsConfig) -> None:
    provider = ScriptedProvider([error(401), reply("never asked")])
    orchestrator = _orchestrator(provider, tmp_path, models)

    with pytest.raises(OrchestrationError) as exc_info:
        await orchestrator.run(_turn())

    assert exc_info.value.kind is ErrorKind.AUTH
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_turn_timeout(tmp_path: Path, models: ModelsConfig) -> None:
    async def _slow(*args, **kwargs) -> LLMResponse:
        await asyncio.sleep(1)
        return LLMResponse(content="too late to matter")

    provider = ScriptedProvider()
    provider.chat = _slow  # type: ignore[method-assign]
    orchestrator = _orchestrator(provider, tmp_path, models)

    with pytest.raises(OrchestrationError) as exc_info:
        await orchestrator.run(_turn(), timeout_s=0.01)

    assert exc_info.value.kind is ErrorKind.TIMEOUT


@pytest.mark.asyncio
async def test_fix_intent_offers_every_tool_first(tmp_path: Path, models: ModelsConfig) -> None:
    provider = ScriptedProvider([reply("Looks like the timer was never started.")])
    orchestrator = _orchestrator(provider, tmp_path, models)

    await orchestrator.run(_turn(IntentType.FUNCTIONALITY_FIX, text="the timer is broken"))

    assert len(provider.calls[0]["tools"]) == len(orchestrator.tools)


def test_tool_policy_by_intent(tmp_path: Path, models: ModelsConfig) -> None:
    orchestrator = _orchestrator(ScriptedProvider(), tmp_path, models)
    registry = orchestrator.tools

    assert orchestrator.tool_names(PRIMARY, _classification(IntentType.CONVERSATION)) == []
    assert orchestrator.tool_names(PRIMARY, _classification(IntentType.READ_ONLY)) == registry.names([ToolKind.READ_ONLY])
    assert orchestrator.tool_names(PRIMARY, _classification(IntentType.SIMPLE_EDIT)) == list(EDIT_TOOLS)
    assert orchestrator.tool_names(PRIMARY, _classification(IntentType.COMMIT)) == registry.tool_names
    assert orchestrator.tool_names(LAST_RESORT, _classification(IntentType.COMMIT)) == []


def test_guidance_only_when_tools_enabled(tmp_path: Path, models: ModelsConfig) -> None:
    orchestrator = _orchestrator(ScriptedProvider(), tmp_path, models)
    plan = RoutingPlan(intent="edit", tool_sequence=["read_file", "edit_file"])
    turn = _turn(IntentType.SIMPLE_EDIT, plan=plan)

    with_tools = orchestrator.build_messages(PRIMARY, turn, tools_enabled=True)
    without_tools = orchestrator.build_messages(PRIMARY, turn, tools_enabled=False)
    isolated = orchestrator.build_messages(ISOLATED, turn, tools_enabled=True)

    assert "## Routing guidance" in with_tools[0]["content"]
    assert "## Routing guidance" not in without_tools[0]["content"]
    assert "## Routing guidance" not in isolated[0]["content"]


def test_write_intent_prefers_plan() -> None:
    assert _turn(IntentType.CONVERSATION, plan=RoutingPlan(intent="edit")).write_intent
    assert not _turn(IntentType.SIMPLE_EDIT, plan=RoutingPlan(intent="read")).write_intent
    assert _turn(IntentType.COMMIT).write_intent
