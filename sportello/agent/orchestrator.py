"""Multi-attempt orchestration: a ladder of strategies tried until one answer validates."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, replace
from enum import Enum

from loguru import logger

from sportello.agent.context import ContextBuilder
from sportello.agent.intent import Classification, IntentType
from sportello.agent.routing import RoutingPlan, build_guidance
from sportello.agent.runner import AgentRunner, ProgressCallback, RunResult
from sportello.agent.tools.base import ToolKind, ToolName
from sportello.agent.tools.registry import ToolRegistry
from sportello.cache.conversation import Turn
from sportello.config.schema import ModelsConfig
from sportello.providers.errors import ErrorKind

EDIT_TOOLS = (
    ToolName.FILE_EXISTS.value,
    ToolName.SEARCH_FILES.value,
    ToolName.READ_FILE.value,
    ToolName.EDIT_FILE.value,
)

_ERROR_MARKER = re.compile(
    r"(^|\n)\s*error\s*:|error calling llm|traceback \(most recent call last\)",
    re.IGNORECASE,
)

# Rungs at these positions also reject error markers in the answer text
_STRICT_RUNGS = 3


class ContextPolicy(str, Enum):
    FULL = "full"
    REDUCED = "reduced"
    NONE = "none"


class ToolPolicy(str, Enum):
    BY_INTENT = "by_intent"  # edit-only, read-only or none depending on the classification
    FULL = "full"
    NONE = "none"


@dataclass(frozen=True)
class Strategy:
    """One rung of the ladder."""

    name: str
    model_role: str  # attribute of ModelsConfig: primary, fast, alternate, fastest
    context: ContextPolicy
    tools: ToolPolicy
    minimal_prompt: bool = False
    check_error_marker: bool = True


PRIMARY = Strategy("primary", "primary", ContextPolicy.FULL, ToolPolicy.BY_INTENT)
REDUCED_CONTEXT = Strategy("reduced_context", "fast", ContextPolicy.REDUCED, ToolPolicy.BY_INTENT)
ISOLATED = Strategy("isolated", "alternate", ContextPolicy.NONE, ToolPolicy.BY_INTENT)
FIX_FULL_CONTEXT = Strategy("fix_full_context", "primary", ContextPolicy.FULL, ToolPolicy.FULL)
LAST_RESORT = Strategy("last_resort", "fastest", ContextPolicy.NONE, ToolPolicy.NONE, minimal_prompt=True)


def build_ladder(classification: Classification) -> list[Strategy]:
    """
    Ordered strategies for a turn.

    A functionality fix starts on the full-context, full-tool rung instead of
    the intent-restricted primary rung. Only the first three rungs check for
    error markers.
    """
    if classification.is_functionality_fix:
        rungs = [FIX_FULL_CONTEXT, REDUCED_CONTEXT, ISOLATED, LAST_RESORT]
    else:
        rungs = [PRIMARY, REDUCED_CONTEXT, ISOLATED, LAST_RESORT]
    return [replace(s, check_error_marker=i < _STRICT_RUNGS) for i, s in enumerate(rungs)]


class OrchestrationError(Exception):
    """Every rung failed, or the turn ran out of time."""

    def __init__(self, attempts: int, last_reason: str, kind: ErrorKind | None = None):
        self.attempts = attempts
        self.last_reason = last_reason
        self.kind = kind
        super().__init__(f"All {attempts} attempt(s) failed: {last_reason}")


@dataclass
class TurnContext:
    """Everything computed once per incoming message and shared by every rung."""

    conversation_id: str
    text: str
    history: list[Turn]
    classification: Classification
    plan: RoutingPlan | None = None
    action_summary: str | None = None

    @property
    def write_intent(self) -> bool:
        """Advisory write intent: the plan's when there is one, else the classification's."""
        if self.plan is not None:
            return self.plan.is_write
        return self.classification.is_write


def validate(result: RunResult, strategy: Strategy, min_chars: int) -> str | None:
    """Return a rejection reason, or None when the answer is acceptable."""
    content = (result.content or "").strip()
    if not content:
        return "empty response"
    if len(content) < min_chars:
        return f"response too short ({len(content)} chars)"
    if result.error_kind is not None:
        return f"upstream error ({result.error_kind.value})"
    if strategy.check_error_marker and _ERROR_MARKER.search(content):
        return "error marker in response"
    return None


class Orchestrator:
    """Runs the ladder for one turn under a timeout."""

    def __init__(
        self,
        runner: AgentRunner,
        context: ContextBuilder,
        tools: ToolRegistry,
        models: ModelsConfig,
        history_window: int = 20,
        reduced_history_window: int = 5,
        min_response_chars: int = 10,
        turn_timeout_s: float = 300.0,
    ):
        self.runner = runner
        self.context = context
        self.tools = tools
        self.models = models
        self.history_window = history_window
        self.reduced_history_window = reduced_history_window
        self.min_response_chars = min_response_chars
        self.turn_timeout_s = turn_timeout_s

    async def run(
        self,
        turn: TurnContext,
        on_progress: ProgressCallback | None = None,
        timeout_s: float | None = None,
    ) -> RunResult:
        """Run the ladder; raises OrchestrationError on exhaustion or timeout."""
        timeout = timeout_s if timeout_s is not None else self.turn_timeout_s
        try:
            return await asyncio.wait_for(self._run_ladder(turn, on_progress), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("Turn for {} timed out after {}s", turn.conversation_id, timeout)
            raise OrchestrationError(0, f"timed out after {timeout}s", ErrorKind.TIMEOUT) from None

    async def _run_ladder(self, turn: TurnContext, on_progress: ProgressCallback | None) -> RunResult:
        ladder = build_ladder(turn.classification)
        last_reason = "no attempts made"
        last_kind: ErrorKind | None = None

        for attempt, strategy in enumerate(ladder, 1):
            model = self.models.resolve(getattr(self.models, strategy.model_role))
            tool_names = self.tool_names(strategy, turn.classification)
            logger.info(
                "Attempt {}/{} for {}: {} on {} ({} tools)",
                attempt, len(ladder), turn.conversation_id, strategy.name, model, len(tool_names),
            )

            result = await self.runner.run(
                self.build_messages(strategy, turn, tools_enabled=bool(tool_names)),
                model=model,
                tool_names=tool_names,
                write_intent=turn.write_intent,
                conversation_id=turn.conversation_id,
                on_progress=on_progress,
            )

            if result.error_kind is ErrorKind.AUTH:
                raise OrchestrationError(attempt, "authentication failed", ErrorKind.AUTH)

            reason = validate(result, strategy, self.min_response_chars)
            if reason is None:
                logger.info(
                    "Attempt {} ({}) succeeded: {} iteration(s), {} primary action(s)",
                    attempt, strategy.name, result.iterations, result.primary_actions,
                )
                return result

            logger.warning("Attempt {} ({}) rejected: {}", attempt, strategy.name, reason)
            last_reason = f"{strategy.name}: {reason}"
            last_kind = result.error_kind or last_kind

        raise OrchestrationError(len(ladder), last_reason, last_kind)

    def tool_names(self, strategy: Strategy, classification: Classification) -> list[str]:
        """Tools a rung offers for a classification."""
        if strategy.tools is ToolPolicy.NONE:
            return []
        if strategy.tools is ToolPolicy.FULL:
            return self.tools.tool_names
        if classification.type is IntentType.CONVERSATION:
            return []
        if classification.type is IntentType.READ_ONLY:
            return self.tools.names([ToolKind.READ_ONLY])
        if classification.type is IntentType.SIMPLE_EDIT:
            return [n for n in EDIT_TOOLS if n in self.tools]
        return self.tools.tool_names

    def build_messages(self, strategy: Strategy, turn: TurnContext, tools_enabled: bool = True) -> list[dict]:
        """Fresh message list for a rung, shaped by its context policy."""
        if strategy.context is ContextPolicy.FULL:
            history = turn.history[-self.history_window:] if self.history_window else []
        elif strategy.context is ContextPolicy.REDUCED:
            history = turn.history[-self.reduced_history_window:] if self.reduced_history_window else []
        else:
            history = []

        isolated = strategy.context is ContextPolicy.NONE
        return self.context.build_messages(
            history=history,
            current_message=turn.text,
            action_summary=None if isolated else turn.action_summary,
            routing_guidance=None if isolated or not tools_enabled else build_guidance(turn.plan) or None,
            minimal=strategy.minimal_prompt,
            tools_enabled=tools_enabled,
        )
