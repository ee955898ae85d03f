"""
Tool-calling agent loop.

One `AgentRunner.run` call drives a single attempt:

    Requesting -> (no tool calls) -> Done
    Requesting -> Executing -> Requesting -> ... -> Done | Capped

Read-only calls in a batch run concurrently; mutating calls run one at a
time in the order the model asked for them. A batch that lands a primary
action, or a run of read-only batches that hits its cap, ends with one
final completion with tools disabled.
"""

from __future__ import annotations

import asyncio
import json
import posixpath
import random
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from loguru import logger

from sportello.agent.context import ContextBuilder
from sportello.agent.tools.base import ToolKind, ToolName
from sportello.agent.tools.registry import ToolRegistry
from sportello.cache.actions import ActionCache, ActionRecord
from sportello.providers.base import LLMProvider, LLMResponse, ToolCallRequest
from sportello.providers.errors import ErrorKind
from sportello.utils.helpers import strip_think

ProgressCallback = Callable[..., Awaitable[None]]

SUCCESS_CLAIM = re.compile(
    r"\b(done|updated|pushed|saved|committed|created|fixed|changed|edited|deployed|added|removed)\b",
    re.IGNORECASE,
)
HONEST_NO_CHANGE = (
    "I attempted this but made no changes. Could you be more specific about "
    "which file and what should change?"
)
SIMPLER_APPROACH = "I had trouble with that one. Try a simpler approach or break it into smaller steps."
AUTH_FAILURE = "I can't reach the model service right now. Someone needs to check the API credentials."

_AFFORDABLE = re.compile(r"can only afford (\d+)", re.IGNORECASE)
_DEDUP_TOOLS = frozenset({ToolName.WRITE_FILE.value, ToolName.EDIT_FILE.value})


class StopReason(str, Enum):
    COMPLETED = "completed"
    PRIMARY_ACTION = "primary_action"
    READ_ONLY_EXHAUSTED = "read_only_exhausted"
    MAX_ITERATIONS = "max_iterations"
    UPSTREAM_ERROR = "upstream_error"


@dataclass
class ToolCallRecord:
    """Audit entry for one executed tool call."""

    call_id: str
    name: str
    arguments: dict[str, Any]
    result: str
    is_error: bool
    duration_s: float
    iteration: int


@dataclass
class RunResult:
    """Outcome of one agent loop invocation."""

    content: str | None
    primary_actions: int = 0
    iterations: int = 0
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    edited_paths: set[str] = field(default_factory=set)
    edit_targets: set[str] = field(default_factory=set)  # paths changed by edit_file
    actions: list[ActionRecord] = field(default_factory=list)
    stop_reason: StopReason = StopReason.COMPLETED
    error_kind: ErrorKind | None = None
    model: str | None = None


def _normalize_path(path: str) -> str:
    return posixpath.normpath(path.strip().lstrip("/"))


class AgentRunner:
    """Runs the tool-calling loop against one model with one tool set."""

    def __init__(
        self,
        provider: LLMProvider,
        tools: ToolRegistry,
        context: ContextBuilder,
        actions: ActionCache | None = None,
        *,
        max_iterations: int = 6,
        max_read_only_iterations: int = 3,
        read_only_cap_always: bool = False,
        max_parallel_tools: int = 8,
        max_tokens: int = 10000,
        temperature: float = 0.7,
        request_timeout_s: float = 60.0,
        retries: int = 3,
        reliable_model: str | None = None,
        backoff_base_s: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.provider = provider
        self.tools = tools
        self.context = context
        self.actions = actions
        self.max_iterations = max_iterations
        self.max_read_only_iterations = max_read_only_iterations
        self.read_only_cap_always = read_only_cap_always
        self.max_parallel_tools = max_parallel_tools
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.request_timeout_s = request_timeout_s
        self.retries = retries
        self.reliable_model = reliable_model
        self.backoff_base_s = backoff_base_s
        self._sleep = sleep

    @staticmethod
    def _tool_hint(tool_calls: list[ToolCallRequest]) -> str:
        """Format tool calls as concise hint, e.g. 'read_file("src/game.js")'."""
        def _fmt(tc):
            val = next(iter(tc.arguments.values()), None) if tc.arguments else None
            if not isinstance(val, str):
                return tc.name
            return f'{tc.name}("{val[:40]}...")' if len(val) > 40 else f'{tc.name}("{val}")'
        return ", ".join(_fmt(tc) for tc in tool_calls)

    async def run(
        self,
        messages: list[dict[str, Any]],
        model: str,
        tool_names: list[str] | None = None,
        write_intent: bool = False,
        conversation_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> RunResult:
        """
        Drive the loop until the model answers without tools or a cap fires.

        Args:
            messages: Initial messages (system, history, user).
            model: Model id for this attempt.
            tool_names: Tools offered to the model; None or [] disables tools.
            write_intent: Advisory intent is write-type. Gates the read-only
                cap (unless `read_only_cap_always`) and the hallucination guard.
            conversation_id: Where successful primary actions are recorded.
            on_progress: Optional callback receiving text and tool hints.
        """
        result = RunResult(content=None, model=model, stop_reason=StopReason.MAX_ITERATIONS)
        allowed = set(tool_names or [])
        definitions = self.tools.get_definitions(allowed) if allowed else None
        cap_read_only = self.read_only_cap_always or not write_intent
        read_only_streak = 0

        while result.iterations < self.max_iterations:
            result.iterations += 1
            response = await self._request(messages, definitions, model)

            if response.is_error:
                return self._upstream_failure(result, response)

            if not response.has_tool_calls:
                result.content = strip_think(response.content)
                result.stop_reason = StopReason.COMPLETED
                break

            if on_progress:
                clean = strip_think(response.content)
                if clean:
                    await on_progress(clean)
                await on_progress(self._tool_hint(response.tool_calls), tool_hint=True)

            tool_call_dicts = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": json.dumps(tc.arguments, ensure_ascii=False),
                    },
                }
                for tc in response.tool_calls
            ]
            messages = self.context.add_assistant_message(
                messages, response.content, tool_call_dicts,
                reasoning_content=response.reasoning_content,
            )

            records, batch_primary, had_mutating = await self._execute_batch(
                response.tool_calls, allowed, result, conversation_id
            )
            for record in records:
                messages = self.context.add_tool_result(messages, record.call_id, record.name, record.result)
            result.tool_calls.extend(records)

            if batch_primary:
                logger.info("Primary action completed ({} total), requesting final reply", result.primary_actions)
                result.content = await self._final_completion(messages, model)
                result.stop_reason = StopReason.PRIMARY_ACTION
                break

            read_only_streak = 0 if had_mutating else read_only_streak + 1
            if cap_read_only and read_only_streak >= self.max_read_only_iterations:
                logger.info("Read-only cap reached after {} iterations, requesting final reply", read_only_streak)
                result.content = await self._final_completion(messages, model)
                result.stop_reason = StopReason.READ_ONLY_EXHAUSTED
                break

        if result.stop_reason is StopReason.MAX_ITERATIONS:
            logger.warning("Max iterations ({}) reached", self.max_iterations)

        if write_intent and result.primary_actions == 0 and result.content and SUCCESS_CLAIM.search(result.content):
            logger.warning("Discarding success claim with no primary action: {}", result.content[:120])
            result.content = HONEST_NO_CHANGE

        if not result.content and (result.primary_actions or result.stop_reason is not StopReason.COMPLETED):
            result.content = (
                f"Completed {result.primary_actions} action(s)."
                if result.primary_actions
                else "I looked around but couldn't finish this one, and no changes were made."
            )
        return result

    async def _execute_batch(
        self,
        calls: list[ToolCallRequest],
        allowed: set[str],
        result: RunResult,
        conversation_id: str | None,
    ) -> tuple[list[ToolCallRecord], int, bool]:
        """
        Run one batch. Returns records in call order, primary successes, and
        whether any mutating call actually ran (refused calls do not count).
        """
        read_only = [tc for tc in calls if self.tools.kind_of(tc.name) is ToolKind.READ_ONLY]
        mutating = [tc for tc in calls if self.tools.kind_of(tc.name) is not ToolKind.READ_ONLY]
        by_id: dict[str, ToolCallRecord] = {}

        if read_only:
            semaphore = asyncio.Semaphore(self.max_parallel_tools)

            async def _bounded(tc: ToolCallRequest) -> ToolCallRecord:
                async with semaphore:
                    return await self._execute_one(tc, allowed, result.iterations)

            for record in await asyncio.gather(*(_bounded(tc) for tc in read_only)):
                by_id[record.call_id] = record

        primary = 0
        ran_mutating = False
        for tc in mutating:
            redundant = self._redundant_path(tc, result)
            if redundant:
                by_id[tc.id] = ToolCallRecord(
                    tc.id, tc.name, tc.arguments,
                    f"Error: {redundant} was already modified in this request. "
                    "Stop here or choose a different file.",
                    True, 0.0, result.iterations,
                )
                continue

            ran_mutating = ran_mutating or (tc.name in allowed and self.tools.has(tc.name))
            record, outcome_action = await self._call_tool(tc, allowed, result.iterations)
            by_id[tc.id] = record
            if outcome_action is None:
                continue

            primary += 1
            result.primary_actions += 1
            action_type, paths, summary = outcome_action
            if tc.name in _DEDUP_TOOLS:
                normalized = {_normalize_path(p) for p in paths}
                result.edited_paths.update(normalized)
                if tc.name == ToolName.EDIT_FILE.value:
                    result.edit_targets.update(normalized)
            if self.actions is not None and conversation_id:
                result.actions.append(self.actions.add(conversation_id, action_type, paths, summary))

        return [by_id[tc.id] for tc in calls], primary, ran_mutating

    def _redundant_path(self, tc: ToolCallRequest, result: RunResult) -> str | None:
        """
        A path this call would mutate again: an edit repeating an earlier edit,
        or a write over anything already written or edited. Editing a file
        created earlier in the request is allowed.
        """
        if tc.name not in _DEDUP_TOOLS:
            return None
        seen = result.edit_targets if tc.name == ToolName.EDIT_FILE.value else result.edited_paths
        if not seen:
            return None
        tool = self.tools.get(tc.name)
        if tool is None:
            return None
        for path in tool.target_paths(tc.arguments):
            if _normalize_path(path) in seen:
                return path
        return None

    async def _execute_one(self, tc: ToolCallRequest, allowed: set[str], iteration: int) -> ToolCallRecord:
        record, _ = await self._call_tool(tc, allowed, iteration)
        return record

    async def _call_tool(
        self, tc: ToolCallRequest, allowed: set[str], iteration: int
    ) -> tuple[ToolCallRecord, Any]:
        if tc.name not in allowed:
            return ToolCallRecord(
                tc.id, tc.name, tc.arguments,
                f"Error: Tool '{tc.name}' is not available for this request",
                True, 0.0, iteration,
            ), None

        args_str = json.dumps(tc.arguments, ensure_ascii=False)
        logger.info("Tool call: {}({})", tc.name, args_str[:200])
        outcome = await self.tools.execute(tc.name, tc.arguments)
        if outcome.is_error:
            logger.debug("Tool {} returned error: {}", tc.name, outcome.content[:200])
        record = ToolCallRecord(
            tc.id, tc.name, tc.arguments, outcome.content, outcome.is_error, outcome.duration_s, iteration
        )
        return record, outcome.action

    async def _final_completion(self, messages: list[dict[str, Any]], model: str) -> str | None:
        """One more completion with tools disabled."""
        response = await self._request(messages, None, model)
        if response.is_error:
            logger.warning("Final completion failed: {}", (response.content or "")[:120])
            return None
        return strip_think(response.content)

    def _upstream_failure(self, result: RunResult, response: LLMResponse) -> RunResult:
        kind = response.error_kind or ErrorKind.CLIENT
        logger.warning("Attempt failed on upstream error ({}): {}", kind.value, (response.content or "")[:200])
        result.error_kind = kind
        result.stop_reason = StopReason.UPSTREAM_ERROR
        result.content = AUTH_FAILURE if kind is ErrorKind.AUTH else SIMPLER_APPROACH
        return result

    async def _request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
    ) -> LLMResponse:
        """
        One LLM request with retries.

        Transient failures retry with exponential backoff and jitter, switching
        once to the reliable model on the second retry. A payment error retries
        once with fewer max_tokens. Anything else is returned as-is.
        """
        current_model = model
        max_tokens = self.max_tokens
        attempt = 0
        paid_retry = False

        while True:
            started = time.monotonic()
            response = await self.provider.chat(
                messages=messages,
                tools=tools,
                model=current_model,
                max_tokens=max_tokens,
                temperature=self.temperature,
                timeout=self.request_timeout_s,
            )
            if not response.is_error:
                logger.debug("LLM {} answered in {:.1f}s", current_model, time.monotonic() - started)
                return response

            kind = response.error_kind or ErrorKind.CLIENT
            if kind is ErrorKind.PAYMENT and not paid_retry:
                paid_retry = True
                match = _AFFORDABLE.search(response.content or "")
                affordable = int(match.group(1)) if match else max_tokens
                max_tokens = max(1, int(affordable * 0.8))
                logger.warning("Payment required, retrying with max_tokens={}", max_tokens)
                continue

            if not kind.is_transient or attempt >= self.retries:
                return response

            attempt += 1
            if attempt == 2 and self.reliable_model and self.reliable_model != current_model:
                logger.info("Switching to reliable model {} for retry", self.reliable_model)
                current_model = self.reliable_model
            delay = self.backoff_base_s * (2 ** (attempt - 1)) + random.uniform(0, self.backoff_base_s)
            logger.warning("Transient {} error, retry {}/{} in {:.1f}s", kind.value, attempt, self.retries, delay)
            await self._sleep(delay)
