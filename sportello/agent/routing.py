"""Advisory routing plans: a suggested tool sequence injected as model guidance."""

from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import json_repair
from loguru import logger

from sportello.agent.tools.base import ToolName
from sportello.providers.base import LLMProvider

WRITE_INTENTS = frozenset({"edit", "create", "build", "commit"})
INTENTS = frozenset({"edit", "create", "build", "read", "commit", "chat", "search"})

_KNOWN_TOOLS = frozenset(t.value for t in ToolName)
_PATH_RE = re.compile(r"(?:https?://[^\s/]+/)?((?:[\w.-]+/)*[\w.-]+\.(?:html|js|css|json|md|py|ts))\b", re.IGNORECASE)

_ROUTER_SYSTEM = """You are a routing optimizer for a chat bot that manages files in a web repository.
Analyze the user request and output a JSON routing plan.

AVAILABLE TOOLS (fastest first):
- file_exists: instant check whether a path or site URL exists
- list_files: instant directory listing
- repo_status: instant git status
- set_model: instant model switch
- search_files: fast grep across files
- read_file: fast read of file contents
- git_log: fast commit history
- write_file: create or overwrite a file
- edit_file: modify an existing file (read it first)
- delete_file / move_file: remove or rename a file
- commit_changes: git add/commit/push, always last
- web_search: slow internet search

PRINCIPLES:
1. read_file before edit_file
2. For site URLs like "https://host/src/X.html" use the path "src/X.html"
3. If the target file is unclear, start with search_files or list_files
4. commit_changes goes last, after repo_status

OUTPUT (JSON only, no markdown):
{"intent": "edit|create|build|read|commit|chat|search",
 "toolSequence": ["read_file", "edit_file"],
 "parameterHints": {"read_file": {"path": "src/game.html"}},
 "confidence": 0.85,
 "reasoning": "brief explanation",
 "expectedIterations": 2}"""


@dataclass
class RoutingContext:
    """What the planner knows about the conversation so far."""

    recent_files: list[str] = field(default_factory=list)
    conversation_length: int = 0
    action_summary: str | None = None
    conversation_summary: str | None = None


@dataclass
class RoutingPlan:
    """A non-binding suggestion; never enforced."""

    intent: str = "chat"
    tool_sequence: list[str] = field(default_factory=list)
    parameter_hints: dict[str, dict[str, Any]] = field(default_factory=dict)
    confidence: float = 0.5
    reasoning: str = ""
    method: str = "llm"
    expected_iterations: int = 1
    duration_ms: int = 0

    @property
    def is_write(self) -> bool:
        return self.intent in WRITE_INTENTS


def extract_path(text: str) -> str | None:
    """Pull a repository path out of a message, reducing site URLs to their path."""
    match = _PATH_RE.search(text)
    return match.group(1) if match else None


def ensure_prerequisites(sequence: list[str]) -> list[str]:
    """Insert read before edit and status before commit, dropping duplicates."""
    result: list[str] = []
    for tool in sequence:
        if tool == ToolName.EDIT_FILE.value and ToolName.READ_FILE.value not in sequence and ToolName.READ_FILE.value not in result:
            result.append(ToolName.READ_FILE.value)
        if (
            tool == ToolName.COMMIT_CHANGES.value
            and ToolName.REPO_STATUS.value not in sequence
            and ToolName.REPO_STATUS.value not in result
        ):
            result.append(ToolName.REPO_STATUS.value)
        if tool not in result:
            result.append(tool)
    return result


def validate_plan(raw: dict[str, Any]) -> RoutingPlan:
    """Normalize raw planner output: known intents and tools only, confidence clamped."""
    intent = str(raw.get("intent") or "chat").lower()
    if intent not in INTENTS:
        intent = "chat"

    sequence = raw.get("toolSequence", raw.get("tool_sequence"))
    if not isinstance(sequence, list):
        sequence = []
    sequence = [t for t in sequence if isinstance(t, str) and t in _KNOWN_TOOLS]

    hints = raw.get("parameterHints", raw.get("parameter_hints"))
    if not isinstance(hints, dict):
        hints = {}
    hints = {k: v for k, v in hints.items() if k in _KNOWN_TOOLS and isinstance(v, dict)}

    try:
        confidence = float(raw.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    try:
        expected = int(raw.get("expectedIterations", raw.get("expected_iterations", 1)))
    except (TypeError, ValueError):
        expected = 1

    return RoutingPlan(
        intent=intent,
        tool_sequence=ensure_prerequisites(sequence),
        parameter_hints=hints,
        confidence=max(0.0, min(1.0, confidence)),
        reasoning=str(raw.get("reasoning") or ""),
        expected_iterations=max(1, expected),
    )


def fallback_plan(text: str, context: RoutingContext | None = None) -> RoutingPlan:
    """Deterministic pattern-based plan used when the LLM planner fails."""
    lower = text.lower()
    path = extract_path(text)
    if path is None and context and context.recent_files and re.search(r"\b(it|the page|the file|the game)\b", lower):
        path = context.recent_files[0]

    plan = RoutingPlan(confidence=0.6, method="fallback", reasoning="General conversation, no tools needed")

    if re.search(r"\b(edit|change|replace|update|fix|modify)\b", lower) and path:
        plan.intent = "edit"
        plan.tool_sequence = ["read_file", "edit_file"]
        plan.parameter_hints = {"read_file": {"path": path}, "edit_file": {"path": path}}
        plan.expected_iterations = 2
        plan.reasoning = f"Edit request with explicit path: {path}"
    elif re.search(r"\b(create|build|make|generate|new)\b", lower):
        plan.intent = "build" if re.search(r"\b(game|play|interactive)\b", lower) else "create"
        plan.tool_sequence = ["list_files", "write_file"]
        plan.expected_iterations = 2
        plan.reasoning = "Creation request"
    elif re.search(r"\b(commit|push|save|deploy)\b", lower):
        plan.intent = "commit"
        plan.tool_sequence = ["repo_status", "commit_changes"]
        plan.expected_iterations = 2
        plan.reasoning = "Git commit request"
    elif re.search(r"\b(list|show|find|search|what|read)\b", lower):
        if path:
            plan.intent = "read"
            plan.tool_sequence = ["file_exists", "read_file"]
            plan.parameter_hints = {"file_exists": {"path": path}, "read_file": {"path": path}}
            plan.expected_iterations = 2
        elif re.search(r"\b(search|find|grep)\b", lower):
            plan.intent = "search"
            plan.tool_sequence = ["search_files"]
        else:
            plan.intent = "read"
            plan.tool_sequence = ["list_files"]
        plan.reasoning = "Read/search request"
    elif re.search(r"\b(latest|current|news|what is|who is)\b", lower):
        plan.intent = "search"
        plan.tool_sequence = ["web_search"]
        plan.reasoning = "Web search for current information"

    logger.debug("Fallback plan: {} -> [{}]", plan.intent, " -> ".join(plan.tool_sequence))
    return plan


def build_guidance(plan: RoutingPlan | None) -> str:
    """Render a plan as a system-prompt block; empty when there is nothing to suggest."""
    if plan is None or not plan.tool_sequence:
        return ""
    lines = [
        "## Routing guidance",
        f"Intent: {plan.intent}",
        f"Suggested tool sequence: {' -> '.join(plan.tool_sequence)}",
    ]
    if plan.parameter_hints:
        lines.append("Parameter hints:")
        for tool, hints in plan.parameter_hints.items():
            lines.append(f"- {tool}: {json.dumps(hints)}")
    if plan.reasoning:
        lines.append(f"Reasoning: {plan.reasoning}")
    lines.append(
        "This is a suggested starting point. Deviate when needed; when uncertain, "
        "explore with list_files or search_files."
    )
    return "\n".join(lines)


class RoutingPlanner:
    """Asks a small model for a routing plan, falling back to patterns."""

    def __init__(self, provider: LLMProvider, model: str, timeout_s: float = 4.0):
        self.provider = provider
        self.model = model
        self.timeout_s = timeout_s

    async def plan(self, text: str, context: RoutingContext | None = None) -> RoutingPlan:
        context = context or RoutingContext()
        start = time.monotonic()
        messages = [
            {"role": "system", "content": _ROUTER_SYSTEM},
            {"role": "user", "content": self._build_prompt(text, context)},
        ]
        try:
            response = await asyncio.wait_for(
                self.provider.chat(
                    messages,
                    model=self.model,
                    max_tokens=500,
                    temperature=0.1,
                    timeout=self.timeout_s,
                    response_format={"type": "json_object"},
                ),
                timeout=self.timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning("Routing plan timed out after {}s", self.timeout_s)
            return fallback_plan(text, context)

        if response.is_error or not response.content:
            logger.warning("Routing plan failed: {}", (response.content or "empty response")[:120])
            return fallback_plan(text, context)

        raw = json_repair.loads(response.content)
        if not isinstance(raw, dict):
            logger.warning("Routing plan was not a JSON object")
            return fallback_plan(text, context)

        plan = validate_plan(raw)
        plan.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Plan generated in {}ms: {} -> [{}] (confidence {:.2f})",
            plan.duration_ms, plan.intent, " -> ".join(plan.tool_sequence), plan.confidence,
        )
        return plan

    @staticmethod
    def _build_prompt(text: str, context: RoutingContext) -> str:
        parts = [f'USER REQUEST: "{text}"']
        if context.recent_files:
            parts.append(
                "RECENTLY CREATED/MODIFIED FILES (use these for \"it\", \"the page\" references): "
                + ", ".join(context.recent_files)
            )
        if context.action_summary:
            parts.append(f"RECENT BOT ACTIONS: {context.action_summary}")
        if context.conversation_summary:
            parts.append(f"CONVERSATION CONTEXT: {context.conversation_summary}")
        if context.conversation_length:
            parts.append(f"CONVERSATION LENGTH: {context.conversation_length} messages")
        if path := extract_path(text):
            parts.append(f"EXTRACTED PATH: {path}")
        parts.append("Generate routing plan JSON:")
        return "\n\n".join(parts)
