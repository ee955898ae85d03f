"""Context builder for assembling agent prompts."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any

from sportello.cache.conversation import Turn

IDENTITY = """You are Sportello, a laid-back chat bot who helps people build and maintain a small web project.
Keep replies short (1-3 sentences) unless the user asks for detail. Put a space after URLs before any punctuation."""

TOOL_RULES = """## Working with the repository
- Every file tool works inside the repository; paths are relative to its root.
- Site URLs are accepted wherever a path is: the URL path is used.
- Read a file before editing it, and copy old_string exactly.
- Batch several changes to one file into a single edit_file call with replacements.
- Do not edit the same file twice in one request.
- Commit with commit_changes only after the edits are done.
- Never claim a change you did not make with a tool."""

MINIMAL = "You are Sportello, a helpful chat bot. Answer briefly and honestly. You cannot use tools right now."


class ContextBuilder:
    """
    Builds the message list for one LLM request.

    The system prompt is assembled from a fixed identity, the repository
    rules and two optional per-turn blocks: the recent-actions summary and
    the advisory routing guidance.
    """

    def __init__(self, repo: Path):
        self.repo = repo

    def build_system_prompt(
        self,
        action_summary: str | None = None,
        routing_guidance: str | None = None,
        tools_enabled: bool = True,
    ) -> str:
        now = datetime.now().strftime("%Y-%m-%d %H:%M (%A)")
        parts = [IDENTITY, f"Current time: {now}", f"Repository: {self.repo}"]
        if tools_enabled:
            parts.append(TOOL_RULES)
        else:
            parts.append("Tools are disabled for this reply: answer in plain text from what you already know.")
        if action_summary:
            parts.append(action_summary)
        if routing_guidance:
            parts.append(routing_guidance)
        return "\n\n".join(parts)

    def build_messages(
        self,
        history: list[Turn],
        current_message: str,
        action_summary: str | None = None,
        routing_guidance: str | None = None,
        minimal: bool = False,
        tools_enabled: bool = True,
    ) -> list[dict[str, Any]]:
        """Build the complete message list for an LLM call."""
        if minimal:
            system = MINIMAL
        else:
            system = self.build_system_prompt(action_summary, routing_guidance, tools_enabled)
        messages: list[dict[str, Any]] = [{"role": "system", "content": system}]
        messages.extend(turn.to_message() for turn in history)
        messages.append({"role": "user", "content": current_message})
        return messages

    def add_tool_result(
        self,
        messages: list[dict[str, Any]],
        tool_call_id: str,
        tool_name: str,
        result: str,
    ) -> list[dict[str, Any]]:
        """Add a tool result to the message list."""
        messages.append({
            "role": "tool",
            "tool_call_id": tool_call_id,
            "name": tool_name,
            "content": result,
        })
        return messages

    def add_assistant_message(
        self,
        messages: list[dict[str, Any]],
        content: str | None,
        tool_calls: list[dict[str, Any]] | None = None,
        reasoning_content: str | None = None,
    ) -> list[dict[str, Any]]:
        """Add an assistant message to the message list."""
        msg: dict[str, Any] = {"role": "assistant", "content": content}
        if tool_calls:
            msg["tool_calls"] = tool_calls
        if reasoning_content is not None:
            msg["reasoning_content"] = reasoning_content
        messages.append(msg)
        return messages
