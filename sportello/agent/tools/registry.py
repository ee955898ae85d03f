"""Tool registry for dynamic tool management."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Iterable

from loguru import logger
from pydantic import ValidationError

from sportello.agent.tools.base import Tool, ToolArgs, ToolKind, ToolName
from sportello.cache.actions import ActionType


@dataclass
class ToolOutcome:
    """Result of one tool execution."""

    content: str
    is_error: bool
    duration_s: float = 0.0
    action: tuple[ActionType, tuple[str, ...], str] | None = None


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "arguments"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


class ToolRegistry:
    """
    Registry for agent tools.

    Only names from the ToolName catalog can be registered, so dispatch is
    over a closed set rather than arbitrary strings.
    """

    def __init__(self, timeout_s: float = 60.0):
        self._tools: dict[ToolName, Tool] = {}
        self.timeout_s = timeout_s

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        self._tools[ToolName(tool.name)] = tool

    def unregister(self, name: str) -> None:
        """Unregister a tool by name."""
        self._tools.pop(ToolName(name), None)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name; unknown names return None."""
        try:
            return self._tools.get(ToolName(name))
        except ValueError:
            return None

    def has(self, name: str) -> bool:
        """Check if a tool is registered."""
        return self.get(name) is not None

    def kind_of(self, name: str) -> ToolKind:
        """Kind of a tool; unknown names are treated as mutating so they run alone."""
        tool = self.get(name)
        return tool.kind if tool else ToolKind.MUTATING

    def names(self, kinds: Iterable[ToolKind] | None = None) -> list[str]:
        """Registered tool names, optionally filtered by kind."""
        wanted = set(kinds) if kinds is not None else None
        return [n.value for n, t in self._tools.items() if wanted is None or t.kind in wanted]

    def get_definitions(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Get tool definitions in OpenAI format, optionally restricted to `names`."""
        if names is None:
            return [tool.to_schema() for tool in self._tools.values()]
        allowed = set(names)
        return [tool.to_schema() for n, tool in self._tools.items() if n.value in allowed]

    async def execute(self, name: str, params: dict[str, Any]) -> ToolOutcome:
        """
        Execute a tool by name with given parameters.

        Unknown tools, invalid arguments, timeouts and exceptions all become
        error outcomes whose text is fed back to the model.
        """
        start = time.monotonic()
        tool = self.get(name)
        if not tool:
            return ToolOutcome(f"Error: Tool '{name}' not found", is_error=True)

        try:
            args: ToolArgs = tool.parse_args(params)
        except ValidationError as e:
            return ToolOutcome(
                f"Error: Invalid parameters for tool '{name}': {_format_validation_error(e)}",
                is_error=True,
            )

        try:
            content = await asyncio.wait_for(tool.execute(args), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Tool {} timed out after {}s", name, self.timeout_s)
            return ToolOutcome(f"Error: Tool '{name}' timed out", is_error=True, duration_s=time.monotonic() - start)
        except Exception as e:
            logger.warning("Tool {} failed: {}", name, e)
            return ToolOutcome(f"Error executing {name}: {str(e)}", is_error=True, duration_s=time.monotonic() - start)

        is_error = content.startswith("Error")
        action = tool.action_for(args) if tool.primary and not is_error else None
        return ToolOutcome(content, is_error=is_error, duration_s=time.monotonic() - start, action=action)

    @property
    def tool_names(self) -> list[str]:
        """Get list of registered tool names."""
        return [n.value for n in self._tools]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return self.has(name)
