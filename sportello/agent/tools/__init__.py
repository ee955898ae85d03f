"""Agent tools module."""

from pathlib import Path

from sportello.agent.tools.base import Tool, ToolArgs, ToolKind, ToolName
from sportello.agent.tools.filesystem import (
    DeleteFileTool,
    EditFileTool,
    FileExistsTool,
    ListFilesTool,
    MoveFileTool,
    ReadFileTool,
    SearchFilesTool,
    WriteFileTool,
)
from sportello.agent.tools.git import CommitChangesTool, GitLogTool, RepoStatusTool
from sportello.agent.tools.model import SetModelTool
from sportello.agent.tools.registry import ToolOutcome, ToolRegistry
from sportello.agent.tools.web import WebSearchTool
from sportello.config.schema import ModelsConfig, ToolsConfig


def build_registry(root: Path, tools: ToolsConfig, models: ModelsConfig) -> ToolRegistry:
    """Register the full tool catalog for a repository."""
    registry = ToolRegistry(timeout_s=tools.timeout_s)
    for tool in (
        ListFilesTool(root, tools.max_read_chars),
        FileExistsTool(root),
        SearchFilesTool(root),
        ReadFileTool(root, tools.max_read_chars),
        RepoStatusTool(root, tools.git),
        GitLogTool(root, tools.git),
        WebSearchTool(tools.web_search.api_key, tools.web_search.max_results),
        WriteFileTool(root),
        EditFileTool(root),
        DeleteFileTool(root),
        MoveFileTool(root),
        CommitChangesTool(root, tools.git),
        SetModelTool(models),
    ):
        registry.register(tool)
    return registry


__all__ = [
    "Tool",
    "ToolArgs",
    "ToolKind",
    "ToolName",
    "ToolOutcome",
    "ToolRegistry",
    "build_registry",
]
