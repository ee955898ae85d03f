"""Base class for agent tools."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from sportello.cache.actions import ActionType


class ToolName(str, Enum):
    """The closed catalog of tools the agent may call."""

    LIST_FILES = "list_files"
    FILE_EXISTS = "file_exists"
    SEARCH_FILES = "search_files"
    READ_FILE = "read_file"
    REPO_STATUS = "repo_status"
    GIT_LOG = "git_log"
    WEB_SEARCH = "web_search"
    WRITE_FILE = "write_file"
    EDIT_FILE = "edit_file"
    DELETE_FILE = "delete_file"
    MOVE_FILE = "move_file"
    COMMIT_CHANGES = "commit_changes"
    SET_MODEL = "set_model"


class ToolKind(str, Enum):
    """Whether a tool has side effects."""

    READ_ONLY = "read_only"
    MUTATING = "mutating"


class ToolArgs(BaseModel):
    """Base for tool argument models; unknown keys from the model are ignored."""

    model_config = ConfigDict(extra="ignore")


class Tool(ABC):
    """
    Abstract base class for agent tools.

    A tool declares its catalog name, its kind and a pydantic model for its
    arguments. The JSON schema sent to the LLM is derived from that model.
    """

    kind: ToolKind = ToolKind.READ_ONLY
    args_model: type[ToolArgs] = ToolArgs
    # Successful calls count as primary actions and are recorded in the action cache
    primary: bool = False

    @property
    @abstractmethod
    def name(self) -> ToolName:
        """Tool name used in function calls."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Description of what the tool does."""
        pass

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        schema = self.args_model.model_json_schema()
        schema.pop("title", None)
        for prop in schema.get("properties", {}).values():
            prop.pop("title", None)
        return schema

    @property
    def is_mutating(self) -> bool:
        return self.kind is ToolKind.MUTATING

    def parse_args(self, params: dict[str, Any]) -> ToolArgs:
        """Validate raw arguments from the LLM. Raises pydantic.ValidationError."""
        return self.args_model.model_validate(params)

    def target_paths(self, params: dict[str, Any]) -> list[str]:
        """Paths a call would mutate, read from raw arguments (for dedup)."""
        return []

    def action_for(self, args: ToolArgs) -> tuple[ActionType, tuple[str, ...], str] | None:
        """Describe a successful primary call for the action cache."""
        return None

    @abstractmethod
    async def execute(self, args: Any) -> str:
        """
        Execute the tool with validated arguments.

        Returns:
            String result of the tool execution. Failures start with "Error".
        """
        pass

    def to_schema(self) -> dict[str, Any]:
        """Convert tool to OpenAI function schema format."""
        return {
            "type": "function",
            "function": {
                "name": self.name.value,
                "description": self.description,
                "parameters": self.parameters,
            },
        }
