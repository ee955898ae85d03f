"""Runtime model switch."""

from loguru import logger
from pydantic import Field

from sportello.agent.tools.base import Tool, ToolArgs, ToolKind, ToolName
from sportello.config.schema import ModelsConfig


class SetModelArgs(ToolArgs):
    model: str = Field(description="Preset name to switch the primary model to")


class SetModelTool(Tool):
    """
    Switch the primary model to one of the configured presets.

    Mutating (it changes agent state) but not a primary action, so it never
    short-circuits the loop.
    """

    kind = ToolKind.MUTATING
    args_model = SetModelArgs

    def __init__(self, models: ModelsConfig):
        self.models = models

    @property
    def name(self) -> ToolName:
        return ToolName.SET_MODEL

    @property
    def description(self) -> str:
        presets = ", ".join(sorted(self.models.presets))
        return f"Switch the AI model used for future requests. Available: {presets}"

    async def execute(self, args: SetModelArgs) -> str:
        key = args.model.strip().lower()
        if key not in self.models.presets:
            return f"Error: unknown model '{args.model}'. Available: {', '.join(sorted(self.models.presets))}"
        self.models.primary = key
        logger.info("Primary model switched to {}", key)
        return f"Switched primary model to {key} ({self.models.presets[key]})"
