"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChannelsConfig(Base):
    """Configuration for chat channels."""

    send_progress: bool = True    # stream agent's text progress to the channel
    send_tool_hints: bool = False  # stream tool-call hints (e.g. read_file("…"))
    max_message_chars: int = 2000  # platform message length limit


class ModelsConfig(Base):
    """
    Model presets and the role each ladder rung draws from.

    Roles are preset keys or full model ids:
    - primary: rung 1 and the fix rung
    - fast: reduced-context rung
    - alternate: isolation rung
    - fastest: no-tool last resort
    - reliable: mid-retry downgrade target
    - router / classifier: advisory planning calls
    """

    presets: dict[str, str] = Field(
        default_factory=lambda: {
            "kimi": "moonshotai/kimi-k2.5",
            "kimi-fast": "moonshotai/kimi-k2-0905:exacto",
            "glm": "z-ai/glm-4.6:exacto",
            "deepseek": "deepseek/deepseek-v3.1-terminus:exacto",
            "qwen": "qwen/qwen3-coder:exacto",
            "minimax": "minimax/minimax-m2.1",
            "mimo": "xiaomi/mimo-v2-flash",
        }
    )
    primary: str = "kimi"
    fast: str = "kimi-fast"
    alternate: str = "qwen"
    fastest: str = "mimo"
    reliable: str = "kimi-fast"
    router: str = "google/gemma-3-12b-it"
    classifier: str = "mimo"

    def resolve(self, name: str) -> str:
        """Turn a preset key into a model id; unknown names pass through."""
        return self.presets.get(name, name)


class AgentDefaults(Base):
    """Default agent configuration."""

    repo: str = "~/.sportello/repo"  # Repository the file and git tools operate on
    max_tokens: int = 10000
    temperature: float = 0.7
    max_tool_iterations: int = 6
    max_read_only_iterations: int = 3
    read_only_cap_always: bool = False  # Enforce the read-only cap even for write intents
    max_parallel_tools: int = 8
    history_window: int = 20  # Turns of history passed to the model
    reduced_history_window: int = 5
    min_response_chars: int = 10
    turn_timeout_s: float = 300.0
    reply_window_s: float | None = 900.0  # Platform reply-validity window (None = unlimited)
    request_timeout_s: float = 60.0
    request_retries: int = 3
    classifier_timeout_s: float = 5.0
    router_timeout_s: float = 4.0


class AgentsConfig(Base):
    """Agent configuration."""

    defaults: AgentDefaults = Field(default_factory=AgentDefaults)


class CacheConfig(Base):
    """Conversation and action cache limits."""

    max_conversations: int = Field(default=50, ge=1)
    max_turns: int = 100
    conversation_ttl_s: float = 5 * 60
    fetch_timeout_s: float = 10.0
    max_actions: int = Field(default=10, ge=1)
    action_ttl_s: float = 30 * 60


class GuardConfig(Base):
    """Error-loop guard configuration."""

    threshold: int = 3
    reset_window_s: float = 5 * 60
    sweep_interval_s: float = 60.0


class ProviderConfig(Base):
    """LLM provider configuration."""

    api_key: str = ""
    api_base: str | None = None
    gateway: str | None = "openrouter"
    extra_headers: dict[str, str] | None = None  # e.g. HTTP-Referer / X-Title for OpenRouter
    extra_body: dict[str, object] = Field(
        default_factory=lambda: {"provider": {"data_collection": "deny"}}
    )


class WebSearchConfig(Base):
    """Web search tool configuration."""

    api_key: str = ""  # Brave Search API key
    max_results: int = 5


class GitToolsConfig(Base):
    """Version-control tool configuration."""

    push: bool = True  # Push after committing
    remote: str = "origin"
    branch: str = "main"


class ToolsConfig(Base):
    """Tools configuration."""

    web_search: WebSearchConfig = Field(default_factory=WebSearchConfig)
    git: GitToolsConfig = Field(default_factory=GitToolsConfig)
    timeout_s: float = 60.0  # Per-tool execution timeout
    max_read_chars: int = 60000


class Config(BaseSettings):
    """Root configuration for sportello."""

    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    models: ModelsConfig = Field(default_factory=ModelsConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    guard: GuardConfig = Field(default_factory=GuardConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)

    @property
    def repo_path(self) -> Path:
        """Get expanded repository path."""
        return Path(self.agents.defaults.repo).expanduser()

    model_config = ConfigDict(env_prefix="SPORTELLO_", env_nested_delimiter="__")
