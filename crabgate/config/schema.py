"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ChannelsConfig(Base):
    """Configuration for chat channels."""

    send_progress: bool = True    # stream agent's text progress to the channel
    send_tool_hints: bool = False  # stream tool-call hints (e.g. read_file("…"))


class AgentDefaults(Base):
    """Default agent configuration."""

    workspace: str = "~/.crabgate/workspace"
    model: str = "anthropic/claude-opus-4-5"
    system_prompt: str | None = None
    max_tokens: int = 8192
    temperature: float = 0.1
    max_tool_iterations: int = 20
    memory_window: int = 100
    tool_timeout_s: float = 60.0
    provider_timeout_s: float = 120.0
    shutdown_grace_s: float = 10.0


class AgentsConfig(Base):
    """Agent configuration."""

    defaults: AgentDefaults = Field(default_factory=AgentDefaults)


class BusConfig(Base):
    """Message bus configuration."""

    queue_capacity: int = 100  # per-subscriber; oldest envelope dropped when full


class CronJobConfig(Base):
    """
    A job registered by name when the gateway starts.

    Exactly one of every_s / cron_expr must be set.
    """

    name: str
    message: str
    every_s: int | None = None
    cron_expr: str | None = None
    deliver: bool = False
    channel: str | None = None
    to: str | None = None

    @model_validator(mode="after")
    def _one_schedule(self) -> "CronJobConfig":
        if (self.every_s is None) == (self.cron_expr is None):
            raise ValueError(f"Cron job '{self.name}' needs exactly one of everyS / cronExpr")
        return self


class CronConfig(Base):
    """Scheduler configuration."""

    enabled: bool = True
    tick_interval_s: float = 1.0
    max_concurrent_jobs: int = 4
    jobs: list[CronJobConfig] = Field(default_factory=list)


class ProviderConfig(Base):
    """LLM provider configuration."""

    api_key: str = ""
    api_base: str | None = None
    extra_headers: dict[str, str] | None = None  # Custom headers (e.g. APP-Code for AiHubMix)


class ProvidersConfig(Base):
    """Configuration for LLM providers."""

    custom: ProviderConfig = Field(default_factory=ProviderConfig)  # Any OpenAI-compatible endpoint
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    openrouter: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)
    zhipu: ProviderConfig = Field(default_factory=ProviderConfig)
    groq: ProviderConfig = Field(default_factory=ProviderConfig)
    vllm: ProviderConfig = Field(default_factory=ProviderConfig)


class GatewayConfig(Base):
    """Gateway/server configuration."""

    host: str = "0.0.0.0"
    port: int = 18790


# Model-name keywords used to pick a provider block, in priority order.
_PROVIDER_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("openrouter", ("openrouter",)),
    ("anthropic", ("anthropic", "claude")),
    ("openai", ("openai", "gpt", "o1", "o3")),
    ("gemini", ("gemini",)),
    ("zhipu", ("zhipu", "glm")),
    ("groq", ("groq",)),
    ("vllm", ("vllm", "hosted_vllm")),
    ("custom", ()),
)


class Config(BaseSettings):
    """Root configuration for crabgate."""

    agents: AgentsConfig = Field(default_factory=AgentsConfig)
    bus: BusConfig = Field(default_factory=BusConfig)
    cron: CronConfig = Field(default_factory=CronConfig)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        return Path(self.agents.defaults.workspace).expanduser()

    @property
    def cron_store_path(self) -> Path:
        """Location of the persisted job store."""
        return self.workspace_path / "cron" / "jobs.json"

    def _match_provider(self, model: str | None = None) -> tuple[ProviderConfig | None, str | None]:
        """Match provider config and its name. Returns (config, name)."""
        model_lower = (model or self.agents.defaults.model).lower()
        model_prefix = model_lower.split("/", 1)[0] if "/" in model_lower else ""

        # Explicit provider prefix wins
        for name, _ in _PROVIDER_KEYWORDS:
            p: ProviderConfig = getattr(self.providers, name)
            if model_prefix == name and (p.api_key or p.api_base):
                return p, name

        for name, keywords in _PROVIDER_KEYWORDS:
            p = getattr(self.providers, name)
            if any(kw in model_lower for kw in keywords) and (p.api_key or p.api_base):
                return p, name

        # Fallback: first provider with credentials
        for name, _ in _PROVIDER_KEYWORDS:
            p = getattr(self.providers, name)
            if p.api_key:
                return p, name
        return None, None

    def get_provider(self, model: str | None = None) -> ProviderConfig | None:
        """Get matched provider config (api_key, api_base, extra_headers)."""
        p, _ = self._match_provider(model)
        return p

    def get_provider_name(self, model: str | None = None) -> str | None:
        """Get the name of the matched provider (e.g. "anthropic", "openrouter")."""
        _, name = self._match_provider(model)
        return name

    model_config = ConfigDict(env_prefix="CRABGATE_", env_nested_delimiter="__")
