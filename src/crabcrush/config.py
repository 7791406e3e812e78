"""
Configuration for the orchestration core.

All configuration is loaded from environment variables. Providers are
enabled by setting their API key (DEEPSEEK_API_KEY, QWEN_API_KEY, ...);
the base URL of a known provider is filled in automatically.
"""

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ProviderInfo:
    """Static facts about a known backend."""
    name: str
    base_url: str
    model_prefixes: tuple[str, ...] = ()


# Declaration order matters: prefix resolution scans in this order.
KNOWN_PROVIDERS: dict[str, ProviderInfo] = {
    "deepseek": ProviderInfo(
        name="DeepSeek",
        base_url="https://api.deepseek.com/v1",
        model_prefixes=("deepseek",),
    ),
    "qwen": ProviderInfo(
        name="Qwen",
        base_url="https://dashscope.aliyuncs.com/compatible-mode/v1",
        model_prefixes=("qwen",),
    ),
    "kimi": ProviderInfo(
        name="Kimi",
        base_url="https://api.moonshot.cn/v1",
        model_prefixes=("moonshot",),
    ),
    "glm": ProviderInfo(
        name="GLM",
        base_url="https://open.bigmodel.cn/api/paas/v4",
        model_prefixes=("glm", "chatglm"),
    ),
    "doubao": ProviderInfo(
        name="Doubao",
        base_url="https://ark.cn-beijing.volces.com/api/v3",
        model_prefixes=("doubao", "ep-"),
    ),
}


def provider_display_name(provider_id: str) -> str:
    """Human-readable provider name, falling back to the id."""
    info = KNOWN_PROVIDERS.get(provider_id)
    return info.name if info else provider_id


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class ProviderConfig:
    """Connection settings for one backend."""
    id: str
    api_key: str
    base_url: str = ""
    default_model: str = ""

    def __post_init__(self) -> None:
        if not self.api_key:
            raise ValueError(f"API key for provider '{self.id}' must not be empty")
        if not self.base_url:
            info = KNOWN_PROVIDERS.get(self.id)
            if info is None:
                raise ValueError(
                    f"Provider '{self.id}' is not a known provider; base_url is required"
                )
            self.base_url = info.base_url

    @classmethod
    def from_env(cls, provider_id: str) -> "ProviderConfig | None":
        """Load one provider; None when its API key is not set."""
        prefix = provider_id.upper().replace("-", "_")
        api_key = os.getenv(f"{prefix}_API_KEY", "")
        if not api_key:
            return None
        return cls(
            id=provider_id,
            api_key=api_key,
            base_url=os.getenv(f"{prefix}_BASE_URL", ""),
            default_model=os.getenv(f"{prefix}_DEFAULT_MODEL", ""),
        )


@dataclass
class AgentConfig:
    """
    Configuration for the agent runtime.

    context_window is the number of history messages sent upstream each
    round (one exchange is two messages). max_tool_rounds bounds the
    tool-calling loop.
    """
    model: str = "deepseek-chat"
    fallback_models: list[str] = field(default_factory=list)
    system_prompt: str = "You are CrabCrush, a friendly AI assistant."
    max_tokens: int = 4096
    context_window: int = 40
    max_tool_rounds: int = 5
    owner_ids: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        if not 2 <= self.context_window <= 200:
            raise ValueError(f"context_window must be between 2 and 200, got {self.context_window}")
        if self.max_tool_rounds < 1:
            raise ValueError(f"max_tool_rounds must be at least 1, got {self.max_tool_rounds}")

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Load configuration from environment variables."""
        defaults = cls()
        return cls(
            model=os.getenv("CRABCRUSH_MODEL", defaults.model),
            fallback_models=_split_list(os.getenv("CRABCRUSH_FALLBACK_MODELS", "")),
            system_prompt=os.getenv("CRABCRUSH_SYSTEM_PROMPT", defaults.system_prompt),
            max_tokens=int(os.getenv("CRABCRUSH_MAX_TOKENS", str(defaults.max_tokens))),
            context_window=int(os.getenv("CRABCRUSH_CONTEXT_WINDOW", str(defaults.context_window))),
            max_tool_rounds=int(os.getenv("CRABCRUSH_MAX_TOOL_ROUNDS", str(defaults.max_tool_rounds))),
            owner_ids=frozenset(_split_list(os.getenv("CRABCRUSH_OWNER_IDS", ""))),
        )


@dataclass
class ToolsConfig:
    """Configuration for the built-in tools."""
    file_base: str | None = None

    @classmethod
    def from_env(cls) -> "ToolsConfig":
        return cls(file_base=os.getenv("CRABCRUSH_FILE_BASE") or None)


@dataclass
class Settings:
    """Combined configuration for the whole core."""
    providers: list[ProviderConfig]
    agent: AgentConfig
    tools: ToolsConfig = field(default_factory=ToolsConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load all configuration from environment variables."""
        providers: list[ProviderConfig] = []
        for provider_id in KNOWN_PROVIDERS:
            config = ProviderConfig.from_env(provider_id)
            if config is not None:
                providers.append(config)
        if not providers:
            raise ValueError(
                "No model provider configured. Set at least one of: "
                + ", ".join(f"{pid.upper()}_API_KEY" for pid in KNOWN_PROVIDERS)
            )
        return cls(
            providers=providers,
            agent=AgentConfig.from_env(),
            tools=ToolsConfig.from_env(),
        )
