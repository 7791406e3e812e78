"""
Model router.

Resolves a logical model string to a concrete provider and model name,
and wraps provider streaming with failover across a primary model and
an ordered chain of fallbacks.

Accepted model strings:
- "qwen/qwen-max"  explicit provider id and model name
- "qwen-max"       matched to a provider by its model-name prefixes
- "my-model"       allowed only when exactly one provider is configured
"""

import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, replace

from crabcrush.config import KNOWN_PROVIDERS, Settings, provider_display_name
from crabcrush.provider import (
    ChatOptions,
    GenerationCancelled,
    OpenAICompatibleProvider,
    ProviderError,
)
from crabcrush.types import ChatEvent, Message

logger = logging.getLogger(__name__)


class ModelResolutionError(ValueError):
    """A model string cannot be mapped to a configured provider."""


@dataclass(frozen=True)
class ModelSpec:
    """A resolved (provider, model) pair."""
    provider_id: str
    model_name: str

    def __str__(self) -> str:
        return f"{provider_display_name(self.provider_id)}({self.model_name})"


def _default_prefix_hints() -> dict[str, tuple[str, ...]]:
    return {pid: info.model_prefixes for pid, info in KNOWN_PROVIDERS.items()}


class ModelRouter:
    """
    Routes chat requests to providers with automatic failover.

    Client-class failures (bad key, no balance, rate limit) abort the
    whole chain. Server, network and timeout failures move on to the
    next model in the chain.
    """

    def __init__(
        self,
        providers: Mapping[str, OpenAICompatibleProvider],
        primary_model: str,
        fallback_models: list[str] | None = None,
        prefix_hints: Mapping[str, tuple[str, ...]] | None = None,
    ) -> None:
        self.providers = dict(providers)
        self.prefix_hints = dict(prefix_hints) if prefix_hints is not None else _default_prefix_hints()
        self.primary_model = self.resolve(primary_model)
        self.fallback_models = [self.resolve(m) for m in fallback_models or []]

    def resolve(self, spec: str) -> ModelSpec:
        """Resolve a model string to a ModelSpec."""
        configured = ", ".join(self.providers) or "(none)"

        if "/" in spec:
            provider_id, model_name = spec.split("/", 1)
            if provider_id not in self.providers:
                raise ModelResolutionError(
                    f'Model "{spec}" names provider "{provider_id}", which is not configured. '
                    f"Configured providers: {configured}"
                )
            return ModelSpec(provider_id=provider_id, model_name=model_name)

        for provider_id, prefixes in self.prefix_hints.items():
            if any(spec.startswith(prefix) for prefix in prefixes) and provider_id in self.providers:
                return ModelSpec(provider_id=provider_id, model_name=spec)

        if len(self.providers) == 1:
            provider_id = next(iter(self.providers))
            return ModelSpec(provider_id=provider_id, model_name=spec)

        raise ModelResolutionError(
            f'Cannot auto-resolve a provider for model "{spec}". '
            f'Use the explicit providerId/modelName syntax (e.g. "qwen/qwen-max"). '
            f"Configured providers: {configured}"
        )

    async def chat(
        self,
        messages: list[Message],
        options: ChatOptions | None = None,
    ) -> AsyncIterator[ChatEvent]:
        """Stream from the first model in the chain that answers."""
        options = options or ChatOptions()
        chain = [self.primary_model, *self.fallback_models]
        last_error: ProviderError | None = None

        for i, spec in enumerate(chain):
            provider = self.providers.get(spec.provider_id)
            if provider is None:
                logger.warning(f"Provider {spec.provider_id!r} is not configured, skipping")
                continue

            started = False
            try:
                async for event in provider.chat(messages, replace(options, model=spec.model_name)):
                    started = True
                    yield event
                return
            except GenerationCancelled:
                raise
            except ProviderError as e:
                if e.is_client_error or started or i == len(chain) - 1:
                    raise
                last_error = e
                logger.warning(f"[ModelRouter] {spec} failed: {e}")
                logger.warning(f"[ModelRouter] Failing over to: {chain[i + 1]}")

        if last_error is not None:
            raise last_error
        raise ProviderError("No configured model provider is available")

    @property
    def primary_info(self) -> dict[str, str]:
        """Primary model details for startup logs."""
        return {
            "provider_id": self.primary_model.provider_id,
            "model_name": self.primary_model.model_name,
            "provider_name": provider_display_name(self.primary_model.provider_id),
        }

    @property
    def has_fallback(self) -> bool:
        return len(self.fallback_models) > 0

    @property
    def model_chain(self) -> list[str]:
        """The whole chain (primary + fallbacks), human readable."""
        return [str(spec) for spec in [self.primary_model, *self.fallback_models]]

    async def aclose(self) -> None:
        """Close every provider's HTTP client."""
        for provider in self.providers.values():
            await provider.aclose()


def build_router(settings: Settings) -> ModelRouter:
    """Create providers and the router from loaded settings."""
    providers = {
        config.id: OpenAICompatibleProvider(
            provider_id=config.id,
            base_url=config.base_url,
            api_key=config.api_key,
            default_model=config.default_model,
        )
        for config in settings.providers
    }
    router = ModelRouter(
        providers,
        primary_model=settings.agent.model,
        fallback_models=settings.agent.fallback_models,
    )
    logger.info(f"Model chain: {' -> '.join(router.model_chain)}")
    return router
