"""Generation provider registry and auto-selection."""

import logging
from typing import Callable

from knowledge_pipeline.config import settings
from knowledge_pipeline.llm.base import BaseLLM, OllamaLLM
from knowledge_pipeline.llm.exceptions import LLMProviderNotConfiguredError

logger = logging.getLogger(__name__)

_PROVIDER_REGISTRY: dict[str, Callable[[], BaseLLM]] = {}


def register_provider(name: str) -> Callable[[Callable[[], BaseLLM]], Callable[[], BaseLLM]]:
    """Decorator registering a provider factory under `name`."""

    def decorator(factory: Callable[[], BaseLLM]) -> Callable[[], BaseLLM]:
        _PROVIDER_REGISTRY[name.lower()] = factory
        logger.debug(f"Registered LLM provider: {name}")
        return factory

    return decorator


def get_available_providers() -> list[str]:
    return list(_PROVIDER_REGISTRY.keys())


def get_provider(name: str) -> BaseLLM:
    """Instantiate a registered provider.

    Raises:
        LLMProviderNotConfiguredError: If the provider is not registered
    """
    factory = _PROVIDER_REGISTRY.get(name.lower())
    if factory is None:
        available = ", ".join(get_available_providers())
        raise LLMProviderNotConfiguredError(
            f"Unknown provider '{name}'. Available: {available}", provider=name
        )
    return factory()


async def get_llm(provider: str | None = None) -> BaseLLM:
    """Return a generation provider.

    Selection order: the explicit argument, then LLM_PROVIDER, then Claude if an
    API key is set, Gemini if a GCP project is set, and finally Ollama.
    """
    provider_name = provider or settings.LLM_PROVIDER
    if provider_name:
        llm = get_provider(provider_name)
        if await llm.is_available():
            logger.info(f"Using LLM provider: {llm.provider_name}")
            return llm
        logger.warning(f"Configured provider '{provider_name}' not available")

    candidates = []
    if settings.ANTHROPIC_API_KEY:
        candidates.append("claude")
    if settings.vertex_project:
        candidates.append("gemini")
    candidates.append("ollama")

    for name in candidates:
        llm = get_provider(name)
        if await llm.is_available():
            logger.info(f"Auto-selected {llm.provider_name} LLM provider")
            return llm

    raise LLMProviderNotConfiguredError(
        "No LLM provider is configured or available. "
        "Set ANTHROPIC_API_KEY for Claude, a GCP project for Gemini, or OLLAMA_BASE_URL.",
        provider="none",
    )


@register_provider("ollama")
def _create_ollama() -> BaseLLM:
    return OllamaLLM()


@register_provider("claude")
def _create_claude() -> BaseLLM:
    from knowledge_pipeline.llm.providers.claude import ClaudeLLM

    return ClaudeLLM()


@register_provider("gemini")
def _create_gemini() -> BaseLLM:
    from knowledge_pipeline.llm.providers.gemini import GeminiLLM

    return GeminiLLM()
