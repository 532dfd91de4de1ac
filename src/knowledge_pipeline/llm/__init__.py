"""Generation providers used for classification, metadata and FAQ candidates."""

from knowledge_pipeline.llm.base import BaseLLM, OllamaLLM
from knowledge_pipeline.llm.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMError,
    LLMProviderNotConfiguredError,
    LLMRateLimitError,
    LLMResponseError,
)
from knowledge_pipeline.llm.factory import (
    get_available_providers,
    get_llm,
    get_provider,
    register_provider,
)

__all__ = [
    "BaseLLM",
    "OllamaLLM",
    "LLMError",
    "LLMConnectionError",
    "LLMRateLimitError",
    "LLMAuthenticationError",
    "LLMResponseError",
    "LLMProviderNotConfiguredError",
    "get_llm",
    "get_provider",
    "get_available_providers",
    "register_provider",
]
