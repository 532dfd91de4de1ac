"""Embedding providers for the FAQ similarity index."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from knowledge_pipeline.config import settings

logger = logging.getLogger(__name__)

_EMBEDDING_REGISTRY: dict[str, Callable[[], "BaseEmbeddings"]] = {}


def register_embedding_provider(name: str):
    """Decorator to register an embedding provider factory."""

    def decorator(factory: Callable[[], "BaseEmbeddings"]):
        _EMBEDDING_REGISTRY[name.lower()] = factory
        return factory

    return decorator


class BaseEmbeddings(ABC):
    """Abstract base class for embedding providers."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts, one vector per text."""
        pass

    async def embed_single(self, text: str) -> list[float]:
        embeddings = await self.embed([text])
        return embeddings[0]


class SentenceTransformerEmbeddings(BaseEmbeddings):
    """Local sentence-transformers model, loaded on first use."""

    def __init__(self, model: str | None = None):
        self.model_name = model or settings.EMBEDDING_MODEL
        self._model = None

    @property
    def provider_name(self) -> str:
        return "sentence-transformer"

    def _load_model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise ImportError(
                    "sentence-transformers not installed. "
                    "Install with: pip install 'knowledge-pipeline[sentence-transformers]'"
                ) from e

            logger.info(f"Loading sentence-transformer model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name)
        return self._model

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        model = self._load_model()
        loop = asyncio.get_running_loop()
        embeddings = await loop.run_in_executor(
            None, lambda: model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
        )
        return embeddings.tolist()


class OllamaEmbeddings(BaseEmbeddings):
    """Embeddings served by an Ollama instance."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float = 60.0,
    ):
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or settings.OLLAMA_EMBEDDING_MODEL
        self.timeout = timeout

    @property
    def provider_name(self) -> str:
        return "ollama"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.ConnectError, httpx.TimeoutException)),
        reraise=True,
    )
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """One /api/embed call for the whole batch."""
        if not texts:
            return []
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/api/embed", json={"model": self.model, "input": texts}
            )
            response.raise_for_status()
        embeddings = response.json().get("embeddings", [])
        if len(embeddings) != len(texts):
            raise ValueError(f"Ollama returned {len(embeddings)} embeddings for {len(texts)} texts")
        return embeddings


@register_embedding_provider("sentence-transformer")
def _create_sentence_transformer():
    return SentenceTransformerEmbeddings()


@register_embedding_provider("ollama")
def _create_ollama():
    return OllamaEmbeddings()


def get_available_embedding_providers() -> list[str]:
    return list(_EMBEDDING_REGISTRY.keys())


def get_embeddings(provider: str | None = None) -> BaseEmbeddings:
    """Instantiate the configured embedding provider.

    Raises:
        ValueError: If the provider is not registered
    """
    name = (provider or settings.EMBEDDING_PROVIDER).lower()
    factory = _EMBEDDING_REGISTRY.get(name)
    if factory is None:
        available = ", ".join(get_available_embedding_providers())
        raise ValueError(f"Unknown embedding provider '{name}'. Available: {available}")
    return factory()
