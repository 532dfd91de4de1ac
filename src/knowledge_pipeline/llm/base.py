"""Generation collaborator interface and the Ollama client."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from knowledge_pipeline.config import settings
from knowledge_pipeline.llm.exceptions import LLMConnectionError, LLMRateLimitError

logger = logging.getLogger(__name__)

JSON_INSTRUCTION = (
    "IMPORTANT: Respond ONLY with valid JSON. No markdown, no explanation, "
    "just the JSON object."
)


class BaseLLM(ABC):
    """Base class for text generation providers.

    The pipeline only needs `generate` (free text) and `generate_json`
    (structured answers for classification, titles and FAQ candidates).
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'ollama', 'claude')."""
        pass

    @abstractmethod
    async def generate(self, prompt: str, **kwargs: Any) -> str:
        """Generate text from a prompt."""
        pass

    @abstractmethod
    async def check_health(self) -> bool:
        """Check if the provider is reachable."""
        pass

    async def generate_json(self, prompt: str, **kwargs: Any) -> dict[str, Any]:
        """Generate a JSON object from a prompt.

        Returns an empty dict when the response is not valid JSON.
        """
        response_text = await self.generate(f"{prompt}\n\n{JSON_INSTRUCTION}", **kwargs)
        return self._parse_json_response(response_text)

    async def is_available(self) -> bool:
        """Lightweight configuration check without network requests."""
        return True

    def _parse_json_response(self, response_text: str) -> dict[str, Any]:
        """Parse JSON from a response, tolerating markdown code fences."""
        text = response_text.strip()
        if text.startswith("```json"):
            text = text[7:]
        elif text.startswith("```"):
            text = text[3:]
        if text.endswith("```"):
            text = text[:-3]

        try:
            parsed = json.loads(text.strip())
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse {self.provider_name} response as JSON: {e}")
            logger.debug(f"Raw response: {response_text}")
            return {}

        if not isinstance(parsed, dict):
            logger.warning(f"{self.provider_name} returned JSON {type(parsed).__name__}, expected object")
            return {}
        return parsed


class OllamaLLM(BaseLLM):
    """Ollama client for local models."""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float = 120.0,
    ):
        self.base_url = (base_url or settings.OLLAMA_BASE_URL).rstrip("/")
        self.model = model or settings.OLLAMA_LLM_MODEL
        self.timeout = timeout

    @property
    def provider_name(self) -> str:
        return "ollama"

    async def is_available(self) -> bool:
        return bool(self.base_url)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(LLMConnectionError),
    )
    async def generate(self, prompt: str, **kwargs: Any) -> str:
        """Generate text from a prompt using Ollama."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/api/generate",
                    json={"model": self.model, "prompt": prompt, "stream": False, **kwargs},
                )
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                raise LLMConnectionError(str(e), provider=self.provider_name) from e

            if response.status_code == 429:
                raise LLMRateLimitError("Rate limit exceeded", provider=self.provider_name)
            response.raise_for_status()
            return response.json().get("response", "")

    async def check_health(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                return response.status_code == 200
        except httpx.HTTPError as e:
            logger.error(f"Ollama health check failed: {e}")
            return False
