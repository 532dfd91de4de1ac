"""Gemini provider on Google Cloud Vertex AI."""

import asyncio
import logging
from typing import Any

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from knowledge_pipeline.config import settings
from knowledge_pipeline.llm.base import BaseLLM
from knowledge_pipeline.llm.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMRateLimitError,
)

logger = logging.getLogger(__name__)


class GeminiLLM(BaseLLM):
    """Gemini client. The Vertex SDK is synchronous, so calls run in an executor."""

    def __init__(
        self,
        project: str | None = None,
        location: str | None = None,
        model: str | None = None,
        max_output_tokens: int = 1024,
        temperature: float = 0.1,
    ):
        self.project = project or settings.vertex_project
        self.location = location or settings.VERTEX_AI_LOCATION
        self.model_name = model or settings.VERTEX_AI_LLM_MODEL
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self._model = None

    @property
    def provider_name(self) -> str:
        return "gemini"

    async def is_available(self) -> bool:
        return bool(self.project and self.location)

    def _get_model(self):
        if self._model is None:
            try:
                import vertexai
                from vertexai.generative_models import GenerativeModel
            except ImportError as e:
                raise ImportError(
                    "google-cloud-aiplatform not installed. "
                    "Install with: pip install 'knowledge-pipeline[gemini]'"
                ) from e

            vertexai.init(project=self.project, location=self.location)
            self._model = GenerativeModel(self.model_name)
            logger.info(
                f"Initialized Gemini LLM: model={self.model_name}, "
                f"project={self.project}, location={self.location}"
            )
        return self._model

    def _translate_error(self, error: Exception) -> Exception:
        """Map Google API errors onto provider exceptions by their message."""
        error_str = str(error).lower()
        if "quota" in error_str or "resource exhausted" in error_str or "429" in error_str:
            return LLMRateLimitError(f"Quota exceeded: {error}", provider=self.provider_name)
        if "permission" in error_str or "403" in error_str:
            return LLMAuthenticationError(f"Permission denied: {error}", provider=self.provider_name)
        return LLMConnectionError(f"API error: {error}", provider=self.provider_name)

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type((LLMConnectionError, LLMRateLimitError)),
        reraise=True,
    )
    async def generate(self, prompt: str, **kwargs: Any) -> str:
        if not self.project:
            raise LLMAuthenticationError(
                "Vertex AI project not configured", provider=self.provider_name
            )

        model = self._get_model()
        from vertexai.generative_models import GenerationConfig

        config = GenerationConfig(
            max_output_tokens=kwargs.get("max_output_tokens", self.max_output_tokens),
            temperature=kwargs.get("temperature", self.temperature),
        )
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None, lambda: model.generate_content(prompt, generation_config=config)
            )
        except Exception as e:
            raise self._translate_error(e) from e

        if response.candidates:
            return response.candidates[0].content.parts[0].text
        return ""

    async def check_health(self) -> bool:
        if not self.project:
            logger.warning("Gemini health check: No project configured")
            return False
        try:
            await self.generate("Hi", max_output_tokens=1, temperature=0.0)
        except Exception as e:
            logger.error(f"Gemini health check failed: {type(e).__name__}: {e}")
            return False
        return True
