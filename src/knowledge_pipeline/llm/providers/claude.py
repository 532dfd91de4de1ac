"""Claude (Anthropic Messages API) provider over raw httpx."""

import logging
from typing import Any

import httpx
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
    LLMResponseError,
)

logger = logging.getLogger(__name__)

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


class ClaudeLLM(BaseLLM):
    """Claude client.

    Rate-limit responses are retried a few times here; if the quota is still
    exhausted the LLMRateLimitError reaches the pipeline, which treats it as a
    quota stop for bulk work.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        timeout: float = 60.0,
        max_tokens: int = 1024,
    ):
        self.api_key = api_key or settings.ANTHROPIC_API_KEY
        self.model = model or settings.ANTHROPIC_MODEL
        self.timeout = timeout
        self.max_tokens = max_tokens

    @property
    def provider_name(self) -> str:
        return "claude"

    async def is_available(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code in (401, 403):
            raise LLMAuthenticationError("Invalid API key", provider=self.provider_name)
        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise LLMRateLimitError(
                "Rate limit exceeded",
                provider=self.provider_name,
                retry_after=float(retry_after) if retry_after else None,
            )
        if response.status_code >= 500:
            raise LLMConnectionError(
                f"Server error {response.status_code}", provider=self.provider_name
            )
        if response.status_code >= 400:
            raise LLMResponseError(
                f"Request rejected with {response.status_code}: {response.text[:200]}",
                provider=self.provider_name,
            )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=30),
        retry=retry_if_exception_type((LLMConnectionError, LLMRateLimitError)),
        reraise=True,
    )
    async def generate(self, prompt: str, **kwargs: Any) -> str:
        """Send a single-turn prompt and return the concatenated text blocks.

        Raises:
            LLMAuthenticationError: If the API key is missing or invalid
            LLMRateLimitError: If the rate limit is still exceeded after retries
            LLMConnectionError: If the API cannot be reached
        """
        if not self.api_key:
            raise LLMAuthenticationError("API key not configured", provider=self.provider_name)

        body = {
            "model": self.model,
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
            "messages": [{"role": "user", "content": prompt}],
        }
        if "temperature" in kwargs:
            body["temperature"] = kwargs["temperature"]

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                response = await client.post(ANTHROPIC_API_URL, headers=self._headers(), json=body)
            except httpx.ConnectError as e:
                raise LLMConnectionError(f"Failed to connect: {e}", provider=self.provider_name) from e
            except httpx.TimeoutException as e:
                raise LLMConnectionError(f"Request timed out: {e}", provider=self.provider_name) from e

        self._raise_for_status(response)
        data = response.json()
        return "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )

    async def check_health(self) -> bool:
        """Make a one-token request; a 400 still proves the API is reachable."""
        if not self.api_key:
            logger.warning("Claude health check: No API key configured")
            return False

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.post(
                    ANTHROPIC_API_URL,
                    headers=self._headers(),
                    json={
                        "model": self.model,
                        "max_tokens": 1,
                        "messages": [{"role": "user", "content": "Hi"}],
                    },
                )
        except httpx.HTTPError as e:
            logger.error(f"Claude health check failed: {type(e).__name__}: {e}")
            return False
        return response.status_code in (200, 400)
