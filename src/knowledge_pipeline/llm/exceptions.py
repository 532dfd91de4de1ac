"""Errors raised by generation providers."""


class LLMError(Exception):
    """Base exception for LLM operations."""

    def __init__(self, message: str, provider: str = "unknown"):
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class LLMConnectionError(LLMError):
    """The provider could not be reached or timed out."""

    pass


class LLMRateLimitError(LLMError):
    """Rate limit or quota exceeded."""

    def __init__(
        self, message: str, provider: str, retry_after: float | None = None
    ):
        self.retry_after = retry_after
        super().__init__(message, provider)


class LLMAuthenticationError(LLMError):
    """Credentials missing or rejected."""

    pass


class LLMResponseError(LLMError):
    """The provider answered with something we could not use."""

    pass


class LLMProviderNotConfiguredError(LLMError):
    """Provider is not registered or lacks configuration."""

    pass
