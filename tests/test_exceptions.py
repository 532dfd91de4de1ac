"""Tests for the pipeline error taxonomy."""

import pytest

from knowledge_pipeline.api.errors import status_for
from knowledge_pipeline.exceptions import (
    ConflictError,
    NotFoundError,
    PermanentFailure,
    QuotaExceededError,
    TransientError,
    ValidationError,
    classify_error,
    is_retryable,
)
from knowledge_pipeline.llm.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMRateLimitError,
    LLMResponseError,
)


class TestClassifyError:
    """Tests for classify_error."""

    def test_pipeline_errors_unchanged(self):
        error = ConflictError("already reviewed")
        assert classify_error(error) is error

    def test_rate_limit_is_quota(self):
        classified = classify_error(LLMRateLimitError("slow down", provider="claude", retry_after=30))

        assert isinstance(classified, QuotaExceededError)
        assert classified.retry_after == 30
        assert str(classified) == "[claude] slow down"

    @pytest.mark.parametrize(
        "error, expected",
        [
            (LLMConnectionError("refused", provider="ollama"), TransientError),
            (TimeoutError("read"), TransientError),
            (LLMAuthenticationError("bad key", provider="claude"), PermanentFailure),
            (LLMResponseError("garbage", provider="gemini"), PermanentFailure),
            (KeyError("title"), PermanentFailure),
        ],
    )
    def test_mapping(self, error, expected):
        assert type(classify_error(error)) is expected

    def test_unexpected_errors_keep_their_type_name(self):
        assert str(classify_error(ValueError("bad state"))) == "ValueError: bad state"

    def test_is_retryable(self):
        assert is_retryable(LLMRateLimitError("slow down", provider="claude"))
        assert is_retryable(TransientError("busy"))
        assert not is_retryable(ValidationError("bad input"))
        assert not is_retryable(RuntimeError("boom"))


class TestHTTPStatus:
    @pytest.mark.parametrize(
        "error, status_code",
        [
            (NotFoundError("missing"), 404),
            (ValidationError("bad"), 400),
            (ConflictError("taken"), 409),
            (QuotaExceededError("quota"), 503),
            (TransientError("busy"), 503),
            (PermanentFailure("broken"), 500),
        ],
    )
    def test_status_for(self, error, status_code):
        """Not-found is checked before its ValidationError base."""
        assert status_for(error) == status_code
