"""Configuration management using pydantic-settings."""

import logging

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Knowledge Pipeline"
    DEBUG: bool = False

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./knowledge_pipeline.db"

    # LLM Provider Selection
    LLM_PROVIDER: str = ""  # 'ollama', 'claude', 'gemini' or empty for auto-select

    # Ollama (local LLM)
    OLLAMA_BASE_URL: str = "http://ollama:11434"
    OLLAMA_LLM_MODEL: str = "llama3.1:8b"
    OLLAMA_EMBEDDING_MODEL: str = "mxbai-embed-large"

    # Anthropic (Claude)
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_MODEL: str = "claude-sonnet-4-20250514"

    # Vertex AI (Gemini)
    GCP_PROJECT_ID: str = ""
    VERTEX_AI_PROJECT: str = ""  # Falls back to GCP_PROJECT_ID if empty
    VERTEX_AI_LOCATION: str = "us-central1"
    VERTEX_AI_LLM_MODEL: str = "gemini-2.5-flash"

    # Embeddings
    EMBEDDING_PROVIDER: str = "sentence-transformer"  # 'sentence-transformer' or 'ollama'
    EMBEDDING_MODEL: str = "all-MiniLM-L6-v2"

    # ChromaDB (FAQ similarity index)
    CHROMA_HOST: str = "chromadb"
    CHROMA_PORT: int = 8000
    CHROMA_USE_SSL: bool = False
    CHROMA_TOKEN: str = ""
    FAQ_COLLECTION: str = "faqs"

    # Slack
    SLACK_SIGNING_SECRET: str = ""
    SLACK_BOT_TOKEN: str = ""  # Needed only for channel history pulls
    CHANNEL_PULL_PAGE_SIZE: int = 200  # conversations.history page size (Slack max 1000)
    CHANNEL_PULL_INCLUDE_THREADS: bool = True
    CHANNEL_PULL_PAGE_DELAY_SECONDS: float = 1.0  # Pause between history pages

    # Conversation analysis
    CONVERSATION_GAP_MINUTES: int = 30  # Time gap that starts a new conversation
    QA_MAX_ANSWER_DELAY_MINUTES: int = 120  # Answers later than this are not paired
    QA_MIN_ANSWER_CONFIDENCE: float = 0.5
    HEURISTIC_CONCLUSIVE_CONFIDENCE: float = 0.75  # Below this the classifier is consulted
    CLASSIFIER_FALLBACK_PENALTY: float = 0.8  # Confidence multiplier when the classifier fails
    CLASSIFIER_CACHE_SIZE: int = 4096  # Texts whose role and topic answers are kept

    # Document assembly
    DEFAULT_BATCH_SIZE: int = 20
    MAX_MESSAGES_PER_DOCUMENT: int = 500
    MAX_TITLE_LENGTH: int = 200
    ASSEMBLY_MAX_ATTEMPTS: int = 3

    # FAQ synthesis
    FAQ_DUPLICATE_THRESHOLD: float = 0.9  # At or above: merge into the existing FAQ
    FAQ_POTENTIAL_DUPLICATE_THRESHOLD: float = 0.7  # At or above: hold for human review
    FAQ_SIMILARITY_TOP_K: int = 5
    FAQ_GENERATION_DELAY_SECONDS: float = 1.0  # Pause between generation calls
    FAQ_REQUIRE_APPROVAL: bool = True

    # Job orchestration
    MAX_CONCURRENT_JOBS: int = 2
    JOB_MAX_RETRIES: int = 3
    JOB_RETRY_BASE_DELAY_SECONDS: float = 2.0
    JOB_RETRY_MAX_DELAY_SECONDS: float = 300.0
    JOB_TIMEOUT_MINUTES: int = 30
    JOB_POLL_INTERVAL_SECONDS: float = 5.0
    JOB_HEARTBEAT_SECONDS: float = 30.0  # How often a running job proves its worker is alive
    JOB_STALE_AFTER_SECONDS: float = 300.0  # Running jobs silent this long are recovered
    API_RUN_WORKER: bool = False  # Run the job orchestrator inside the API process

    # Cleanup
    CLEANUP_RETENTION_DAYS: int = 30
    EVENT_RETRY_MAX_ATTEMPTS: int = 3

    @property
    def vertex_project(self) -> str:
        """Vertex AI project, falling back to the GCP project."""
        return self.VERTEX_AI_PROJECT or self.GCP_PROJECT_ID

    @model_validator(mode="after")
    def check_thresholds(self) -> "Settings":
        """Validate duplicate thresholds and security settings."""
        if self.FAQ_POTENTIAL_DUPLICATE_THRESHOLD >= self.FAQ_DUPLICATE_THRESHOLD:
            raise ValueError(
                "FAQ_POTENTIAL_DUPLICATE_THRESHOLD must be lower than FAQ_DUPLICATE_THRESHOLD"
            )
        if self.JOB_HEARTBEAT_SECONDS >= self.JOB_STALE_AFTER_SECONDS:
            raise ValueError("JOB_HEARTBEAT_SECONDS must be lower than JOB_STALE_AFTER_SECONDS")
        if not self.DEBUG and not self.SLACK_SIGNING_SECRET:
            logging.warning(
                "SECURITY WARNING: SLACK_SIGNING_SECRET is not set, webhook signatures are not verified!"
            )
        return self


settings = Settings()
