# discovery/core/config.py
"""
Application configuration using Pydantic Settings
"""
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables
    """

    # Application
    APP_NAME: str = "Discovery"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./discovery.db"

    # Chunking
    CHUNK_SIZE: int = 1000
    CHUNK_OVERLAP: int = 200

    # Pipeline
    EMBEDDING_BATCH_SIZE: int = 50
    PARALLEL_EMBEDDING_REQUESTS: int = 3
    MAX_CONCURRENT_DOCUMENTS: int = 4

    # OCR polling
    OCR_POLL_INTERVAL_SECONDS: float = 2.0
    OCR_MAX_WAIT_SECONDS: float = 300.0
    OCR_MAX_STUCK_POLLS: int = 30

    # Case API (OCR + embeddings)
    CASE_API_URL: str = ""
    CASE_API_KEY: str = ""
    CASE_API_TIMEOUT_SECONDS: float = 60.0
    EMBEDDING_MODEL: str = "voyage-law-2"
    EMBEDDING_DIMENSIONS: int = 1536

    # AWS / Bedrock
    AWS_ACCESS_KEY_ID: str = ""
    AWS_SECRET_ACCESS_KEY: str = ""
    AWS_REGION: str = "us-east-1"
    THEME_MODEL_ID: str = "anthropic.claude-3-haiku-20240307-v1:0"

    @field_validator("THEME_MODEL_ID", "EMBEDDING_MODEL", mode="before")
    @classmethod
    def strip_model_id(cls, v: str) -> str:
        if isinstance(v, str):
            return v.strip()
        return v

    # Theme extraction
    THEME_TEMPERATURE: float = 0.5
    THEME_MAX_TOKENS: int = 2000
    THEME_SAMPLE_CHUNKS: int = 50
    THEME_MAX_CONTEXT_CHARS: int = 15000
    THEME_REFRESH_THRESHOLD: float = 0.2

    # Search
    SEARCH_DEFAULT_LIMIT: int = 20
    SEARCH_HISTORY_LIMIT: int = 10

    # Usage limits per period (0 = unlimited)
    USAGE_PERIOD_DAYS: int = 30
    USAGE_MAX_INPUT_TOKENS: int = 0
    USAGE_MAX_OUTPUT_TOKENS: int = 0
    USAGE_MAX_OCR_PAGES: int = 0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
