from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    chatlens settings, read from the environment with .env as a fallback.
    Unset optional values (LLM key, webhook secret) disable those features.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Storage Configuration
    STORE_BACKEND: Literal["sql", "memory"] = "sql"
    DATABASE_URL: str = "sqlite:///./chatlens.db"
    DB_POOL_SIZE: int = 10
    DB_POOL_TIMEOUT: float = 2.0
    LIST_LIMIT_MAX: int = 200
    TRENDS_MAX_DAYS: int = 90

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Message defaults
    DEFAULT_GROUP_ID: str = "default"
    SUMMARY_MAX_CHARS: int = 50
    CATEGORY_RULES_FILE: Optional[str] = None
    BATCH_MAX_WORKERS: int = 4

    # Remote LLM - absence of a key is a normal state (local rules only)
    LLM_API_KEY: Optional[str] = None
    LLM_API_URL: str = "https://api.anthropic.com/v1/messages"
    LLM_MODEL: str = "claude-3-haiku-20240307"
    REMOTE_TIMEOUT_SECONDS: float = 5.0

    # Messenger webhook
    WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_VERIFY_TOKEN: Optional[str] = None


@lru_cache()
def get_settings() -> Settings:
    """
    Settings are built once per process; tests call get_settings.cache_clear()
    after changing the environment.
    """
    return Settings()
