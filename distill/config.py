"""Application configuration using Pydantic Settings."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # Advisory locks (dedicated pool, separate from the ORM session pool)
    LOCK_POOL_SIZE: int = 5
    LOCK_DRAIN_TIMEOUT: float = 10.0

    # LLM
    LLM_MODE: str = "dry_run"  # 'dry_run' or 'real'
    OPENROUTER_API_KEY: Optional[str] = None
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    SITE_URL: str = ""
    SITE_NAME: str = "Distill"
    LLM_TIMEOUT: float = 120.0

    # Spend caps (USD), unset means no cap
    LLM_MAX_USD_PER_RUN: Optional[float] = None
    LLM_MAX_USD_PER_DAY: Optional[float] = None

    # Summarization
    DEFAULT_MAX_INPUT_TOKENS: int = 12000

    # Classification
    CLASSIFY_CHECKPOINT_EVERY: int = 25

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


# Global settings instance
settings = Settings()
