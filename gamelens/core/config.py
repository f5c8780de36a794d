"""
Centralized configuration management with validation.

All environment variables are loaded and validated here.
This ensures consistent configuration across the worker and services.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    """Application settings with validation."""

    # Pydantic v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    # DATABASE_URL wins when set (tests point it at SQLite).
    DATABASE_URL: Optional[str] = Field(default=None)
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="gamelens")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Gemini (analysis oracle)
    GOOGLE_AI_API_KEY: Optional[str] = Field(default=None)
    GEMINI_MODEL: str = Field(default="gemini-2.5-flash")

    # Lichess (game source + PGN provider)
    LICHESS_API_BASE: str = Field(default="https://lichess.org")
    LICHESS_LOOKBACK_DAYS: int = Field(default=60, ge=1)
    LICHESS_MAX_GAMES: int = Field(default=100, ge=1)

    # External API Configuration
    EXTERNAL_API_TIMEOUT: int = Field(default=30)

    # Game selection: target size and per-result quotas
    SELECTION_TARGET: int = Field(default=25, ge=1)
    SELECTION_QUOTA_WINS: int = Field(default=10, ge=0)
    SELECTION_QUOTA_LOSSES: int = Field(default=10, ge=0)
    SELECTION_QUOTA_DRAWS: int = Field(default=5, ge=0)

    # Pipeline gates
    BASELINE_SIZE: int = Field(default=10, ge=1)
    SYNTHESIS_BATCH_SIZE: int = Field(default=3, ge=1)

    # Correlation verify step: bounded wait for read-after-write lag
    CORRELATION_VERIFY_ATTEMPTS: int = Field(default=5, ge=0)
    CORRELATION_VERIFY_DELAY_S: int = Field(default=30, ge=0)

    # Per-game analysis task retries (transient provider errors only)
    ANALYSIS_MAX_RETRIES: int = Field(default=3, ge=0)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    # Sentry Error Tracking
    SENTRY_DSN: Optional[str] = Field(default=None)
    SENTRY_TRACES_SAMPLE_RATE: float = Field(default=0.1)  # 10% of transactions

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )


# Global settings instance
settings = Settings()
