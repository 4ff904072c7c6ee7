from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./smsrelay.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Source attached to events emitted by the HTTP surface
    EVENT_SOURCE: str = "/v1/messages"

    # Maximum number of worker threads used to dispatch one outstanding batch
    OUTSTANDING_CONCURRENCY: int = 10

    # Default number of outstanding messages handed to a phone per fetch
    OUTSTANDING_LIMIT: int = 10


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


settings = get_settings()
