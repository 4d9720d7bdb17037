from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env vars take precedence over the .env file
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Message store (SQLite file by default, PostgreSQL also supported)
    DATABASE_URL: str = "sqlite:///./store/messages.db"

    LOG_LEVEL: str = "INFO"

    # Shared secret for signed /events deliveries from the protocol bridge
    WEBHOOK_SECRET: str

    # Ingestion queue: 0 means unbounded
    INGEST_QUEUE_SIZE: int = 1000
    # How long a producer may block on a full queue before giving up
    INGEST_PUT_TIMEOUT_SECONDS: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
