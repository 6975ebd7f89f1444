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

    PROJECT_NAME: str = "messenger-core"
    VERSION: str = "1.0.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./messenger.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Token signing key shared with the identity service - required
    TOKEN_SECRET: str
    TOKEN_TTL_SECONDS: int = 7 * 24 * 3600

    # Clients give up waiting for a send acknowledgment after this many seconds
    ACK_TIMEOUT_SECONDS: int = 10


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
