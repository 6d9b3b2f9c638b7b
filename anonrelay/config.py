from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Missing required values raise at startup, so the service never serves
    without a database, a webhook secret and an operator conversation.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Webhook Security - required from .env
    WEBHOOK_SECRET: str

    # Conversation that receives forwarded messages and issues commands
    OPERATOR_CHAT_REF: str

    # Optional mirror conversation for user details
    SUPERVISOR_CHAT_REF: Optional[str] = None

    # Telegram transport
    BOT_TOKEN: Optional[str] = None
    POLL_TIMEOUT_SECONDS: int = 25

    # Relay behaviour
    DEDUP_WINDOW_MS: int = 5000
    BROADCAST_DELAY_MS: int = 100
    IDENTITY_RETRIES: int = 3

    @property
    def supervisor_enabled(self) -> bool:
        """True when a supervisor conversation distinct from the operator is set."""
        return bool(self.SUPERVISOR_CHAT_REF) and self.SUPERVISOR_CHAT_REF != self.OPERATOR_CHAT_REF


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
