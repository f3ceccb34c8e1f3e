"""Runtime configuration loaded from the environment."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Relay chat settings.

    Every field can be overridden with a ``RELAY_CHAT_`` prefixed environment
    variable or an entry in a local ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAY_CHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    cors_allowed_origins: str = "*"
    log_level: str = "INFO"

    # Message store
    data_dir: Path = Path.home() / ".relay-chat" / "history"
    history_limit: int = 200
    store_timeout: float = 5.0

    # Typing indicators: 3x the 600ms client debounce, <= 0 disables expiry
    typing_timeout: float = 1.8

    # Send eventRejected back on malformed events instead of dropping them
    reject_invalid_events: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get the process-wide settings instance."""
    return Settings()
