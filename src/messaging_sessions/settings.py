"""
Settings

Environment-driven configuration for the session manager.
"""

import functools

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings, read from the environment or a .env file."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Service
    APP_NAME: str = "messaging-sessions"
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # text, json

    # Protocol client
    PROTOCOL_PROVIDER: str = "stub"  # stub, evolution
    EVOLUTION_API_URL: str | None = None
    EVOLUTION_API_KEY: str | None = None
    EVOLUTION_INSTANCE_PREFIX: str = ""
    EVOLUTION_WEBHOOK_URL: str | None = None  # Where the bridge posts socket events back to us

    # Credential store
    SESSIONS_DIR: str = "wa-sessions"
    CREDENTIALS_ENCRYPTION_KEY: str | None = None

    # Webhook notifier
    NOTIFIER_URL: str | None = None
    NOTIFIER_API_KEY: str | None = None
    NOTIFIER_TIMEOUT: float = 10.0

    # Message cache
    MESSAGE_CACHE_CAPACITY: int = 1000
    MESSAGE_CACHE_EVICT_FRACTION: float = 0.2
    RESEND_PREFIX_MATCH: bool = False

    # Connection lifecycle
    INIT_MAX_ATTEMPTS: int = 3
    INIT_RETRY_DELAY: float = 3.0
    WATCHDOG_TIMEOUT: float = 60.0

    # Reconnection
    RECONNECT_DROP_DELAY: float = 1.0
    RECONNECT_DELAY: float = 3.0
    RECONNECT_BACKOFF: float = 2.0
    RECONNECT_MAX_DELAY: float = 60.0
    RECONNECT_MAX_ATTEMPTS: int = 10

    # Outbound dispatch
    SEND_MIN_INTERVAL: float = 1.5
    DELIVERY_TIMEOUT: float = 5.0
    DELIVERY_RECORD_TTL: float = 3600.0
    DELIVERY_RECORD_LIMIT: int = 10000
    DEFAULT_COUNTRY_PREFIX: str | None = None


@functools.lru_cache()
def get_settings() -> Settings:
    """Get settings (cached)."""
    return Settings()
