"""Library settings and configuration.

Settings are loaded from environment variables (or a ``.env`` file) with
defaults suitable for a single signed-in device. Components accept an
explicit :class:`Settings` instance so tests can run isolated copies.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Sync engine settings loaded from environment variables."""

    # Local store
    database_url: str = Field(
        default="sqlite+aiosqlite:///./chat_sync.db",
        alias="CHAT_SYNC_DATABASE_URL",
    )
    sql_debug: bool = Field(default=False, alias="CHAT_SYNC_SQL_DEBUG")

    # Remote store (Firebase Realtime Database)
    firebase_database_url: str | None = Field(default=None, alias="FIREBASE_DATABASE_URL")
    firebase_auth_token: str | None = Field(default=None, alias="FIREBASE_AUTH_TOKEN")
    remote_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        alias="CHAT_SYNC_REMOTE_TIMEOUT_SECONDS",
    )
    remote_stream_retry_seconds: float = Field(
        default=2.0,
        ge=0,
        alias="CHAT_SYNC_REMOTE_STREAM_RETRY_SECONDS",
    )
    circuit_failure_threshold: int = Field(
        default=5,
        ge=1,
        alias="CHAT_SYNC_CIRCUIT_FAILURE_THRESHOLD",
    )
    circuit_recovery_seconds: float = Field(
        default=30.0,
        ge=0,
        alias="CHAT_SYNC_CIRCUIT_RECOVERY_SECONDS",
    )

    # Sync behaviour
    initial_sync_message_limit: int = Field(
        default=50,
        ge=0,
        alias="CHAT_SYNC_INITIAL_SYNC_MESSAGE_LIMIT",
    )
    outbound_max_attempts: int = Field(
        default=5,
        ge=1,
        alias="CHAT_SYNC_OUTBOUND_MAX_ATTEMPTS",
    )
    connectivity_debounce_seconds: float = Field(
        default=0.0,
        ge=0,
        alias="CHAT_SYNC_CONNECTIVITY_DEBOUNCE_SECONDS",
    )

    log_level: str = Field(default="INFO", alias="CHAT_SYNC_LOG_LEVEL")

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def remote_enabled(self) -> bool:
        """Return True when a Firebase database URL is configured."""
        return bool(self.firebase_database_url)


settings = Settings()
