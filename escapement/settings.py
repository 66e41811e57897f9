"""
Escapement Settings - Configuration management using Pydantic Settings.

Loads configuration from environment variables and .env files.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EscapementSettings(BaseSettings):
    """
    Escapement configuration settings.

    Settings are loaded from:
    1. Environment variables (highest priority)
    2. .env file in current directory
    3. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_prefix="ESC_",  # All Escapement env vars must start with ESC_
    )

    # State Configuration
    state_file: Path = Field(
        default=Path(".escapement/state.json"),
        description="Path of the state document (env: ESC_STATE_FILE)",
    )

    lock_file: Path | None = Field(
        default=None,
        description="Path of the lock record, defaults to <state_file>.lock (env: ESC_LOCK_FILE)",
    )

    backup_dir: Path | None = Field(
        default=None,
        description="Directory for state snapshots taken before apply (env: ESC_BACKUP_DIR)",
    )

    # Execution Configuration
    max_workers: int = Field(
        default=4,
        ge=1,
        description="Maximum provider calls running at once (env: ESC_MAX_WORKERS)",
    )

    provider_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Timeout in seconds for a single provider call (env: ESC_PROVIDER_TIMEOUT)",
    )

    retry_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts for calls failing with a retryable error (env: ESC_RETRY_MAX_ATTEMPTS)",
    )

    retry_base_delay: float = Field(
        default=1.0,
        ge=0,
        description="First backoff delay in seconds, doubled per attempt (env: ESC_RETRY_BASE_DELAY)",
    )

    retry_max_delay: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound for a single backoff delay (env: ESC_RETRY_MAX_DELAY)",
    )

    # Lock Configuration
    lock_stale_after: float = Field(
        default=120.0,
        gt=0,
        description="Seconds without heartbeat before a lock may be broken (env: ESC_LOCK_STALE_AFTER)",
    )

    heartbeat_interval: float = Field(
        default=15.0,
        gt=0,
        description="Seconds between lock heartbeats during apply (env: ESC_HEARTBEAT_INTERVAL)",
    )

    owner_id: str | None = Field(
        default=None,
        description="Lock owner identity, defaults to user@host:pid (env: ESC_OWNER_ID)",
    )

    # Drift Configuration
    refresh_before_apply: bool = Field(
        default=False,
        description="Read remote state and record drift before planning an apply (env: ESC_REFRESH_BEFORE_APPLY)",
    )

    # Provider Configuration
    provider_factory: str | None = Field(
        default=None,
        description="'module:callable' returning a ProviderRegistry (env: ESC_PROVIDER_FACTORY)",
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR) (env: ESC_LOG_LEVEL)",
    )

    @property
    def resolved_lock_file(self) -> Path:
        return self.lock_file or self.state_file.with_name(self.state_file.name + ".lock")

    @property
    def resolved_backup_dir(self) -> Path:
        return self.backup_dir or self.state_file.parent / "backups"


# Global settings instance
_settings: EscapementSettings | None = None


def get_settings() -> EscapementSettings:
    """
    Get the global settings instance.

    Creates the settings instance on first call, then returns cached instance.

    Returns:
        EscapementSettings instance
    """
    global _settings
    if _settings is None:
        _settings = EscapementSettings()
    return _settings


def reload_settings() -> EscapementSettings:
    """
    Reload settings from environment/files.

    Useful for testing or when .env file changes.

    Returns:
        Fresh EscapementSettings instance
    """
    global _settings
    _settings = EscapementSettings()
    return _settings
