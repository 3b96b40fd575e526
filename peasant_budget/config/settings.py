"""
Configuration Management for Peasant Budget storage

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see which backends can be enabled and
ensures all configuration is validated at startup.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LocalStorageSettings(BaseSettings):
    """On-device key-value store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PEASANT_LOCAL_",
        extra="ignore"
    )

    database_path: Path = Field(
        default=Path.home() / ".peasant-budget" / "storage.db",
        description="SQLite file backing the on-device key-value store"
    )
    data_key: str = Field(
        default="peasant-budget-data",
        description="Key holding the serialized budget envelope"
    )
    quota_bytes: int = Field(
        default=5 * 1024 * 1024,
        ge=1024,
        description="Maximum bytes the store accepts (like a browser's local storage)"
    )

    # Keys written by versions that predate the envelope format
    legacy_transactions_key: str = Field(default="peasant-budget-transactions")
    legacy_pay_type_key: str = Field(default="peasant-budget-pay-type")
    legacy_pay_config_key: str = Field(default="peasant-budget-pay-config")

    change_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="How often to look for writes made by other processes"
    )


class EncryptionSettings(BaseSettings):
    """Encryption-at-rest configuration for the local provider."""

    model_config = SettingsConfigDict(
        env_prefix="PEASANT_ENCRYPTION_",
        extra="ignore"
    )

    kdf_iterations: int = Field(
        default=100_000,
        ge=1_000,
        description="PBKDF2 iterations"
    )
    key_length_bytes: int = Field(
        default=32,
        description="Derived key length (32 bytes = AES-256)"
    )
    nonce_length_bytes: int = Field(
        default=12,
        description="AES-GCM nonce length (96 bits)"
    )
    salt_length_bytes: int = Field(
        default=16,
        ge=16,
        description="Salt length (128 bits)"
    )
    min_passphrase_length: int = Field(default=8, ge=1)
    max_passphrase_length: int = Field(default=128, ge=8)

    salt_key: str = Field(default="peasant-budget-encryption-salt")
    flag_key: str = Field(default="peasant-budget-encryption-check")

    @field_validator('key_length_bytes')
    @classmethod
    def validate_key_length(cls, v: int) -> int:
        """AES accepts 128, 192 or 256 bit keys only."""
        if v not in (16, 24, 32):
            raise ValueError("key_length_bytes must be 16, 24 or 32")
        return v


class GoogleDriveSettings(BaseSettings):
    """Google Drive remote storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_DRIVE_",
        extra="ignore"
    )

    # Optional: without a client id the provider reports itself unavailable
    client_id: Optional[str] = Field(
        default=None,
        description="OAuth 2.0 client id registered for this application"
    )
    client_secret: Optional[str] = Field(
        default=None,
        description="OAuth 2.0 client secret (installed-app clients)"
    )
    file_name: str = Field(
        default="peasant-budget-data.json",
        description="Name of the single file holding the budget envelope"
    )

    remember_session: bool = Field(
        default=False,
        description="Restore a stored access token for a full session instead of a minute"
    )
    session_max_age_seconds: int = Field(default=55 * 60, ge=1)
    short_session_max_age_seconds: int = Field(default=60, ge=1)

    request_timeout_seconds: float = Field(default=20.0, gt=0)

    token_key: str = Field(default="google_access_token")
    token_time_key: str = Field(default="google_token_time")

    @property
    def token_max_age_seconds(self) -> int:
        """How old a stored token may be and still be restored after a restart."""
        if self.remember_session:
            return self.session_max_age_seconds
        return self.short_session_max_age_seconds


class OrchestratorSettings(BaseSettings):
    """Storage orchestrator behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="PEASANT_STORAGE_",
        extra="ignore"
    )

    debounce_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Quiet period before a coalesced write is issued"
    )
    default_provider_id: str = Field(default="local")
    provider_preference_key: str = Field(default="peasant-budget-storage-provider")
    export_file_prefix: str = Field(default="peasant-budget-export")


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def local(self) -> LocalStorageSettings:
        return LocalStorageSettings()

    @property
    def encryption(self) -> EncryptionSettings:
        return EncryptionSettings()

    @property
    def google_drive(self) -> GoogleDriveSettings:
        return GoogleDriveSettings()

    @property
    def orchestrator(self) -> OrchestratorSettings:
        return OrchestratorSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("local", "encryption", "google_drive", "orchestrator"):
        try:
            getattr(settings, name)
            results[name] = True
        except ValueError as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
