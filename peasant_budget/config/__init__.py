"""Configuration package."""

from peasant_budget.config.settings import (
    EncryptionSettings,
    GoogleDriveSettings,
    LocalStorageSettings,
    OrchestratorSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "EncryptionSettings",
    "GoogleDriveSettings",
    "LocalStorageSettings",
    "OrchestratorSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]
