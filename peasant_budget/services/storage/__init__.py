"""
Storage Services Package

Provides the provider contract and its concrete backends.
Currently implements the on-device store and Google Drive, but designed
so that further backends only need to implement StorageProvider.
"""

from peasant_budget.services.storage.interface import (
    InvalidationListener,
    StorageProvider,
    SyncStatusListener,
)
from peasant_budget.services.storage.registry import ProviderRegistry
from peasant_budget.services.storage.local import LocalStorageProvider
from peasant_budget.services.storage.google_drive import (
    GoogleDriveClient,
    GoogleDriveProvider,
)

__all__ = [
    # Interface
    "InvalidationListener",
    "StorageProvider",
    "SyncStatusListener",
    "ProviderRegistry",
    # Local implementation
    "LocalStorageProvider",
    # Google Drive implementation
    "GoogleDriveClient",
    "GoogleDriveProvider",
]
