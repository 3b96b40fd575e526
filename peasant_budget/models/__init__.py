"""
Data Models Package

This package contains all Pydantic models used by the storage subsystem.
All data flowing through a provider must conform to these schemas.
"""

from peasant_budget.models.budget import (
    CURRENT_FORMAT_VERSION,
    MIGRATED_PROVIDER_ID,
    BudgetDataEnvelope,
    BudgetPayload,
    Transaction,
    TransactionKind,
    create_budget_data,
    migrate_budget_data,
)
from peasant_budget.models.storage import (
    AvailableProvider,
    EncryptionState,
    ProviderDescriptor,
    ProviderIdentity,
    StorageState,
    SyncState,
    SyncStatus,
)

__all__ = [
    # Budget models
    "CURRENT_FORMAT_VERSION",
    "MIGRATED_PROVIDER_ID",
    "BudgetDataEnvelope",
    "BudgetPayload",
    "Transaction",
    "TransactionKind",
    "create_budget_data",
    "migrate_budget_data",
    # Storage state models
    "AvailableProvider",
    "EncryptionState",
    "ProviderDescriptor",
    "ProviderIdentity",
    "StorageState",
    "SyncState",
    "SyncStatus",
]
