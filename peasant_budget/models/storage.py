"""
Storage State Models

Observable state shared between providers, the orchestrator and the UI:
sync status, static provider metadata, signed-in identity and
encryption state. None of these are persisted.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from peasant_budget.models.budget import BudgetDataEnvelope, utcnow


class SyncState(str, Enum):
    """
    Last known outcome of persistence operations.

    IDLE is the initial and post-deletion state.
    ERROR and OFFLINE are recoverable by an explicit re-sync.
    """
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    OFFLINE = "offline"


class SyncStatus(BaseModel):
    """Snapshot of a provider's sync state."""

    state: SyncState = SyncState.IDLE
    last_synced_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def transition(
        self,
        state: SyncState,
        error_message: Optional[str] = None,
    ) -> "SyncStatus":
        """Next status; lastSyncedAt only moves on a successful sync."""
        return SyncStatus(
            state=state,
            last_synced_at=utcnow() if state == SyncState.SYNCED else self.last_synced_at,
            error_message=error_message,
        )


class ProviderDescriptor(BaseModel):
    """Static metadata describing a storage backend."""

    id: str
    name: str
    description: str = ""
    icon: str = ""
    requires_auth: bool
    supports_sync: bool
    supports_encryption: bool
    encryption_enabled: bool = False


class AvailableProvider(ProviderDescriptor):
    """A registered provider together with its current availability."""

    available: bool


class ProviderIdentity(BaseModel):
    """The signed-in user of a cloud provider."""

    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = None


class EncryptionState(BaseModel):
    """
    Encryption state of the local provider.

    The passphrase itself is held in memory by the provider only;
    has_passphrase is False after every restart and the user must be
    prompted again.
    """

    enabled: bool
    salt_present: bool
    has_passphrase: bool = False


class StorageState(BaseModel):
    """Snapshot of the orchestrator's state published to subscribers."""

    provider_id: Optional[str] = None
    envelope: Optional[BudgetDataEnvelope] = None
    is_loading: bool = False
    last_error: Optional[str] = None
    sync_status: SyncStatus = Field(default_factory=SyncStatus)
    identity: Optional[ProviderIdentity] = None
