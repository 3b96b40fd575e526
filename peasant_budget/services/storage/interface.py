"""
Abstract Storage Provider Interface

DESIGN DECISION: Every storage backend implements this one contract.
This allows us to:
1. Store the same budget data on this device or in the user's own cloud
2. Use in-memory backends for testing
3. Migrate data between backends without the orchestrator knowing details
4. Keep business logic decoupled from where the bytes end up

Failure policy: load() and save() NEVER raise for backend failures.
They return None / False, move the sync status to ERROR (or OFFLINE)
with a human-readable message, and record the exception in last_error
so the orchestrator can keep the UI responsive.

Optional behaviour (encryption, legacy migration) is declared by
explicit capability queries rather than by probing for methods.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from peasant_budget.errors import EncryptionUnsupportedError, StorageError
from peasant_budget.log import get_logger
from peasant_budget.models.budget import BudgetDataEnvelope
from peasant_budget.models.storage import (
    EncryptionState,
    ProviderDescriptor,
    ProviderIdentity,
    SyncState,
    SyncStatus,
)


SyncStatusListener = Callable[[SyncStatus], None]
InvalidationListener = Callable[[], None]


class StorageProvider(ABC):
    """
    Abstract base class for storage providers.

    Subclasses must call super().__init__() so the shared sync-status
    and invalidation machinery is set up.
    """

    def __init__(self):
        self._sync_status = SyncStatus()
        self._last_error: Optional[StorageError] = None
        self._status_listeners: set[SyncStatusListener] = set()
        self._invalidation_listeners: set[InvalidationListener] = set()
        self._logger = get_logger(type(self).__name__)

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    @property
    @abstractmethod
    def provider_id(self) -> str:
        pass

    @abstractmethod
    def get_descriptor(self) -> ProviderDescriptor:
        """Static metadata about this provider."""
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """
        Check if the provider is configured and usable on this platform.

        Must return False rather than raise when configuration is missing.
        """
        pass

    @abstractmethod
    async def is_authenticated(self) -> bool:
        """Check if a usable credential is held (always True without auth)."""
        pass

    @abstractmethod
    async def authenticate(self) -> bool:
        """
        Authenticate with the provider, waiting on user consent if needed.

        Returns:
            True if authentication succeeded
        """
        pass

    @abstractmethod
    async def sign_out(self) -> None:
        """Drop credentials and any cached remote identifiers."""
        pass

    @abstractmethod
    async def get_identity(self) -> Optional[ProviderIdentity]:
        """The signed-in user, if the provider has one."""
        pass

    @abstractmethod
    async def load(self) -> Optional[BudgetDataEnvelope]:
        """
        Load budget data.

        Returns:
            The migrated envelope, or None if no data exists yet OR the
            load failed (check get_sync_status() / last_error to tell
            the two apart)
        """
        pass

    @abstractmethod
    async def save(self, envelope: BudgetDataEnvelope) -> bool:
        """
        Persist an envelope, replacing what the backend holds.

        Returns:
            True if saved successfully
        """
        pass

    @abstractmethod
    async def delete(self) -> bool:
        """
        Delete all budget data held by this provider.

        Returns:
            True if deleted (or there was nothing to delete)
        """
        pass

    # -------------------------------------------------------------------------
    # Capabilities
    # -------------------------------------------------------------------------

    def supports_encryption(self) -> bool:
        return False

    def supports_legacy_migration(self) -> bool:
        return False

    def set_passphrase(self, passphrase: str) -> None:
        raise EncryptionUnsupportedError(
            f"Provider '{self.provider_id}' does not support encryption"
        )

    def get_encryption_state(self) -> Optional[EncryptionState]:
        return None

    async def migrate_legacy_data(self) -> bool:
        return False

    # -------------------------------------------------------------------------
    # Sync status
    # -------------------------------------------------------------------------

    def get_sync_status(self) -> SyncStatus:
        return self._sync_status.model_copy()

    @property
    def last_error(self) -> Optional[StorageError]:
        """The failure behind the current ERROR/OFFLINE status, if any."""
        return self._last_error

    def on_sync_status_change(self, listener: SyncStatusListener) -> Callable[[], None]:
        """
        Subscribe to sync status changes.

        Returns:
            Unsubscribe function
        """
        self._status_listeners.add(listener)

        def unsubscribe() -> None:
            self._status_listeners.discard(listener)

        return unsubscribe

    def _update_sync_status(
        self,
        state: SyncState,
        error: Optional[StorageError] = None,
    ) -> None:
        self._last_error = error
        self._sync_status = self._sync_status.transition(
            state,
            error_message=str(error) if error else None,
        )
        self._notify_status_listeners()

    def _notify_status_listeners(self) -> None:
        status = self.get_sync_status()
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                self._logger.exception("sync_status_listener_failed")

    # -------------------------------------------------------------------------
    # Invalidation (data changed elsewhere; re-read)
    # -------------------------------------------------------------------------

    def on_data_invalidated(self, listener: InvalidationListener) -> Callable[[], None]:
        """
        Subscribe to "the stored data changed outside this context" signals.

        Providers without a cross-context channel never fire it.
        """
        self._invalidation_listeners.add(listener)

        def unsubscribe() -> None:
            self._invalidation_listeners.discard(listener)

        return unsubscribe

    def _publish_invalidation(self) -> None:
        for listener in list(self._invalidation_listeners):
            try:
                listener()
            except Exception:
                self._logger.exception("invalidation_listener_failed")
