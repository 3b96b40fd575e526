"""
Storage Orchestrator for Peasant Budget

This module ties the providers together and defines the flows for:
1. Provider selection (startup or explicit switch) and loading
2. Mutations of the in-memory envelope with scheduled persistence
3. Export / import of the full envelope

DESIGN DECISION: The orchestrator enforces the boundaries:
- The in-memory envelope is canonical and is never cleared by a failed write
- A failed load never turns into an empty envelope that could be saved over real data
- At most one save is in flight at any time
- Switching providers never silently overwrites data the destination already holds

Persistence scheduling:
    mutation --> pending envelope --debounce--> save()
A new mutation replaces the pending envelope and restarts the single
timer, so a burst of mutations produces exactly one write. Providers that
require authentication skip the debounce and are written immediately.
"""

import asyncio
import json
from datetime import date
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union
from uuid import uuid4

from peasant_budget.config import OrchestratorSettings, Settings, get_settings
from peasant_budget.errors import (
    DataNotLoadedError,
    DataValidationError,
    EncryptionUnsupportedError,
    ProviderNotFoundError,
    StorageError,
)
from peasant_budget.log import get_logger
from peasant_budget.models.budget import (
    BudgetDataEnvelope,
    Transaction,
    create_budget_data,
    migrate_budget_data,
)
from peasant_budget.models.storage import (
    AvailableProvider,
    ProviderIdentity,
    StorageState,
    SyncState,
    SyncStatus,
)
from peasant_budget.services.encryption import EncryptionService
from peasant_budget.services.kvstore import KeyValueStore, SQLiteKeyValueStore
from peasant_budget.services.storage import (
    GoogleDriveProvider,
    LocalStorageProvider,
    ProviderRegistry,
    StorageProvider,
)


logger = get_logger(__name__)

StateListener = Callable[[StorageState], None]
TransactionInput = Union[Transaction, dict[str, Any]]


def _to_transaction(data: TransactionInput) -> Transaction:
    if isinstance(data, Transaction):
        return data
    if not data.get("id"):
        data = {**data, "id": uuid4().hex}
    return Transaction.model_validate(data)


class StorageOrchestrator:
    """
    Owns the active provider and the canonical in-memory envelope.

    Mutators are synchronous and must be called from a running event
    loop; the writes they schedule happen in the background. Call
    flush() to wait for them.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        preferences: KeyValueStore,
        settings: Optional[OrchestratorSettings] = None,
    ):
        self._registry = registry
        self._preferences = preferences
        self._settings = settings or get_settings().orchestrator

        self._provider: Optional[StorageProvider] = None
        self._provider_id: Optional[str] = None
        self._envelope: Optional[BudgetDataEnvelope] = None
        self._is_loading = False
        self._last_error: Optional[str] = None
        self._sync_status = SyncStatus()
        self._identity: Optional[ProviderIdentity] = None

        self._listeners: set[StateListener] = set()
        self._provider_subscriptions: list[Callable[[], None]] = []

        # Debounced persistence: one pending envelope, one timer
        self._pending: Optional[BudgetDataEnvelope] = None
        # Bumped whenever the in-memory envelope is changed by the caller
        self._local_changes = 0
        self._save_timer: Optional[asyncio.TimerHandle] = None
        self._write_lock = asyncio.Lock()
        self._background: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def provider_id(self) -> Optional[str]:
        return self._provider_id

    @property
    def active_provider(self) -> Optional[StorageProvider]:
        return self._provider

    @property
    def envelope(self) -> Optional[BudgetDataEnvelope]:
        return self._envelope

    @property
    def has_pending_write(self) -> bool:
        return self._pending is not None or self._save_timer is not None

    def get_state(self) -> StorageState:
        return StorageState(
            provider_id=self._provider_id,
            envelope=self._envelope,
            is_loading=self._is_loading,
            last_error=self._last_error,
            sync_status=self._sync_status,
            identity=self._identity,
        )

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Subscribe to state snapshots.

        Returns:
            Unsubscribe function
        """
        self._listeners.add(listener)

        def unsubscribe() -> None:
            self._listeners.discard(listener)

        return unsubscribe

    def _publish(self) -> None:
        state = self.get_state()
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("state_listener_failed")

    def _set_error(self, message: Optional[str]) -> None:
        self._last_error = message
        self._publish()

    @staticmethod
    def _provider_error(provider: StorageProvider, fallback: str) -> str:
        error = provider.last_error
        return str(error) if error else fallback

    # -------------------------------------------------------------------------
    # Provider selection
    # -------------------------------------------------------------------------

    def _get_provider(self, provider_id: str) -> StorageProvider:
        provider = self._registry.get(provider_id)
        if provider is None:
            raise ProviderNotFoundError(f"Unknown storage provider: {provider_id}")
        return provider

    async def _prepare(self, provider: StorageProvider, interactive: bool) -> bool:
        """Availability and authentication checks before a provider is used."""
        if not await provider.is_available():
            self._last_error = f"Storage provider '{provider.provider_id}' is not available"
            return False

        if not provider.get_descriptor().requires_auth:
            return True
        if await provider.is_authenticated():
            return True
        if not interactive:
            self._last_error = f"Not signed in to '{provider.provider_id}'"
            return False
        if not await provider.authenticate():
            self._last_error = self._provider_error(provider, "Authentication failed")
            return False
        return True

    def _attach(self, provider: StorageProvider) -> None:
        self._detach()
        self._provider = provider
        self._provider_id = provider.provider_id
        self._sync_status = provider.get_sync_status()
        self._provider_subscriptions = [
            provider.on_sync_status_change(self._handle_sync_status),
            provider.on_data_invalidated(self._handle_invalidation),
        ]
        self._preferences.set(self._settings.provider_preference_key, provider.provider_id)

    def _detach(self) -> None:
        for unsubscribe in self._provider_subscriptions:
            unsubscribe()
        self._provider_subscriptions = []

    async def _load_from(self, provider: StorageProvider) -> tuple[Optional[BudgetDataEnvelope], bool]:
        """
        Load through a provider.

        Returns:
            (envelope, failed); envelope is None both when the backend is
            empty and when the load failed
        """
        if provider.supports_legacy_migration():
            await provider.migrate_legacy_data()

        envelope = await provider.load()
        failed = envelope is None and provider.get_sync_status().state in (
            SyncState.ERROR,
            SyncState.OFFLINE,
        )
        return envelope, failed

    async def start(self) -> bool:
        """
        Select the preferred provider without prompting for sign-in.

        Falls back to the default provider when the preferred one is
        unknown, unavailable or signed out.
        """
        default_id = self._settings.default_provider_id
        preferred = self._preferences.get(self._settings.provider_preference_key) or default_id
        if preferred not in self._registry:
            logger.warning("preferred_provider_unknown", provider_id=preferred)
            preferred = default_id

        selected = await self.select_provider(preferred, interactive=False)
        if selected or preferred == default_id or self._provider_id == preferred:
            return selected

        logger.info("falling_back_to_default_provider", preferred=preferred, default=default_id)
        return await self.select_provider(default_id, interactive=False)

    async def select_provider(self, provider_id: str, interactive: bool = True) -> bool:
        """
        Make a provider active and load its data.

        No data is carried over from the previously active provider; use
        switch_provider() for that.

        Returns:
            True if the provider is active and its data loaded
        """
        provider = self._get_provider(provider_id)
        if self._provider is not None:
            await self.flush()

        self._is_loading = True
        self._publish()

        if not await self._prepare(provider, interactive):
            logger.warning("provider_selection_failed", provider_id=provider_id, error=self._last_error)
            self._is_loading = False
            self._publish()
            return False

        self._attach(provider)
        self._envelope = None
        await self._reload_active()
        logger.info("provider_selected", provider_id=provider_id, loaded=self._envelope is not None)
        return self._envelope is not None

    async def switch_provider(self, provider_id: str) -> bool:
        """
        Switch to another provider, carrying data over safely.

        The destination is loaded first. If it already holds
        transactions they win and the current data is left where it is.
        Only when the destination is empty is the current data written
        to it.

        Returns:
            True if the switch happened
        """
        if provider_id == self._provider_id:
            return True

        target = self._get_provider(provider_id)
        source_id = self._provider_id
        await self.flush()
        source_envelope = self._envelope

        self._is_loading = True
        self._publish()

        if not await self._prepare(target, interactive=True):
            logger.warning("provider_switch_failed", provider_id=provider_id, error=self._last_error)
            self._is_loading = False
            self._publish()
            return False

        destination, failed = await self._load_from(target)
        if failed:
            # The destination state is unknown; never write over it
            self._is_loading = False
            self._set_error(self._provider_error(target, "Failed to load data"))
            logger.warning("provider_switch_aborted", source=source_id, destination=provider_id)
            return False

        if destination is not None and destination.has_transactions:
            envelope = destination
            logger.info(
                "destination_data_kept",
                source=source_id,
                destination=provider_id,
                transaction_count=destination.transaction_count,
            )
        elif source_envelope is not None and source_envelope.has_transactions:
            if not await target.save(source_envelope):
                self._is_loading = False
                self._set_error(self._provider_error(target, "Failed to save data"))
                return False
            envelope = source_envelope
            logger.info(
                "data_migrated",
                source=source_id,
                destination=provider_id,
                transaction_count=source_envelope.transaction_count,
            )
        else:
            envelope = destination or create_budget_data(provider_id)

        self._attach(target)
        self._envelope = envelope
        self._identity = await target.get_identity()
        self._last_error = None
        self._is_loading = False
        self._publish()
        return True

    async def _reload_active(self) -> None:
        provider = self._provider
        changes_before = self._local_changes
        self._is_loading = True
        self._publish()

        envelope, failed = await self._load_from(provider)
        if self._local_changes != changes_before or self.has_pending_write:
            # Changed while loading; the pending write carries the newer data
            logger.info("reload_discarded_local_changes", provider_id=provider.provider_id)
        elif failed:
            # Keep whatever is in memory; mutators refuse until a load succeeds
            self._last_error = self._provider_error(provider, "Failed to load data")
        else:
            self._envelope = envelope or create_budget_data(provider.provider_id)
            self._last_error = None

        self._identity = await provider.get_identity()
        self._is_loading = False
        self._publish()

    async def reload(self) -> Optional[BudgetDataEnvelope]:
        """Re-read the active provider's data."""
        if self._provider is None:
            return None
        await self._reload_active()
        return self._envelope

    async def unlock(self, passphrase: str) -> bool:
        """
        Give the active provider the passphrase and load again.

        Returns:
            True if the data could be decrypted and loaded
        """
        provider = self._require_provider()
        if not provider.supports_encryption():
            raise EncryptionUnsupportedError(
                f"Provider '{provider.provider_id}' does not support encryption"
            )
        provider.set_passphrase(passphrase)
        self._envelope = None
        await self._reload_active()
        return self._envelope is not None

    async def sign_out(self) -> None:
        """Sign out of the active provider and fall back to the default one."""
        provider = self._require_provider()
        await self.flush()
        await provider.sign_out()
        self._identity = None
        logger.info("signed_out", provider_id=provider.provider_id)

        default_id = self._settings.default_provider_id
        if provider.provider_id != default_id:
            await self.select_provider(default_id, interactive=False)
        else:
            self._publish()

    async def get_available_providers(self) -> list[AvailableProvider]:
        return await self._registry.available_providers()

    def _require_provider(self) -> StorageProvider:
        if self._provider is None:
            raise ProviderNotFoundError("No storage provider selected")
        return self._provider

    # -------------------------------------------------------------------------
    # Provider signals
    # -------------------------------------------------------------------------

    def _handle_sync_status(self, status: SyncStatus) -> None:
        self._sync_status = status
        self._publish()

    def _handle_invalidation(self) -> None:
        if self.has_pending_write:
            logger.info("invalidation_ignored_pending_write", provider_id=self._provider_id)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("invalidation_without_event_loop", provider_id=self._provider_id)
            return
        logger.info("reloading_after_invalidation", provider_id=self._provider_id)
        self._track(loop.create_task(self.reload()))

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # -------------------------------------------------------------------------
    # Persistence scheduling
    # -------------------------------------------------------------------------

    def _requires_immediate_save(self) -> bool:
        return self._provider is not None and self._provider.get_descriptor().requires_auth

    def _schedule_save(self, envelope: BudgetDataEnvelope) -> None:
        self._pending = envelope
        if self._save_timer is not None:
            self._save_timer.cancel()
            self._save_timer = None

        loop = asyncio.get_running_loop()
        if self._requires_immediate_save():
            self._track(loop.create_task(self._write_pending()))
            return
        self._save_timer = loop.call_later(self._settings.debounce_seconds, self._fire_save)

    def _fire_save(self) -> None:
        self._save_timer = None
        self._track(asyncio.get_running_loop().create_task(self._write_pending()))

    async def _write_pending(self) -> bool:
        async with self._write_lock:
            envelope = self._pending
            self._pending = None
            if envelope is None:
                return True

            provider = self._require_provider()
            saved = await provider.save(envelope)
            if saved:
                self._last_error = None
            else:
                self._last_error = self._provider_error(provider, "Failed to save data")
                logger.error("save_failed", provider_id=provider.provider_id, error=self._last_error)
            self._publish()
            return saved

    async def save_data(self, envelope: BudgetDataEnvelope, immediate: bool = False) -> bool:
        """
        Replace the in-memory envelope and persist it.

        Returns:
            The save result when written now; True when the write was scheduled
        """
        self._require_provider()
        self._envelope = envelope
        self._local_changes += 1
        self._publish()

        if immediate:
            if self._save_timer is not None:
                self._save_timer.cancel()
                self._save_timer = None
            self._pending = envelope
            return await self._write_pending()

        self._schedule_save(envelope)
        return True

    async def flush(self) -> bool:
        """Write any pending envelope now and wait for in-flight writes."""
        if self._save_timer is not None:
            self._save_timer.cancel()
            self._save_timer = None

        saved = await self._write_pending()
        current = asyncio.current_task()
        waiting = [task for task in self._background if task is not current]
        if waiting:
            await asyncio.gather(*waiting)
        return saved

    async def force_sync(self) -> bool:
        """Write the current envelope now, bypassing the debounce."""
        return await self.save_data(self._require_envelope(), immediate=True)

    # -------------------------------------------------------------------------
    # Mutators
    # -------------------------------------------------------------------------

    def _require_envelope(self) -> BudgetDataEnvelope:
        if self._envelope is None:
            raise DataNotLoadedError()
        return self._envelope

    def _apply(self, envelope: BudgetDataEnvelope) -> None:
        self._envelope = envelope
        self._local_changes += 1
        self._publish()
        self._schedule_save(envelope)

    def add_transaction(self, transaction: TransactionInput) -> Transaction:
        """Add a transaction at the top of the list (newest first)."""
        envelope = self._require_envelope()
        added = _to_transaction(transaction)
        remaining = [t for t in envelope.payload.transactions if t.id != added.id]
        self._apply(envelope.with_payload(transactions=[added, *remaining]))
        return added

    def delete_transaction(self, transaction_id: str) -> bool:
        return self.delete_transactions([transaction_id]) > 0

    def bulk_add_transactions(self, transactions: Iterable[TransactionInput]) -> int:
        """
        Add many transactions at once.

        Existing transactions with the same id are replaced. Within the
        batch the last occurrence of an id wins.

        Returns:
            Number of transactions added
        """
        envelope = self._require_envelope()
        by_id: dict[str, Transaction] = {}
        for data in transactions:
            transaction = _to_transaction(data)
            by_id.pop(transaction.id, None)
            by_id[transaction.id] = transaction

        if not by_id:
            return 0

        remaining = [t for t in envelope.payload.transactions if t.id not in by_id]
        self._apply(envelope.with_payload(transactions=[*by_id.values(), *remaining]))
        return len(by_id)

    def delete_transactions(self, transaction_ids: Iterable[str]) -> int:
        """
        Returns:
            Number of transactions removed
        """
        envelope = self._require_envelope()
        ids = set(transaction_ids)
        remaining = [t for t in envelope.payload.transactions if t.id not in ids]
        removed = envelope.transaction_count - len(remaining)
        if removed:
            self._apply(envelope.with_payload(transactions=remaining))
        return removed

    def update_transactions(self, transactions: Iterable[TransactionInput]) -> None:
        """Replace the whole transaction list."""
        envelope = self._require_envelope()
        self._apply(envelope.with_payload(
            transactions=[_to_transaction(t) for t in transactions]
        ))

    def update_settings(self, changes: dict[str, Any]) -> None:
        """Merge changes into the user settings."""
        envelope = self._require_envelope()
        self._apply(envelope.with_payload(settings={**envelope.payload.settings, **changes}))

    def update_pay_period_config(self, changes: dict[str, Any]) -> None:
        """Merge changes into the pay period configuration."""
        envelope = self._require_envelope()
        self._apply(envelope.with_payload(
            pay_period_config={**envelope.payload.pay_period_config, **changes}
        ))

    # -------------------------------------------------------------------------
    # Export / import
    # -------------------------------------------------------------------------

    def export_data(self) -> str:
        """The full envelope as a JSON document."""
        return self._require_envelope().to_json(indent=2)

    def export_to_file(self, directory: Union[str, Path]) -> Path:
        """
        Write the export into directory.

        Returns:
            Path of the written file
        """
        content = self.export_data()
        path = Path(directory) / f"{self._settings.export_file_prefix}-{date.today().isoformat()}.json"
        path.write_text(content, encoding="utf-8")
        logger.info("data_exported", path=str(path), transaction_count=self._envelope.transaction_count)
        return path

    async def import_data(self, text: str) -> bool:
        """
        Replace all current data with an exported envelope.

        The envelope is migrated if it's in an older format and written
        through the active provider immediately.

        Raises:
            DataValidationError: If the text isn't valid budget data

        Returns:
            True if the imported data was saved
        """
        provider = self._require_provider()
        try:
            envelope = migrate_budget_data(json.loads(text))
        except ValueError as e:
            raise DataValidationError(f"Invalid import file: {e}") from e

        logger.info(
            "data_imported",
            provider_id=provider.provider_id,
            format_version=envelope.format_version,
            transaction_count=envelope.transaction_count,
        )
        return await self.save_data(envelope, immediate=True)

    async def import_from_file(self, path: Union[str, Path]) -> bool:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise DataValidationError(f"Could not read import file: {e}") from e
        return await self.import_data(text)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        """Flush pending writes and stop listening to the active provider."""
        try:
            await self.flush()
        except StorageError as e:
            logger.error("flush_on_close_failed", error=str(e))
        self._detach()
        self._listeners.clear()


def create_storage(
    settings: Optional[Settings] = None,
    store: Optional[KeyValueStore] = None,
    **drive_options: Any,
) -> StorageOrchestrator:
    """
    Factory function to create the storage components.

    Args:
        settings: Application settings; defaults to get_settings()
        store: The on-device key-value store. Defaults to the SQLite
               store at LocalStorageSettings.database_path.
        **drive_options: Passed on to GoogleDriveProvider (consent_flow,
                         session_factory, clock)

    Returns:
        An orchestrator with the local and Google Drive providers
        registered. Call start() on it from a running event loop.
    """
    settings = settings or get_settings()
    local_settings = settings.local
    drive_settings = settings.google_drive

    if store is None:
        store = SQLiteKeyValueStore(
            local_settings.database_path,
            quota_bytes=local_settings.quota_bytes,
        )

    local = LocalStorageProvider(
        store,
        encryption=EncryptionService(store, settings.encryption),
        settings=local_settings,
    )
    drive = GoogleDriveProvider(
        settings=drive_settings,
        token_store=store if drive_settings.remember_session else None,
        **drive_options,
    )

    registry = ProviderRegistry([local, drive])
    return StorageOrchestrator(registry, store, settings.orchestrator)


async def open_storage(
    settings: Optional[Settings] = None,
    **drive_options: Any,
) -> tuple[StorageOrchestrator, SQLiteKeyValueStore]:
    """
    Create the storage components on the SQLite store and start them.

    Watches the store for writes from other processes and selects the
    preferred provider. The caller owns the returned store: stop
    watching and close it after closing the orchestrator.
    """
    settings = settings or get_settings()
    local_settings = settings.local
    store = SQLiteKeyValueStore(
        local_settings.database_path,
        quota_bytes=local_settings.quota_bytes,
    )
    store.start_watching(local_settings.change_poll_interval_seconds)

    orchestrator = create_storage(settings, store=store, **drive_options)
    await orchestrator.start()
    return orchestrator, store
