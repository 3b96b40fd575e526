"""
Local Storage Provider

Stores budget data in the on-device key-value store with optional
encryption. This is the baseline/fallback provider that works offline.

Features:
- Instant read/write (no network latency)
- No authentication required
- Cross-context change notification (other tabs/processes on this profile)
- AES-256-GCM encryption at rest (optional, user-controlled)
- One-time migration of pre-envelope legacy keys

Limitations:
- Data is device specific
- Store quota (5 MiB by default)
- If the passphrase is lost, encrypted data cannot be recovered

The store is shared with other contexts, so this provider only ever
overwrites whole keys. It never does read-modify-write across the store.
"""

import json
from typing import Any, Optional

from peasant_budget.config import EncryptionSettings, LocalStorageSettings, get_settings
from peasant_budget.errors import (
    DataValidationError,
    EncryptionUnsupportedError,
    PassphraseRequiredError,
    StorageError,
    WeakPassphraseError,
)
from peasant_budget.models.budget import BudgetDataEnvelope, migrate_budget_data
from peasant_budget.models.storage import (
    EncryptionState,
    ProviderDescriptor,
    ProviderIdentity,
    SyncState,
)
from peasant_budget.services.encryption import (
    EncryptionService,
    is_crypto_available,
    validate_passphrase,
)
from peasant_budget.services.kvstore import KeyValueStore, StorageChangeEvent
from peasant_budget.services.storage.interface import StorageProvider


PROVIDER_ID = "local"


class LocalStorageProvider(StorageProvider):
    """Storage provider over the on-device key-value store."""

    def __init__(
        self,
        store: KeyValueStore,
        encryption: Optional[EncryptionService] = None,
        settings: Optional[LocalStorageSettings] = None,
    ):
        super().__init__()
        self._store = store
        self._settings = settings or get_settings().local
        self._encryption = encryption or EncryptionService(store)

        # Held in memory only, never persisted
        self._passphrase: Optional[str] = None

        self._unsubscribe_store = store.subscribe(self._handle_storage_event)

        self._logger.info(
            "provider_initialized",
            encryption_enabled=self.is_encrypted(),
            crypto_available=is_crypto_available(),
        )

    @property
    def provider_id(self) -> str:
        return PROVIDER_ID

    # -------------------------------------------------------------------------
    # Passphrase & encryption
    # -------------------------------------------------------------------------

    def supports_encryption(self) -> bool:
        return True

    def set_passphrase(self, passphrase: str) -> None:
        """Must be called before load/save when encryption is enabled."""
        self._passphrase = passphrase
        self._logger.info("passphrase_set", has_passphrase=bool(passphrase))

    def clear_passphrase(self) -> None:
        self._passphrase = None
        self._logger.info("passphrase_cleared")

    def is_encrypted(self) -> bool:
        # Read from the store every time: another context may have toggled it
        return self._encryption.is_enabled()

    def get_encryption_state(self) -> EncryptionState:
        return EncryptionState(
            enabled=self.is_encrypted(),
            salt_present=self._encryption.has_salt(),
            has_passphrase=bool(self._passphrase),
        )

    async def enable_encryption(self, passphrase: str) -> bool:
        """
        Turn on encryption and re-encrypt existing data in place.

        All-or-nothing: on any failure the store is restored to its
        previous plaintext state and the error is raised.

        Raises:
            WeakPassphraseError: Passphrase fails the policy
            EncryptionUnsupportedError: AES-GCM unavailable
            DataValidationError: Encryption already enabled, or stored data corrupt
            StorageError: Writing the encrypted data failed
        """
        validation = validate_passphrase(passphrase, self._encryption_settings)
        if not validation.valid:
            self._logger.warning("passphrase_validation_failed", errors=validation.errors)
            raise WeakPassphraseError(", ".join(validation.errors))

        if not is_crypto_available():
            raise EncryptionUnsupportedError("Encryption is not available on this platform")

        if self.is_encrypted():
            raise DataValidationError("Encryption is already enabled")

        data_key = self._settings.data_key
        salt_key = self._encryption_settings.salt_key
        existing = self._store.get(data_key)
        had_salt = self._store.get(salt_key) is not None

        try:
            if existing is not None:
                envelope = self._parse(existing)
                blob = await self._encryption.encrypt(
                    envelope.stamped(PROVIDER_ID).to_json(), passphrase
                )
                self._store.set(data_key, blob)
            self._encryption.set_enabled()
        except Exception as e:
            self._logger.error("enable_encryption_failed", error=str(e))
            if existing is not None:
                self._store.set(data_key, existing)
            self._store.remove(self._encryption_settings.flag_key)
            if not had_salt:
                self._store.remove(salt_key)
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"Failed to enable encryption: {e}") from e

        self._passphrase = passphrase
        self._logger.info(
            "encryption_enabled",
            strength=validation.strength.value,
            reencrypted=existing is not None,
        )
        self._update_sync_status(SyncState.SYNCED)
        return True

    async def disable_encryption(self, passphrase: str) -> bool:
        """
        Decrypt existing data and store it as plaintext again.

        All-or-nothing: the encrypted data stays untouched on failure.

        Raises:
            PassphraseError: Missing or wrong passphrase
            StorageError: Writing the plaintext failed
        """
        if not self.is_encrypted():
            return True

        data_key = self._settings.data_key
        existing = self._store.get(data_key)

        plaintext = None
        if existing is not None:
            decrypted = await self._encryption.decrypt(existing, passphrase)
            plaintext = self._parse(decrypted).stamped(PROVIDER_ID).to_json()

        try:
            if plaintext is not None:
                self._store.set(data_key, plaintext)
            self._encryption.clear_settings()
        except StorageError:
            if existing is not None:
                self._store.set(data_key, existing)
            raise

        self._passphrase = None
        self._logger.info("encryption_disabled", decrypted=plaintext is not None)
        self._update_sync_status(SyncState.SYNCED)
        return True

    @property
    def _encryption_settings(self) -> EncryptionSettings:
        return self._encryption.settings

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    def get_descriptor(self) -> ProviderDescriptor:
        encrypted = self.is_encrypted()
        return ProviderDescriptor(
            id=PROVIDER_ID,
            name="Local Storage (Encrypted)" if encrypted else "Local Storage",
            description=(
                "Store data on this device with optional encryption. "
                "Works offline, but data stays on this device only."
            ),
            icon="hard-drive",
            requires_auth=False,
            supports_sync=False,
            supports_encryption=True,
            encryption_enabled=encrypted,
        )

    async def is_available(self) -> bool:
        test_key = "__storage_test__"
        try:
            self._store.set(test_key, test_key)
            self._store.remove(test_key)
            return True
        except Exception as e:
            self._logger.warning("store_unavailable", error=str(e))
            return False

    async def is_authenticated(self) -> bool:
        # The local store doesn't require authentication
        return True

    async def authenticate(self) -> bool:
        return True

    async def sign_out(self) -> None:
        pass

    async def get_identity(self) -> Optional[ProviderIdentity]:
        return None

    async def load(self) -> Optional[BudgetDataEnvelope]:
        self._update_sync_status(SyncState.SYNCING)

        try:
            stored = self._store.get(self._settings.data_key)
            if stored is None:
                self._logger.info("no_existing_data")
                self._update_sync_status(SyncState.SYNCED)
                return None

            encrypted = self.is_encrypted()
            if encrypted:
                if not self._passphrase:
                    self._logger.warning("passphrase_required")
                    raise PassphraseRequiredError()
                text = await self._encryption.decrypt(stored, self._passphrase)
            else:
                text = stored

            envelope = self._parse(text)
        except StorageError as e:
            self._logger.error("load_failed", error=str(e))
            self._update_sync_status(SyncState.ERROR, e)
            return None
        except Exception as e:
            self._logger.exception("load_failed")
            self._update_sync_status(SyncState.ERROR, StorageError(f"Failed to load data: {e}"))
            return None

        self._logger.info(
            "data_loaded",
            format_version=envelope.format_version,
            transaction_count=envelope.transaction_count,
            encrypted=encrypted,
        )
        self._update_sync_status(SyncState.SYNCED)
        return envelope

    async def save(self, envelope: BudgetDataEnvelope) -> bool:
        self._update_sync_status(SyncState.SYNCING)

        try:
            serialized = envelope.stamped(PROVIDER_ID).to_json()
            data = serialized

            encrypted = self.is_encrypted()
            if encrypted:
                # Never downgrade to plaintext while the flag is set
                if not self._passphrase:
                    raise PassphraseRequiredError()
                data = await self._encryption.encrypt(serialized, self._passphrase)

            self._store.set(self._settings.data_key, data)
        except StorageError as e:
            self._logger.error("save_failed", error=str(e))
            self._update_sync_status(SyncState.ERROR, e)
            return False
        except Exception as e:
            self._logger.exception("save_failed")
            self._update_sync_status(SyncState.ERROR, StorageError(f"Failed to save data: {e}"))
            return False

        self._logger.info(
            "data_saved",
            size=len(data),
            transaction_count=envelope.transaction_count,
            encrypted=encrypted,
        )
        self._update_sync_status(SyncState.SYNCED)
        return True

    async def delete(self) -> bool:
        try:
            self._store.remove(self._settings.data_key)
        except Exception as e:
            self._logger.error("delete_failed", error=str(e))
            self._update_sync_status(SyncState.ERROR, StorageError(f"Failed to delete data: {e}"))
            return False

        self._logger.info("data_deleted")
        self._update_sync_status(SyncState.IDLE)
        return True

    # -------------------------------------------------------------------------
    # Cross-context changes
    # -------------------------------------------------------------------------

    def _handle_storage_event(self, event: StorageChangeEvent) -> None:
        watched = (self._settings.data_key, self._encryption_settings.flag_key)
        if event.key not in watched:
            return
        self._logger.info("data_changed_in_other_context", key=event.key, origin=event.origin)
        self._update_sync_status(SyncState.SYNCED)
        self._publish_invalidation()

    def close(self) -> None:
        self._unsubscribe_store()

    # -------------------------------------------------------------------------
    # Legacy migration & diagnostics
    # -------------------------------------------------------------------------

    def supports_legacy_migration(self) -> bool:
        return True

    async def migrate_legacy_data(self) -> bool:
        """
        Migrate data from the keys used before the envelope format.

        Runs only when no envelope is stored yet. Legacy keys are left
        in place.

        Returns:
            True if migration occurred
        """
        if self._store.get(self._settings.data_key) is not None:
            return False

        old_transactions = self._store.get(self._settings.legacy_transactions_key)
        old_pay_type = self._store.get(self._settings.legacy_pay_type_key)
        old_pay_config = self._store.get(self._settings.legacy_pay_config_key)

        if not (old_transactions or old_pay_type or old_pay_config):
            return False

        self._logger.info("legacy_data_found")
        try:
            pay_period_config: dict[str, Any] = {
                "type": json.loads(old_pay_type) if old_pay_type else "bi-monthly",
            }
            if old_pay_config:
                stored_config = json.loads(old_pay_config)
                if not isinstance(stored_config, dict):
                    raise ValueError("Legacy pay period config is not an object")
                pay_period_config.update(stored_config)

            envelope = migrate_budget_data({
                "transactions": json.loads(old_transactions) if old_transactions else [],
                "settings": {},
                "payPeriodConfig": pay_period_config,
            })
        except (ValueError, TypeError) as e:
            self._logger.error("legacy_migration_failed", error=str(e))
            return False

        migrated = await self.save(envelope)
        self._logger.info(
            "legacy_migration_complete",
            succeeded=migrated,
            transaction_count=envelope.transaction_count,
        )
        return migrated

    def get_storage_info(self) -> dict[str, int]:
        """Usage of the store quota by the budget data."""
        stored = self._store.get(self._settings.data_key)
        used = len(stored.encode("utf-8")) if stored else 0
        limit = self._store.quota_bytes
        return {
            "used": used,
            "available": limit - used,
            "percentage": round(used / limit * 100),
        }

    @staticmethod
    def _parse(text: str) -> BudgetDataEnvelope:
        try:
            return migrate_budget_data(json.loads(text))
        except ValueError as e:
            raise DataValidationError(f"Stored budget data is corrupted: {e}") from e
