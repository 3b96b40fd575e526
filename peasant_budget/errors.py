"""
Storage Error Taxonomy

Every error carries a message that is safe to show to the user.

Providers never let these escape load()/save() - they are recorded as
the provider's last_error and reflected in its sync status. They DO
escape explicit user actions (enabling encryption, importing a file,
authenticating) so the caller can prompt for corrective input.
"""


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class ProviderNotFoundError(StorageError):
    """No provider is registered under the requested id."""
    pass


class ProviderUnavailableError(StorageError):
    """Provider is missing configuration or a platform capability."""
    pass


class AuthenticationFailedError(StorageError):
    """User denied consent or the authentication flow failed."""
    pass


class TokenExpiredError(AuthenticationFailedError):
    """The held access token is no longer accepted; re-consent is needed."""
    pass


class PassphraseError(StorageError):
    """
    Base for passphrase problems.

    Callers should treat every subclass the same way: prompt for the
    passphrase and retry.
    """
    pass


class PassphraseRequiredError(PassphraseError):
    """Encrypted data was found but no passphrase is held in memory."""

    def __init__(self, message: str = "Passphrase required to decrypt data"):
        super().__init__(message)


class DecryptionFailedError(PassphraseError):
    """
    Authenticated decryption failed.

    Deliberately does not say whether the passphrase was wrong or the
    ciphertext was corrupted.
    """

    def __init__(self, message: str = "Invalid passphrase or corrupted data"):
        super().__init__(message)


class EncryptionUnsupportedError(StorageError):
    """The platform lacks the required cryptographic primitive."""
    pass


class QuotaExceededError(StorageError):
    """The on-device store is full."""

    def __init__(
        self,
        message: str = (
            "Storage quota exceeded. Please export your data and clear old entries."
        ),
    ):
        super().__init__(message)


class RemoteStorageError(StorageError):
    """The remote backend rejected or failed a request."""
    pass


class TransientRemoteError(RemoteStorageError):
    """A remote failure worth retrying (rate limits, 5xx, dropped connections)."""
    pass


class RemoteUnreachableError(TransientRemoteError):
    """The remote backend could not be reached at all."""
    pass


class DataValidationError(StorageError):
    """User-supplied input failed validation."""
    pass


class WeakPassphraseError(DataValidationError):
    """Passphrase does not meet the policy."""
    pass


class DataNotLoadedError(StorageError):
    """A mutation was attempted before any budget data was loaded."""

    def __init__(self, message: str = "Budget data has not been loaded yet"):
        super().__init__(message)
