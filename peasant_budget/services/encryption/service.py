"""
Encryption Service for data at rest

DESIGN DECISION: AES-256-GCM authenticated encryption with a key derived
from the user's passphrase by PBKDF2-HMAC-SHA256. We use the
`cryptography` package primitives rather than any custom construction.

- Salt: generated once per device, stored base64 in the key-value store
  and reused. The salt is not secret; the derived key still varies with
  the passphrase.
- Nonce: fresh random 96 bits per encryption, prepended to the
  ciphertext. Output is base64(nonce || ciphertext || tag), so a blob
  plus the passphrase is all decryption needs.
- Failure: a wrong passphrase and tampered ciphertext produce the SAME
  DecryptionFailedError. The caller can't tell them apart, and neither
  can an attacker.

Key derivation is CPU-bound and runs in a worker thread.
"""

import asyncio
import base64
import binascii
import os
import time
from functools import lru_cache
from typing import Optional

from cryptography.exceptions import InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from peasant_budget.config import EncryptionSettings, get_settings
from peasant_budget.errors import (
    DecryptionFailedError,
    EncryptionUnsupportedError,
    PassphraseRequiredError,
    StorageError,
    WeakPassphraseError,
)
from peasant_budget.log import get_logger
from peasant_budget.services.kvstore import KeyValueStore


logger = get_logger(__name__)

ALGORITHM = "AES-GCM"
ENCRYPTION_FLAG_VALUE = "peasant-budget-encrypted"


@lru_cache()
def is_crypto_available() -> bool:
    """Check that the linked OpenSSL supports AES-GCM."""
    try:
        AESGCM(AESGCM.generate_key(bit_length=128)).encrypt(os.urandom(12), b"", None)
        return True
    except UnsupportedAlgorithm as e:
        logger.warning("crypto_unavailable", error=str(e))
        return False


class EncryptionService:
    """
    Passphrase-based authenticated encryption.

    The only persistent state it touches is the salt and the
    encryption-enabled flag, each under its own key in the store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Optional[EncryptionSettings] = None,
    ):
        self._store = store
        self._settings = settings or get_settings().encryption

    @property
    def settings(self) -> EncryptionSettings:
        return self._settings

    # -------------------------------------------------------------------------
    # Salt & key derivation
    # -------------------------------------------------------------------------

    def _get_salt(self) -> Optional[bytes]:
        stored = self._store.get(self._settings.salt_key)
        if not stored:
            return None
        return base64.b64decode(stored)

    def _get_or_create_salt(self) -> bytes:
        salt = self._get_salt()
        if salt is not None:
            logger.debug("encryption_salt_reused")
            return salt

        salt = os.urandom(self._settings.salt_length_bytes)
        self._store.set(self._settings.salt_key, base64.b64encode(salt).decode("ascii"))
        logger.info("encryption_salt_generated")
        return salt

    def _derive_key(self, passphrase: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self._settings.key_length_bytes,
            salt=salt,
            iterations=self._settings.kdf_iterations,
        )
        return kdf.derive(passphrase.encode("utf-8"))

    # -------------------------------------------------------------------------
    # Encrypt / decrypt
    # -------------------------------------------------------------------------

    async def encrypt(self, plaintext: str, passphrase: str) -> str:
        """
        Encrypt a serialized payload.

        Raises:
            EncryptionUnsupportedError: If AES-GCM is unavailable
            WeakPassphraseError: If the passphrase is below the minimum length
        """
        if not is_crypto_available():
            raise EncryptionUnsupportedError("Encryption is not available on this platform")

        if not passphrase or len(passphrase) < self._settings.min_passphrase_length:
            raise WeakPassphraseError(
                f"Passphrase must be at least {self._settings.min_passphrase_length} characters"
            )

        start = time.perf_counter()
        try:
            salt = self._get_or_create_salt()
            key = await asyncio.to_thread(self._derive_key, passphrase, salt)
            nonce = os.urandom(self._settings.nonce_length_bytes)
            ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
            result = base64.b64encode(nonce + ciphertext).decode("ascii")
        except StorageError:
            raise
        except Exception as e:
            logger.error("encryption_failed", input_size=len(plaintext), error_type=type(e).__name__)
            raise StorageError("Failed to encrypt data") from e

        logger.info(
            "encryption_succeeded",
            input_size=len(plaintext),
            output_size=len(result),
            duration_ms=round((time.perf_counter() - start) * 1000),
        )
        return result

    async def decrypt(self, blob: str, passphrase: Optional[str]) -> str:
        """
        Decrypt a blob produced by encrypt().

        Raises:
            PassphraseRequiredError: If no passphrase is given
            DecryptionFailedError: Wrong passphrase OR corrupted data (not distinguished)
        """
        if not is_crypto_available():
            raise EncryptionUnsupportedError("Encryption is not available on this platform")

        if not passphrase:
            raise PassphraseRequiredError()

        start = time.perf_counter()
        nonce_length = self._settings.nonce_length_bytes
        try:
            salt = self._get_salt()
            if salt is None:
                raise DecryptionFailedError()
            combined = base64.b64decode(blob, validate=True)
            if len(combined) <= nonce_length:
                raise DecryptionFailedError()
            key = await asyncio.to_thread(self._derive_key, passphrase, salt)
            plaintext = AESGCM(key).decrypt(
                combined[:nonce_length], combined[nonce_length:], None
            )
            result = plaintext.decode("utf-8")
        except (DecryptionFailedError, InvalidTag, binascii.Error, UnicodeDecodeError) as e:
            # Never log which of these it was
            logger.warning("decryption_failed", input_size=len(blob or ""))
            if isinstance(e, DecryptionFailedError):
                raise
            raise DecryptionFailedError() from None

        logger.info(
            "decryption_succeeded",
            input_size=len(blob),
            output_size=len(result),
            duration_ms=round((time.perf_counter() - start) * 1000),
        )
        return result

    # -------------------------------------------------------------------------
    # Companion record: enabled flag & salt
    # -------------------------------------------------------------------------

    def is_enabled(self) -> bool:
        return self._store.get(self._settings.flag_key) == ENCRYPTION_FLAG_VALUE

    def set_enabled(self) -> None:
        self._store.set(self._settings.flag_key, ENCRYPTION_FLAG_VALUE)
        logger.info("encryption_flag_set")

    def has_salt(self) -> bool:
        return bool(self._store.get(self._settings.salt_key))

    def clear_settings(self) -> None:
        """Remove the enabled flag and the salt."""
        self._store.remove(self._settings.flag_key)
        self._store.remove(self._settings.salt_key)
        logger.info("encryption_settings_cleared")

    def health(self) -> dict:
        """Encryption health status for diagnostics."""
        return {
            "crypto_available": is_crypto_available(),
            "encryption_enabled": self.is_enabled(),
            "salt_exists": self.has_salt(),
            "algorithm": ALGORITHM,
            "key_length_bits": self._settings.key_length_bytes * 8,
            "iterations": self._settings.kdf_iterations,
        }
