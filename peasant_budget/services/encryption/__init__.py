"""Encryption services package."""

from peasant_budget.services.encryption.passphrase import (
    PassphraseStrength,
    PassphraseValidation,
    passphrase_strength,
    validate_passphrase,
)
from peasant_budget.services.encryption.service import (
    EncryptionService,
    is_crypto_available,
)

__all__ = [
    "EncryptionService",
    "PassphraseStrength",
    "PassphraseValidation",
    "is_crypto_available",
    "passphrase_strength",
    "validate_passphrase",
]
