"""
Passphrase policy and strength scoring.

validate_passphrase() is the policy applied when the user turns
encryption on. passphrase_strength() is advisory UI feedback only and
never blocks an operation by itself.
"""

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from peasant_budget.config import EncryptionSettings, get_settings


class PassphraseStrength(str, Enum):
    WEAK = "weak"
    FAIR = "fair"
    GOOD = "good"
    STRONG = "strong"


class PassphraseValidation(BaseModel):
    """Result of checking a passphrase against the policy."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    strength: PassphraseStrength


def passphrase_strength(passphrase: Optional[str]) -> PassphraseStrength:
    """Score a passphrase by length and character variety."""
    if not passphrase:
        return PassphraseStrength.WEAK

    score = 0

    # Length
    score += sum(1 for threshold in (8, 12, 16) if len(passphrase) >= threshold)

    # Character variety
    for pattern in (r"[a-z]", r"[A-Z]", r"[0-9]", r"[^a-zA-Z0-9]"):
        if re.search(pattern, passphrase):
            score += 1

    if score <= 2:
        return PassphraseStrength.WEAK
    if score <= 4:
        return PassphraseStrength.FAIR
    if score <= 6:
        return PassphraseStrength.GOOD
    return PassphraseStrength.STRONG


def validate_passphrase(
    passphrase: Optional[str],
    settings: Optional[EncryptionSettings] = None,
) -> PassphraseValidation:
    """Check a passphrase against the policy for enabling encryption."""
    settings = settings or get_settings().encryption
    errors = []

    if not passphrase:
        errors.append("Passphrase is required")
    else:
        if len(passphrase) < settings.min_passphrase_length:
            errors.append(
                f"Passphrase must be at least {settings.min_passphrase_length} characters"
            )
        if len(passphrase) > settings.max_passphrase_length:
            errors.append(
                f"Passphrase must be less than {settings.max_passphrase_length} characters"
            )
        if not re.search(r"[a-z]", passphrase):
            errors.append("Passphrase should contain lowercase letters")
        if not re.search(r"[A-Z]", passphrase):
            errors.append("Passphrase should contain uppercase letters")
        if not re.search(r"[0-9]", passphrase):
            errors.append("Passphrase should contain numbers")

    return PassphraseValidation(
        valid=not errors,
        errors=errors,
        strength=passphrase_strength(passphrase),
    )
