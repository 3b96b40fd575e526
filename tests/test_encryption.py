"""
Tests for passphrase-based encryption.
"""

import asyncio
import base64

import pytest

from peasant_budget.errors import (
    DecryptionFailedError,
    PassphraseRequiredError,
    WeakPassphraseError,
)
from peasant_budget.services.encryption import (
    EncryptionService,
    PassphraseStrength,
    passphrase_strength,
    validate_passphrase,
)
from peasant_budget.services.kvstore import MemoryKeyValueStore

from conftest import STRONG_PASSPHRASE


@pytest.fixture
def service(encryption_settings):
    return EncryptionService(MemoryKeyValueStore(), encryption_settings)


class TestEncryptDecrypt:
    """Tests for EncryptionService.encrypt / decrypt."""

    def test_round_trip(self, service):
        """Test that decrypting with the same passphrase returns the plaintext."""
        plaintexts = ["", "hello", '{"payload": {"transactions": []}}', "ünïcødé ✓"]

        async def run():
            for plaintext in plaintexts:
                blob = await service.encrypt(plaintext, STRONG_PASSPHRASE)
                assert await service.decrypt(blob, STRONG_PASSPHRASE) == plaintext

        asyncio.run(run())

    def test_wrong_passphrase_rejected(self, service):
        """Test that a different passphrase fails to decrypt."""
        async def run():
            blob = await service.encrypt("secret budget", STRONG_PASSPHRASE)
            with pytest.raises(DecryptionFailedError):
                await service.decrypt(blob, "Different1Pass")

        asyncio.run(run())

    def test_tampered_blob_rejected_like_wrong_passphrase(self, service):
        """Test that tampering is indistinguishable from a wrong passphrase."""
        async def run():
            blob = await service.encrypt("secret budget", STRONG_PASSPHRASE)
            raw = bytearray(base64.b64decode(blob))
            raw[-1] ^= 0x01
            tampered = base64.b64encode(bytes(raw)).decode("ascii")

            with pytest.raises(DecryptionFailedError) as tampered_error:
                await service.decrypt(tampered, STRONG_PASSPHRASE)
            with pytest.raises(DecryptionFailedError) as wrong_key_error:
                await service.decrypt(blob, "Different1Pass")
            assert str(tampered_error.value) == str(wrong_key_error.value)

        asyncio.run(run())

    def test_blob_layout(self, service, encryption_settings):
        """Test that the output is base64 of nonce, ciphertext and tag."""
        async def run():
            return await service.encrypt("abc", STRONG_PASSPHRASE)

        blob = asyncio.run(run())
        raw = base64.b64decode(blob)
        # nonce + 3 bytes of ciphertext + 16 byte tag
        assert len(raw) == encryption_settings.nonce_length_bytes + 3 + 16

    def test_fresh_nonce_per_encryption(self, service):
        """Test that encrypting twice never produces the same blob."""
        async def run():
            first = await service.encrypt("same", STRONG_PASSPHRASE)
            second = await service.encrypt("same", STRONG_PASSPHRASE)
            return first, second

        first, second = asyncio.run(run())
        assert first != second

    def test_salt_generated_once_and_reused(self, service):
        """Test that the salt is persisted on first use."""
        assert not service.has_salt()

        async def run():
            await service.encrypt("a", STRONG_PASSPHRASE)
            salt = service._get_salt()
            await service.encrypt("b", STRONG_PASSPHRASE)
            return salt, service._get_salt()

        first, second = asyncio.run(run())
        assert first is not None
        assert first == second

    def test_short_passphrase_rejected(self, service):
        """Test that encrypt enforces the minimum length."""
        with pytest.raises(WeakPassphraseError):
            asyncio.run(service.encrypt("data", "short"))

    def test_missing_passphrase_on_decrypt(self, service):
        """Test that decrypting without a passphrase asks for one."""
        with pytest.raises(PassphraseRequiredError):
            asyncio.run(service.decrypt("AAAA", None))

    def test_garbage_blob_rejected(self, service):
        """Test that non-base64 input fails like a wrong passphrase."""
        async def run():
            await service.encrypt("x", STRONG_PASSPHRASE)
            with pytest.raises(DecryptionFailedError):
                await service.decrypt("not base64 !!", STRONG_PASSPHRASE)

        asyncio.run(run())


class TestCompanionRecord:
    """Tests for the enabled flag and salt record."""

    def test_flag_round_trip(self, service):
        """Test setting and clearing the enabled flag."""
        assert not service.is_enabled()
        service.set_enabled()
        assert service.is_enabled()
        service.clear_settings()
        assert not service.is_enabled()
        assert not service.has_salt()

    def test_health_never_reports_secrets(self, service):
        """Test the diagnostic summary."""
        health = service.health()
        assert health["algorithm"] == "AES-GCM"
        assert health["key_length_bits"] == 256
        assert health["encryption_enabled"] is False


class TestPassphrasePolicy:
    """Tests for passphrase validation and strength scoring."""

    def test_strong_passphrase_is_valid(self):
        """Test a passphrase meeting every rule."""
        result = validate_passphrase(STRONG_PASSPHRASE)
        assert result.valid
        assert result.errors == []

    @pytest.mark.parametrize("passphrase", ["", "Ab1", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere"])
    def test_weak_passphrases_are_invalid(self, passphrase):
        """Test that each rule is enforced."""
        assert not validate_passphrase(passphrase).valid

    def test_too_long_rejected(self):
        """Test the maximum length."""
        result = validate_passphrase("Aa1" * 50)
        assert not result.valid

    def test_strength_scale(self):
        """Test strength scoring by length and variety."""
        assert passphrase_strength("") == PassphraseStrength.WEAK
        assert passphrase_strength("abc") == PassphraseStrength.WEAK
        assert passphrase_strength("abcdefgh1") == PassphraseStrength.FAIR
        assert passphrase_strength(STRONG_PASSPHRASE) == PassphraseStrength.GOOD
        assert passphrase_strength("Correct-Horse-Battery-9") == PassphraseStrength.STRONG
