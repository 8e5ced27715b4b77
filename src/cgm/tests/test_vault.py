"""Tests for the AES-256-GCM credential vault."""

from __future__ import annotations

import base64

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.cgm.base import ProviderCredentials
from src.cgm.errors import DecryptionError
from src.cgm.tests.conftest import TEST_ENCRYPTION_KEY
from src.cgm.vault import CredentialVault


class TestRoundTrip:
    def test_encrypt_then_decrypt(self, vault: CredentialVault) -> None:
        blob = vault.encrypt("correct horse battery staple")
        assert blob is not None
        assert vault.decrypt(blob) == "correct horse battery staple"

    def test_unicode_plaintext(self, vault: CredentialVault) -> None:
        assert vault.decrypt(vault.encrypt("pässwörd-✓")) == "pässwörd-✓"

    def test_fresh_iv_per_encryption(self, vault: CredentialVault) -> None:
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_ciphertext_does_not_contain_plaintext(self, vault: CredentialVault) -> None:
        blob = vault.encrypt("hunter2hunter2")
        assert "hunter2" not in blob
        assert b"hunter2" not in base64.b64decode(blob)

    @pytest.mark.parametrize("empty", [None, ""])
    def test_empty_values_pass_through(self, vault: CredentialVault, empty: str | None) -> None:
        assert vault.encrypt(empty) is None
        assert vault.decrypt(empty) is None


class TestBlobLayout:
    def test_decrypts_iv_tag_ciphertext_layout(self, vault: CredentialVault) -> None:
        """Blobs are base64(iv || tag || ciphertext), tag before ciphertext."""
        key = bytes.fromhex(TEST_ENCRYPTION_KEY)
        iv = bytes(range(12))
        sealed = AESGCM(key).encrypt(iv, b"legacy-secret", None)
        ciphertext, tag = sealed[:-16], sealed[-16:]
        blob = base64.b64encode(iv + tag + ciphertext).decode("ascii")

        assert vault.decrypt(blob) == "legacy-secret"

    def test_encrypted_blob_length(self, vault: CredentialVault) -> None:
        raw = base64.b64decode(vault.encrypt("abc"))
        assert len(raw) == 12 + 16 + 3


class TestDecryptionFailures:
    def test_tampered_blob_raises(self, vault: CredentialVault) -> None:
        raw = bytearray(base64.b64decode(vault.encrypt("dexcom-password")))
        raw[-1] ^= 0x01
        with pytest.raises(DecryptionError):
            vault.decrypt(base64.b64encode(bytes(raw)).decode("ascii"))

    def test_tampered_tag_raises(self, vault: CredentialVault) -> None:
        raw = bytearray(base64.b64decode(vault.encrypt("dexcom-password")))
        raw[12] ^= 0xFF
        with pytest.raises(DecryptionError):
            vault.decrypt(base64.b64encode(bytes(raw)).decode("ascii"))

    def test_wrong_key_raises(self, vault: CredentialVault) -> None:
        other = CredentialVault(CredentialVault.generate_key())
        with pytest.raises(DecryptionError):
            other.decrypt(vault.encrypt("dexcom-password"))

    def test_bad_base64_raises(self, vault: CredentialVault) -> None:
        with pytest.raises(DecryptionError, match="base64"):
            vault.decrypt("not base64 at all!!")

    def test_short_input_raises(self, vault: CredentialVault) -> None:
        short = base64.b64encode(b"\x00" * 28).decode("ascii")
        with pytest.raises(DecryptionError, match="truncated"):
            vault.decrypt(short)

    def test_error_message_has_no_plaintext(self, vault: CredentialVault) -> None:
        raw = bytearray(base64.b64decode(vault.encrypt("super-secret-pw")))
        raw[20] ^= 0x01
        with pytest.raises(DecryptionError) as exc_info:
            vault.decrypt(base64.b64encode(bytes(raw)).decode("ascii"))
        assert "super-secret-pw" not in str(exc_info.value)


class TestKeyHandling:
    @pytest.mark.parametrize("key", ["", "abc123", "0" * 63])
    def test_short_key_rejected(self, key: str) -> None:
        with pytest.raises(ValueError, match="ENCRYPTION_KEY"):
            CredentialVault(key)

    def test_non_hex_key_rejected(self) -> None:
        with pytest.raises(ValueError, match="ENCRYPTION_KEY"):
            CredentialVault("z" * 64)

    def test_long_key_truncated_to_64_chars(self) -> None:
        long_vault = CredentialVault(TEST_ENCRYPTION_KEY + "ffff")
        exact_vault = CredentialVault(TEST_ENCRYPTION_KEY)
        assert exact_vault.decrypt(long_vault.encrypt("pw")) == "pw"

    def test_generated_key_is_usable(self) -> None:
        key = CredentialVault.generate_key()
        assert len(key) == 64
        v = CredentialVault(key)
        assert v.decrypt(v.encrypt("pw")) == "pw"


def test_credentials_repr_hides_password() -> None:
    creds = ProviderCredentials(username="camper@example.com", password="s3cret")
    assert "s3cret" not in repr(creds)
