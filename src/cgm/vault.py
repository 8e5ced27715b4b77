"""Credential vault: AES-256-GCM encryption of provider passwords at rest.

Blob format is base64(iv[12] || tag[16] || ciphertext), the layout the camper
table already stores, so existing rows decrypt unchanged.

Plaintext produced here must only ever be handed to a provider's
``authenticate``.  It is never logged and never written anywhere else.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.cgm.errors import DecryptionError

_IV_BYTES = 12
_TAG_BYTES = 16
_KEY_HEX_CHARS = 64


class CredentialVault:
    """Encrypt/decrypt provider secrets with one process-wide key.

    Args:
        key_hex: 64 hex characters (32 bytes).  Longer values are truncated to
                 64 characters; shorter or non-hex values raise ValueError.
    """

    def __init__(self, key_hex: str) -> None:
        if not key_hex or len(key_hex) < _KEY_HEX_CHARS:
            raise ValueError("ENCRYPTION_KEY must be a 64-character hex string (32 bytes)")
        try:
            key = bytes.fromhex(key_hex[:_KEY_HEX_CHARS])
        except ValueError as exc:
            raise ValueError("ENCRYPTION_KEY must be a 64-character hex string (32 bytes)") from exc
        self._aead = AESGCM(key)

    @classmethod
    def generate_key(cls) -> str:
        """Return a fresh random key in the ENCRYPTION_KEY format."""
        return os.urandom(_KEY_HEX_CHARS // 2).hex()

    def encrypt(self, plaintext: str | None) -> str | None:
        if not plaintext:
            return None
        iv = os.urandom(_IV_BYTES)
        # AESGCM appends the tag to the ciphertext; the stored layout puts it first
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str | None) -> str | None:
        """Decrypt a stored blob.

        Raises:
            DecryptionError: On bad base64, truncated input, tag mismatch, or
                             non-UTF-8 plaintext.  Never returns partial data.
        """
        if not blob:
            return None
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionError("Stored credential is not valid base64") from exc

        if len(raw) <= _IV_BYTES + _TAG_BYTES:
            raise DecryptionError("Stored credential is truncated")

        iv = raw[:_IV_BYTES]
        tag = raw[_IV_BYTES:_IV_BYTES + _TAG_BYTES]
        ciphertext = raw[_IV_BYTES + _TAG_BYTES:]
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError(
                "Stored credential failed verification; re-enter the CGM password"
            ) from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Stored credential is not valid text") from exc
