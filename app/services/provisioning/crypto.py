"""Credential encryption for tokens stored at rest.

AES-256-GCM authenticated encryption: a tampered or mis-bound ciphertext
fails to decode instead of yielding garbage. Encoding and decoding are
explicit calls made at the storage boundary (``encode_credential`` when a
deferred operation or credential row is written, ``decode_credential`` when
the worker is about to use it).

Envelope format::

    v1:<base64(nonce || ciphertext || tag)>

The associated data binds an envelope to its owner (``user_id:account_id``),
so a ciphertext copied onto another user's row will not decode.
"""

import base64
import binascii
import secrets
from typing import Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = structlog.get_logger(__name__)

ENVELOPE_PREFIX = "v1:"
KEY_SIZE_BYTES = 32  # AES-256
NONCE_SIZE_BYTES = 12  # 96-bit GCM nonce
TAG_SIZE_BYTES = 16


class CredentialCipherError(Exception):
    """Base exception for credential encryption errors."""


class CredentialDecodeError(CredentialCipherError):
    """Raised when a value cannot be decoded (wrong key, tampered, wrong owner)."""


class DoubleEncryptionError(CredentialDecodeError):
    """Raised when a decoded value is itself an envelope."""


def generate_key() -> str:
    """Generate a new hex-encoded 256-bit key."""
    return secrets.token_bytes(KEY_SIZE_BYTES).hex()


def associated_data(user_id: str, account_id: str) -> bytes:
    return f"{user_id}:{account_id}".encode("utf-8")


class CredentialCipher:
    """Encrypts and decrypts platform access tokens."""

    def __init__(self, key_hex: str):
        try:
            key = bytes.fromhex(key_hex)
        except (ValueError, TypeError) as e:
            raise CredentialCipherError("Encryption key must be hex encoded") from e
        if len(key) != KEY_SIZE_BYTES:
            raise CredentialCipherError(
                f"Encryption key must be {KEY_SIZE_BYTES} bytes, got {len(key)}"
            )
        self._aesgcm = AESGCM(key)

    @staticmethod
    def is_encoded(value: Optional[str]) -> bool:
        """Check whether a value already looks like an envelope."""
        if not value or not value.startswith(ENVELOPE_PREFIX):
            return False
        try:
            raw = base64.b64decode(value[len(ENVELOPE_PREFIX):], validate=True)
        except (binascii.Error, ValueError):
            return False
        return len(raw) >= NONCE_SIZE_BYTES + TAG_SIZE_BYTES

    def encode_credential(self, plaintext: str, aad: Optional[bytes] = None) -> str:
        """Encrypt a token for storage.

        An already-encoded value is returned unchanged so a retry of a write
        path never wraps a ciphertext twice.
        """
        if self.is_encoded(plaintext):
            logger.warning("credential_already_encoded")
            return plaintext

        nonce = secrets.token_bytes(NONCE_SIZE_BYTES)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), aad)
        return ENVELOPE_PREFIX + base64.b64encode(nonce + ciphertext).decode("ascii")

    def decode_credential(self, envelope: str, aad: Optional[bytes] = None) -> str:
        """Decrypt a stored token.

        Raises:
            CredentialDecodeError: malformed envelope, wrong key, or tampering
            DoubleEncryptionError: the plaintext is another envelope
        """
        if not self.is_encoded(envelope):
            raise CredentialDecodeError("Value is not an encoded credential")

        raw = base64.b64decode(envelope[len(ENVELOPE_PREFIX):])
        nonce, ciphertext = raw[:NONCE_SIZE_BYTES], raw[NONCE_SIZE_BYTES:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, aad).decode("utf-8")
        except InvalidTag as e:
            raise CredentialDecodeError(
                "Credential failed authentication (wrong key, owner, or tampered)"
            ) from e

        if self.is_encoded(plaintext):
            raise DoubleEncryptionError("Credential was encrypted more than once")
        return plaintext
