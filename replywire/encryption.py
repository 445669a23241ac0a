"""Message body encryption at rest.

AES-256-GCM over each inbound message body. The key is a 32-byte value
supplied as 64 hex characters and validated once at process start.
Every encryption draws a fresh 96-bit nonce; the 128-bit GCM tag is
stored separately from the ciphertext so the row carries
``encrypted_body``, ``iv`` and ``auth_tag`` as distinct fields.
"""

import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import DecryptionError, EncryptionConfigError

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


@dataclass(frozen=True)
class EncryptedBody:
    """Hex-encoded ciphertext, nonce and authentication tag."""
    ciphertext: str
    iv: str
    auth_tag: str


def load_key(value: Optional[str]) -> bytes:
    """Parse and validate a hex-encoded 256-bit key.

    Args:
        value: The configured key, 64 hex characters.

    Returns:
        The 32 raw key bytes.

    Raises:
        EncryptionConfigError: If the key is missing, not hex, or not
            exactly 32 bytes long.
    """
    if not value or not value.strip():
        raise EncryptionConfigError(
            "MESSAGE_ENCRYPTION_KEY is not set. Generate one with: "
            'python -c "import os; print(os.urandom(32).hex())"'
        )
    value = value.strip()
    try:
        key = bytes.fromhex(value)
    except ValueError:
        raise EncryptionConfigError(
            "MESSAGE_ENCRYPTION_KEY is not a valid hex string",
            length=len(value),
        ) from None
    if len(key) != KEY_BYTES:
        raise EncryptionConfigError(
            f"MESSAGE_ENCRYPTION_KEY must be exactly {KEY_BYTES} bytes "
            f"({KEY_BYTES * 2} hex characters), got {len(key)} bytes"
        )
    return key


class MessageCipher:
    """Encrypts and decrypts message bodies with AES-256-GCM."""

    def __init__(self, key: bytes):
        if len(key) != KEY_BYTES:
            raise EncryptionConfigError(
                f"Encryption key must be {KEY_BYTES} bytes, got {len(key)}"
            )
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_hex(cls, value: Optional[str]) -> "MessageCipher":
        """Build a cipher from a hex key, validating it first."""
        return cls(load_key(value))

    def encrypt(self, plaintext: str) -> EncryptedBody:
        """Encrypt a message body under a fresh random nonce."""
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return EncryptedBody(
            ciphertext=ciphertext.hex(),
            iv=nonce.hex(),
            auth_tag=tag.hex(),
        )

    def decrypt(self, body: EncryptedBody) -> str:
        """Decrypt and authenticate a stored body.

        Raises:
            DecryptionError: On a tag mismatch or malformed fields.
        """
        try:
            nonce = bytes.fromhex(body.iv)
            sealed = bytes.fromhex(body.ciphertext) + bytes.fromhex(body.auth_tag)
        except (TypeError, ValueError) as e:
            raise DecryptionError("Encrypted body is not valid hex") from e
        if len(nonce) != NONCE_BYTES:
            raise DecryptionError("Invalid IV length", iv_bytes=len(nonce))
        try:
            plaintext = self._aesgcm.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise DecryptionError("Authentication tag mismatch") from e
        return plaintext.decode("utf-8")
