# sns_publisher/infrastructure/vault.py
import base64
import binascii
import os
from typing import Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from sns_publisher.exceptions import ConfigurationError, DecryptionError

logger = structlog.get_logger(__name__)

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32


class CredentialVault:
    """
    AES-256-GCM at-rest encryption for platform credentials.

    Token layout (urlsafe base64, unpadded): nonce(12) || tag(16) || ciphertext.
    The key must be exactly 256 bits; there is no derived or default key.
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
            raise ConfigurationError("credential key must be exactly 32 bytes")
        self._aead = AESGCM(bytes(key))

    @classmethod
    def from_hex(cls, hex_key: Optional[str]) -> "CredentialVault":
        if not hex_key:
            raise ConfigurationError("CREDENTIAL_ENCRYPTION_KEY is not configured")
        hex_key = hex_key.strip()
        if len(hex_key) != KEY_SIZE * 2:
            raise ConfigurationError("CREDENTIAL_ENCRYPTION_KEY must be 64 hex characters (256 bits)")
        try:
            key = bytes.fromhex(hex_key)
        except ValueError:
            raise ConfigurationError("CREDENTIAL_ENCRYPTION_KEY is not valid hex")
        return cls(key)

    def encrypt_bytes(self, plaintext: bytes) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext, None)
        # AESGCM appends the tag; store it ahead of the ciphertext
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        token = nonce + tag + ciphertext
        return base64.urlsafe_b64encode(token).rstrip(b"=").decode("ascii")

    def decrypt_bytes(self, token: str) -> bytes:
        try:
            padded = token + "=" * (-len(token) % 4)
            raw = base64.urlsafe_b64decode(padded.encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError):
            raise DecryptionError("credential token is not valid base64")
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("credential token is truncated")
        nonce = raw[:NONCE_SIZE]
        tag = raw[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        ciphertext = raw[NONCE_SIZE + TAG_SIZE:]
        try:
            return self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            logger.warning("credential_decrypt_failed")
            raise DecryptionError("credential failed authentication (tampered or wrong key)")

    def encrypt(self, plaintext: str) -> str:
        return self.encrypt_bytes(plaintext.encode("utf-8"))

    def decrypt(self, token: str) -> str:
        return self.decrypt_bytes(token).decode("utf-8")
