"""Encryption utilities for stored account credentials.

Uses AES-256-GCM (authenticated encryption). The key is 32 bytes supplied as
64 hex characters. Every encryption draws a fresh 96-bit nonce, and the
stored token is base64(nonce || tag || ciphertext).

Usage:
    key = CryptoService.generate_key()  # Store this securely in env
    crypto = CryptoService(key)

    encrypted = crypto.encrypt("my secret")
    decrypted = crypto.decrypt(encrypted)
"""

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


class InvalidKeyError(Exception):
    """Raised when an invalid encryption key is provided."""

    pass


class DecryptionError(Exception):
    """Raised when decryption fails."""

    pass


class CryptoService:
    """Encryption service using AES-256-GCM.

    GCM authenticates the ciphertext, so a token that was corrupted or
    tampered with fails to decrypt instead of yielding altered plaintext.
    """

    def __init__(self, key: str):
        """Initialize with a hex-encoded AES-256 key.

        Args:
            key: 64 hex characters (32 bytes).

        Raises:
            InvalidKeyError: If the key is empty, not hex, or not 32 bytes.
        """
        if not key:
            raise InvalidKeyError("Encryption key cannot be empty")

        try:
            raw = bytes.fromhex(key.strip())
        except ValueError as e:
            raise InvalidKeyError(f"Encryption key must be hex encoded: {e}")

        if len(raw) != KEY_LENGTH:
            raise InvalidKeyError(
                f"Encryption key must be {KEY_LENGTH} bytes ({KEY_LENGTH * 2} hex characters), "
                f"got {len(raw)} bytes"
            )

        self._aesgcm = AESGCM(raw)

    @staticmethod
    def generate_key() -> str:
        """Generate a new random AES-256 key.

        Returns:
            64 hex characters suitable for ENCRYPTION_KEY.
        """
        return os.urandom(KEY_LENGTH).hex()

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext string.

        Args:
            plaintext: The string to encrypt.

        Returns:
            Base64 of nonce, tag and ciphertext.
        """
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag; the stored layout keeps it ahead of the ciphertext.
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt a token produced by encrypt().

        Args:
            token: Base64 of nonce, tag and ciphertext.

        Returns:
            Decrypted plaintext string.

        Raises:
            DecryptionError: If the token is malformed or fails authentication.
        """
        try:
            data = base64.b64decode(token.encode("ascii"), validate=True)
        except (binascii.Error, ValueError, UnicodeEncodeError) as e:
            raise DecryptionError(f"Ciphertext is not valid base64: {e}")

        if len(data) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionError("Ciphertext is too short")

        nonce = data[:NONCE_LENGTH]
        tag = data[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = data[NONCE_LENGTH + TAG_LENGTH:]

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag:
            raise DecryptionError("Authentication tag mismatch")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError(f"Decrypted data is not valid UTF-8: {e}")
