"""
Credential Vault

Encrypts OAuth refresh tokens at rest with AES-256-GCM (authenticated
encryption) using the TOKEN_ENCRYPTION_KEY from settings. Every call uses a
fresh 96-bit IV; the ciphertext, IV and authentication tag are stored as
separate base64 text columns on the bank connection.
"""

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import AuthTagError, ConfigError

KEY_SIZE = 32
IV_SIZE = 12
TAG_SIZE = 16


@dataclass(frozen=True)
class EncryptedSecret:
    """Base64-encoded parts of one encrypted value."""
    ciphertext: str
    iv: str
    auth_tag: str


class CredentialVault:
    """
    Encrypt and decrypt refresh tokens for storage in the database.

    Decryption verifies the authentication tag; a tampered or corrupted
    value raises AuthTagError instead of returning plaintext.
    """

    def __init__(self, key: bytes):
        """
        Args:
            key: Raw 32-byte server key

        Raises:
            ConfigError: If the key is missing or not exactly 32 bytes
        """
        if not key:
            raise ConfigError("TOKEN_ENCRYPTION_KEY is not set")
        if len(key) != KEY_SIZE:
            raise ConfigError(
                f"TOKEN_ENCRYPTION_KEY must be exactly {KEY_SIZE} bytes, got {len(key)}"
            )
        self._cipher = AESGCM(key)

    @classmethod
    def from_hex(cls, hex_key: str) -> "CredentialVault":
        """
        Build a vault from the hex-encoded key held in settings.

        Example:
            >>> vault = CredentialVault.from_hex(settings.token_encryption_key)
        """
        if not hex_key:
            raise ConfigError("TOKEN_ENCRYPTION_KEY is not set")
        try:
            key = bytes.fromhex(hex_key.strip())
        except ValueError:
            raise ConfigError("TOKEN_ENCRYPTION_KEY must be hex encoded (64 characters)")
        return cls(key)

    def encrypt(self, plaintext: Union[str, bytes]) -> EncryptedSecret:
        """
        Encrypt a secret with a fresh IV.

        Args:
            plaintext: Token to protect (str is UTF-8 encoded)

        Returns:
            EncryptedSecret with base64 ciphertext, IV and auth tag
        """
        if isinstance(plaintext, str):
            plaintext = plaintext.encode()

        iv = os.urandom(IV_SIZE)
        sealed = self._cipher.encrypt(iv, plaintext, None)

        # AESGCM appends the 16-byte tag to the ciphertext
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

        return EncryptedSecret(
            ciphertext=base64.b64encode(ciphertext).decode(),
            iv=base64.b64encode(iv).decode(),
            auth_tag=base64.b64encode(tag).decode(),
        )

    def decrypt(self, secret: EncryptedSecret) -> bytes:
        """
        Decrypt and authenticate a stored secret.

        Raises:
            AuthTagError: If the value was tampered with or is corrupted
        """
        try:
            ciphertext = base64.b64decode(secret.ciphertext, validate=True)
            iv = base64.b64decode(secret.iv, validate=True)
            tag = base64.b64decode(secret.auth_tag, validate=True)
        except (binascii.Error, TypeError, ValueError):
            raise AuthTagError("Stored secret is not valid base64")

        if len(iv) != IV_SIZE or len(tag) != TAG_SIZE:
            raise AuthTagError("Stored secret has a malformed IV or auth tag")

        try:
            return self._cipher.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            raise AuthTagError("Stored secret failed authentication")

    def decrypt_text(self, secret: EncryptedSecret) -> str:
        return self.decrypt(secret).decode()
