"""
Secret cipher for OAuth tokens stored at rest.

Implements AES-256-GCM authenticated encryption.

SECURITY:
- Uses AES-256-GCM for authenticated encryption
- Each encryption uses a unique random nonce
- Key is 32 bytes supplied as exactly 64 hex characters (ENCRYPTION_KEY)
- Key is validated once when the cipher is built; a bad key is a startup
  failure, never a first-use failure
- A tampered or malformed envelope raises DecryptionError, never garbage

Envelope format (self-describing per record, lowercase hex):

    <nonce>:<auth_tag>:<ciphertext>

Usage:
    from assistant_core.utils.encryption import load_cipher_from_env

    cipher = load_cipher_from_env()   # at process start
    envelope = cipher.encrypt("ya29.token")
    plaintext = cipher.decrypt(envelope)
"""

import logging
import os
import re
import secrets
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from assistant_core.platform.errors import ConfigurationError, DecryptionError

logger = logging.getLogger(__name__)


# AES-GCM constants
NONCE_SIZE = 16  # matches envelopes already written by the previous backend
TAG_SIZE = 16    # 128 bits, standard for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256
KEY_HEX_LENGTH = KEY_SIZE * 2

ENVELOPE_DELIMITER = ":"
ENCRYPTION_KEY_ENV = "ENCRYPTION_KEY"

_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]+$")
_SEGMENT_PATTERN = re.compile(r"^[0-9a-f]*$")


def validate_encryption_key(key_hex: Optional[str]) -> bytes:
    """
    Validate a hex-encoded key and return its raw bytes.

    Raises:
        ConfigurationError: If the key is missing, has the wrong length,
            or contains non-hex characters
    """
    if not key_hex:
        raise ConfigurationError(
            f"{ENCRYPTION_KEY_ENV} is not set. Generate one with: "
            "python -c \"import secrets; print(secrets.token_hex(32))\"",
            setting=ENCRYPTION_KEY_ENV,
        )

    if len(key_hex) != KEY_HEX_LENGTH:
        raise ConfigurationError(
            f"{ENCRYPTION_KEY_ENV} must be exactly {KEY_HEX_LENGTH} hex characters "
            f"(got {len(key_hex)})",
            setting=ENCRYPTION_KEY_ENV,
        )

    if not _KEY_PATTERN.match(key_hex):
        raise ConfigurationError(
            f"{ENCRYPTION_KEY_ENV} must contain only hex characters (0-9, a-f, A-F)",
            setting=ENCRYPTION_KEY_ENV,
        )

    return bytes.fromhex(key_hex)


def generate_key_hex() -> str:
    """Generate a new random 256-bit key as 64 hex characters."""
    return secrets.token_hex(KEY_SIZE)


class SecretCipher:
    """
    AES-256-GCM cipher producing self-describing string envelopes.

    Immutable after construction; one instance is shared process-wide.
    """

    def __init__(self, key_hex: str):
        """
        Args:
            key_hex: 64 hex characters

        Raises:
            ConfigurationError: If the key is invalid
        """
        self._aesgcm = AESGCM(validate_encryption_key(key_hex))

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """
        Encrypt a secret string.

        Returns:
            Envelope string, or None when plaintext is None or empty
        """
        if not plaintext:
            return None

        nonce = secrets.token_bytes(NONCE_SIZE)
        # AESGCM.encrypt returns ciphertext + tag concatenated
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, auth_tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

        return ENVELOPE_DELIMITER.join(
            (nonce.hex(), auth_tag.hex(), ciphertext.hex())
        )

    def decrypt(self, envelope: Optional[str]) -> Optional[str]:
        """
        Decrypt an envelope produced by encrypt().

        SECURITY: The returned value must NEVER be logged.

        Returns:
            Plaintext, or None when envelope is None or empty

        Raises:
            DecryptionError: If the envelope is malformed or fails authentication
        """
        if not envelope:
            return None

        parts = envelope.split(ENVELOPE_DELIMITER)
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted data format")

        if not all(_SEGMENT_PATTERN.match(part) for part in parts):
            raise DecryptionError("Invalid encrypted data encoding")

        nonce_hex, tag_hex, ciphertext_hex = parts
        try:
            nonce = bytes.fromhex(nonce_hex)
            auth_tag = bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError as e:
            raise DecryptionError("Invalid encrypted data encoding") from e

        if len(nonce) != NONCE_SIZE or len(auth_tag) != TAG_SIZE:
            raise DecryptionError("Invalid encrypted data format")

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + auth_tag, None)
        except InvalidTag:
            logger.error("Decryption failed: authentication tag mismatch")
            raise DecryptionError(
                "Decryption failed: data may have been tampered with"
            )

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted data is not valid UTF-8") from e


def load_cipher_from_env(env_var: str = ENCRYPTION_KEY_ENV) -> SecretCipher:
    """
    Build the process-wide cipher from the environment.

    Call during application startup so a bad key stops the process.

    Raises:
        ConfigurationError: If the key is missing or invalid
    """
    cipher = SecretCipher(os.getenv(env_var, ""))
    logger.info("Credential encryption validated successfully")
    return cipher
