"""
Shared utilities for the credential core.
"""

from assistant_core.utils.encryption import (
    SecretCipher,
    generate_key_hex,
    load_cipher_from_env,
    validate_encryption_key,
)

__all__ = [
    "SecretCipher",
    "generate_key_hex",
    "load_cipher_from_env",
    "validate_encryption_key",
]
