"""
Key management and encryption.

This module provides the device keystore, password-based key derivation and
the ciphers used for portable backups and implicit at-rest encryption.

Usage:
    from paperkeep.security import ExportPassword, FernetCipher, generate_salt

    cipher = FernetCipher()
    salt = generate_salt()
    key = cipher.derive(ExportPassword("correct horse").to_bytes(), salt.encode())
    token = cipher.encrypt(b"payload", key)
"""

from paperkeep.security.crypto import (
    DEFAULT_KDF_ITERATIONS,
    MIN_KDF_ITERATIONS,
    Cipher,
    DecryptionError,
    DeviceCipher,
    DeviceKey,
    EncryptedPayload,
    ExportPassword,
    FernetCipher,
    LegacyXorCipher,
    cipher_for_salt,
    derive_key,
    derive_legacy_key,
    encode_salt,
    generate_salt,
    validate_password,
)
from paperkeep.security.keystore import (
    KeyStore,
    KeyStoreError,
    KeyStoreUnavailableError,
)

__all__ = [
    # Key derivation
    "derive_key",
    "derive_legacy_key",
    "generate_salt",
    "validate_password",
    "DEFAULT_KDF_ITERATIONS",
    "MIN_KDF_ITERATIONS",
    # Ciphers
    "Cipher",
    "FernetCipher",
    "LegacyXorCipher",
    "DeviceCipher",
    "cipher_for_salt",
    "encode_salt",
    "EncryptedPayload",
    "DecryptionError",
    # Key material
    "ExportPassword",
    "DeviceKey",
    # Keystore
    "KeyStore",
    "KeyStoreError",
    "KeyStoreUnavailableError",
]
