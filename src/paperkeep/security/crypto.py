"""
Key derivation and symmetric encryption for Paperkeep.

Two independent kinds of key material flow through this module and are kept
as distinct types so one can never be used in place of the other:

    - ExportPassword: chosen by the user, used to encrypt portable backups.
    - DeviceKey: random, held in the platform keystore, used for implicit
      at-rest encryption of transient state on this device only.

Security Design:
    - Keys are derived with PBKDF2-HMAC-SHA256 (600,000 iterations by default)
    - A new random 256-bit salt is generated for every export
    - Payloads are encrypted with Fernet (AES-CBC + HMAC-SHA256), so a wrong
      key or a tampered payload fails loudly instead of producing garbage
    - Ciphertext is base64 text so it can be stored as a plain archive entry

Backward Compatibility:
    Version 1.0.0 archives from the mobile app use an iterated SHA-256
    derivation and a repeating-key XOR transform, and store a bare salt in
    salt.txt. Both primitives are implemented here so those archives stay
    readable; Paperkeep itself only writes Fernet archives.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from paperkeep.config.settings import DEFAULT_KDF_ITERATIONS, MIN_KDF_ITERATIONS
from paperkeep.errors import ErrorCode, PaperkeepError

if TYPE_CHECKING:
    from paperkeep.security.keystore import KeyStore

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # 256 bits
SALT_LENGTH = 32  # 256 bits
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

LEGACY_HASH_ROUNDS = 10_000
SALT_SCHEME = "pbkdf2-sha256"


class DecryptionError(PaperkeepError):
    """Raised when a ciphertext cannot be authenticated under the given key."""

    default_code = ErrorCode.EXPORT_CORRUPTED_DATA
    default_user_message = "Incorrect password or corrupted backup file"
    default_recoverable = False


@dataclass(frozen=True)
class ExportPassword:
    """A user-supplied password protecting a portable backup archive."""

    value: str = field(repr=False)

    def to_bytes(self) -> bytes:
        return self.value.encode("utf-8")


@dataclass(frozen=True)
class DeviceKey:
    """
    The device-bound master key, as stored in the keystore (hex text).

    Never valid for portable archives: a backup encrypted with it could not be
    opened on any other device.
    """

    hex_value: str = field(repr=False)

    def to_bytes(self) -> bytes:
        return self.hex_value.encode("ascii")


@dataclass(frozen=True)
class EncryptedPayload:
    """A ciphertext and the salt its key was derived with. Always kept together."""

    ciphertext: str
    salt: str


def generate_salt() -> str:
    """Generate a fresh random salt, hex encoded."""
    return secrets.token_hex(SALT_LENGTH)


def validate_password(password: str) -> tuple[bool, str | None]:
    """
    Check an export password against the length policy.

    Returns:
        Tuple of (is_valid, message explaining why not).
    """
    if len(password) < MIN_PASSWORD_LENGTH:
        return False, f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    if len(password) > MAX_PASSWORD_LENGTH:
        return False, f"Password must be less than {MAX_PASSWORD_LENGTH} characters"
    return True, None


def derive_key(
    secret: bytes,
    salt: bytes,
    iterations: int = DEFAULT_KDF_ITERATIONS,
) -> bytes:
    """
    Derive a 256-bit key from a secret and salt.

    Deterministic: identical inputs always produce the identical key. The
    iteration count is the work factor an attacker pays per guess.

    Args:
        secret: Password or device key bytes.
        salt: Salt bytes.
        iterations: PBKDF2 iteration count.

    Returns:
        32 key bytes.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret)


def derive_legacy_key(secret: bytes, salt: bytes) -> bytes:
    """
    Reproduce the iterated-hash derivation of version 1.0.0 archives.

    The first round hashes secret || salt; each following round hashes the
    previous round's lowercase hex digest. The key is the final 64 hex
    characters as ASCII bytes.
    """
    digest = hashlib.sha256(secret + salt).hexdigest()
    for _ in range(LEGACY_HASH_ROUNDS - 1):
        digest = hashlib.sha256(digest.encode("ascii")).hexdigest()
    return digest[: KEY_LENGTH * 2].encode("ascii")


class Cipher(Protocol):
    """Symmetric transform between plaintext bytes and base64 ciphertext text."""

    name: str
    text_encoding: str

    def derive(self, secret: bytes, salt: bytes) -> bytes: ...

    def encrypt(self, plaintext: bytes, key: bytes) -> str: ...

    def decrypt(self, ciphertext: str, key: bytes) -> bytes: ...


class FernetCipher:
    """Authenticated encryption used for every archive Paperkeep writes."""

    name = "fernet"
    text_encoding = "utf-8"

    def __init__(self, iterations: int = DEFAULT_KDF_ITERATIONS) -> None:
        self.iterations = iterations

    def derive(self, secret: bytes, salt: bytes) -> bytes:
        return derive_key(secret, salt, self.iterations)

    def encrypt(self, plaintext: bytes, key: bytes) -> str:
        return self._fernet(key).encrypt(plaintext).decode("ascii")

    def decrypt(self, ciphertext: str, key: bytes) -> bytes:
        """
        Decrypt a Fernet token.

        Raises:
            DecryptionError: If the key is wrong or the token was modified.
        """
        try:
            return self._fernet(key).decrypt(ciphertext.strip().encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as e:
            raise DecryptionError("Ciphertext failed authentication") from e

    @staticmethod
    def _fernet(key: bytes) -> Fernet:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Key must be {KEY_LENGTH} bytes, got {len(key)}")
        return Fernet(base64.urlsafe_b64encode(key))


class LegacyXorCipher:
    """
    Repeating-key XOR with base64 transport encoding.

    Self-inverse and deterministic. Decrypting with the wrong key silently
    yields garbage, so callers must validate the plaintext themselves.
    """

    name = "legacy-xor"
    # One byte per character in 1.0.0 payloads
    text_encoding = "latin-1"

    def derive(self, secret: bytes, salt: bytes) -> bytes:
        return derive_legacy_key(secret, salt)

    def encrypt(self, plaintext: bytes, key: bytes) -> str:
        return base64.b64encode(self._xor(plaintext, key)).decode("ascii")

    def decrypt(self, ciphertext: str, key: bytes) -> bytes:
        try:
            raw = base64.b64decode(ciphertext.strip())
        except ValueError as e:
            raise DecryptionError("Ciphertext is not valid base64") from e
        return self._xor(raw, key)

    @staticmethod
    def _xor(data: bytes, key: bytes) -> bytes:
        if not key:
            raise ValueError("Key must not be empty")
        key_length = len(key)
        return bytes(byte ^ key[i % key_length] for i, byte in enumerate(data))


def encode_salt(salt: str, iterations: int) -> str:
    """
    Encode a salt together with its key derivation parameters.

    The result is what an archive stores in salt.txt, e.g.
    "pbkdf2-sha256$600000$9f86d08...". Keeping the work factor next to the
    salt means archives stay readable after the configured count changes.
    """
    return f"{SALT_SCHEME}${iterations}${salt}"


def cipher_for_salt(salt_text: str) -> tuple[Cipher, bytes]:
    """
    Pick the cipher and raw salt described by a stored salt value.

    Values in the encode_salt() format select Fernet with the recorded PBKDF2
    work factor. A bare value is a version 1.0.0 salt and selects the legacy
    cipher.

    Returns:
        Tuple of (cipher, salt bytes to derive the key with).

    Raises:
        ValueError: If the value names an unknown scheme or bad parameters.
    """
    text = salt_text.strip()
    if not text:
        raise ValueError("Salt is empty")

    if "$" not in text:
        logger.debug("Bare salt value, using legacy cipher")
        return LegacyXorCipher(), text.encode("utf-8")

    parts = text.split("$")
    if len(parts) != 3 or parts[0] != SALT_SCHEME:
        raise ValueError(f"Unsupported key derivation scheme: {parts[0]!r}")

    try:
        iterations = int(parts[1])
    except ValueError as e:
        raise ValueError(f"Invalid iteration count: {parts[1]!r}") from e
    if iterations < 1 or not parts[2]:
        raise ValueError("Invalid key derivation parameters")

    return FernetCipher(iterations), parts[2].encode("ascii")


class DeviceCipher:
    """
    Passwordless encryption bound to this device's keystore.

    Used for local state that never leaves the device. The derived key is
    computed on first use and cached for the lifetime of the instance.
    """

    def __init__(
        self,
        keystore: KeyStore,
        iterations: int = DEFAULT_KDF_ITERATIONS,
    ) -> None:
        self.keystore = keystore
        self._cipher = FernetCipher(iterations)
        self._key: bytes | None = None
        self._salt: str | None = None

    def encrypt(self, plaintext: bytes) -> EncryptedPayload:
        key, salt = self._device_key()
        return EncryptedPayload(ciphertext=self._cipher.encrypt(plaintext, key), salt=salt)

    def decrypt(self, payload: EncryptedPayload) -> bytes:
        """
        Decrypt a payload written by this device.

        Raises:
            DecryptionError: If the payload was written under another device
                key or salt (e.g. after a keystore reset).
        """
        key, salt = self._device_key()
        if payload.salt != salt:
            key = self._cipher.derive(
                self.keystore.get_or_create_master_key().to_bytes(),
                payload.salt.encode("ascii"),
            )
        return self._cipher.decrypt(payload.ciphertext, key)

    def _device_key(self) -> tuple[bytes, str]:
        if self._key is None or self._salt is None:
            master_key = self.keystore.get_or_create_master_key()
            salt = self.keystore.get_or_create_salt()
            self._key = self._cipher.derive(master_key.to_bytes(), salt.encode("ascii"))
            self._salt = salt
        return self._key, self._salt
