"""
Device key storage for Paperkeep.

Holds the device master key and device salt used for implicit (passwordless)
encryption of local state. Both are random 256-bit values generated on first
use and returned unchanged afterwards.

Secrets live in the operating system keyring (macOS Keychain, Windows
Credential Locker, Secret Service, ...) through the keyring library. Some
environments have no usable keyring (headless servers, containers, CI). There
the store falls back to an owner-only JSON file in the config directory and
reports is_secure = False so callers know confidentiality is reduced.

The keystore is never used for portable backups; those are always encrypted
with a key derived from the user's export password.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from pathlib import Path

import keyring
from keyring.backends.fail import Keyring as FailKeyring
from keyring.errors import KeyringError, PasswordDeleteError

from paperkeep.config.settings import DEFAULT_CONFIG_DIR
from paperkeep.errors import ErrorCode, PaperkeepError
from paperkeep.security.crypto import KEY_LENGTH, SALT_LENGTH, DeviceKey

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "paperkeep"
MASTER_KEY_NAME = "paperkeep_encryption_key"
SALT_NAME = "paperkeep_key_salt"
FALLBACK_FILE_NAME = "keystore.json"


class KeyStoreError(PaperkeepError):
    """Raised when device secrets cannot be read or written."""

    default_code = ErrorCode.KEYSTORE_ERROR
    default_user_message = "Failed to access the device keystore."


class KeyStoreUnavailableError(KeyStoreError):
    """Raised when no keyring is available and the file fallback is disabled."""

    default_code = ErrorCode.KEYSTORE_UNAVAILABLE
    default_user_message = "Secure key storage is not available on this device."
    default_recoverable = False


class KeyStore:
    """
    Get-or-create access to the device master key and salt.

    Usage:
        keystore = KeyStore()
        master_key = keystore.get_or_create_master_key()
        salt = keystore.get_or_create_salt()

        if not keystore.is_secure:
            print("Warning: keys are stored in a plain file")

        # Explicit user-initiated reset only
        keystore.clear()

    Attributes:
        service_name: Keyring service the secrets are stored under.
        fallback_path: File used when the keyring is unavailable.
        allow_insecure_fallback: Whether the file fallback may be used.
    """

    def __init__(
        self,
        service_name: str = DEFAULT_SERVICE_NAME,
        fallback_dir: Path | None = None,
        allow_insecure_fallback: bool = True,
    ) -> None:
        self.service_name = service_name
        self.fallback_path = (fallback_dir or DEFAULT_CONFIG_DIR) / FALLBACK_FILE_NAME
        self.allow_insecure_fallback = allow_insecure_fallback
        self._keyring_available: bool | None = None

    @property
    def is_secure(self) -> bool:
        """True if secrets are held by the platform keyring rather than a file."""
        if self._keyring_available is None:
            self._keyring_available = self._check_keyring()
            if not self._keyring_available:
                logger.warning(
                    "No usable system keyring; device keys fall back to "
                    f"{self.fallback_path} with reduced protection"
                )
        return self._keyring_available

    def get_or_create_master_key(self) -> DeviceKey:
        """
        Return the device master key, generating and storing it on first use.

        Raises:
            KeyStoreUnavailableError: If no keyring is available and the
                file fallback is disabled.
            KeyStoreError: If the secret cannot be read or written.
        """
        return DeviceKey(self._get_or_create(MASTER_KEY_NAME, KEY_LENGTH))

    def get_or_create_salt(self) -> str:
        """Return the device salt (hex), generating and storing it on first use."""
        return self._get_or_create(SALT_NAME, SALT_LENGTH)

    def has_keys(self) -> bool:
        """Check whether a master key has been generated on this device."""
        return self._get(MASTER_KEY_NAME) is not None

    def clear(self) -> None:
        """
        Irreversibly delete the master key and salt.

        Anything encrypted with the device key becomes unreadable. Only call
        this for an explicit, user-initiated reset.
        """
        if self.is_secure:
            for name in (MASTER_KEY_NAME, SALT_NAME):
                try:
                    keyring.delete_password(self.service_name, name)
                except PasswordDeleteError:
                    logger.debug(f"Keyring entry {name} already absent")
                except KeyringError as e:
                    raise KeyStoreError(f"Failed to delete {name}: {e}") from e
        else:
            self._require_fallback()
            if self.fallback_path.exists():
                self.fallback_path.unlink()
        logger.info("Device keys cleared")

    def _get_or_create(self, name: str, length: int) -> str:
        value = self._get(name)
        if value is None:
            value = secrets.token_hex(length)
            self._set(name, value)
            logger.info(f"Generated new device secret {name}")
        return value

    def _get(self, name: str) -> str | None:
        if self.is_secure:
            try:
                return keyring.get_password(self.service_name, name)
            except KeyringError as e:
                raise KeyStoreError(f"Failed to read {name} from keyring: {e}") from e

        self._require_fallback()
        return self._load_fallback().get(name)

    def _set(self, name: str, value: str) -> None:
        if self.is_secure:
            try:
                keyring.set_password(self.service_name, name, value)
            except KeyringError as e:
                raise KeyStoreError(f"Failed to write {name} to keyring: {e}") from e
            return

        self._require_fallback()
        data = self._load_fallback()
        data[name] = value
        self._write_fallback(data)

    def _check_keyring(self) -> bool:
        """Check that a real keyring backend is installed and answering."""
        try:
            backend = keyring.get_keyring()
            if isinstance(backend, FailKeyring):
                return False
            keyring.get_password(self.service_name, MASTER_KEY_NAME)
        except KeyringError as e:
            logger.debug(f"Keyring check failed: {e}")
            return False
        return True

    def _require_fallback(self) -> None:
        if not self.allow_insecure_fallback:
            raise KeyStoreUnavailableError(
                "System keyring unavailable and insecure fallback is disabled"
            )

    def _load_fallback(self) -> dict[str, str]:
        if not self.fallback_path.exists():
            return {}
        try:
            data: dict[str, str] = json.loads(self.fallback_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise KeyStoreError(f"Cannot read {self.fallback_path}: {e}") from e
        return data

    def _write_fallback(self, data: dict[str, str]) -> None:
        """Write the fallback file atomically with owner-only permissions."""
        self.fallback_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.fallback_path.with_suffix(".tmp")

        try:
            temp_path.write_text(json.dumps(data))
            try:
                os.chmod(temp_path, 0o600)
            except OSError:
                # Windows or permission error - continue anyway
                pass
            temp_path.replace(self.fallback_path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise KeyStoreError(f"Cannot write {self.fallback_path}: {e}") from e
