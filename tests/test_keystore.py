"""Tests for the device keystore (keyring backend and file fallback)."""

from __future__ import annotations

import json
import os
import stat
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from keyring.backends.fail import Keyring as FailKeyring
from keyring.errors import KeyringError, PasswordDeleteError

from paperkeep.security.crypto import DeviceKey
from paperkeep.security.keystore import (
    FALLBACK_FILE_NAME,
    MASTER_KEY_NAME,
    SALT_NAME,
    KeyStore,
    KeyStoreError,
    KeyStoreUnavailableError,
)


def make_keyring_mock() -> MagicMock:
    """A keyring module double backed by a dict."""
    secrets: dict[tuple[str, str], str] = {}
    mock = MagicMock()
    mock.get_password.side_effect = lambda service, name: secrets.get((service, name))

    def set_password(service: str, name: str, value: str) -> None:
        secrets[(service, name)] = value

    def delete_password(service: str, name: str) -> None:
        if (service, name) not in secrets:
            raise PasswordDeleteError("not found")
        del secrets[(service, name)]

    mock.set_password.side_effect = set_password
    mock.delete_password.side_effect = delete_password
    mock.secrets = secrets
    return mock


class TestKeyStoreWithKeyring(unittest.TestCase):
    """Tests with a working system keyring."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.keyring = make_keyring_mock()
        patcher = patch("paperkeep.security.keystore.keyring", self.keyring)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.keystore = KeyStore(fallback_dir=Path(self.temp_dir.name))

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_is_secure(self) -> None:
        self.assertTrue(self.keystore.is_secure)

    def test_master_key_generated_once(self) -> None:
        """The first call generates a key, later calls return the same one."""
        first = self.keystore.get_or_create_master_key()
        second = self.keystore.get_or_create_master_key()

        self.assertIsInstance(first, DeviceKey)
        self.assertEqual(first, second)
        self.assertEqual(len(first.hex_value), 64)
        self.assertEqual(self.keyring.set_password.call_count, 1)

    def test_salt_generated_once(self) -> None:
        first = self.keystore.get_or_create_salt()
        second = self.keystore.get_or_create_salt()

        self.assertEqual(first, second)
        self.assertEqual(len(first), 64)

    def test_secrets_stored_under_service(self) -> None:
        key = self.keystore.get_or_create_master_key()
        salt = self.keystore.get_or_create_salt()

        self.assertEqual(self.keyring.secrets[("paperkeep", MASTER_KEY_NAME)], key.hex_value)
        self.assertEqual(self.keyring.secrets[("paperkeep", SALT_NAME)], salt)

    def test_keys_survive_new_instance(self) -> None:
        key = self.keystore.get_or_create_master_key()
        other = KeyStore(fallback_dir=Path(self.temp_dir.name))

        self.assertEqual(other.get_or_create_master_key(), key)

    def test_no_fallback_file_written(self) -> None:
        self.keystore.get_or_create_master_key()

        self.assertFalse((Path(self.temp_dir.name) / FALLBACK_FILE_NAME).exists())

    def test_has_keys(self) -> None:
        self.assertFalse(self.keystore.has_keys())
        self.keystore.get_or_create_master_key()
        self.assertTrue(self.keystore.has_keys())

    def test_clear(self) -> None:
        """After clear, a new key is generated."""
        first = self.keystore.get_or_create_master_key()
        self.keystore.get_or_create_salt()

        self.keystore.clear()

        self.assertFalse(self.keystore.has_keys())
        self.assertNotEqual(self.keystore.get_or_create_master_key(), first)

    def test_clear_when_empty(self) -> None:
        self.keystore.clear()
        self.assertFalse(self.keystore.has_keys())

    def test_keyring_write_error(self) -> None:
        self.keyring.set_password.side_effect = KeyringError("locked")

        with self.assertRaises(KeyStoreError):
            self.keystore.get_or_create_master_key()


class TestKeyStoreFallback(unittest.TestCase):
    """Tests without a usable keyring."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.keyring = MagicMock()
        self.keyring.get_keyring.return_value = FailKeyring()
        patcher = patch("paperkeep.security.keystore.keyring", self.keyring)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.fallback_dir = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_not_secure(self) -> None:
        keystore = KeyStore(fallback_dir=self.fallback_dir)

        with self.assertLogs("paperkeep.security.keystore", level="WARNING"):
            self.assertFalse(keystore.is_secure)

    def test_backend_error_means_not_secure(self) -> None:
        self.keyring.get_keyring.return_value = MagicMock()
        self.keyring.get_password.side_effect = KeyringError("no backend")

        self.assertFalse(KeyStore(fallback_dir=self.fallback_dir).is_secure)

    def test_keys_persist_in_file(self) -> None:
        keystore = KeyStore(fallback_dir=self.fallback_dir)
        key = keystore.get_or_create_master_key()
        salt = keystore.get_or_create_salt()

        data = json.loads((self.fallback_dir / FALLBACK_FILE_NAME).read_text())
        self.assertEqual(data[MASTER_KEY_NAME], key.hex_value)
        self.assertEqual(data[SALT_NAME], salt)

        other = KeyStore(fallback_dir=self.fallback_dir)
        self.assertEqual(other.get_or_create_master_key(), key)
        self.keyring.set_password.assert_not_called()

    @unittest.skipIf(sys.platform == "win32", "POSIX permissions")
    def test_file_is_owner_only(self) -> None:
        KeyStore(fallback_dir=self.fallback_dir).get_or_create_master_key()

        mode = os.stat(self.fallback_dir / FALLBACK_FILE_NAME).st_mode
        self.assertEqual(stat.S_IMODE(mode), 0o600)

    def test_clear_removes_file(self) -> None:
        keystore = KeyStore(fallback_dir=self.fallback_dir)
        keystore.get_or_create_master_key()

        keystore.clear()

        self.assertFalse((self.fallback_dir / FALLBACK_FILE_NAME).exists())
        self.assertFalse(keystore.has_keys())

    def test_fallback_disabled(self) -> None:
        keystore = KeyStore(fallback_dir=self.fallback_dir, allow_insecure_fallback=False)

        with self.assertRaises(KeyStoreUnavailableError):
            keystore.get_or_create_master_key()

    def test_corrupt_file(self) -> None:
        (self.fallback_dir / FALLBACK_FILE_NAME).write_text("{not json")

        with self.assertRaises(KeyStoreError):
            KeyStore(fallback_dir=self.fallback_dir).get_or_create_master_key()


if __name__ == "__main__":
    unittest.main()
