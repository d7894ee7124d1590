"""
Tests for the CLI commands.

Uses Python's unittest module.
Tests argument parsing, output helpers, and end-to-end command runs against
a temporary data directory.
"""

from __future__ import annotations

import argparse
import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import MagicMock, patch

from keyring.backends.fail import Keyring as FailKeyring

from paperkeep.cli import (
    PASSWORD_ENV_VAR,
    create_parser,
    format_amount,
    format_bytes,
    main,
    parse_amount,
    read_password,
)
from paperkeep.storage import ReceiptStore


class TestArgumentParser(unittest.TestCase):
    """Tests for CLI argument parsing."""

    def setUp(self) -> None:
        """Set up parser for tests."""
        self.parser = create_parser()

    def test_version_argument(self) -> None:
        with self.assertRaises(SystemExit) as cm:
            with redirect_stdout(io.StringIO()):
                self.parser.parse_args(["--version"])

        self.assertEqual(cm.exception.code, 0)

    def test_no_command_defaults(self) -> None:
        args = self.parser.parse_args([])

        self.assertIsNone(args.command)
        self.assertEqual(args.verbose, 0)
        self.assertFalse(args.quiet)

    def test_verbose_flag(self) -> None:
        self.assertEqual(self.parser.parse_args(["-vv"]).verbose, 2)

    def test_info_json(self) -> None:
        args = self.parser.parse_args(["info", "--json"])
        self.assertTrue(args.json)

    def test_export_output(self) -> None:
        args = self.parser.parse_args(["export", "--output", "/tmp/out"])

        self.assertEqual(args.command, "export")
        self.assertEqual(args.output, "/tmp/out")

    def test_import_strategy(self) -> None:
        args = self.parser.parse_args(["import", "backup.zip", "--strategy", "skip"])

        self.assertEqual(args.file, "backup.zip")
        self.assertEqual(args.strategy, "skip")

    def test_import_strategy_defaults_to_config(self) -> None:
        args = self.parser.parse_args(["import", "backup.zip"])
        self.assertIsNone(args.strategy)

    def test_import_invalid_strategy(self) -> None:
        with self.assertRaises(SystemExit):
            with redirect_stderr(io.StringIO()):
                self.parser.parse_args(["import", "backup.zip", "--strategy", "overwrite"])

    def test_add_arguments(self) -> None:
        args = self.parser.parse_args(
            ["add", "--store", "Market", "--amount", "12.30", "--tag", "a", "--tag", "b"]
        )

        self.assertEqual(args.store, "Market")
        self.assertEqual(args.amount, 1230)
        self.assertEqual(args.tags, ["a", "b"])

    def test_keys_reset_force(self) -> None:
        args = self.parser.parse_args(["keys", "reset", "--force"])

        self.assertEqual(args.keys_command, "reset")
        self.assertTrue(args.force)


class TestFormatting(unittest.TestCase):
    """Tests for output helpers."""

    def test_parse_amount(self) -> None:
        self.assertEqual(parse_amount("12.34"), 1234)
        self.assertEqual(parse_amount("5"), 500)
        self.assertEqual(parse_amount("0.07"), 7)

    def test_parse_amount_invalid(self) -> None:
        for value in ("-1", "1.234", "abc", "nan"):
            with self.assertRaises(argparse.ArgumentTypeError):
                parse_amount(value)

    def test_format_amount(self) -> None:
        self.assertEqual(format_amount(1234), "12.34")
        self.assertEqual(format_amount(5), "0.05")

    def test_format_bytes(self) -> None:
        self.assertEqual(format_bytes(512), "512 B")
        self.assertEqual(format_bytes(1536), "1.5 KB")
        self.assertEqual(format_bytes(5 * 1024 * 1024), "5.0 MB")


class TestReadPassword(unittest.TestCase):
    """Tests for password input."""

    def test_environment_variable(self) -> None:
        with patch.dict(os.environ, {PASSWORD_ENV_VAR: "from the env"}):
            self.assertEqual(read_password(confirm=True), "from the env")

    @patch("paperkeep.cli.getpass.getpass", side_effect=["typed secret", "typed secret"])
    def test_prompt_with_confirmation(self, mock_getpass: MagicMock) -> None:
        with patch.dict(os.environ, {PASSWORD_ENV_VAR: ""}):
            self.assertEqual(read_password(confirm=True), "typed secret")
        self.assertEqual(mock_getpass.call_count, 2)

    @patch("paperkeep.cli.getpass.getpass", side_effect=["one", "two"])
    def test_confirmation_mismatch(self, mock_getpass: MagicMock) -> None:
        with patch.dict(os.environ, {PASSWORD_ENV_VAR: ""}):
            with self.assertRaises(ValueError):
                read_password(confirm=True)


class TestCommands(unittest.TestCase):
    """End-to-end command runs against a temporary configuration."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.config_path = self.root / "config.yaml"
        self.config_path.write_text(
            "paperkeep:\n"
            f"  data_dir: {self.root / 'data'}\n"
            "  log_level: ERROR\n"
            "export:\n"
            f"  output_dir: {self.root / 'backups'}\n"
            "  kdf_iterations: 10000\n"
        )
        env = {
            key: value for key, value in os.environ.items() if not key.startswith("PAPERKEEP_")
        }
        env[PASSWORD_ENV_VAR] = "correct horse battery"
        env_patcher = patch.dict(os.environ, env, clear=True)
        env_patcher.start()
        self.addCleanup(env_patcher.stop)

        keyring_mock = MagicMock()
        keyring_mock.get_keyring.return_value = FailKeyring()
        keyring_patcher = patch("paperkeep.security.keystore.keyring", keyring_mock)
        keyring_patcher.start()
        self.addCleanup(keyring_patcher.stop)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def run_cli(self, *argv: str) -> tuple[int, str, str]:
        stdout, stderr = io.StringIO(), io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            with self.assertRaises(SystemExit) as cm:
                main(["--config", str(self.config_path), *argv])
        return cm.exception.code, stdout.getvalue(), stderr.getvalue()

    def test_no_command_prints_help(self) -> None:
        code, stdout, _ = self.run_cli()

        self.assertEqual(code, 0)
        self.assertIn("usage", stdout)

    def test_add_and_list(self) -> None:
        code, stdout, _ = self.run_cli(
            "add", "--id", "r-1", "--store", "Corner Market", "--amount", "12.34",
            "--date", "2024-01-15",
        )
        self.assertEqual(code, 0)
        self.assertIn("r-1", stdout)

        code, stdout, _ = self.run_cli("list", "--json")
        self.assertEqual(code, 0)
        receipts = json.loads(stdout)
        self.assertEqual(receipts[0]["storeName"], "Corner Market")
        self.assertEqual(receipts[0]["totalAmount"], 1234)

    def test_add_with_missing_image(self) -> None:
        code, _, stderr = self.run_cli(
            "add", "--store", "Market", "--amount", "1", "--image", str(self.root / "nope.jpg")
        )

        self.assertEqual(code, 1)
        self.assertIn("Image not found", stderr)

    def test_add_existing_id_keeps_photo(self) -> None:
        """Adding over an existing id fails without touching its photo."""
        old_photo = self.root / "old.jpg"
        old_photo.write_bytes(b"OLD")
        new_photo = self.root / "new.png"
        new_photo.write_bytes(b"NEW")
        self.run_cli("add", "--id", "X", "--store", "Market", "--amount", "1", "--image", str(old_photo))

        code, _, stderr = self.run_cli(
            "add", "--id", "X", "--store", "Market", "--amount", "2", "--image", str(new_photo)
        )

        self.assertEqual(code, 1)
        self.assertIn("already exists", stderr)
        store = ReceiptStore(self.root / "data")
        stored_uri = Path(store.get_receipt("X").image_uri)
        self.assertEqual(stored_uri.read_bytes(), b"OLD")
        self.assertEqual(store.get_image("X"), stored_uri)
        self.assertEqual(store.get_receipt("X").total_amount, 100)

    def test_info_json(self) -> None:
        self.run_cli("add", "--store", "Market", "--amount", "1")

        code, stdout, _ = self.run_cli("info", "--json")

        self.assertEqual(code, 0)
        info = json.loads(stdout)
        self.assertEqual(info["storage"]["record_count"], 1)
        self.assertFalse(info["keystore_secure"])

    def test_export_empty(self) -> None:
        code, _, stderr = self.run_cli("export")

        self.assertEqual(code, 1)
        self.assertIn("You have no receipts to export", stderr)

    def test_export_weak_password(self) -> None:
        self.run_cli("add", "--store", "Market", "--amount", "1")

        with patch.dict(os.environ, {PASSWORD_ENV_VAR: "short"}):
            code, _, stderr = self.run_cli("export")

        self.assertEqual(code, 1)
        self.assertIn("at least 8", stderr)

    def test_export_verify_import(self) -> None:
        photo = self.root / "photo.jpg"
        photo.write_bytes(b"jpeg bytes")
        self.run_cli("add", "--id", "r-1", "--store", "Market", "--amount", "1", "--image", str(photo))
        out_dir = self.root / "elsewhere"

        code, stdout, _ = self.run_cli("export", "--output", str(out_dir))
        self.assertEqual(code, 0)
        archives = list(out_dir.glob("paperkeep-backup-*.zip"))
        self.assertEqual(len(archives), 1)
        self.assertIn(str(archives[0]), stdout)

        code, stdout, _ = self.run_cli("verify", str(archives[0]), "--decrypt")
        self.assertEqual(code, 0)
        self.assertIn("Receipts: 1", stdout)

        code, stdout, _ = self.run_cli("import", str(archives[0]), "--strategy", "skip")
        self.assertEqual(code, 0)
        self.assertIn("Skipped: 1", stdout)

    def test_import_wrong_password(self) -> None:
        self.run_cli("add", "--store", "Market", "--amount", "1")
        self.run_cli("export")
        archive = next((self.root / "backups").glob("*.zip"))

        with patch.dict(os.environ, {PASSWORD_ENV_VAR: "not the password"}):
            code, _, stderr = self.run_cli("import", str(archive))

        self.assertEqual(code, 1)
        self.assertIn("Incorrect password or corrupted backup file", stderr)

    def test_verify_invalid_archive(self) -> None:
        bogus = self.root / "bogus.zip"
        bogus.write_text("nope")

        code, _, stderr = self.run_cli("verify", str(bogus))

        self.assertEqual(code, 1)
        self.assertIn("not a valid Paperkeep backup", stderr)

    def test_invalid_config(self) -> None:
        self.config_path.write_text("export:\n  kdf_iterations: 5\n")

        code, _, stderr = self.run_cli("list")

        self.assertEqual(code, 2)
        self.assertIn("Configuration error", stderr)

    def test_keys_reset_requires_force(self) -> None:
        code, _, stderr = self.run_cli("keys", "reset")

        self.assertEqual(code, 1)
        self.assertIn("--force", stderr)


if __name__ == "__main__":
    unittest.main()
