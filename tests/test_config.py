"""Tests for configuration settings."""

from __future__ import annotations

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from paperkeep.config.settings import (
    DEFAULT_CONFIG_DIR,
    DEFAULT_CONFIG_FILE,
    DEFAULT_KDF_ITERATIONS,
    ConfigurationError,
    ExportConfig,
    ImportConfig,
    KeyStoreConfig,
    Settings,
    _apply_environment_overrides,
    _set_nested_attr,
    _settings_to_dict,
    _validate_config,
    get_config_path,
    load_config,
    save_config,
)

CLEAN_ENV = {
    key: value for key, value in os.environ.items() if not key.startswith("PAPERKEEP_")
}


class TestSettingsDefaults(unittest.TestCase):
    """Tests for default configuration values."""

    def test_settings_defaults(self) -> None:
        settings = Settings()

        self.assertEqual(settings.data_dir, str(DEFAULT_CONFIG_DIR / "data"))
        self.assertEqual(settings.log_level, "INFO")
        self.assertIsInstance(settings.export, ExportConfig)
        self.assertIsInstance(settings.import_, ImportConfig)
        self.assertIsInstance(settings.keystore, KeyStoreConfig)

    def test_export_defaults(self) -> None:
        export = ExportConfig()

        self.assertEqual(export.output_dir, str(DEFAULT_CONFIG_DIR / "backups"))
        self.assertEqual(export.kdf_iterations, DEFAULT_KDF_ITERATIONS)

    def test_import_defaults(self) -> None:
        import_config = ImportConfig()

        self.assertEqual(import_config.default_strategy, "merge")
        self.assertEqual(import_config.max_display_errors, 5)

    def test_keystore_defaults(self) -> None:
        keystore = KeyStoreConfig()

        self.assertEqual(keystore.service_name, "paperkeep")
        self.assertTrue(keystore.allow_insecure_fallback)


@patch.dict(os.environ, CLEAN_ENV, clear=True)
class TestLoadConfig(unittest.TestCase):
    """Tests for loading and saving YAML configuration."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config_path = Path(self.temp_dir.name) / "config.yaml"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_missing_file_gives_defaults(self) -> None:
        settings = load_config(self.config_path)
        self.assertEqual(settings, Settings())

    def test_load_values(self) -> None:
        self.config_path.write_text(
            "paperkeep:\n"
            "  data_dir: /srv/paperkeep\n"
            "  log_level: debug\n"
            "export:\n"
            "  output_dir: /srv/backups\n"
            "  kdf_iterations: 200000\n"
            "import:\n"
            "  default_strategy: Skip\n"
            "  max_display_errors: 10\n"
            "keystore:\n"
            "  service_name: paperkeep-test\n"
            "  allow_insecure_fallback: false\n"
        )

        settings = load_config(self.config_path)

        self.assertEqual(settings.data_dir, "/srv/paperkeep")
        self.assertEqual(settings.log_level, "DEBUG")
        self.assertEqual(settings.export.output_dir, "/srv/backups")
        self.assertEqual(settings.export.kdf_iterations, 200_000)
        self.assertEqual(settings.import_.default_strategy, "skip")
        self.assertEqual(settings.import_.max_display_errors, 10)
        self.assertEqual(settings.keystore.service_name, "paperkeep-test")
        self.assertFalse(settings.keystore.allow_insecure_fallback)

    def test_invalid_yaml(self) -> None:
        self.config_path.write_text("paperkeep: [unclosed\n")

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_non_mapping(self) -> None:
        self.config_path.write_text("- just\n- a list\n")

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_empty_sections_use_defaults(self) -> None:
        self.config_path.write_text("paperkeep:\nexport:\nimport:\nkeystore:\n")

        self.assertEqual(load_config(self.config_path), Settings())

    def test_section_must_be_mapping(self) -> None:
        self.config_path.write_text("export:\n  - /srv/backups\n")

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_quoted_boolean_rejected(self) -> None:
        """A quoted "false" must not silently enable the insecure fallback."""
        self.config_path.write_text('keystore:\n  allow_insecure_fallback: "false"\n')

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_yaml_boolean_accepted(self) -> None:
        self.config_path.write_text("keystore:\n  allow_insecure_fallback: no\n")

        self.assertFalse(load_config(self.config_path).keystore.allow_insecure_fallback)

    def test_non_integer_iterations(self) -> None:
        self.config_path.write_text("export:\n  kdf_iterations: lots\n")

        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_save_and_reload(self) -> None:
        settings = Settings(data_dir="/tmp/pk", log_level="WARNING")
        settings.export.kdf_iterations = 50_000
        settings.import_.default_strategy = "replace"

        save_config(settings, self.config_path)

        self.assertEqual(load_config(self.config_path), settings)

    def test_get_config_path_default(self) -> None:
        self.assertEqual(get_config_path(), DEFAULT_CONFIG_FILE)

    def test_get_config_path_env(self) -> None:
        with patch.dict(os.environ, {"PAPERKEEP_CONFIG": str(self.config_path)}):
            self.assertEqual(get_config_path(), self.config_path)


@patch.dict(os.environ, CLEAN_ENV, clear=True)
class TestEnvironmentOverrides(unittest.TestCase):
    """Tests for PAPERKEEP_* environment overrides."""

    def test_overrides(self) -> None:
        env = {
            "PAPERKEEP_DATA_DIR": "/env/data",
            "PAPERKEEP_LOG_LEVEL": "error",
            "PAPERKEEP_EXPORT_DIR": "/env/backups",
            "PAPERKEEP_KDF_ITERATIONS": "123456",
            "PAPERKEEP_KEYRING_SERVICE": "env-service",
        }
        with patch.dict(os.environ, env):
            settings = _apply_environment_overrides(Settings())

        self.assertEqual(settings.data_dir, "/env/data")
        self.assertEqual(settings.log_level, "ERROR")
        self.assertEqual(settings.export.output_dir, "/env/backups")
        self.assertEqual(settings.export.kdf_iterations, 123_456)
        self.assertEqual(settings.keystore.service_name, "env-service")

    def test_invalid_iterations(self) -> None:
        with patch.dict(os.environ, {"PAPERKEEP_KDF_ITERATIONS": "many"}):
            with self.assertRaises(ConfigurationError):
                _apply_environment_overrides(Settings())

    def test_env_beats_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text("paperkeep:\n  data_dir: /file/data\n")

            with patch.dict(os.environ, {"PAPERKEEP_DATA_DIR": "/env/data"}):
                settings = load_config(config_path)

        self.assertEqual(settings.data_dir, "/env/data")


class TestValidateConfig(unittest.TestCase):
    """Tests for configuration validation."""

    def test_defaults_valid(self) -> None:
        _validate_config(Settings())

    def test_invalid_log_level(self) -> None:
        with self.assertRaises(ConfigurationError):
            _validate_config(Settings(log_level="LOUD"))

    def test_iterations_floor(self) -> None:
        settings = Settings()
        settings.export.kdf_iterations = 9_999

        with self.assertRaises(ConfigurationError):
            _validate_config(settings)

    def test_invalid_strategy(self) -> None:
        settings = Settings()
        settings.import_.default_strategy = "overwrite"

        with self.assertRaises(ConfigurationError):
            _validate_config(settings)

    def test_max_display_errors(self) -> None:
        settings = Settings()
        settings.import_.max_display_errors = 0

        with self.assertRaises(ConfigurationError):
            _validate_config(settings)

    def test_empty_service_name(self) -> None:
        settings = Settings()
        settings.keystore.service_name = ""

        with self.assertRaises(ConfigurationError):
            _validate_config(settings)


class TestHelpers(unittest.TestCase):
    """Tests for configuration helpers."""

    def test_set_nested_attr(self) -> None:
        settings = Settings()
        _set_nested_attr(settings, "export.kdf_iterations", 42)
        self.assertEqual(settings.export.kdf_iterations, 42)

    def test_settings_to_dict_uses_yaml_sections(self) -> None:
        data = _settings_to_dict(Settings())

        self.assertEqual(set(data), {"paperkeep", "export", "import", "keystore"})
        self.assertEqual(data["import"]["default_strategy"], "merge")


if __name__ == "__main__":
    unittest.main()
