"""
Paperkeep configuration.

Settings live in ~/.paperkeep/config.yaml (or wherever PAPERKEEP_CONFIG
points). Values in the file are layered over the dataclass defaults, then
PAPERKEEP_* environment variables are layered over the file.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CONFIG_DIR = Path.home() / ".paperkeep"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

# PBKDF2-SHA256 work factor for new archives
DEFAULT_KDF_ITERATIONS = 600_000
MIN_KDF_ITERATIONS = 10_000

VALID_STRATEGIES = ("merge", "replace", "skip")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class ExportConfig:
    """Backup export settings."""

    output_dir: str = str(DEFAULT_CONFIG_DIR / "backups")
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS


@dataclass
class ImportConfig:
    """Backup import settings."""

    default_strategy: str = "merge"
    max_display_errors: int = 5


@dataclass
class KeyStoreConfig:
    """Device keystore settings."""

    service_name: str = "paperkeep"
    allow_insecure_fallback: bool = True


@dataclass
class Settings:
    """
    Top-level Paperkeep settings.

    Attributes:
        data_dir: Directory holding the receipt database and images.
        log_level: Root log level name.
        export: Backup export settings.
        import_: Backup import settings ("import" in YAML).
        keystore: Device keystore settings.
    """

    data_dir: str = str(DEFAULT_CONFIG_DIR / "data")
    log_level: str = "INFO"

    export: ExportConfig = field(default_factory=ExportConfig)
    import_: ImportConfig = field(default_factory=ImportConfig)
    keystore: KeyStoreConfig = field(default_factory=KeyStoreConfig)


class ConfigurationError(Exception):
    """Raised for an unreadable or invalid configuration."""


def get_config_path() -> Path:
    """
    Return PAPERKEEP_CONFIG if set, else ~/.paperkeep/config.yaml.
    """
    env_path = os.environ.get("PAPERKEEP_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Build Settings from defaults, the config file and the environment.

    A missing file is not an error; defaults are used.

    Raises:
        ConfigurationError: If the file is unreadable or a value is invalid.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"{config_path} is not valid YAML: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Unable to read {config_path}: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    _validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Write settings back out in the layout load_config reads.

    Raises:
        ConfigurationError: If the file cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Unable to write {config_path}: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Copy recognised keys from each YAML section onto settings."""
    paperkeep_data = _section(data, "paperkeep")

    if "data_dir" in paperkeep_data:
        settings.data_dir = str(paperkeep_data["data_dir"])
    if "log_level" in paperkeep_data:
        settings.log_level = str(paperkeep_data["log_level"]).upper()

    export = _section(data, "export")
    if "output_dir" in export:
        settings.export.output_dir = str(export["output_dir"])
    if "kdf_iterations" in export:
        settings.export.kdf_iterations = _to_int(export["kdf_iterations"], "kdf_iterations")

    import_data = _section(data, "import")
    if "default_strategy" in import_data:
        settings.import_.default_strategy = str(import_data["default_strategy"]).lower()
    if "max_display_errors" in import_data:
        settings.import_.max_display_errors = _to_int(
            import_data["max_display_errors"], "max_display_errors"
        )

    keystore = _section(data, "keystore")
    if "service_name" in keystore:
        settings.keystore.service_name = str(keystore["service_name"])
    if "allow_insecure_fallback" in keystore:
        settings.keystore.allow_insecure_fallback = _to_bool(
            keystore["allow_insecure_fallback"], "allow_insecure_fallback"
        )

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Layer PAPERKEEP_* variables over settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "PAPERKEEP_DATA_DIR": ("data_dir", str),
        "PAPERKEEP_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "PAPERKEEP_EXPORT_DIR": ("export.output_dir", str),
        "PAPERKEEP_KDF_ITERATIONS": (
            "export.kdf_iterations",
            lambda x: _to_int(x, "PAPERKEEP_KDF_ITERATIONS"),
        ),
        "PAPERKEEP_KEYRING_SERVICE": ("keystore.service_name", str),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    """Return a top-level YAML section; an empty section reads as None."""
    section = data.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigurationError(
            f"Section '{name}' must be a mapping, got {type(section).__name__}"
        )
    return section


def _to_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from e


def _to_bool(value: Any, name: str) -> bool:
    # Real YAML booleans only; a quoted "false" is rejected
    if not isinstance(value, bool):
        raise ConfigurationError(f"{name} must be true or false, got {value!r}")
    return value


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def _validate_config(settings: Settings) -> None:
    """Raise ConfigurationError on the first out-of-range value."""
    if settings.log_level not in LOG_LEVELS:
        raise ConfigurationError(
            f"Unknown log_level {settings.log_level!r}; "
            f"expected one of {', '.join(LOG_LEVELS)}"
        )

    if settings.export.kdf_iterations < MIN_KDF_ITERATIONS:
        raise ConfigurationError(
            f"kdf_iterations must be at least {MIN_KDF_ITERATIONS:,}"
        )

    if settings.import_.default_strategy not in VALID_STRATEGIES:
        raise ConfigurationError(
            f"Invalid default_strategy: {settings.import_.default_strategy}. "
            f"Must be one of: {', '.join(VALID_STRATEGIES)}"
        )

    if settings.import_.max_display_errors < 1:
        raise ConfigurationError("max_display_errors must be at least 1")

    if not settings.keystore.service_name:
        raise ConfigurationError("keystore service_name must not be empty")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Inverse of _apply_config_data."""
    return {
        "paperkeep": {
            "data_dir": settings.data_dir,
            "log_level": settings.log_level,
        },
        "export": {
            "output_dir": settings.export.output_dir,
            "kdf_iterations": settings.export.kdf_iterations,
        },
        "import": {
            "default_strategy": settings.import_.default_strategy,
            "max_display_errors": settings.import_.max_display_errors,
        },
        "keystore": {
            "service_name": settings.keystore.service_name,
            "allow_insecure_fallback": settings.keystore.allow_insecure_fallback,
        },
    }
