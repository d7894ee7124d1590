"""
Configuration management for Paperkeep.

This module handles loading, validating, and saving configuration settings.
"""

from paperkeep.config.settings import (
    DEFAULT_CONFIG_DIR,
    ConfigurationError,
    ExportConfig,
    ImportConfig,
    KeyStoreConfig,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    "Settings",
    "ExportConfig",
    "ImportConfig",
    "KeyStoreConfig",
    "load_config",
    "save_config",
    "ConfigurationError",
    "DEFAULT_CONFIG_DIR",
]
