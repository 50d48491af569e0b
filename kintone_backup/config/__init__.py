"""
kintone_backup.config - Configuration management module

Contains configuration loading, validation, and typed settings.
"""

from kintone_backup.config.generator import generate_default_config, save_config_file
from kintone_backup.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from kintone_backup.config.settings import BackupSettings

__all__ = [
    "BackupSettings",
    "ConfigError",
    "ConfigLoader",
    "DEFAULT_CONFIG_FILE",
    "generate_default_config",
    "save_config_file",
]
