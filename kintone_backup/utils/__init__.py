"""
kintone_backup.utils - Utility module

Common utilities including logging configuration and path resolution.
"""

from kintone_backup.utils.paths import (
    DEFAULT_CONFIG_DIR,
    DataLayout,
    resolve_config_dir,
)

__all__ = ["DEFAULT_CONFIG_DIR", "DataLayout", "resolve_config_dir"]
