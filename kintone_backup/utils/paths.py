"""
Path utilities for configuration and data directory resolution.

Provides consistent path resolution for the kintone-backup configuration
directory and the backup data layout across all modules.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".kintone-backup"

# Environment variable for overriding config directory
CONFIG_DIR_ENV_VAR = "KINTONE_BACKUP_CONFIG_DIR"

# Name of the data directory inside the config directory
DEFAULT_DATA_DIR_NAME = "backup_data"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir parameter (if provided)
        2. KINTONE_BACKUP_CONFIG_DIR environment variable
        3. Default directory (~/.kintone-backup)

    Args:
        config_dir: Optional explicit configuration directory path.
                   Can be a Path object or string.

    Returns:
        Resolved Path to the configuration directory (expanduser and resolve applied)
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


@dataclass
class DataLayout:
    """
    Locations of everything a backup run writes.

    Usage:
        layout = DataLayout.under(Path("~/.kintone-backup/backup_data"))
        layout.ensure()
        db = BackupDatabase(str(layout.metadata_db))
    """

    root: Path
    metadata_db: Path
    archives_dir: Path
    attachments_dir: Path
    logs_dir: Path

    @classmethod
    def under(cls, root: Path | str) -> DataLayout:
        root = Path(root).expanduser()
        return cls(
            root=root,
            metadata_db=root / "metadata.db",
            archives_dir=root / "archives",
            attachments_dir=root / "attachments",
            logs_dir=root / "logs",
        )

    def ensure(self) -> None:
        """Create the data directories if they don't exist."""
        for directory in (
            self.root,
            self.archives_dir,
            self.attachments_dir,
            self.logs_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)
