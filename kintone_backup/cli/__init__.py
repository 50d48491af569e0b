"""CLI package for kintone_backup."""

from kintone_backup.cli.main import (
    build_services,
    cli,
    get_config_dir,
    get_config_file,
    run_scheduled_mode,
)

__all__ = [
    "build_services",
    "cli",
    "get_config_dir",
    "get_config_file",
    "run_scheduled_mode",
]
