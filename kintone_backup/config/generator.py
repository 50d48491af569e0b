"""
Configuration file generator for kintone backups.

Generates a default configuration file documenting every available option.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Returns:
        String containing YAML configuration with comments

    Example:
        config_yaml = generate_default_config()
        with open("config.yaml", "w") as f:
            f.write(config_yaml)
    """
    return """# kintone Backup Configuration
# ===========================
#
# This file sets the connection and default options for kintone-backup.
# CLI arguments always override these values.
#
# To use this configuration:
#   1. Save as ~/.kintone-backup/config.yaml (or custom location)
#   2. Fill in the connection settings
#   3. Run kintone-backup commands normally


# Connection
# ----------

# kintone subdomain, e.g. example.cybozu.com
# domain: example.cybozu.com

# API token authentication (recommended). The token needs read permission on
# every backed-up app and add/edit permission for restores and the audit app.
# Can also be set with the KINTONE_BACKUP_API_TOKEN environment variable.
# api_token: your-api-token

# Password authentication (used when no api_token is set).
# The password can also be set with KINTONE_BACKUP_PASSWORD.
# username: backup-user
# password: secret

# App receiving one audit record per backup or restore run.
# Leave unset to disable the audit log.
# audit_app_id: 99

# Field code of the "updated datetime" system field used for differential
# backups. Change it if your apps use a localized or renamed field code.
# Default: 更新日時
# updated_time_field: 更新日時


# Backup Behavior
# ---------------

# Apps backed up by 'kintone-backup --scheduled'
# apps:
#   - 42
#   - 57

# Directory for the metadata database, archives, attachments and logs
# Default: <config dir>/backup_data
# data_dir: /path/to/backup_data

# Backup type used by 'kintone-backup backup' when neither --full nor
# --differential is given. Options: full, differential
# Default: differential
# default_backup_type: differential

# Look for attachment fields in every record instead of only the first one.
# Default: false
# attachment_scan_all_records: false


# API Options
# -----------

# Records per page when reading (max 500)
# api_page_size: 500

# Records per add/update call (max 100)
# api_batch_size: 100

# Retries after the first attempt for network errors, 429 and 5xx responses
# api_max_retries: 5

# Backoff delays in seconds (doubled per retry, with +/-20% jitter)
# api_initial_retry_delay: 1.0
# api_max_retry_delay: 32.0

# Per-request timeout in seconds
# api_timeout: 60


# Logging Options
# ---------------

# Enable verbose output with detailed logging
# Default: false
# verbose: false

# Directory for log files
# Default: <data_dir>/logs
# log_dir: /path/to/logs

# Number of daily log files to keep (0 keeps everything)
# Default: 10
# log_retention_count: 10
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, str | None]:
    """
    Save default configuration file to specified path.

    Creates parent directories if they don't exist and saves the
    configuration with owner-only permissions, since it may hold secrets.

    Args:
        config_path: Path where the config file should be saved
        overwrite: If True, overwrite existing file. If False, fail if file exists.

    Returns:
        Tuple of (success: bool, error_message: Optional[str])
    """
    try:
        config_path = config_path.expanduser().resolve()

        if config_path.exists() and not overwrite:
            return (
                False,
                f"Configuration file already exists: {config_path}\n"
                "Use --force to overwrite.",
            )

        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")
        config_path.chmod(0o600)

        logger.info(f"Created configuration file: {config_path}")
        return (True, None)

    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)
