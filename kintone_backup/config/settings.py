"""
Typed settings built from the YAML configuration and the environment.

Secrets can be kept out of the configuration file:
- KINTONE_BACKUP_API_TOKEN overrides ``api_token``
- KINTONE_BACKUP_PASSWORD overrides ``password``
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from kintone_backup.api.kintone_api import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_PAGE_SIZE,
    DEFAULT_TIMEOUT,
    DEFAULT_UPDATED_TIME_FIELD,
    KintoneAPI,
)
from kintone_backup.api.retry import (
    DEFAULT_INITIAL_RETRY_DELAY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_RETRY_DELAY,
    RetryPolicy,
)
from kintone_backup.auth.credentials import KintoneCredentials
from kintone_backup.config.loader import ConfigError
from kintone_backup.utils.paths import DEFAULT_DATA_DIR_NAME, DataLayout

ENV_API_TOKEN = "KINTONE_BACKUP_API_TOKEN"
ENV_PASSWORD = "KINTONE_BACKUP_PASSWORD"

DEFAULT_LOG_RETENTION_COUNT = 10


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass
class BackupSettings:
    """
    Resolved settings for one process.

    Usage:
        config = ConfigLoader(config_dir).load_and_validate()
        settings = BackupSettings.from_config(config, config_dir)
        settings.require_connection()
        api = settings.build_api()
    """

    config_dir: Path
    domain: Optional[str] = None
    api_token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    audit_app_id: Optional[str] = None
    updated_time_field: str = DEFAULT_UPDATED_TIME_FIELD
    data_dir: Optional[Path] = None
    default_backup_type: str = "differential"
    attachment_scan_all_records: bool = False
    api_page_size: int = DEFAULT_PAGE_SIZE
    api_batch_size: int = DEFAULT_BATCH_SIZE
    api_max_retries: int = DEFAULT_MAX_RETRIES
    api_initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY
    api_max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY
    api_timeout: float = DEFAULT_TIMEOUT
    log_dir: Optional[Path] = None
    log_retention_count: int = DEFAULT_LOG_RETENTION_COUNT
    verbose: bool = False
    apps: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.data_dir is None:
            self.data_dir = self.config_dir / DEFAULT_DATA_DIR_NAME

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        config_dir: Path,
        env: Optional[Mapping[str, str]] = None,
    ) -> BackupSettings:
        """
        Build settings from a validated configuration dictionary.

        Args:
            config: Output of ConfigLoader.load_and_validate()
            config_dir: Resolved configuration directory
            env: Environment to read secrets from (defaults to os.environ)

        Returns:
            BackupSettings with defaults filled in
        """
        env = os.environ if env is None else env

        data_dir = config.get("data_dir")
        log_dir = config.get("log_dir")

        return cls(
            config_dir=config_dir,
            domain=_optional_str(config.get("domain")),
            api_token=_optional_str(env.get(ENV_API_TOKEN) or config.get("api_token")),
            username=_optional_str(config.get("username")),
            password=_optional_str(env.get(ENV_PASSWORD) or config.get("password")),
            audit_app_id=_optional_str(config.get("audit_app_id")),
            updated_time_field=config.get(
                "updated_time_field", DEFAULT_UPDATED_TIME_FIELD
            ),
            data_dir=Path(data_dir).expanduser() if data_dir else None,
            default_backup_type=config.get("default_backup_type", "differential"),
            attachment_scan_all_records=config.get("attachment_scan_all_records", False),
            api_page_size=config.get("api_page_size", DEFAULT_PAGE_SIZE),
            api_batch_size=config.get("api_batch_size", DEFAULT_BATCH_SIZE),
            api_max_retries=config.get("api_max_retries", DEFAULT_MAX_RETRIES),
            api_initial_retry_delay=float(
                config.get("api_initial_retry_delay", DEFAULT_INITIAL_RETRY_DELAY)
            ),
            api_max_retry_delay=float(
                config.get("api_max_retry_delay", DEFAULT_MAX_RETRY_DELAY)
            ),
            api_timeout=float(config.get("api_timeout", DEFAULT_TIMEOUT)),
            log_dir=Path(log_dir).expanduser() if log_dir else None,
            log_retention_count=config.get(
                "log_retention_count", DEFAULT_LOG_RETENTION_COUNT
            ),
            verbose=config.get("verbose", False),
            apps=[str(app_id) for app_id in config.get("apps") or []],
        )

    @property
    def layout(self) -> DataLayout:
        layout = DataLayout.under(self.data_dir or self.config_dir)
        if self.log_dir is not None:
            layout.logs_dir = self.log_dir
        return layout

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_token or (self.username and self.password))

    def require_connection(self) -> None:
        """
        Ensure the settings can reach kintone.

        Raises:
            ConfigError: If the domain or credentials are missing
        """
        if not self.domain:
            raise ConfigError(
                "kintone domain is not configured. "
                "Set 'domain' in config.yaml (run 'kintone-backup init-config')."
            )
        if not self.has_credentials:
            raise ConfigError(
                "kintone credentials are not configured. Set 'api_token' "
                f"(or {ENV_API_TOKEN}), or 'username' and 'password'."
            )

    def credentials(self) -> KintoneCredentials:
        self.require_connection()
        return KintoneCredentials(
            domain=self.domain or "",
            api_token=self.api_token,
            username=self.username,
            password=self.password,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.api_max_retries,
            initial_delay=self.api_initial_retry_delay,
            max_delay=self.api_max_retry_delay,
        )

    def build_api(self) -> KintoneAPI:
        """
        Create a KintoneAPI client from these settings.

        Raises:
            ConfigError: If the domain or credentials are missing
        """
        return KintoneAPI(
            self.credentials(),
            retry_policy=self.retry_policy(),
            page_size=self.api_page_size,
            batch_size=self.api_batch_size,
            timeout=self.api_timeout,
            updated_time_field=self.updated_time_field,
        )
