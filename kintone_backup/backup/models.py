"""
Data model for backup runs, tracked apps, record markers and run results.
"""

from __future__ import annotations

import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class BackupKind(str, Enum):
    FULL = "full"
    DIFFERENTIAL = "differential"
    RESTORE = "restore"


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class RunStatus(str, Enum):
    """Lifecycle of a run: RUNNING, then exactly one terminal state."""

    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE = "failure"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Serialize a datetime the way the metadata store keeps it."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def format_error(error: BaseException) -> str:
    """Full error detail: message plus traceback when one is attached."""
    detail = "".join(
        traceback.format_exception(type(error), error, error.__traceback__)
    ).strip()
    return detail or str(error)


@dataclass
class BackupRun:
    """
    One backup or restore run as stored in the metadata index.

    Attributes mirror the backup_runs table. A run is created with
    status RUNNING and updated in place until it reaches a terminal status.
    """

    target_app_id: str
    kind: BackupKind
    trigger_type: TriggerType
    start_time: str
    status: RunStatus = RunStatus.RUNNING
    id: Optional[int] = None
    target_app_name: Optional[str] = None
    end_time: Optional[str] = None
    duration: Optional[float] = None
    record_count: Optional[int] = None
    archive_reference: Optional[str] = None
    size: Optional[int] = None
    compression_ratio: Optional[float] = None
    error_detail: Optional[str] = None
    api_request_count: int = 0
    retry_count: int = 0
    diff_baseline_time: Optional[str] = None
    host: Optional[str] = None
    client_version: Optional[str] = None
    remarks: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> BackupRun:
        return cls(
            id=row.get("id"),
            target_app_id=row["target_app_id"],
            target_app_name=row.get("target_app_name"),
            kind=BackupKind(row["kind"]),
            trigger_type=TriggerType(row["trigger_type"]),
            start_time=row["start_time"],
            end_time=row.get("end_time"),
            duration=row.get("duration"),
            record_count=row.get("record_count"),
            archive_reference=row.get("archive_reference"),
            size=row.get("size"),
            compression_ratio=row.get("compression_ratio"),
            status=RunStatus(row["status"]),
            error_detail=row.get("error_detail"),
            api_request_count=row.get("api_request_count") or 0,
            retry_count=row.get("retry_count") or 0,
            diff_baseline_time=row.get("diff_baseline_time"),
            host=row.get("host"),
            client_version=row.get("client_version"),
            remarks=row.get("remarks"),
        )

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["kind"] = self.kind.value
        row["trigger_type"] = self.trigger_type.value
        row["status"] = self.status.value
        return row


@dataclass
class TrackedApp:
    app_id: str
    app_name: Optional[str] = None
    is_active: bool = True
    last_backup_time: Optional[str] = None
    last_full_backup_time: Optional[str] = None
    field_schema: Optional[dict[str, Any]] = None


@dataclass
class RecordMarker:
    app_id: str
    record_id: str
    updated_time: str
    last_backup_run_id: Optional[int] = None


@dataclass
class BackupResult:
    """Summary returned by a single-app backup."""

    app_id: str
    run_id: Optional[int] = None
    app_name: Optional[str] = None
    kind: BackupKind = BackupKind.FULL
    status: RunStatus = RunStatus.SUCCESS
    record_count: int = 0
    archive_path: Optional[str] = None
    duration: float = 0.0
    attachments_downloaded: int = 0
    attachments_failed: int = 0
    api_request_count: int = 0
    retry_count: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status in (RunStatus.SUCCESS, RunStatus.PARTIAL_SUCCESS)


@dataclass
class RestoreResult:
    """Summary returned by a restore."""

    source_run_id: int
    app_id: str
    app_name: Optional[str] = None
    run_id: Optional[int] = None
    status: RunStatus = RunStatus.SUCCESS
    record_count: int = 0
    added_count: int = 0
    updated_count: int = 0
    duration: float = 0.0
    api_request_count: int = 0
    retry_count: int = 0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status in (RunStatus.SUCCESS, RunStatus.PARTIAL_SUCCESS)


@dataclass
class AuditEntry:
    """
    One row of the remote audit app.

    Field names match the audit app's field codes.
    """

    backup_datetime: str
    target_app_id: str
    target_app_name: str
    record_count: int
    status: str
    duration_seconds: float
    backup_type: str
    trigger_type: str
    api_request_count: int = 0
    retry_count: int = 0
    error_details: str = ""
    file_path: str = ""
    diff_base_datetime: str = ""
    data_size_mb: float = 0.0
    compression_ratio: float = 0.0
    hostname: str = ""
    app_version: str = ""
    remarks: str = ""

    def to_fields(self) -> dict[str, Any]:
        return asdict(self)
