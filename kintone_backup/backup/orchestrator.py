"""
Backup orchestration for kintone apps.

Drives one app's full or differential backup end to end:
- records a run row before any remote call
- reads all records, or only those changed since the app's last backup
- writes the archive and downloads attachments
- stores record markers and advances the app's backup baseline
- appends an audit row to the remote audit app
"""

from __future__ import annotations

import logging
import socket
import time
from typing import TYPE_CHECKING, Any, Optional

from kintone_backup import __version__
from kintone_backup.api.kintone_api import DEFAULT_UPDATED_TIME_FIELD
from kintone_backup.api.retry import ApiStats
from kintone_backup.backup.archive import ARCHIVE_SCHEMA_VERSION, Manifest
from kintone_backup.backup.models import (
    AuditEntry,
    BackupKind,
    BackupResult,
    BackupRun,
    RunStatus,
    TriggerType,
    format_error,
    to_timestamp,
    utc_now,
)
from kintone_backup.records.fields import Record, find_attachment_fields

if TYPE_CHECKING:
    from kintone_backup.api.kintone_api import KintoneAPI
    from kintone_backup.backup.archive import ArchiveCodec
    from kintone_backup.backup.attachments import AttachmentFetcher
    from kintone_backup.storage.db import BackupDatabase

logger = logging.getLogger(__name__)

ARCHIVE_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


class BackupError(Exception):
    """Raised when a backup cannot be started."""

    pass


class BackupOrchestrator:
    """
    Runs backups for single apps and for every active tracked app.

    Attributes:
        api: kintone REST client
        db: Metadata store
        codec: Archive writer/reader
        fetcher: Attachment downloader
        audit_app_id: App receiving one audit row per run (None disables auditing)
        scan_all_records_for_attachments: Look for FILE fields in every record
            instead of only the first one

    Usage:
        orchestrator = BackupOrchestrator(api, db, codec, fetcher, audit_app_id="99")

        # Back up one app
        result = orchestrator.backup_app("42", BackupKind.FULL)

        # Back up every active tracked app
        results = orchestrator.run_scheduled()
    """

    def __init__(
        self,
        api: KintoneAPI,
        db: BackupDatabase,
        codec: ArchiveCodec,
        fetcher: AttachmentFetcher,
        audit_app_id: Optional[str] = None,
        host: Optional[str] = None,
        client_version: str = __version__,
        updated_time_field: str = DEFAULT_UPDATED_TIME_FIELD,
        scan_all_records_for_attachments: bool = False,
    ):
        self.api = api
        self.db = db
        self.codec = codec
        self.fetcher = fetcher
        self.audit_app_id = audit_app_id
        self.host = host if host is not None else socket.gethostname()
        self.client_version = client_version
        self.updated_time_field = updated_time_field
        self.scan_all_records_for_attachments = scan_all_records_for_attachments

    def backup_app(
        self,
        app_id: str,
        kind: BackupKind | str = BackupKind.FULL,
        trigger: TriggerType | str = TriggerType.MANUAL,
        stats: Optional[ApiStats] = None,
    ) -> BackupResult:
        """
        Back up one app.

        A differential backup of an app that has never been backed up
        performs a full read. An empty record set finishes successfully
        without writing an archive.

        Args:
            app_id: App to back up
            kind: FULL or DIFFERENTIAL
            trigger: MANUAL or SCHEDULED
            stats: Counters to accumulate into (a new ApiStats if omitted)

        Returns:
            BackupResult describing the finished run

        Raises:
            BackupError: If kind is not a backup kind
            Exception: Any failure after the run row was created; the run is
                marked as failed before the error is re-raised
        """
        kind = BackupKind(kind)
        trigger = TriggerType(trigger)
        if kind is BackupKind.RESTORE:
            raise BackupError("backup_app only performs full or differential backups")

        stats = stats if stats is not None else ApiStats()
        started = utc_now()
        start_time = to_timestamp(started)
        clock = time.monotonic()

        run_id = self.db.insert_run(
            BackupRun(
                target_app_id=app_id,
                kind=kind,
                trigger_type=trigger,
                start_time=start_time,
                host=self.host,
                client_version=self.client_version,
            )
        )
        result = BackupResult(app_id=app_id, run_id=run_id, kind=kind)
        archive_reference: Optional[str] = None

        with self.api.track(stats):
            try:
                app_info = self.api.get_app(app_id)
                result.app_name = str(app_info.get("name", ""))
                logger.info(
                    f"Backup started: app {app_id} ({result.app_name}), "
                    f"kind={kind.value}, trigger={trigger.value}"
                )
                self.db.update_run(run_id, target_app_name=result.app_name)
                self.db.upsert_app(app_id, app_name=result.app_name)

                records, baseline = self._fetch_records(app_id, kind)

                if not records:
                    result.duration = time.monotonic() - clock
                    self.db.update_run(
                        run_id,
                        end_time=to_timestamp(utc_now()),
                        duration=result.duration,
                        record_count=0,
                        status=RunStatus.SUCCESS,
                        api_request_count=stats.api_request_count,
                        retry_count=stats.retry_count,
                        diff_baseline_time=baseline,
                    )
                    logger.info(f"No records to back up for app {app_id}")
                    return self._with_stats(result, stats)

                run_stamp = started.strftime(ARCHIVE_TIMESTAMP_FORMAT)
                archive_reference = self.codec.archive_name(app_id, run_stamp, kind.value)
                field_schema = self._capture_field_schema(app_id)
                if field_schema is not None:
                    self.db.upsert_app(app_id, field_schema=field_schema)
                manifest = Manifest(
                    schema_version=ARCHIVE_SCHEMA_VERSION,
                    app_id=app_id,
                    record_count=len(records),
                    captured_at=to_timestamp(utc_now()),
                    field_schema=field_schema,
                )
                info = self.codec.write(archive_reference, records, manifest)

                field_codes = find_attachment_fields(
                    records, scan_all_records=self.scan_all_records_for_attachments
                )
                report = self.fetcher.fetch(app_id, records, field_codes, run_stamp)
                result.attachments_downloaded = report.downloaded
                result.attachments_failed = report.failed

                markers = self._record_markers(records, start_time)
                result.duration = time.monotonic() - clock
                result.record_count = len(records)
                result.archive_path = str(info.path)
                remarks = None
                if report.failed:
                    remarks = f"{report.failed} attachment download(s) failed"

                self.db.complete_backup(
                    run_id,
                    app_id,
                    markers,
                    backup_time=start_time,
                    is_full=kind is BackupKind.FULL,
                    end_time=to_timestamp(utc_now()),
                    duration=result.duration,
                    record_count=len(records),
                    archive_reference=archive_reference,
                    size=info.compressed_size,
                    compression_ratio=round(info.compression_ratio, 4),
                    status=RunStatus.SUCCESS,
                    api_request_count=stats.api_request_count,
                    retry_count=stats.retry_count,
                    diff_baseline_time=baseline,
                    remarks=remarks,
                )

                self._emit_audit(
                    AuditEntry(
                        backup_datetime=start_time,
                        target_app_id=app_id,
                        target_app_name=result.app_name,
                        record_count=len(records),
                        status=RunStatus.SUCCESS.value,
                        duration_seconds=round(result.duration, 3),
                        backup_type=kind.value,
                        trigger_type=trigger.value,
                        api_request_count=stats.api_request_count,
                        retry_count=stats.retry_count,
                        file_path=archive_reference,
                        diff_base_datetime=baseline or "",
                        data_size_mb=round(info.compressed_size / (1024 * 1024), 2),
                        compression_ratio=round(info.compression_ratio * 100, 2),
                        hostname=self.host,
                        app_version=self.client_version,
                        remarks=remarks or "",
                    )
                )

                logger.info(
                    f"Backup succeeded: app {app_id} ({result.app_name}), "
                    f"{len(records)} records in {result.duration:.1f}s"
                )
                return self._with_stats(result, stats)

            except Exception as e:
                result.duration = time.monotonic() - clock
                self.db.update_run(
                    run_id,
                    end_time=to_timestamp(utc_now()),
                    duration=result.duration,
                    status=RunStatus.FAILURE,
                    error_detail=format_error(e),
                    api_request_count=stats.api_request_count,
                    retry_count=stats.retry_count,
                )
                if archive_reference:
                    self.codec.delete(archive_reference)
                logger.error(f"Backup failed: app {app_id}: {e}")
                raise

    def run_scheduled(
        self, kind: BackupKind | str = BackupKind.DIFFERENTIAL
    ) -> list[BackupResult]:
        """
        Back up every active tracked app, one at a time.

        A failing app is recorded in the result list and does not stop
        the remaining apps.
        """
        apps = self.db.list_apps(active_only=True)
        logger.info(f"Scheduled backup started for {len(apps)} apps")

        results: list[BackupResult] = []
        for app in apps:
            try:
                results.append(
                    self.backup_app(app.app_id, kind, TriggerType.SCHEDULED)
                )
            except Exception as e:
                results.append(
                    BackupResult(
                        app_id=app.app_id,
                        app_name=app.app_name,
                        kind=BackupKind(kind),
                        status=RunStatus.FAILURE,
                        error=str(e),
                    )
                )

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Scheduled backup finished: {succeeded}/{len(results)} succeeded")
        return results

    def _fetch_records(
        self, app_id: str, kind: BackupKind
    ) -> tuple[list[dict[str, Any]], Optional[str]]:
        """Return the records to back up and the baseline used, if any."""
        if kind is BackupKind.DIFFERENTIAL:
            times = self.db.get_last_backup_times(app_id) or {}
            baseline = times.get("last_backup_time")
            if baseline:
                logger.debug(f"Differential baseline for app {app_id}: {baseline}")
                return self.api.get_changed_records(app_id, baseline), baseline
            logger.info(f"No previous backup of app {app_id}; reading all records")

        return self.api.get_all_records(app_id), None

    def _capture_field_schema(self, app_id: str) -> Optional[dict[str, Any]]:
        try:
            return self.api.get_field_schema(app_id)
        except Exception as e:
            logger.error(f"Failed to get field schema for app {app_id}: {e}")
            return None

    def _record_markers(
        self, records: list[dict[str, Any]], fallback_time: str
    ) -> list[tuple[str, str]]:
        markers = []
        for raw in records:
            record = Record(raw)
            if record.record_id is None:
                continue
            updated = record.updated_time(self.updated_time_field) or fallback_time
            markers.append((record.record_id, updated))
        return markers

    def _emit_audit(self, entry: AuditEntry) -> None:
        if not self.audit_app_id:
            logger.warning("Audit app ID not configured. Skipping audit log.")
            return
        try:
            self.api.log_audit(self.audit_app_id, entry.to_fields())
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")

    @staticmethod
    def _with_stats(result: BackupResult, stats: ApiStats) -> BackupResult:
        result.api_request_count = stats.api_request_count
        result.retry_count = stats.retry_count
        return result
