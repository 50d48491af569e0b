"""
Restore of archived records into a live kintone app.

Reconciles each archived record with the live app:
- records whose business key resolves to a live record id are updated
- all other records are added as new records

Updates and inserts are applied independently, so a failure in one does
not prevent the other from being attempted.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from kintone_backup import __version__
from kintone_backup.api.kintone_api import KintoneAPI, KintoneAPIError, UpsertResult
from kintone_backup.api.retry import ApiStats
from kintone_backup.backup.models import (
    AuditEntry,
    BackupKind,
    BackupRun,
    RestoreResult,
    RunStatus,
    TriggerType,
    format_error,
    to_timestamp,
    utc_now,
)
from kintone_backup.records.fields import Record

if TYPE_CHECKING:
    from kintone_backup.backup.archive import ArchiveCodec
    from kintone_backup.storage.db import BackupDatabase

logger = logging.getLogger(__name__)


class RestoreError(Exception):
    """Raised when a restore cannot be performed."""

    pass


class BackupNotFoundError(RestoreError):
    """Raised when the requested backup run does not exist."""

    pass


@dataclass
class RestorePlan:
    """Partition of archived records into live updates and inserts."""

    updates: list[dict[str, Any]] = field(default_factory=list)
    inserts: list[dict[str, Any]] = field(default_factory=list)
    keyless_count: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass
class PartitionOutcome:
    updated_count: int = 0
    added_count: int = 0
    update_failed: bool = False
    insert_failed: bool = False
    errors: list[str] = field(default_factory=list)


def derive_restore_status(plan: RestorePlan, outcome: PartitionOutcome) -> RunStatus:
    """
    Combine partition outcomes into a run status.

    SUCCESS if every attempted partition succeeded, FAILURE if every
    attempted partition failed without applying a single record,
    PARTIAL_SUCCESS otherwise.
    """
    attempted = []
    if plan.updates:
        attempted.append(outcome.update_failed)
    if plan.inserts:
        attempted.append(outcome.insert_failed)

    if not any(attempted):
        return RunStatus.SUCCESS
    if all(attempted) and not (outcome.updated_count or outcome.added_count):
        return RunStatus.FAILURE
    return RunStatus.PARTIAL_SUCCESS


def _applied_before_failure(error: Exception) -> UpsertResult:
    if isinstance(error, KintoneAPIError) and error.partial_result is not None:
        return error.partial_result
    return UpsertResult()


def _partition_error(action: str, total: int, applied: int, error: Exception) -> str:
    if applied:
        return f"{action} {total} records failed after {applied} applied: {error}"
    return f"{action} {total} records failed: {error}"


class RestoreReconciler:
    """
    Restores records from a backup archive into the live app.

    Usage:
        reconciler = RestoreReconciler(api, db, codec, audit_app_id="99")

        # Restore every record of backup run 7
        result = reconciler.restore(7)

        # Restore selected records only
        result = reconciler.restore(7, selected_record_ids=["1", "5"])
    """

    def __init__(
        self,
        api: KintoneAPI,
        db: BackupDatabase,
        codec: ArchiveCodec,
        audit_app_id: Optional[str] = None,
        host: Optional[str] = None,
        client_version: str = __version__,
    ):
        self.api = api
        self.db = db
        self.codec = codec
        self.audit_app_id = audit_app_id
        self.host = host if host is not None else socket.gethostname()
        self.client_version = client_version

    def load_records(self, run_id: int) -> list[dict[str, Any]]:
        """
        Read the archived records of a backup run.

        Raises:
            BackupNotFoundError: If the run does not exist
            RestoreError: If the run has no archive
        """
        source = self._get_source_run(run_id)
        return self.codec.read_records(source.archive_reference or "")

    def _get_source_run(self, run_id: int) -> BackupRun:
        source = self.db.get_run(run_id)
        if source is None:
            raise BackupNotFoundError(f"Backup #{run_id} not found")
        if not source.archive_reference:
            raise RestoreError(f"Backup #{run_id} has no archive to restore")
        return source

    @staticmethod
    def select_records(
        records: list[dict[str, Any]], selected_record_ids: Optional[list[str]] = None
    ) -> list[dict[str, Any]]:
        """
        Filter archived records to the selected record ids.

        Raises:
            RestoreError: If nothing is left to restore
        """
        if selected_record_ids:
            wanted = {str(record_id) for record_id in selected_record_ids}
            records = [r for r in records if Record(r).record_id in wanted]

        if not records:
            raise RestoreError("No records to restore")
        return records

    def plan(self, app_id: str, records: list[dict[str, Any]]) -> RestorePlan:
        """
        Decide for each record whether it updates a live record or is added.

        Args:
            app_id: Live app to restore into
            records: Raw archived records

        Returns:
            RestorePlan with update items ({"id", "record"}) and insert bodies
        """
        plan = RestorePlan()
        parsed = [Record(raw) for raw in records]
        keys = [record.business_key() for record in parsed]
        unique_keys = list(dict.fromkeys(key for key in keys if key is not None))

        mapping: dict[str, Optional[str]] = {}
        if unique_keys:
            try:
                mapping = self.api.resolve_live_identifiers(app_id, unique_keys)
            except Exception as e:
                logger.error(f"Failed to resolve live record ids for app {app_id}: {e}")
                mapping = {}

        for record, key in zip(parsed, keys):
            payload = record.restore_payload()
            live_id = mapping.get(key) if key is not None else None
            if live_id:
                plan.updates.append({"id": str(live_id), "record": payload})
            else:
                plan.inserts.append(payload)
                if key is None:
                    plan.keyless_count += 1

        if plan.keyless_count:
            plan.warnings.append(
                f"{plan.keyless_count} record(s) have no business key "
                "and will be added as new records"
            )
        if unique_keys and not plan.updates:
            plan.warnings.append(
                f"None of the {len(unique_keys)} business key(s) matched a live "
                "record; all records will be added and may duplicate live data"
            )
        for warning in plan.warnings:
            logger.warning(warning)

        logger.info(
            f"Prepared updates: {len(plan.updates)}, adds: {len(plan.inserts)}"
        )
        return plan

    def apply(self, app_id: str, plan: RestorePlan) -> PartitionOutcome:
        """
        Apply the update and insert partitions independently.

        Records applied by a partition before one of its batches failed
        are still counted.
        """
        outcome = PartitionOutcome()

        if plan.updates:
            try:
                result = self.api.batch_upsert(app_id, updates=plan.updates, inserts=[])
                outcome.updated_count = result.updated_count
            except Exception as e:
                outcome.update_failed = True
                outcome.updated_count = _applied_before_failure(e).updated_count
                outcome.errors.append(
                    _partition_error(
                        "Updating", len(plan.updates), outcome.updated_count, e
                    )
                )
                logger.error(f"Failed to update records during restore: {e}")

        if plan.inserts:
            try:
                result = self.api.batch_upsert(app_id, updates=[], inserts=plan.inserts)
                outcome.added_count = result.added_count
            except Exception as e:
                outcome.insert_failed = True
                outcome.added_count = _applied_before_failure(e).added_count
                outcome.errors.append(
                    _partition_error("Adding", len(plan.inserts), outcome.added_count, e)
                )
                logger.error(f"Failed to add records during restore: {e}")

        return outcome

    def restore(
        self,
        run_id: int,
        selected_record_ids: Optional[list[str]] = None,
        stats: Optional[ApiStats] = None,
    ) -> RestoreResult:
        """
        Restore archived records of a backup run into the live app.

        A restore run row (kind "restore") records the outcome.

        Args:
            run_id: Backup run whose archive is restored
            selected_record_ids: Only restore records with these record ids
            stats: Counters to accumulate into (a new ApiStats if omitted)

        Returns:
            RestoreResult; status FAILURE is returned, not raised, when every
            attempted partition failed

        Raises:
            BackupNotFoundError: If the backup run does not exist
            RestoreError: If there is nothing to restore
            ArchiveError: If the archive cannot be read
        """
        source = self._get_source_run(run_id)
        stats = stats if stats is not None else ApiStats()
        start_time = to_timestamp(utc_now())
        clock = time.monotonic()
        app_id = source.target_app_id

        restore_run_id = self.db.insert_run(
            BackupRun(
                target_app_id=app_id,
                target_app_name=source.target_app_name,
                kind=BackupKind.RESTORE,
                trigger_type=TriggerType.MANUAL,
                start_time=start_time,
                remarks=f"Restoring from backup #{run_id}",
                host=self.host,
                client_version=self.client_version,
            )
        )
        result = RestoreResult(
            source_run_id=run_id,
            app_id=app_id,
            app_name=source.target_app_name,
            run_id=restore_run_id,
        )
        logger.info(
            f"Restore started: backup #{run_id} into app {app_id} "
            f"({len(selected_record_ids or [])} selected records)"
        )

        with self.api.track(stats):
            try:
                records = self.codec.read_records(source.archive_reference or "")
                records = self.select_records(records, selected_record_ids)
                self.db.update_run(
                    restore_run_id,
                    archive_reference=source.archive_reference,
                    record_count=len(records),
                )
                plan = self.plan(app_id, records)
                outcome = self.apply(app_id, plan)

                result.status = derive_restore_status(plan, outcome)
                result.record_count = len(records)
                result.added_count = outcome.added_count
                result.updated_count = outcome.updated_count
                result.errors = outcome.errors
                result.warnings = plan.warnings
                result.duration = time.monotonic() - clock
                result.api_request_count = stats.api_request_count
                result.retry_count = stats.retry_count

                remarks = (
                    f"Restored from backup #{run_id} "
                    f"(added: {result.added_count}, updated: {result.updated_count})"
                )
                self.db.update_run(
                    restore_run_id,
                    end_time=to_timestamp(utc_now()),
                    duration=result.duration,
                    record_count=result.record_count,
                    status=result.status,
                    error_detail="\n".join(result.errors) or None,
                    api_request_count=stats.api_request_count,
                    retry_count=stats.retry_count,
                    remarks=remarks,
                )

                self._emit_audit(
                    AuditEntry(
                        backup_datetime=start_time,
                        target_app_id=app_id,
                        target_app_name=source.target_app_name or "",
                        record_count=result.record_count,
                        status=result.status.value,
                        duration_seconds=round(result.duration, 3),
                        backup_type=BackupKind.RESTORE.value,
                        trigger_type=TriggerType.MANUAL.value,
                        api_request_count=stats.api_request_count,
                        retry_count=stats.retry_count,
                        error_details="\n".join(result.errors),
                        file_path=source.archive_reference or "",
                        hostname=self.host,
                        app_version=self.client_version,
                        remarks=remarks,
                    )
                )

                logger.info(
                    f"Restore finished with status {result.status.value}: "
                    f"added {result.added_count}, updated {result.updated_count}"
                )
                return result

            except Exception as e:
                self.db.update_run(
                    restore_run_id,
                    end_time=to_timestamp(utc_now()),
                    duration=time.monotonic() - clock,
                    status=RunStatus.FAILURE,
                    error_detail=format_error(e),
                    api_request_count=stats.api_request_count,
                    retry_count=stats.retry_count,
                )
                logger.error(f"Restore of backup #{run_id} failed: {e}")
                raise

    def _emit_audit(self, entry: AuditEntry) -> None:
        if not self.audit_app_id:
            logger.warning("Audit app ID not configured. Skipping audit log.")
            return
        try:
            self.api.log_audit(self.audit_app_id, entry.to_fields())
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")
