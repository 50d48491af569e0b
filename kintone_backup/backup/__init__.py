"""
Backup and restore of kintone app records.

This module drives full and differential backups into versioned archives,
downloads attachments, and restores archived records into live apps.
"""

from kintone_backup.backup.archive import ArchiveCodec, ArchiveError, Manifest
from kintone_backup.backup.attachments import AttachmentFetcher
from kintone_backup.backup.models import (
    BackupKind,
    BackupResult,
    BackupRun,
    RestoreResult,
    RunStatus,
    TrackedApp,
    TriggerType,
)
from kintone_backup.backup.orchestrator import BackupError, BackupOrchestrator
from kintone_backup.backup.restore import (
    BackupNotFoundError,
    RestoreError,
    RestoreReconciler,
)

__all__ = [
    "ArchiveCodec",
    "ArchiveError",
    "AttachmentFetcher",
    "BackupError",
    "BackupKind",
    "BackupNotFoundError",
    "BackupOrchestrator",
    "BackupResult",
    "BackupRun",
    "Manifest",
    "RestoreError",
    "RestoreReconciler",
    "RestoreResult",
    "RunStatus",
    "TrackedApp",
    "TriggerType",
]
