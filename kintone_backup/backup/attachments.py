"""
Attachment download for backed-up records.

Files referenced by FILE fields are saved under
``<attachments_dir>/<app_id>/<record_id>/<timestamp>/<file name>``.
Each download is independent: a failure is logged and skipped and never
fails the owning backup.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from kintone_backup.records.fields import FileRef, Record

if TYPE_CHECKING:
    from kintone_backup.api.kintone_api import KintoneAPI

logger = logging.getLogger(__name__)


@dataclass
class AttachmentReport:
    downloaded: int = 0
    failed: int = 0
    total_bytes: int = 0
    paths: list[Path] = field(default_factory=list)


def _safe_file_name(file_ref: FileRef) -> str:
    name = Path(file_ref.name.replace("\\", "/")).name
    return name or file_ref.file_key


class AttachmentFetcher:
    """
    Downloads attachments of backed-up records.

    Usage:
        fetcher = AttachmentFetcher(api, Path("backup_data/attachments"))
        report = fetcher.fetch("42", records, ["Attachments"], "2024-01-20_10-30-00")
    """

    def __init__(self, api: KintoneAPI, attachments_dir: Path | str):
        self.api = api
        self.attachments_dir = Path(attachments_dir).expanduser()

    def target_path(
        self, app_id: str, record_id: str, timestamp: str, file_ref: FileRef
    ) -> Path:
        return (
            self.attachments_dir
            / str(app_id)
            / str(record_id)
            / timestamp
            / _safe_file_name(file_ref)
        )

    def fetch(
        self,
        app_id: str,
        records: list[dict[str, Any]],
        field_codes: list[str],
        timestamp: str,
    ) -> AttachmentReport:
        """
        Download every file found under the given FILE fields.

        Args:
            app_id: App the records belong to
            records: Raw records
            field_codes: FILE field codes to look at
            timestamp: Run timestamp used as a directory level

        Returns:
            AttachmentReport with download and failure counts
        """
        report = AttachmentReport()
        if not field_codes:
            return report

        for raw in records:
            record = Record(raw)
            record_id = record.record_id or "unknown"

            for file_ref in record.attachments(field_codes):
                path = self.target_path(app_id, record_id, timestamp, file_ref)
                try:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    with open(path, "wb") as f:
                        size = self.api.download_attachment(file_ref.file_key, f)
                except Exception as e:
                    report.failed += 1
                    path.unlink(missing_ok=True)
                    logger.error(
                        f"Failed to download attachment {file_ref.name} "
                        f"for record {record_id}: {e}"
                    )
                    continue

                report.downloaded += 1
                report.total_bytes += size
                report.paths.append(path)
                logger.info(
                    f"Downloaded attachment: {file_ref.name} for record {record_id}"
                )

        return report
