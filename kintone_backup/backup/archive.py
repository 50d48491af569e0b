"""
Archive container for backed-up records.

Each backup run produces one zip file holding two entries:
- records.json: the records exactly as captured, in capture order
- manifest.json: schema version, app id, record count, capture time and
  a snapshot of the app's field schema (may be null)

Archives written by older versions may lack the manifest or store it as
backup_metadata.json with camelCase keys; both are still readable.
"""

from __future__ import annotations

import json
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

ARCHIVE_SCHEMA_VERSION = "1.0.0"
RECORDS_ENTRY = "records.json"
MANIFEST_ENTRY = "manifest.json"
LEGACY_MANIFEST_ENTRY = "backup_metadata.json"
ARCHIVE_SUFFIX = ".zip"

# Highest deflate level; archives are written once and read rarely
COMPRESSION_LEVEL = 9


class ArchiveError(Exception):
    """Raised when an archive cannot be written or read."""

    pass


@dataclass
class Manifest:
    schema_version: str
    app_id: str
    record_count: int
    captured_at: str
    field_schema: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "app_id": self.app_id,
            "record_count": self.record_count,
            "captured_at": self.captured_at,
            "field_schema": self.field_schema,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        """Build a manifest from snake_case or legacy camelCase keys."""

        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return default

        return cls(
            schema_version=str(pick("schema_version", "schemaVersion", default="")),
            app_id=str(pick("app_id", "appId", default="")),
            record_count=int(pick("record_count", "recordCount", default=0)),
            captured_at=str(pick("captured_at", "backupDate", default="")),
            field_schema=pick("field_schema", "fieldProperties"),
        )


@dataclass
class ArchiveInfo:
    """Result of writing an archive."""

    path: Path
    raw_size: int
    compressed_size: int

    @property
    def compression_ratio(self) -> float:
        """Fraction of the raw payload saved by compression (1 - compressed/raw)."""
        if self.raw_size <= 0:
            return 0.0
        return 1 - self.compressed_size / self.raw_size


@dataclass
class ArchiveContents:
    records: list[dict[str, Any]]
    manifest: Manifest | None


class ArchiveCodec:
    """
    Reads and writes backup archives inside one directory.

    Archive references are file names relative to the archive directory.

    Usage:
        codec = ArchiveCodec(Path("~/.kintone-backup/backup_data/archives"))

        info = codec.write("app_42_2024-01-20_10-30-00_full.zip", records, manifest)
        contents = codec.read(info.path.name)
    """

    def __init__(self, archive_dir: Path | str):
        self.archive_dir = Path(archive_dir).expanduser()
        self.archive_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, reference: str) -> Path:
        path = (self.archive_dir / reference).resolve()
        if path.parent != self.archive_dir.resolve():
            raise ArchiveError(f"Invalid archive reference: {reference}")
        return path

    @staticmethod
    def archive_name(app_id: str, timestamp: str, kind: str) -> str:
        """Build an archive file name, e.g. app_42_2024-01-20_10-30-00_full.zip."""
        return f"app_{app_id}_{timestamp}_{kind}{ARCHIVE_SUFFIX}"

    def write(
        self, reference: str, records: list[dict[str, Any]], manifest: Manifest
    ) -> ArchiveInfo:
        """
        Write records and manifest into a new archive.

        The record payload is encoded and streamed straight into the
        compressed entry while its uncompressed byte length is counted.

        Args:
            reference: Archive file name
            records: Records exactly as captured
            manifest: Manifest to store alongside

        Returns:
            ArchiveInfo with path and raw/compressed sizes

        Raises:
            ArchiveError: If the archive cannot be written
        """
        path = self.path_for(reference)
        raw_size = 0
        encoder = json.JSONEncoder(ensure_ascii=False, indent=2)

        try:
            with zipfile.ZipFile(
                path,
                "w",
                compression=zipfile.ZIP_DEFLATED,
                compresslevel=COMPRESSION_LEVEL,
            ) as archive:
                with archive.open(RECORDS_ENTRY, "w", force_zip64=True) as entry:
                    for chunk in encoder.iterencode(records):
                        data = chunk.encode("utf-8")
                        raw_size += len(data)
                        entry.write(data)

                archive.writestr(
                    MANIFEST_ENTRY,
                    json.dumps(manifest.to_dict(), ensure_ascii=False, indent=2),
                )
        except (OSError, TypeError, ValueError) as e:
            path.unlink(missing_ok=True)
            raise ArchiveError(f"Failed to write archive {path}: {e}") from e

        compressed_size = path.stat().st_size
        logger.debug(
            f"Wrote archive {path.name}: {len(records)} records, "
            f"{raw_size} -> {compressed_size} bytes"
        )
        return ArchiveInfo(path=path, raw_size=raw_size, compressed_size=compressed_size)

    def read(self, reference: str) -> ArchiveContents:
        """
        Read records and manifest from an archive.

        A missing manifest yields ``manifest=None``.

        Raises:
            ArchiveError: If the archive or its record payload cannot be read
        """
        path = self.path_for(reference)
        if not path.exists():
            raise ArchiveError(f"Archive not found: {path}")

        try:
            with zipfile.ZipFile(path) as archive:
                names = set(archive.namelist())
                if RECORDS_ENTRY not in names:
                    raise ArchiveError(f"Archive {path.name} has no {RECORDS_ENTRY}")

                with archive.open(RECORDS_ENTRY) as entry:
                    records = json.load(entry)

                manifest = None
                for name in (MANIFEST_ENTRY, LEGACY_MANIFEST_ENTRY):
                    if name in names:
                        with archive.open(name) as entry:
                            manifest = Manifest.from_dict(json.load(entry))
                        break
        except (OSError, zipfile.BadZipFile, json.JSONDecodeError) as e:
            raise ArchiveError(f"Failed to read archive {path}: {e}") from e

        if not isinstance(records, list):
            raise ArchiveError(f"Archive {path.name} does not contain a record list")

        if manifest is None:
            logger.debug(f"Archive {path.name} has no manifest")
        return ArchiveContents(records=records, manifest=manifest)

    def read_records(self, reference: str) -> list[dict[str, Any]]:
        return self.read(reference).records

    def delete(self, reference: str) -> bool:
        """Delete an archive file. Returns False if it did not exist."""
        path = self.path_for(reference)
        if not path.exists():
            return False
        path.unlink()
        return True
