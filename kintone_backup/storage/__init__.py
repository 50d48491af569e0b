"""
kintone_backup.storage - Metadata store

SQLite index of backup runs, tracked apps and record markers.
"""

from kintone_backup.storage.db import BackupDatabase

__all__ = ["BackupDatabase"]
