"""
SQLite database module for backup metadata.

Provides persistent storage for backup run history, tracked apps and
per-record change markers used for differential backups.
"""

import json
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from enum import Enum
from typing import Any, Optional

from kintone_backup.backup.models import (
    BackupRun,
    RecordMarker,
    TrackedApp,
    to_timestamp,
    utc_now,
)

# SQL Schema for backup history, tracked apps and record markers
SCHEMA = """
CREATE TABLE IF NOT EXISTS backup_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    target_app_id TEXT NOT NULL,
    target_app_name TEXT,
    kind TEXT NOT NULL,
    trigger_type TEXT NOT NULL,
    start_time TEXT NOT NULL,
    end_time TEXT,
    duration REAL,
    record_count INTEGER,
    archive_reference TEXT,
    size INTEGER,
    compression_ratio REAL,
    status TEXT NOT NULL,
    error_detail TEXT,
    api_request_count INTEGER DEFAULT 0,
    retry_count INTEGER DEFAULT 0,
    diff_baseline_time TEXT,
    host TEXT,
    client_version TEXT,
    remarks TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_backup_runs_app_id ON backup_runs(target_app_id);
CREATE INDEX IF NOT EXISTS idx_backup_runs_start_time ON backup_runs(start_time);
CREATE INDEX IF NOT EXISTS idx_backup_runs_status ON backup_runs(status);

CREATE TABLE IF NOT EXISTS tracked_apps (
    id INTEGER PRIMARY KEY,
    app_id TEXT NOT NULL,
    app_name TEXT,
    is_active BOOLEAN NOT NULL DEFAULT 1,
    last_backup_time TEXT,
    last_full_backup_time TEXT,
    field_schema TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(app_id)
);

CREATE INDEX IF NOT EXISTS idx_tracked_apps_app_id ON tracked_apps(app_id);

CREATE TABLE IF NOT EXISTS record_markers (
    id INTEGER PRIMARY KEY,
    app_id TEXT NOT NULL,
    record_id TEXT NOT NULL,
    updated_time TEXT NOT NULL,
    last_backup_run_id INTEGER,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(app_id, record_id)
);

CREATE INDEX IF NOT EXISTS idx_record_markers_app_id ON record_markers(app_id);
CREATE INDEX IF NOT EXISTS idx_record_markers_updated_time
    ON record_markers(updated_time);
"""

# Columns of backup_runs that may be changed after insert
RUN_COLUMNS = (
    "target_app_id",
    "target_app_name",
    "kind",
    "trigger_type",
    "start_time",
    "end_time",
    "duration",
    "record_count",
    "archive_reference",
    "size",
    "compression_ratio",
    "status",
    "error_detail",
    "api_request_count",
    "retry_count",
    "diff_baseline_time",
    "host",
    "client_version",
    "remarks",
)


class BackupDatabase:
    """
    SQLite database manager for backup metadata.

    Provides methods for:
    - Recording backup runs and querying run history
    - Tracking which apps are backed up and when
    - Storing per-record change markers

    Every method runs in its own transaction; methods that touch several
    rows commit all of their changes or none.

    Usage:
        db = BackupDatabase('/path/to/metadata.db')
        db.initialize()

        # Or use in-memory for testing:
        db = BackupDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.

        Returns:
            sqlite3.Connection: Database connection
        """
        if self.db_path == ":memory:":
            # For in-memory, use shared connection so schema persists
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(":memory:")
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for a transactional database connection.

        Commits on success and rolls back everything on error.

        Yields:
            sqlite3.Connection: Database connection

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM backup_runs")
        """
        conn = self._get_connection()
        is_shared = self.db_path == ":memory:"
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            # Only close if not using shared connection
            if not is_shared:
                conn.close()

    def initialize(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None

    # =========================================================================
    # Backup Run Operations
    # =========================================================================

    def insert_run(self, run: BackupRun) -> int:
        """
        Insert a backup run.

        Args:
            run: Run to insert (its id is ignored)

        Returns:
            Generated run id
        """
        row = run.to_row()
        columns = ", ".join(RUN_COLUMNS)
        placeholders = ", ".join("?" for _ in RUN_COLUMNS)
        with self.connection() as conn:
            cursor = conn.execute(
                f"INSERT INTO backup_runs ({columns}) VALUES ({placeholders})",
                tuple(row[c] for c in RUN_COLUMNS),
            )
            return int(cursor.lastrowid)

    def _update_run(
        self, conn: sqlite3.Connection, run_id: int, fields: dict[str, Any]
    ) -> None:
        unknown = set(fields) - set(RUN_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown backup run columns: {sorted(unknown)}")

        values = [
            value.value if isinstance(value, Enum) else value
            for value in fields.values()
        ]
        assignments = ", ".join(f"{column} = ?" for column in fields)
        conn.execute(
            f"UPDATE backup_runs SET {assignments} WHERE id = ?",
            (*values, run_id),
        )

    def update_run(self, run_id: int, **fields: Any) -> None:
        """
        Update selected columns of a backup run.

        Args:
            run_id: Run to update
            **fields: Column values to set (enum values are stored by value)
        """
        if not fields:
            return
        with self.connection() as conn:
            self._update_run(conn, run_id, fields)

    def get_run(self, run_id: int) -> Optional[BackupRun]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM backup_runs WHERE id = ?", (run_id,)
            ).fetchone()
            return BackupRun.from_row(dict(row)) if row else None

    def get_run_history(
        self,
        app_id: Optional[str] = None,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[BackupRun]:
        """
        Query backup runs, newest first.

        Args:
            app_id: Only runs for this app
            kind: Only runs of this kind (full, differential, restore)
            status: Only runs with this status
            start_date: Only runs started at or after this timestamp
            end_date: Only runs started at or before this timestamp
            limit: Maximum number of runs to return

        Returns:
            List of BackupRun objects ordered by start time descending
        """
        query = "SELECT * FROM backup_runs WHERE 1=1"
        params: list[Any] = []

        if app_id:
            query += " AND target_app_id = ?"
            params.append(app_id)
        if kind:
            query += " AND kind = ?"
            params.append(getattr(kind, "value", kind))
        if status:
            query += " AND status = ?"
            params.append(getattr(status, "value", status))
        if start_date:
            query += " AND start_time >= ?"
            params.append(start_date)
        if end_date:
            query += " AND start_time <= ?"
            params.append(end_date)

        query += " ORDER BY start_time DESC, id DESC"

        if limit:
            query += " LIMIT ?"
            params.append(limit)

        with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()
            return [BackupRun.from_row(dict(row)) for row in rows]

    def delete_run(self, run_id: int) -> bool:
        """
        Delete a backup run and every record marker that references it.

        Returns:
            True if the run existed
        """
        with self.connection() as conn:
            conn.execute(
                "DELETE FROM record_markers WHERE last_backup_run_id = ?", (run_id,)
            )
            cursor = conn.execute("DELETE FROM backup_runs WHERE id = ?", (run_id,))
            return cursor.rowcount > 0

    def complete_backup(
        self,
        run_id: int,
        app_id: str,
        markers: list[tuple[str, str]],
        backup_time: str,
        is_full: bool,
        **run_fields: Any,
    ) -> None:
        """
        Record a successful non-empty backup in one transaction.

        Upserts a marker per record, finalizes the run row and advances the
        app's last backup time (and last full backup time for full backups).

        Args:
            run_id: Run being finalized
            app_id: App that was backed up
            markers: (record_id, updated_time) pairs
            backup_time: New baseline for the next differential backup
            is_full: Whether this was a full backup
            **run_fields: Columns to set on the run
        """
        with self.connection() as conn:
            conn.executemany(
                """
                INSERT INTO record_markers
                    (app_id, record_id, updated_time, last_backup_run_id)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(app_id, record_id) DO UPDATE SET
                    updated_time = excluded.updated_time,
                    last_backup_run_id = excluded.last_backup_run_id
                """,
                [
                    (app_id, record_id, updated_time, run_id)
                    for record_id, updated_time in markers
                ],
            )
            self._update_run(conn, run_id, run_fields)
            self._set_last_backup(conn, app_id, backup_time, is_full)

    # =========================================================================
    # Tracked App Operations
    # =========================================================================

    def upsert_app(
        self,
        app_id: str,
        app_name: Optional[str] = None,
        is_active: Optional[bool] = None,
        field_schema: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Insert or update a tracked app.

        Values passed as None keep the stored value (new apps default to active).
        """
        schema_json = json.dumps(field_schema, ensure_ascii=False) if field_schema else None
        active = None if is_active is None else int(is_active)
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO tracked_apps (app_id, app_name, is_active, field_schema)
                VALUES (?, ?, COALESCE(?, 1), ?)
                ON CONFLICT(app_id) DO UPDATE SET
                    app_name = COALESCE(excluded.app_name, tracked_apps.app_name),
                    is_active = COALESCE(?, tracked_apps.is_active),
                    field_schema = COALESCE(excluded.field_schema,
                                            tracked_apps.field_schema),
                    updated_at = CURRENT_TIMESTAMP
                """,
                (app_id, app_name, active, schema_json, active),
            )

    @staticmethod
    def _app_from_row(row: sqlite3.Row) -> TrackedApp:
        schema = row["field_schema"]
        return TrackedApp(
            app_id=row["app_id"],
            app_name=row["app_name"],
            is_active=bool(row["is_active"]),
            last_backup_time=row["last_backup_time"],
            last_full_backup_time=row["last_full_backup_time"],
            field_schema=json.loads(schema) if schema else None,
        )

    def get_app(self, app_id: str) -> Optional[TrackedApp]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM tracked_apps WHERE app_id = ?", (app_id,)
            ).fetchone()
            return self._app_from_row(row) if row else None

    def list_apps(self, active_only: bool = False) -> list[TrackedApp]:
        """List tracked apps ordered by name."""
        query = "SELECT * FROM tracked_apps"
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY app_name, app_id"
        with self.connection() as conn:
            return [self._app_from_row(row) for row in conn.execute(query).fetchall()]

    def _set_last_backup(
        self, conn: sqlite3.Connection, app_id: str, backup_time: str, is_full: bool
    ) -> None:
        conn.execute(
            """
            INSERT INTO tracked_apps (app_id, last_backup_time, last_full_backup_time)
            VALUES (?, ?, ?)
            ON CONFLICT(app_id) DO UPDATE SET
                last_backup_time = excluded.last_backup_time,
                last_full_backup_time = COALESCE(excluded.last_full_backup_time,
                                                 tracked_apps.last_full_backup_time),
                updated_at = CURRENT_TIMESTAMP
            """,
            (app_id, backup_time, backup_time if is_full else None),
        )

    def update_app_last_backup(
        self, app_id: str, backup_time: str, is_full: bool = False
    ) -> None:
        """Advance an app's last backup time (and last full time for full backups)."""
        with self.connection() as conn:
            self._set_last_backup(conn, app_id, backup_time, is_full)

    def get_last_backup_times(self, app_id: str) -> Optional[dict[str, Any]]:
        """
        Get the differential baselines of an app.

        Returns:
            Dictionary with last_backup_time and last_full_backup_time, or
            None if the app is not tracked
        """
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT last_backup_time, last_full_backup_time
                FROM tracked_apps WHERE app_id = ?
                """,
                (app_id,),
            ).fetchone()
            return dict(row) if row else None

    # =========================================================================
    # Record Marker Operations
    # =========================================================================

    def upsert_record_marker(
        self,
        app_id: str,
        record_id: str,
        updated_time: str,
        backup_run_id: Optional[int] = None,
    ) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO record_markers
                    (app_id, record_id, updated_time, last_backup_run_id)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(app_id, record_id) DO UPDATE SET
                    updated_time = excluded.updated_time,
                    last_backup_run_id = excluded.last_backup_run_id
                """,
                (app_id, record_id, updated_time, backup_run_id),
            )

    def get_record_markers(
        self, app_id: str, since: Optional[str] = None
    ) -> list[RecordMarker]:
        """List an app's record markers, optionally only those changed after ``since``."""
        query = (
            "SELECT app_id, record_id, updated_time, last_backup_run_id "
            "FROM record_markers WHERE app_id = ?"
        )
        params: list[Any] = [app_id]
        if since:
            query += " AND updated_time > ?"
            params.append(since)
        query += " ORDER BY updated_time, record_id"

        with self.connection() as conn:
            return [
                RecordMarker(**dict(row))
                for row in conn.execute(query, params).fetchall()
            ]

    def get_statistics(self) -> dict[str, Any]:
        """Counts used by the status command."""
        with self.connection() as conn:
            runs = conn.execute("SELECT COUNT(*) FROM backup_runs").fetchone()[0]
            apps = conn.execute("SELECT COUNT(*) FROM tracked_apps").fetchone()[0]
            markers = conn.execute("SELECT COUNT(*) FROM record_markers").fetchone()[0]
            last = conn.execute(
                "SELECT MAX(start_time) FROM backup_runs WHERE status = 'success'"
            ).fetchone()[0]
        return {
            "run_count": runs,
            "app_count": apps,
            "marker_count": markers,
            "last_success_at": last,
            "checked_at": to_timestamp(utc_now()),
        }
