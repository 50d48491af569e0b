"""CLI output formatting functions.

This module contains functions for displaying backup runs, backup and
restore results, tracked apps and archived record previews.
"""

from typing import TYPE_CHECKING, Any, Optional

import click

from kintone_backup.backup.models import BackupKind, RunStatus
from kintone_backup.records.fields import Record, SystemValue

if TYPE_CHECKING:
    from kintone_backup.backup.models import (
        BackupResult,
        BackupRun,
        RestoreResult,
        TrackedApp,
    )

STATUS_COLORS = {
    RunStatus.RUNNING: "cyan",
    RunStatus.SUCCESS: "green",
    RunStatus.PARTIAL_SUCCESS: "yellow",
    RunStatus.FAILURE: "red",
}

# Longest field value shown in record previews
PREVIEW_VALUE_WIDTH = 60


def styled_status(status: RunStatus) -> str:
    return click.style(status.value, fg=STATUS_COLORS.get(status))


def format_size(size: Optional[int]) -> str:
    """Human readable byte size."""
    if size is None:
        return "-"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _truncate(text: str, width: int = PREVIEW_VALUE_WIDTH) -> str:
    text = text.replace("\n", " ")
    if len(text) <= width:
        return text
    return text[: width - 3] + "..."


def show_run_table(runs: list["BackupRun"]) -> None:
    """Display backup runs as a table, newest first."""
    if not runs:
        click.echo("No backup runs found.")
        return

    header = (
        f"{'ID':>5}  {'Started':<25}  {'App':<22}  {'Kind':<12}  "
        f"{'Trigger':<9}  {'Records':>7}  {'Size':>9}  Status"
    )
    click.echo(header)
    click.echo("-" * len(header))

    for run in runs:
        app_label = f"{run.target_app_id} {run.target_app_name or ''}".strip()
        records = "-" if run.record_count is None else str(run.record_count)
        click.echo(
            f"{run.id:>5}  {run.start_time:<25}  {_truncate(app_label, 22):<22}  "
            f"{run.kind.value:<12}  {run.trigger_type.value:<9}  {records:>7}  "
            f"{format_size(run.size):>9}  {styled_status(run.status)}"
        )


def show_run_detail(run: "BackupRun") -> None:
    """Display every stored attribute of one run."""
    click.echo(f"=== Backup Run #{run.id} ===\n")

    rows: list[tuple[str, Any]] = [
        ("App", f"{run.target_app_id} ({run.target_app_name or 'unknown'})"),
        ("Kind", run.kind.value),
        ("Trigger", run.trigger_type.value),
        ("Status", styled_status(run.status)),
        ("Started", run.start_time),
        ("Finished", run.end_time or "-"),
        ("Duration", f"{run.duration:.1f}s" if run.duration is not None else "-"),
        ("Records", run.record_count if run.record_count is not None else "-"),
        ("Archive", run.archive_reference or "-"),
        ("Size", format_size(run.size)),
        (
            "Compression",
            f"{run.compression_ratio * 100:.1f}%"
            if run.compression_ratio is not None
            else "-",
        ),
        ("API requests", run.api_request_count),
        ("Retries", run.retry_count),
        ("Baseline", run.diff_baseline_time or "-"),
        ("Host", run.host or "-"),
        ("Version", run.client_version or "-"),
        ("Remarks", run.remarks or "-"),
    ]
    for label, value in rows:
        click.echo(f"{label + ':':<14} {value}")

    if run.error_detail:
        click.echo("\nError detail:")
        click.echo(click.style(run.error_detail, fg="red"))


def show_backup_result(result: "BackupResult") -> None:
    """Display the summary of one app backup."""
    app_label = f"{result.app_id} ({result.app_name or 'unknown'})"
    if not result.success:
        click.echo(
            click.style(f"Backup of app {app_label} failed: {result.error}", fg="red")
        )
        return

    click.echo(
        click.style(
            f"Backup of app {app_label} completed ({result.kind.value})", fg="green"
        )
    )
    click.echo(f"  Run ID:       {result.run_id}")
    click.echo(f"  Records:      {result.record_count}")
    if result.archive_path:
        click.echo(f"  Archive:      {result.archive_path}")
    elif result.kind is BackupKind.DIFFERENTIAL:
        click.echo("  Archive:      none (no changes since the last backup)")
    if result.attachments_downloaded or result.attachments_failed:
        click.echo(
            f"  Attachments:  {result.attachments_downloaded} downloaded, "
            f"{result.attachments_failed} failed"
        )
    click.echo(f"  Duration:     {result.duration:.1f}s")
    click.echo(
        f"  API requests: {result.api_request_count} ({result.retry_count} retries)"
    )


def show_scheduled_summary(results: list["BackupResult"]) -> None:
    succeeded = sum(1 for r in results if r.success)
    click.echo(f"\nScheduled backup: {succeeded}/{len(results)} apps succeeded")
    for result in results:
        mark = click.style("OK", fg="green") if result.success else click.style(
            "FAILED", fg="red"
        )
        detail = f"{result.record_count} records" if result.success else result.error
        click.echo(f"  [{mark}] app {result.app_id}: {detail}")


def show_restore_result(result: "RestoreResult") -> None:
    """Display the summary of a restore."""
    color = STATUS_COLORS.get(result.status)
    click.echo(
        click.style(
            f"Restore of backup #{result.source_run_id} into app {result.app_id}: "
            f"{result.status.value}",
            fg=color,
        )
    )
    click.echo(f"  Restore run:  {result.run_id}")
    click.echo(f"  Records:      {result.record_count}")
    click.echo(f"  Updated:      {result.updated_count}")
    click.echo(f"  Added:        {result.added_count}")
    click.echo(f"  Duration:     {result.duration:.1f}s")

    for warning in result.warnings:
        click.echo(click.style(f"  Warning: {warning}", fg="yellow"))
    for error in result.errors:
        click.echo(click.style(f"  Error: {error}", fg="red"))


def show_tracked_apps(apps: list["TrackedApp"]) -> None:
    if not apps:
        click.echo("No tracked apps. Add one with 'kintone-backup track APP_ID'.")
        return

    for app in apps:
        state = "active" if app.is_active else click.style("inactive", fg="yellow")
        click.echo(f"{app.app_id:>6}  {app.app_name or '(unnamed)'}  [{state}]")
        click.echo(
            f"        last backup: {app.last_backup_time or 'never'}, "
            f"last full: {app.last_full_backup_time or 'never'}"
        )


def show_remote_apps(apps: list[dict[str, Any]]) -> None:
    if not apps:
        click.echo("No apps visible with these credentials.")
        return

    for app in apps:
        click.echo(f"{app.get('appId', ''):>6}  {app.get('name', '')}")


def show_record_preview(records: list[dict[str, Any]], limit: int = 10) -> None:
    """
    Display archived records field by field.

    System fields are left out except for the record id.
    """
    click.echo(f"{len(records)} records in archive\n")

    for raw in records[:limit]:
        record = Record(raw)
        click.echo(click.style(f"Record {record.record_id or '?'}", bold=True))
        for code, field_value in record.fields().items():
            if isinstance(field_value, SystemValue):
                continue
            value = _truncate(field_value.display())
            click.echo(f"  {code} [{field_value.type.value}]: {value}")
        click.echo()

    if len(records) > limit:
        click.echo(f"... and {len(records) - limit} more")
