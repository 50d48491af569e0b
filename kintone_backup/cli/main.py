"""
Command-line interface for kintone_backup.

Provides CLI commands for backing up kintone apps, browsing backup history
and restoring archived records.

Usage:
    # Show help
    kintone-backup --help

    # Back up every active tracked app (for cron / task schedulers)
    kintone-backup --scheduled

    # Back up one app
    kintone-backup backup 42 --full

    # Browse and restore
    kintone-backup history --app 42
    kintone-backup restore 17 --record-id 5 --record-id 8
"""

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click

from kintone_backup import __version__
from kintone_backup.api.kintone_api import KintoneAPI, KintoneAPIError
from kintone_backup.backup.archive import ArchiveCodec, ArchiveError
from kintone_backup.backup.attachments import AttachmentFetcher
from kintone_backup.backup.models import BackupKind, RunStatus
from kintone_backup.backup.orchestrator import BackupOrchestrator
from kintone_backup.backup.restore import RestoreError, RestoreReconciler
from kintone_backup.cli.formatters import (
    show_backup_result,
    show_record_preview,
    show_remote_apps,
    show_restore_result,
    show_run_detail,
    show_run_table,
    show_scheduled_summary,
    show_tracked_apps,
)
from kintone_backup.config.generator import save_config_file
from kintone_backup.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from kintone_backup.config.settings import BackupSettings
from kintone_backup.storage.db import BackupDatabase
from kintone_backup.utils import resolve_config_dir
from kintone_backup.utils.logging import cleanup_old_logs, get_logger, setup_logging

RUN_KINDS = tuple(kind.value for kind in BackupKind)
RUN_STATUSES = tuple(status.value for status in RunStatus)


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: str | None) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file).expanduser()
    return config_dir / DEFAULT_CONFIG_FILE


# =============================================================================
# Service Wiring
# =============================================================================


@dataclass
class Services:
    """Collaborators shared by the backup and restore commands."""

    api: KintoneAPI
    db: BackupDatabase
    codec: ArchiveCodec
    orchestrator: BackupOrchestrator
    reconciler: RestoreReconciler

    def close(self) -> None:
        self.db.close()


def sync_tracked_apps(db: BackupDatabase, app_ids: list[str]) -> None:
    """Register the apps listed in the configuration file as tracked apps."""
    for app_id in app_ids:
        db.upsert_app(app_id)


def open_database(settings: BackupSettings) -> BackupDatabase:
    """
    Open the metadata database inside the data directory.

    Creates the data layout on first use and registers configured apps.
    """
    layout = settings.layout
    layout.ensure()
    db = BackupDatabase(str(layout.metadata_db))
    db.initialize()
    sync_tracked_apps(db, settings.apps)
    return db


def open_codec(settings: BackupSettings) -> ArchiveCodec:
    return ArchiveCodec(settings.layout.archives_dir)


def build_services(settings: BackupSettings) -> Services:
    """
    Wire the API client, metadata store and archive codec together.

    Raises:
        ConfigError: If the domain or credentials are missing
    """
    api = settings.build_api()
    db = open_database(settings)
    codec = open_codec(settings)
    fetcher = AttachmentFetcher(api, settings.layout.attachments_dir)

    orchestrator = BackupOrchestrator(
        api,
        db,
        codec,
        fetcher,
        audit_app_id=settings.audit_app_id,
        updated_time_field=settings.updated_time_field,
        scan_all_records_for_attachments=settings.attachment_scan_all_records,
    )
    reconciler = RestoreReconciler(
        api, db, codec, audit_app_id=settings.audit_app_id
    )
    return Services(
        api=api, db=db, codec=codec, orchestrator=orchestrator, reconciler=reconciler
    )


def run_scheduled_mode(settings: BackupSettings) -> int:
    """
    Differential backup of every active tracked app.

    Returns:
        Process exit code: 0 when the run completed (even if some apps
        failed), 1 when configuration is missing or startup failed
    """
    logger = get_logger(__name__)

    try:
        services = build_services(settings)
    except ConfigError as e:
        logger.error(f"Scheduled backup not started: {e}")
        click.echo(click.style(f"Configuration error: {e}", fg="red"), err=True)
        return 1
    except Exception as e:
        logger.exception(f"Scheduled backup startup failed: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        return 1

    try:
        results = services.orchestrator.run_scheduled(BackupKind.DIFFERENTIAL)
    except Exception as e:
        logger.exception(f"Scheduled backup aborted: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        return 1
    finally:
        services.close()

    show_scheduled_summary(results)
    return 0


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="kintone-backup")
@click.option(
    "--scheduled",
    is_flag=True,
    help="Run a differential backup of every active tracked app and exit.",
)
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="KINTONE_BACKUP_CONFIG_DIR",
    help="Configuration directory path (default: ~/.kintone-backup).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="KINTONE_BACKUP_CONFIG_FILE",
    help="Configuration file path (default: <config dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    scheduled: bool,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    kintone app backup and restore.

    Captures the records of kintone apps into compressed archives, keeps a
    local history of every run and restores archived records into the live
    apps.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        if scheduled:
            click.echo(click.style(f"Configuration error: {e}", fg="red"), err=True)
            sys.exit(1)
        # Interactive commands still work without a usable config file
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    settings = BackupSettings.from_config(config, resolved_config_dir)
    ctx.obj["config"] = config
    ctx.obj["settings"] = settings

    effective_verbose = verbose or settings.verbose
    ctx.obj["verbose"] = effective_verbose

    log_dir = settings.layout.logs_dir
    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)
    if settings.log_retention_count > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=settings.log_retention_count)

    if scheduled:
        if ctx.invoked_subcommand is not None:
            raise click.UsageError("--scheduled cannot be combined with a command")
        sys.exit(run_scheduled_mode(settings))

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# =============================================================================
# Status Command
# =============================================================================


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show configuration, connection and backup status.

    Example:

        kintone-backup status
    """
    logger = get_logger(__name__)
    settings: BackupSettings = ctx.obj["settings"]
    config_file: Path = ctx.obj["config_file"]

    try:
        click.echo("=== kintone Backup Status ===\n")
        click.echo(f"Configuration directory: {settings.config_dir}")
        config_state = (
            "Found" if config_file.exists() else click.style("Not found", fg="red")
        )
        click.echo(f"Configuration file: {config_file} ({config_state})")
        click.echo(f"Data directory: {settings.data_dir}")
        click.echo(f"Domain: {settings.domain or click.style('Not set', fg='red')}")

        if settings.api_token:
            auth_method = "API token"
        elif settings.username and settings.password:
            auth_method = f"Password ({settings.username})"
        else:
            auth_method = click.style("Not configured", fg="red")
        click.echo(f"Authentication: {auth_method}")
        click.echo(f"Audit app: {settings.audit_app_id or 'disabled'}")
        click.echo()

        db_path = settings.layout.metadata_db
        if db_path.exists():
            db = open_database(settings)
            stats = db.get_statistics()
            click.echo("=== Backup Status ===\n")
            click.echo(f"Tracked apps: {stats['app_count']}")
            click.echo(f"Backup runs: {stats['run_count']}")
            click.echo(f"Record markers: {stats['marker_count']}")
            click.echo(f"Last successful run: {stats['last_success_at'] or 'Never'}")
            db.close()
        else:
            click.echo("Metadata database: Not initialized (no backups performed yet)")
        click.echo()

        try:
            api = settings.build_api()
        except ConfigError as e:
            click.echo(click.style(f"Setup required: {e}", fg="yellow"))
            return

        ok, message = api.test_connection()
        if ok:
            click.echo(click.style(f"Connection: {message}", fg="green"))
        else:
            click.echo(click.style(f"Connection failed: {message}", fg="red"))

    except Exception as e:
        logger.exception(f"Error getting status: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)


# =============================================================================
# Init-Config Command
# =============================================================================


@cli.command("init-config")
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Examples:

        # Create config file (fails if already exists)
        kintone-backup init-config

        # Overwrite existing config file
        kintone-backup init-config --force
    """
    logger = get_logger(__name__)
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")

    success, error = save_config_file(config_file, overwrite=force)

    if success:
        click.echo(click.style("Configuration file created successfully!", fg="green"))
        click.echo(f"\nLocation: {config_file}")
        click.echo("\nNext steps:")
        click.echo("1. Set 'domain' and 'api_token' (or 'username' and 'password')")
        click.echo("2. List the apps to back up under 'apps'")
        click.echo("3. Run 'kintone-backup status' to check the connection")
    else:
        click.echo(click.style(f"Error: {error}", fg="red"), err=True)
        logger.error(f"Failed to create configuration file: {error}")
        sys.exit(1)


# =============================================================================
# App Commands
# =============================================================================


@cli.command("apps")
@click.option("--remote", is_flag=True, help="List apps visible on kintone instead.")
@click.option("--active-only", is_flag=True, help="Only show active tracked apps.")
@click.pass_context
def apps_command(ctx: click.Context, remote: bool, active_only: bool) -> None:
    """
    List tracked apps.

    Examples:

        kintone-backup apps
        kintone-backup apps --remote
    """
    logger = get_logger(__name__)
    settings: BackupSettings = ctx.obj["settings"]

    try:
        if remote:
            api = settings.build_api()
            show_remote_apps(api.list_apps())
            return

        db = open_database(settings)
        show_tracked_apps(db.list_apps(active_only=active_only))
        db.close()

    except ConfigError as e:
        click.echo(click.style(f"Configuration error: {e}", fg="red"), err=True)
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Failed to list apps: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)


@cli.command("track")
@click.argument("app_id")
@click.option("--name", help="Display name for the app.")
@click.option(
    "--inactive", is_flag=True, help="Keep the app but skip it in scheduled backups."
)
@click.pass_context
def track_command(
    ctx: click.Context, app_id: str, name: Optional[str], inactive: bool
) -> None:
    """
    Add an app to scheduled backups, or change its active flag.

    Examples:

        kintone-backup track 42
        kintone-backup track 42 --inactive
    """
    settings: BackupSettings = ctx.obj["settings"]

    db = open_database(settings)
    db.upsert_app(app_id, app_name=name, is_active=not inactive)
    db.close()

    state = "inactive" if inactive else "active"
    click.echo(click.style(f"App {app_id} is tracked ({state}).", fg="green"))


# =============================================================================
# Backup Command
# =============================================================================


@cli.command("backup")
@click.argument("app_id")
@click.option("--full", "kind", flag_value="full", help="Back up every record.")
@click.option(
    "--differential",
    "kind",
    flag_value="differential",
    help="Back up records changed since the last backup.",
)
@click.pass_context
def backup_command(ctx: click.Context, app_id: str, kind: Optional[str]) -> None:
    """
    Back up one app now.

    Without --full or --differential the configured default_backup_type is
    used. A differential backup of an app that was never backed up reads
    every record.

    Examples:

        kintone-backup backup 42 --full
        kintone-backup backup 42 --differential
    """
    logger = get_logger(__name__)
    settings: BackupSettings = ctx.obj["settings"]
    kind = kind or settings.default_backup_type

    try:
        services = build_services(settings)
    except ConfigError as e:
        click.echo(click.style(f"Configuration error: {e}", fg="red"), err=True)
        sys.exit(1)

    try:
        click.echo(f"Backing up app {app_id} ({kind})...")
        result = services.orchestrator.backup_app(app_id, BackupKind(kind))
        show_backup_result(result)
    except Exception as e:
        logger.debug(f"Backup command failed: {e}")
        click.echo(click.style(f"Backup failed: {e}", fg="red"), err=True)
        sys.exit(1)
    finally:
        services.close()


# =============================================================================
# History Commands
# =============================================================================


@cli.command("history")
@click.option("--app", "app_id", help="Only runs for this app ID.")
@click.option("--kind", type=click.Choice(RUN_KINDS), help="Only runs of this kind.")
@click.option(
    "--status", type=click.Choice(RUN_STATUSES), help="Only runs with this status."
)
@click.option("--since", help="Only runs started at or after this ISO timestamp.")
@click.option("--until", help="Only runs started at or before this ISO timestamp.")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="Maximum number of runs to show.",
)
@click.pass_context
def history_command(
    ctx: click.Context,
    app_id: Optional[str],
    kind: Optional[str],
    status: Optional[str],
    since: Optional[str],
    until: Optional[str],
    limit: int,
) -> None:
    """
    Show backup and restore history, newest first.

    Examples:

        kintone-backup history
        kintone-backup history --app 42 --kind full --limit 5
    """
    settings: BackupSettings = ctx.obj["settings"]

    db = open_database(settings)
    runs = db.get_run_history(
        app_id=app_id,
        kind=kind,
        status=status,
        start_date=since,
        end_date=until,
        limit=limit,
    )
    db.close()
    show_run_table(runs)


@cli.command("show")
@click.argument("run_id", type=int)
@click.pass_context
def show_command(ctx: click.Context, run_id: int) -> None:
    """Show every detail of one backup run."""
    settings: BackupSettings = ctx.obj["settings"]

    db = open_database(settings)
    run = db.get_run(run_id)
    db.close()

    if run is None:
        click.echo(click.style(f"Backup #{run_id} not found", fg="red"), err=True)
        sys.exit(1)
    show_run_detail(run)


@cli.command("records")
@click.argument("run_id", type=int)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=10,
    show_default=True,
    help="Number of records to show.",
)
@click.pass_context
def records_command(ctx: click.Context, run_id: int, limit: int) -> None:
    """
    Preview the records stored in a backup archive.

    Example:

        kintone-backup records 17 --limit 3
    """
    settings: BackupSettings = ctx.obj["settings"]

    db = open_database(settings)
    run = db.get_run(run_id)
    db.close()

    if run is None:
        click.echo(click.style(f"Backup #{run_id} not found", fg="red"), err=True)
        sys.exit(1)
    if not run.archive_reference:
        click.echo(f"Backup #{run_id} has no archive (no records were captured).")
        return

    try:
        contents = open_codec(settings).read(run.archive_reference)
    except ArchiveError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    if contents.manifest is not None:
        click.echo(
            f"Archive {run.archive_reference} "
            f"(schema {contents.manifest.schema_version}, "
            f"captured {contents.manifest.captured_at})"
        )
    show_record_preview(contents.records, limit=limit)


# =============================================================================
# Restore Command
# =============================================================================


@cli.command("restore")
@click.argument("run_id", type=int)
@click.option(
    "--record-id",
    "record_ids",
    multiple=True,
    help="Only restore this record ID (repeatable).",
)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def restore_command(
    ctx: click.Context, run_id: int, record_ids: tuple[str, ...], yes: bool
) -> None:
    """
    Restore archived records into the live app.

    Records whose key matches a live record update it; all others are
    added as new records.

    Examples:

        kintone-backup restore 17
        kintone-backup restore 17 --record-id 5 --record-id 8 --yes
    """
    logger = get_logger(__name__)
    settings: BackupSettings = ctx.obj["settings"]

    try:
        services = build_services(settings)
    except ConfigError as e:
        click.echo(click.style(f"Configuration error: {e}", fg="red"), err=True)
        sys.exit(1)

    try:
        source = services.db.get_run(run_id)
        if source is None:
            click.echo(click.style(f"Backup #{run_id} not found", fg="red"), err=True)
            sys.exit(1)

        if not yes:
            scope = (
                f"{len(record_ids)} selected records" if record_ids else "all records"
            )
            click.confirm(
                f"Restore {scope} of backup #{run_id} into app "
                f"{source.target_app_id} ({source.target_app_name or 'unknown'})?\n"
                "Matching live records will be overwritten. Continue?",
                abort=True,
            )

        result = services.reconciler.restore(
            run_id, selected_record_ids=list(record_ids) or None
        )
        show_restore_result(result)
        if result.status is RunStatus.FAILURE:
            sys.exit(1)

    except (RestoreError, ArchiveError, KintoneAPIError) as e:
        logger.debug(f"Restore command failed: {e}")
        click.echo(click.style(f"Restore failed: {e}", fg="red"), err=True)
        sys.exit(1)
    finally:
        services.close()


# =============================================================================
# Delete Command
# =============================================================================


@cli.command("delete")
@click.argument("run_id", type=int)
@click.option("--keep-archive", is_flag=True, help="Keep the archive file on disk.")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def delete_command(
    ctx: click.Context, run_id: int, keep_archive: bool, yes: bool
) -> None:
    """
    Delete a backup run and its record markers.

    Example:

        kintone-backup delete 17 --yes
    """
    logger = get_logger(__name__)
    settings: BackupSettings = ctx.obj["settings"]

    db = open_database(settings)
    try:
        run = db.get_run(run_id)
        if run is None:
            click.echo(click.style(f"Backup #{run_id} not found", fg="red"), err=True)
            sys.exit(1)

        if not yes:
            click.confirm(
                f"Delete backup #{run_id} of app {run.target_app_id} "
                f"started {run.start_time}?",
                abort=True,
            )

        db.delete_run(run_id)

        # Restore runs reference the source archive; only backups own theirs
        owns_archive = run.kind is not BackupKind.RESTORE
        if run.archive_reference and owns_archive and not keep_archive:
            if open_codec(settings).delete(run.archive_reference):
                click.echo(f"Deleted archive {run.archive_reference}")

        click.echo(click.style(f"Backup #{run_id} deleted.", fg="green"))
        logger.info(f"Deleted backup run {run_id}")
    finally:
        db.close()
