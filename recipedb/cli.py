"""Command-line interface for RecipeDB."""

import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .admin import DatabaseAdmin
from .backup import BackupService
from .config import RecipeDBConfig
from .database import DatabaseManager
from .exceptions import BackupError, InvalidBackupError, MigrationError, RecipeDBError
from .logger import setup_logging
from .seeds import clear_seed_data, seed_database

console = Console()

CONFIG_TEMPLATE = '''
# RecipeDB Configuration Template
# Copy this file to config.yaml and customize for your environment.
# Values of the form ${VAR} or ${VAR:-default} are read from the environment.

database:
  type: "postgresql"  # or "sqlite"
  postgresql:
    host: "${DB_HOST:-localhost}"
    port: 5432
    database: "${DB_NAME:-ghibli_food_db}"
    username: "${DB_USER:-postgres}"
    password: "${DB_PASSWORD:-}"
  sqlite:
    path: "data/recipedb.db"
  pool_size: 20
  max_overflow: 0
  pool_timeout: 2.0

monitoring:
  pool_size: 5
  metrics_interval_seconds: 60
  health_interval_seconds: 300
  hourly_report_cron: "0 * * * *"
  daily_report_cron: "0 0 * * *"
  alert_cooldown_seconds: 3600
  alert_history_size: 100
  thresholds:
    max_connections_percent: 80
    connection_limit: 100
    slow_query_ms: 1000
    max_database_size_gb: 1.0
    disk_usage_percent: 85
  data_dir: "data/monitoring"
  reports_dir: "data/reports"

backup:
  directory: "backup"
  pg_dump_path: "pg_dump"
  psql_path: "psql"
  timeout_seconds: 3600
  keep_days: 30
  default_format: "sql"
  compress: false
  schedule_cron: null  # e.g. "0 2 * * *"

admin:
  host: "0.0.0.0"
  port: 3002
  environment: "${APP_ENV:-development}"
  allowed_origins:
    - "http://localhost:3000"
  rate_limit_requests: 100
  rate_limit_window_seconds: 900

notifications:
  email:
    enabled: false
    smtp_server: "${SMTP_HOST:-smtp.gmail.com}"
    smtp_port: 587
    use_tls: true
    username: "${SMTP_USER:-}"
    password: "${SMTP_PASS:-}"
    from_address: "noreply@ghiblifood.com"
    alert_addresses:
      - "dba@example.com"
    report_addresses:
      - "team@example.com"

logging:
  level: "INFO"
  format: "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
  file_handler:
    enabled: true
    directory: "data/logs"
    max_bytes: 10485760  # 10MB
    backup_count: 5
  console_handler:
    enabled: true
'''


def _format_bytes(size: float) -> str:
    if size < 1024:
        return f"{int(size)} Bytes"
    for unit in ("KB", "MB", "GB"):
        size /= 1024
        if size < 1024 or unit == "GB":
            break
    return f"{size:.2f} {unit}"


def _backup_table(backups, title: str) -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("#", justify="right")
    table.add_column("File", style="green")
    table.add_column("Format")
    table.add_column("Size", justify="right", style="blue")
    table.add_column("Created (UTC)", style="dim")
    for index, backup in enumerate(backups, start=1):
        table.add_row(
            str(index),
            backup.filename,
            backup.format,
            _format_bytes(backup.size),
            backup.created.strftime("%Y-%m-%d %H:%M:%S"),
        )
    return table


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(path_type=Path),
    default="config.yaml",
    help="Path to configuration file",
)
@click.pass_context
def cli(ctx: click.Context, config: Path) -> None:
    """RecipeDB: database administration, backup and monitoring."""
    ctx.ensure_object(dict)

    # Skip config loading for commands that don't need it
    if ctx.invoked_subcommand == "config-template":
        return

    try:
        config_obj = RecipeDBConfig.from_yaml(config)
        setup_logging(cfg=config_obj.logging)
        ctx.obj["config"] = config_obj
        ctx.obj["db_manager"] = DatabaseManager(
            config_obj.get_database_url(),
            pool_size=config_obj.database.pool_size,
            pool_timeout=config_obj.database.pool_timeout,
            max_overflow=config_obj.database.max_overflow,
        )
    except Exception as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create directories and apply all pending migrations."""
    config: RecipeDBConfig = ctx.obj["config"]
    db_manager: DatabaseManager = ctx.obj["db_manager"]

    click.echo("Initializing RecipeDB...")

    config.ensure_directories()
    click.echo("✓ Created directories")

    admin = DatabaseAdmin(config, db_manager)
    try:
        applied = admin.migrations.up()
    except MigrationError as e:
        click.echo(f"Migration {e.version} failed: {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Applied {len(applied)} migration(s)")

    click.echo("RecipeDB initialization complete!")


@cli.group()
def migrate() -> None:
    """Schema migration commands."""
    pass


@migrate.command()
@click.option("--steps", "-n", type=click.IntRange(min=1), default=None,
              help="Apply at most this many pending migrations")
@click.pass_context
def up(ctx: click.Context, steps: Optional[int]) -> None:
    """Apply pending migrations."""
    admin = DatabaseAdmin(ctx.obj["config"], ctx.obj["db_manager"])
    try:
        applied = admin.migrations.up(steps)
    except MigrationError as e:
        click.echo(f"Migration {e.version} failed: {e}", err=True)
        sys.exit(1)

    if not applied:
        click.echo("Database is up to date")
    for version in applied:
        click.echo(f"✓ Applied migration {version}")


@migrate.command()
@click.option("--steps", "-n", type=click.IntRange(min=1), default=1,
              help="Number of migrations to revert")
@click.pass_context
def down(ctx: click.Context, steps: int) -> None:
    """Revert the most recently applied migrations."""
    admin = DatabaseAdmin(ctx.obj["config"], ctx.obj["db_manager"])
    try:
        reverted = admin.migrations.down(steps)
    except MigrationError as e:
        click.echo(f"Reverting migration {e.version} failed: {e}", err=True)
        sys.exit(1)

    if not reverted:
        click.echo("No applied migrations to revert")
    for version in reverted:
        click.echo(f"✓ Reverted migration {version}")


@migrate.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show applied and pending migrations."""
    admin = DatabaseAdmin(ctx.obj["config"], ctx.obj["db_manager"])
    report = admin.get_migration_status()

    table = Table(title="Schema Migrations", show_header=True)
    table.add_column("Version")
    table.add_column("Description")
    table.add_column("Status")
    table.add_column("Applied At", style="dim")
    for migration in report['migrations']:
        state = "[green]applied[/green]" if migration['applied'] else "[yellow]pending[/yellow]"
        table.add_row(migration['version'], migration['description'], state,
                      migration['applied_at'] or "")
    console.print(table)
    click.echo(f"Applied: {report['applied_count']}  Pending: {report['pending_count']}")


@cli.command()
@click.option("--clear", is_flag=True, help="Remove the demo rows instead of inserting them")
@click.pass_context
def seed(ctx: click.Context, clear: bool) -> None:
    """Load (or remove) demo categories, users, books and tags."""
    db_manager: DatabaseManager = ctx.obj["db_manager"]

    session = db_manager.get_session()
    try:
        if clear:
            clear_seed_data(session)
            click.echo("✓ Demo data removed")
            return
        inserted = seed_database(session)
    except Exception as e:
        session.rollback()
        click.echo(f"Seeding failed: {e}", err=True)
        sys.exit(1)
    finally:
        session.close()

    click.echo("✓ Demo data loaded")
    for table_name, count in inserted.items():
        click.echo(f"  {table_name}: {count}")


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to admin.host)")
@click.option("--port", type=int, default=None, help="Port (defaults to admin.port)")
@click.option("--no-monitoring", is_flag=True, help="Serve the API without the monitoring loop")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], no_monitoring: bool) -> None:
    """Run the admin API server."""
    import uvicorn

    from .api import create_app
    from .monitoring import MonitoringService
    from .scheduler import MonitoringScheduler

    config: RecipeDBConfig = ctx.obj["config"]
    config.ensure_directories()
    admin = DatabaseAdmin(config, ctx.obj["db_manager"])

    monitoring = None
    scheduler = None
    if not no_monitoring:
        monitoring = MonitoringService.from_config(config)
        scheduler = MonitoringScheduler(monitoring)
        scheduler.register_monitoring_jobs()
        scheduler.start()

    app = create_app(config, admin, monitoring)
    click.echo(f"Admin API listening on {host or config.admin.host}:{port or config.admin.port}")
    try:
        uvicorn.run(app, host=host or config.admin.host, port=port or config.admin.port,
                    log_config=None)
    finally:
        if scheduler is not None:
            scheduler.stop()
        ctx.obj["db_manager"].close()


@cli.command()
@click.option("--once", is_flag=True, help="Run a single metrics and health tick, then exit")
@click.pass_context
def monitor(ctx: click.Context, once: bool) -> None:
    """Run the monitoring loop (metrics, health checks and reports)."""
    from .monitoring import MonitoringService
    from .scheduler import MonitoringScheduler, schedule_backups

    config: RecipeDBConfig = ctx.obj["config"]
    config.ensure_directories()
    service = MonitoringService.from_config(config)

    if once:
        snapshot = service.collect_metrics()
        results = service.check_health()
        if snapshot is None:
            click.echo("✗ Metrics collection failed", err=True)
        else:
            click.echo(f"✓ Metrics collected: {snapshot.active_connections} active connections, "
                       f"{snapshot.slow_queries} slow queries, {snapshot.database_size_gb:.3f} GB")
        for result in results:
            mark = "✓" if result.healthy else "✗"
            click.echo(f"  {mark} {result.name}: {result.status.value}")
        if snapshot is None or not all(r.healthy for r in results):
            sys.exit(1)
        return

    scheduler = MonitoringScheduler(service)
    try:
        scheduler.register_monitoring_jobs()
        if config.backup.schedule_cron:
            backups = BackupService(config, ctx.obj["db_manager"].engine)
            schedule_backups(scheduler.scheduler, backups, config.backup.schedule_cron,
                             guard=scheduler.guard)
    except RecipeDBError as e:
        click.echo(f"Failed to schedule monitoring: {e}", err=True)
        sys.exit(1)

    click.echo("Monitoring started. Press Ctrl+C to stop.")
    scheduler.run_forever()
    click.echo("Monitoring stopped")


@cli.group()
def backup() -> None:
    """Backup management commands."""
    pass


@backup.command("create")
@click.option("--format", "-f", "fmt", type=click.Choice(["sql", "csv"]), default=None,
              help="Backup format (defaults to backup.default_format)")
@click.option("--tables", "-t", multiple=True, help="Table to include (can be used multiple times)")
@click.option("--output", "-o", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Output directory (defaults to backup.directory)")
@click.option("--compress", is_flag=True, help="Gzip the SQL dump")
@click.pass_context
def backup_create(ctx: click.Context, fmt: Optional[str], tables: tuple,
                  output: Optional[Path], compress: bool) -> None:
    """Create a database backup."""
    backups = BackupService(ctx.obj["config"], ctx.obj["db_manager"].engine)
    click.echo("Creating backup...")
    try:
        info = backups.create_backup(
            tables=list(tables) or None,
            fmt=fmt,
            output_dir=str(output) if output else None,
            compress=compress or None,
        )
    except BackupError as e:
        click.echo(f"Backup failed: {e}", err=True)
        if e.stderr:
            click.echo(e.stderr, err=True)
        sys.exit(1)

    click.echo(f"✓ Backup created: {info.path}")
    click.echo(f"  Size: {_format_bytes(info.size)}")
    click.echo(f"  Created: {info.created.isoformat()}")


@backup.command("list")
@click.option("--directory", "-d", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Backup directory (defaults to backup.directory)")
@click.pass_context
def backup_list(ctx: click.Context, directory: Optional[Path]) -> None:
    """List available backups, newest first."""
    backups = BackupService(ctx.obj["config"])
    found = backups.list_backups(str(directory) if directory else None)
    if not found:
        click.echo("No backup files found")
        return
    console.print(_backup_table(found, "Available Backups"))


@backup.command("clean")
@click.option("--keep-days", type=click.IntRange(min=0), default=None,
              help="Delete backups older than this many days (defaults to backup.keep_days)")
@click.pass_context
def backup_clean(ctx: click.Context, keep_days: Optional[int]) -> None:
    """Delete old backups."""
    backups = BackupService(ctx.obj["config"])
    removed = backups.clean_old_backups(keep_days)
    for name in removed:
        click.echo(f"  removed {name}")
    click.echo(f"✓ Removed {len(removed)} old backup(s)")


@backup.command("schedule")
@click.option("--cron", default=None, help="Cron expression (defaults to backup.schedule_cron)")
@click.pass_context
def backup_schedule(ctx: click.Context, cron: Optional[str]) -> None:
    """Run scheduled backups in the foreground."""
    from apscheduler.schedulers.blocking import BlockingScheduler

    from .scheduler import schedule_backups

    config: RecipeDBConfig = ctx.obj["config"]
    cron = cron or config.backup.schedule_cron
    if not cron:
        click.echo("No cron expression given and backup.schedule_cron is not set", err=True)
        sys.exit(1)

    scheduler = BlockingScheduler(timezone="UTC")
    try:
        schedule_backups(scheduler, BackupService(config, ctx.obj["db_manager"].engine), cron)
    except RecipeDBError as e:
        click.echo(str(e), err=True)
        sys.exit(1)

    click.echo(f"Backup scheduler started with cron '{cron}'. Press Ctrl+C to stop.")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        click.echo("\nShutting down backup scheduler...")


@cli.command()
@click.option("--file", "-f", "backup_file", type=click.Path(dir_okay=False, path_type=Path),
              default=None, help="Backup file to restore")
@click.option("--directory", "-d", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Directory to choose a backup from (defaults to backup.directory)")
@click.option("--force", is_flag=True, help="Skip confirmation prompts")
@click.option("--dry-run", is_flag=True, help="Validate the backup without restoring it")
@click.pass_context
def restore(ctx: click.Context, backup_file: Optional[Path], directory: Optional[Path],
            force: bool, dry_run: bool) -> None:
    """Restore the database from a backup."""
    config: RecipeDBConfig = ctx.obj["config"]
    admin = DatabaseAdmin(config, ctx.obj["db_manager"])
    backups = admin.backups

    if backup_file is None:
        found = backups.list_backups(str(directory) if directory else None)
        if not found:
            click.echo("No backup files found in the directory", err=True)
            sys.exit(1)
        console.print(_backup_table(found, "Available Backups"))
        choice = click.prompt("Select a backup to restore", type=click.IntRange(1, len(found)), default=1)
        backup_file = Path(found[choice - 1].path)

    try:
        info = backups.validate_backup(backup_file)
    except InvalidBackupError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Backup file validated: {info.filename} ({_format_bytes(info.size)})")

    if dry_run:
        click.echo("Dry run: no changes were made")
        return

    if not force:
        click.echo("\n⚠️  WARNING: This operation will replace existing data!")
        click.echo(f"Backup file: {info.filename}")
        click.echo(f"Target database: {config.get_database_name()} on {config.get_database_host()}")
        if not click.confirm("Are you sure you want to proceed with the restore?", default=False):
            click.echo("Restore cancelled")
            return

    click.echo("Creating restore point before proceeding...")
    try:
        point = backups.create_backup(fmt="sql", compress=False)
        click.echo(f"✓ Restore point created: {point.filename}")
    except BackupError as e:
        click.echo(f"⚠️  Could not create restore point: {e}")

    try:
        backups.restore_backup(backup_file)
    except BackupError as e:
        click.echo(f"✗ Restore failed: {e}", err=True)
        if e.stderr:
            click.echo(e.stderr, err=True)
        click.echo("\nTroubleshooting tips:", err=True)
        click.echo("• Check if the database server is running", err=True)
        click.echo("• Verify the database connection settings in the configuration", err=True)
        click.echo("• Ensure you have proper database permissions", err=True)
        sys.exit(1)

    click.echo("\n✓ Restore completed successfully!")
    try:
        counts = admin.get_table_row_counts()
    except Exception as e:
        click.echo(f"Could not generate summary: {e}")
        return

    table = Table(title=f"Restore Summary: {config.get_database_name()}", show_header=True)
    table.add_column("Table")
    table.add_column("Rows", justify="right")
    for table_name, count in counts.items():
        table.add_row(table_name, str(count))
    console.print(table)


@cli.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Output file for configuration template",
)
def config_template(output: Optional[Path]) -> None:
    """Generate a configuration template file."""
    if output:
        output.write_text(CONFIG_TEMPLATE.strip() + "\n", encoding="utf-8")
        click.echo(f"Configuration template written to {output}")
    else:
        click.echo(CONFIG_TEMPLATE.strip())


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
