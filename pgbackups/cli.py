"""
Command line interface.

    pgbackups backup run              # Backup all sites
    pgbackups backup run --test       # Backup first site only
    pgbackups backup run --site NAME  # Backup sites whose container contains NAME
    pgbackups retention preview BUCKET

Commands run inside a Flask app context so they share the app's
configuration and logging.
"""

import logging
from datetime import date, timedelta

import click
from flask import current_app
from flask.cli import AppGroup, FlaskGroup

from pgbackups import create_app
from pgbackups.backup.coordinator import create_coordinator
from pgbackups.backup.retention import RetentionManager
from pgbackups.backup.sources import create_source, SourceError
from pgbackups.backup.storage import create_storage, StorageError
from pgbackups.config import load_sites, ConfigError
from pgbackups.notifications import create_notifier
from pgbackups.status import StatusRecorder, summarize
from pgbackups.utils.formatting import format_bytes


logger = logging.getLogger(__name__)

backup_cli = AppGroup('backup', help='Run and inspect database backups.')
retention_cli = AppGroup('retention', help='Inspect and apply the retention policy.')


def _load_sites():
    path = current_app.config['SITES_FILE']
    try:
        sites = load_sites(path)
    except ConfigError as e:
        raise click.ClickException(str(e))

    if not sites:
        raise click.ClickException(f"No sites configured in {path}")
    return sites


@backup_cli.command('run')
@click.option('--test', 'smoke_test', is_flag=True, help='Backup first site only (for testing).')
@click.option('--site', 'site_filter', metavar='NAME', help='Backup sites whose container name contains NAME.')
def run_command(smoke_test, site_filter):
    """Back up every configured site."""
    sites = _load_sites()

    logger.info(f"pgbackups starting at {date.today().isoformat()}")
    summary = create_coordinator(current_app.config).run(
        sites,
        site_filter=site_filter,
        smoke_test=smoke_test
    )

    for result in summary.results:
        if result.succeeded:
            click.echo(f"OK      {result.site_id} ({format_bytes(result.byte_size)})")
        else:
            click.echo(f"FAILED  {result.site_id}: {result.error}")

    click.echo(f"Total: {summary.total}  Succeeded: {summary.succeeded}  Failed: {summary.failed}")
    click.get_current_context().exit(summary.exit_code)


@backup_cli.command('discover')
def discover_command():
    """List running PostgreSQL containers."""
    try:
        containers = create_source(current_app.config).discover()
    except SourceError as e:
        raise click.ClickException(str(e))

    if not containers:
        click.echo('No PostgreSQL containers found')
        return

    for name in containers:
        click.echo(name)


@backup_cli.command('status')
@click.option('--days', default=7, show_default=True, help='How many days back to show.')
def status_command(days):
    """Show recent backup outcomes from the status ledger."""
    recorder = StatusRecorder(current_app.config['STATUS_FILE'])
    records = recorder.query(date.today() - timedelta(days=days))

    if not records:
        click.echo('No backup activity recorded.')
        return

    for entry in records:
        if entry.succeeded:
            click.echo(f"{entry.date.isoformat()}  {entry.site_id}  success  {format_bytes(entry.byte_size)}")
        else:
            click.echo(f"{entry.date.isoformat()}  {entry.site_id}  failure  {entry.error_text}")

    summary = summarize(records)
    click.echo(f"Succeeded: {summary['succeeded']}  Failed: {summary['failed']}  "
               f"Total: {format_bytes(summary['total_bytes'])}")


@backup_cli.command('digest')
def digest_command():
    """Send the weekly digest now."""
    coordinator = create_coordinator(current_app.config)
    coordinator.send_digest()
    click.echo('Digest sent')


@backup_cli.command('test-s3')
@click.argument('bucket')
def test_s3_command(bucket):
    """Check create/write/read/delete permissions on BUCKET."""
    try:
        create_storage(current_app.config).test_permissions(bucket)
    except StorageError as e:
        raise click.ClickException(str(e))
    click.echo(f"S3 permissions OK for bucket: {bucket}")


@backup_cli.command('test-email')
def test_email_command():
    """Send a test email with the configured SES settings."""
    if not create_notifier(current_app.config).send_test():
        raise click.ClickException('Test email failed')
    click.echo('Test email sent (or email disabled)')


@backup_cli.command('schedule')
def schedule_command():
    """Run backups on BACKUP_SCHEDULE until interrupted."""
    from pgbackups.scheduler import init_scheduler, start_scheduler

    _load_sites()
    init_scheduler(current_app._get_current_object())
    try:
        start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler interrupted")


def _retention_manager():
    return RetentionManager(create_storage(current_app.config))


@retention_cli.command('preview')
@click.argument('bucket')
def preview_command(bucket):
    """Show which backups in BUCKET would be kept or deleted."""
    try:
        plan = _retention_manager().preview(bucket, date.today())
    except StorageError as e:
        raise click.ClickException(str(e))

    click.echo(f"=== Backups to KEEP ({len(plan.keep)}) ===")
    for key in plan.keep:
        click.echo(f"  + {key}")

    click.echo(f"=== Backups to DELETE ({len(plan.delete)}) ===")
    for key in plan.delete:
        click.echo(f"  - {key}")

    if plan.unknown:
        click.echo(f"=== Unrecognized keys, left alone ({len(plan.unknown)}) ===")
        for key in plan.unknown:
            click.echo(f"  ? {key}")


@retention_cli.command('stats')
@click.argument('bucket')
def stats_command(bucket):
    """Count backups in BUCKET per retention tier."""
    try:
        counts = _retention_manager().stats(bucket, date.today())
    except StorageError as e:
        raise click.ClickException(str(e))

    click.echo(' '.join(f"{tier}:{count}" for tier, count in counts.items()))


@retention_cli.command('apply')
@click.argument('bucket')
def apply_command(bucket):
    """Delete backups in BUCKET that the retention policy does not keep."""
    try:
        result = _retention_manager().apply(bucket, date.today())
    except StorageError as e:
        raise click.ClickException(str(e))

    click.echo(f"Kept: {result.kept}  Deleted: {result.deleted}  "
               f"Failed: {result.failed}  Skipped: {result.skipped}")
    if result.failed:
        click.get_current_context().exit(1)


# Flask's default commands stay: `pgbackups run` serves the status API
main = FlaskGroup(create_app=create_app, help='PostgreSQL container backups to S3.')
