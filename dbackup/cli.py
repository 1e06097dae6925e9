"""CLI interface for dbackup."""

import logging
import os
import signal
import sys
import threading
from datetime import datetime, timezone

import click
from flask import current_app
from flask.cli import FlaskGroup, with_appcontext

from dbackup.backup.executor import STEP_INTERNAL, RunOutcome, run_job_now
from dbackup.backup.resolver import ConfigError, load_jobs
from dbackup.backup.retention import RetentionManager
from dbackup.backup.storage import StorageError
from dbackup.notifications import build_listeners


logger = logging.getLogger(__name__)


SAMPLE_CONFIG = """\
# dbackup configuration
settings:
  concurrency: 2          # backups allowed to run at the same time
  timezone: UTC           # timezone cron expressions are evaluated in
  binary:
    pg_dump: /usr/bin/pg_dump
    mysqldump: /usr/bin/mysqldump
  # notifications:
  #   webhook_url: https://hooks.example.com/dbackup
  #   on: failure         # all | failure

storages:
  local:
    driver: local
    path: /var/backups/dbackup
  offsite:
    driver: s3
    bucket: db-backups
    region: eu-west-1
    prefix: prod/
    # endpoint: https://minio.example.com
    # access_key_id: AKIA...
    # secret_access_key: ...

backups:
  - name: orders
    driver: postgresql
    connection:
      host: localhost
      port: 5432
      username: app
      password: change-me
      database: orders
    mode: parallel
    parallel_jobs: 4
    schedule:
      cron: "0 2 * * *"
    storage:
      ref: offsite
      filename_prefix: orders_
    retention: 7d

  - name: accounts
    driver: mysql
    connection:
      host: localhost
      port: 3306
      username: backup
      password: change-me
      database: accounts
    schedule:
      cron: "*/30 * * * *"
    storage: local
    retention: 2d
"""


config_option = click.option(
    '--config', '-c', 'config_path',
    type=click.Path(dir_okay=False),
    default=None,
    help='Path to the backup configuration file (default: DBACKUP_CONFIG).'
)


def _config_path(config_path):
    return config_path or current_app.config['DBACKUP_CONFIG']


def _load(config_path):
    """Load and resolve a configuration, exiting on any configuration error."""
    path = _config_path(config_path)
    try:
        return load_jobs(path)
    except ConfigError as e:
        click.echo(f"✗ Invalid configuration ({path}): {e}", err=True)
        sys.exit(1)


def _notify(listeners, outcome):
    for listener in listeners:
        try:
            listener(outcome)
        except Exception:
            logger.exception("Run listener %r failed for backup '%s'", listener, outcome.job_name)


@click.command('backup')
@config_option
@click.option('--name', '-n', default=None, help='Only run the backup with this name.')
@with_appcontext
def backup_command(config_path, name):
    """Run backups once, synchronously.

    Every configured backup (or only --name) is dumped, uploaded and pruned
    one after the other. Exits non-zero if any of them failed.
    """
    config, jobs = _load(config_path)

    if name:
        jobs = [job for job in jobs if job.name == name]

    if not jobs:
        click.echo("✗ No backups configured or matching the specified name", err=True)
        sys.exit(1)

    listeners = build_listeners(current_app._get_current_object(), config.settings)
    failed = []

    for job in jobs:
        click.echo(f"Running backup: {job.name}")
        try:
            outcome = run_job_now(job, trigger='manual')
        except Exception as e:
            logger.exception("Unexpected error while running backup '%s'", job.name)
            outcome = RunOutcome(job_name=job.name, started_at=datetime.now(timezone.utc), trigger='manual')
            outcome.fail(STEP_INTERNAL, e)
        _notify(listeners, outcome)

        if outcome.succeeded:
            click.echo(f"✓ {job.name}: {outcome.location} ({outcome.artifact.size} bytes)")
        else:
            click.echo(f"✗ {job.name}: {outcome.failed_step} failed: {outcome.error}", err=True)
            failed.append(job.name)

    if failed:
        click.echo(f"✗ {len(failed)} of {len(jobs)} backup(s) failed: {', '.join(failed)}", err=True)
        sys.exit(1)

    click.echo("✓ All backups completed successfully")


@click.command('validate')
@config_option
@click.option('--check-storage', is_flag=True, help='Also verify that every storage is reachable.')
@with_appcontext
def validate_command(config_path, check_storage):
    """Validate the configuration file."""
    config, jobs = _load(config_path)

    for job in jobs:
        schedule = job.schedule.expression if job.schedule else 'one-shot'
        click.echo(f"✓ Backup '{job.name}' configuration is valid ({schedule} -> {job.storage.describe()})")

    if check_storage:
        failures = 0
        for job in jobs:
            try:
                job.storage.check()
                click.echo(f"✓ Storage for '{job.name}' is reachable")
            except StorageError as e:
                click.echo(f"✗ Storage for '{job.name}': {e}", err=True)
                failures += 1

        if failures:
            sys.exit(1)

    click.echo(f"✓ Configuration is valid ({len(jobs)} backup(s), {len(config.storages)} storage(s))")


@click.command('generate')
@click.option('--output', '-o', type=click.Path(dir_okay=False), default='backup.yml',
              help='Where to write the sample configuration.')
@click.option('--force', is_flag=True, help='Overwrite an existing file.')
def generate_command(output, force):
    """Write a sample configuration file."""
    if os.path.exists(output) and not force:
        click.echo(f"✗ {output} already exists (use --force to overwrite)", err=True)
        sys.exit(1)

    with open(output, 'w') as f:
        f.write(SAMPLE_CONFIG)

    click.echo(f"✓ Sample configuration written to {output}")


@click.command('schedule')
@config_option
@click.option('--concurrency', type=click.IntRange(min=1), default=None,
              help='Override settings.concurrency.')
@with_appcontext
def schedule_command(config_path, concurrency):
    """Run the scheduler in the foreground until SIGINT or SIGTERM.

    Running backups are allowed to finish before the process exits.
    """
    from dbackup.scheduler import init_scheduler, start_scheduler, stop_scheduler

    app = current_app._get_current_object()
    path = _config_path(config_path)

    try:
        scheduler = init_scheduler(app, config_path=path, concurrency=concurrency)
    except ConfigError as e:
        click.echo(f"✗ Invalid configuration ({path}): {e}", err=True)
        sys.exit(1)

    stop = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    start_scheduler(app)
    click.echo(f"✓ Scheduler running with {len(scheduler.jobs)} backup(s). Press Ctrl+C to stop.")

    while not stop.wait(1):
        pass

    click.echo("Waiting for running backups to finish...")
    drained = stop_scheduler(app, timeout=app.config.get('SCHEDULER_SHUTDOWN_TIMEOUT'))

    if not drained:
        click.echo("✗ Shutdown timeout reached with backups still running", err=True)
        sys.exit(1)

    click.echo("✓ Scheduler stopped")


@click.command('prune')
@config_option
@with_appcontext
def prune_command(config_path):
    """Apply every backup's retention policy now."""
    config, jobs = _load(config_path)

    summary = RetentionManager().enforce_all(jobs)

    for name, report in summary['reports'].items():
        click.echo(f"{name}: deleted {len(report.deleted)}, kept {len(report.kept)}")
        for failure in report.failures:
            click.echo(f"  ✗ {failure}", err=True)
        if report.list_error:
            click.echo(f"  ✗ {report.list_error}", err=True)

    click.echo(
        f"Retention complete. Jobs: {summary['jobs_processed']}, "
        f"Deleted: {summary['deleted']}, Failures: {summary['failures']}"
    )

    if summary['failures']:
        sys.exit(1)


COMMANDS = (backup_command, validate_command, generate_command, schedule_command, prune_command)


def register_commands(app):
    """Attach the dbackup commands to ``app.cli``."""
    for command in COMMANDS:
        app.cli.add_command(command)


def _create_app():
    from dbackup import create_app
    return create_app()


@click.group(cls=FlaskGroup, create_app=_create_app)
def main():
    """dbackup - scheduled database backups"""
    pass
