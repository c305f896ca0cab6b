"""
Command line interface: ``flask --app sqlkeeper backup ...``
"""

import click
from flask import current_app
from flask.cli import AppGroup

from sqlkeeper.backup.drivers import create_driver
from sqlkeeper.backup.errors import ConnectionFailed, PruneFailed
from sqlkeeper.backup.jobs import build_request, execute_backup, load_connection_profile, prune_backups


backup_cli = AppGroup('backup', help='Run and maintain database backups.')


@backup_cli.command('run')
@click.option('--connection', help='Database connection to back up (default: DB_CONNECTION).')
@click.option('--tables', help='Comma separated tables to include.')
@click.option('--exclude', help='Comma separated tables to exclude.')
@click.option('--filename', help='Custom backup filename.')
@click.option('--format', 'output_format', type=click.Choice(['none', 'raw', 'sql', 'gzip', 'gz', 'zip']),
              help='Compression format (default: BACKUP_COMPRESSION).')
@click.option('--storage', help='Storage disk to publish to (default: BACKUP_STORAGE).')
@click.option('--path', help='Backup directory (default: BACKUP_DIR).')
@click.option('--structure-only', is_flag=True, help='Dump the schema without table data.')
def run_command(connection, tables, exclude, filename, output_format, storage, path, structure_only):
    """Run a backup now."""
    try:
        request = build_request(
            current_app.config,
            connection=connection,
            tables=tables,
            exclude=exclude,
            filename=filename,
            format=output_format,
            storage=storage,
            path=path,
            include_data=not structure_only,
        )
        run = execute_backup(request, trigger='cli')
    except ValueError as e:
        raise click.ClickException(str(e))

    for warning in run.to_dict()['warnings']:
        click.secho(f"Warning: {warning}", fg='yellow', err=True)

    if run.status != 'success':
        click.secho(f"Backup failed during {run.failed_stage}: {run.error_message}", fg='red', err=True)
        raise SystemExit(1)

    size_mb = (run.file_size_bytes or 0) / 1024 / 1024
    click.secho(f"Backup created: {run.artifact_path} ({size_mb:.2f} MB)", fg='green')
    if run.published_to:
        click.echo(f"Stored in {run.storage}: {run.published_to}")
    if run.pruned_count:
        click.echo(f"Old backups removed: {run.pruned_count}")


@backup_cli.command('prune')
def prune_command():
    """Apply the retention policy to the backup directory."""
    try:
        deleted = prune_backups()
    except PruneFailed as e:
        for path, error in e.failures.items():
            click.secho(f"Failed to delete {path}: {error}", fg='red', err=True)
        click.echo(f"Deleted {len(e.deleted)} backup(s) before errors")
        raise SystemExit(1)

    for path in deleted:
        click.echo(f"Deleted {path}")
    click.echo(f"Deleted {len(deleted)} backup(s)")


@backup_cli.command('check')
@click.option('--connection', help='Database connection to check (default: DB_CONNECTION).')
def check_command(connection):
    """Check the database connection and the dump utility."""
    config = current_app.config
    try:
        profile = load_connection_profile(config, connection)
    except ValueError as e:
        raise click.ClickException(str(e))

    driver = create_driver(profile, binaries=config.get('DUMP_BINARIES'))
    ok = True

    for key, value in profile.describe().items():
        click.echo(f"{key:>10}: {value}")

    if driver.binary is None:
        click.echo("Dump utility: not required")
    elif driver.binary_available():
        click.secho(f"Dump utility: {driver.binary} found", fg='green')
    else:
        click.secho(f"Dump utility: {driver.binary} not found in PATH", fg='red')
        ok = False

    try:
        driver.test_connection()
        click.secho("Connection: OK", fg='green')
    except ConnectionFailed as e:
        click.secho(f"Connection: FAILED ({e})", fg='red')
        ok = False
    finally:
        driver.dispose()

    if not ok:
        raise SystemExit(1)
