"""
Shared pytest fixtures for sqlkeeper tests.

This module provides fixtures for:
- Flask app and test client
- History database setup with in-memory SQLite
- A small SQLite database to back up
- Backup run fixtures
- Mock fixtures for external services (S3, SFTP, scheduler)
"""

import sqlite3
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from sqlkeeper import create_app, db as _db
from sqlkeeper.backup.profiles import ConnectionProfile
from sqlkeeper.models import BackupRun


@pytest.fixture
def sqlite_database(tmp_path):
    """
    Create a SQLite database with a few tables.

    Tables: users, orders, sessions
    """
    path = tmp_path / 'source' / 'shop.sqlite'
    path.parent.mkdir()

    connection = sqlite3.connect(path)
    connection.executescript("""
        CREATE TABLE users (id INTEGER PRIMARY KEY, email TEXT);
        CREATE TABLE orders (id INTEGER PRIMARY KEY, user_id INTEGER, total REAL);
        CREATE TABLE sessions (id TEXT PRIMARY KEY, payload TEXT);
        INSERT INTO users (email) VALUES ('ada@example.com'), ('grace@example.com');
        INSERT INTO orders (user_id, total) VALUES (1, 12.5);
    """)
    connection.commit()
    connection.close()

    return path


@pytest.fixture
def sqlite_profile(sqlite_database):
    return ConnectionProfile(name='sqlite', driver='sqlite', database=str(sqlite_database))


@pytest.fixture
def mysql_profile():
    return ConnectionProfile(
        name='mysql',
        driver='mysql',
        host='db.internal',
        port=3306,
        database='shop',
        username='backup',
        password='s3cret'
    )


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / 'backups'
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture(scope='function')
def app(tmp_path, sqlite_database):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite for history and backs up the ``sqlite_database``
    fixture by default.
    """
    app = create_app('testing', overrides={
        'BACKUP_DIR': str(tmp_path / 'backups'),
        'DB_CONNECTION': 'sqlite',
        'DB_CONNECTIONS': {
            'sqlite': {'driver': 'sqlite', 'database': str(sqlite_database)},
            'mysql': {
                'driver': 'mysql',
                'host': 'db.internal',
                'database': 'shop',
                'username': 'backup',
                'password': 's3cret',
            },
        },
        'STORAGE_DISKS': {
            'archive': {'driver': 'local', 'root': str(tmp_path / 'archive')},
        },
        'BACKUP_RETENTION_DAYS': 7,
        'BACKUP_MAX_COUNT': 10,
        'BACKUP_COMPRESSION': 'gzip',
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create history tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app, db):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app, db):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def backup_run(db):
    """
    Create a finished backup run record.
    """
    run = BackupRun(
        connection='sqlite',
        trigger='manual',
        status='success',
        state='done',
        started_at=datetime(2024, 1, 15, 12, 0, 0),
        completed_at=datetime(2024, 1, 15, 12, 0, 5),
        artifact_path='/data/backups/shop_2024-01-15_12-00-00.sql.gz',
        file_size_bytes=1024000,
        storage='local',
        logs='[2024-01-15 12:00:00 UTC] Starting backup\n[2024-01-15 12:00:05 UTC] Backup completed'
    )
    db.session.add(run)
    db.session.commit()
    return run


@pytest.fixture(scope='function')
def failed_run(db):
    run = BackupRun(
        connection='mysql',
        trigger='scheduled',
        status='failed',
        state='failed',
        failed_stage='connection',
        started_at=datetime(2024, 1, 16, 1, 0, 0),
        completed_at=datetime(2024, 1, 16, 1, 0, 1),
        storage='local',
        error_message='Failed to connect to database server'
    )
    db.session.add(run)
    db.session.commit()
    return run


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches for real ones."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns the patched SSHClient class; its instance's open_sftp() returns
    a MagicMock SFTP client.
    """
    with patch('sqlkeeper.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import sqlkeeper.scheduler as scheduler_module

    with patch('sqlkeeper.scheduler.BackgroundScheduler') as mock_sched, \
            patch('sqlkeeper.scheduler.SQLAlchemyJobStore'):
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []
        scheduler_instance.get_job.return_value = None

        yield scheduler_instance

    scheduler_module.scheduler = None
    scheduler_module.flask_app = None
