"""
Unit tests for backup executor (sqlkeeper/backup/executor.py).

Tests the backup state machine from connection check to retention.
"""

import gzip
import os
import subprocess
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

from freezegun import freeze_time

from sqlkeeper.backup.drivers import MySQLDriver, SQLiteDriver
from sqlkeeper.backup.errors import CompressionFailed, ConnectionFailed, DumpFailed, PruneFailed
from sqlkeeper.backup.executor import BackupExecutor, BackupState, TROUBLESHOOTING
from sqlkeeper.backup.profiles import BackupArtifact, BackupRequest, RetentionPolicy


POLICY = RetentionPolicy(max_age_days=7, max_count=10)


def fake_driver(profile, tables=('a', 'b'), supports_selection=True, supports_structure_only=True):
    """A driver double whose dump writes a small file."""
    driver = MagicMock()
    driver.supports_table_selection = supports_selection
    driver.supports_structure_only = supports_structure_only
    driver.list_tables.return_value = list(tables)
    driver.database_size.return_value = None

    def dump(selected, include_data, dest_path):
        with open(dest_path, 'w') as f:
            f.write('-- dump\n' * 100)
        return BackupArtifact.from_path(dest_path, profile.name)

    driver.dump.side_effect = dump
    return driver


class TestMySQLBackup:
    """Full run against a MySQL profile with the dump utility mocked."""

    @freeze_time("2024-01-15 12:00:00")
    @patch('sqlkeeper.backup.drivers.subprocess.run')
    def test_selected_tables_gzip_local(self, mock_run, mysql_profile, backup_dir):
        def fake_mysqldump(argv, stdout, **kwargs):
            stdout.write(b'CREATE TABLE orders (id INT);\n' * 50)
            return subprocess.CompletedProcess(argv, 0, None, b'')

        mock_run.side_effect = fake_mysqldump

        driver = MySQLDriver(mysql_profile)
        request = BackupRequest(
            path=str(backup_dir),
            tables=['orders', 'customers'],
            include_data=True,
            format='gzip',
            storage='local'
        )

        with patch.object(driver, 'test_connection', return_value=True), \
                patch.object(driver, 'list_tables', return_value=['customers', 'orders', 'sessions']), \
                patch.object(driver, 'database_size', return_value=None):
            result = BackupExecutor(mysql_profile, request, POLICY, driver=driver).execute()

        assert result.state == BackupState.DONE
        assert result.succeeded

        argv = mock_run.call_args.args[0]
        assert argv[0] == 'mysqldump'
        assert '--no-data' not in argv
        assert argv[-3:] == ['shop', 'customers', 'orders']

        expected = backup_dir / 'shop_2024-01-15_12-00-00.sql.gz'
        assert result.artifact.path == str(expected)
        assert expected.exists()
        assert not (backup_dir / 'shop_2024-01-15_12-00-00.sql').exists()
        with gzip.open(expected) as f:
            assert f.read().startswith(b'CREATE TABLE orders')

        assert result.published_to is None
        assert result.tables == ['customers', 'orders']
        assert any('Storage target is local' in line for line in result.logs)

    @patch('sqlkeeper.backup.drivers.subprocess.run')
    def test_unknown_tables_fail_before_dump(self, mock_run, mysql_profile, backup_dir):
        driver = MySQLDriver(mysql_profile)
        request = BackupRequest(path=str(backup_dir), tables=['nonexistent'])

        with patch.object(driver, 'test_connection', return_value=True), \
                patch.object(driver, 'list_tables', return_value=['a', 'b']), \
                patch.object(driver, 'database_size', return_value=None):
            result = BackupExecutor(mysql_profile, request, POLICY, driver=driver).execute()

        assert result.state == BackupState.FAILED
        assert result.failed_stage == 'tables'
        assert 'nonexistent' in result.error
        assert result.artifact is None
        mock_run.assert_not_called()
        assert os.listdir(backup_dir) == []


class TestStateTransitions:
    """Test failures at each stage."""

    def test_connection_failure(self, mysql_profile, backup_dir):
        driver = fake_driver(mysql_profile)
        driver.test_connection.side_effect = ConnectionFailed('Failed to connect', mysql_profile.describe())

        result = BackupExecutor(mysql_profile, BackupRequest(path=str(backup_dir)), POLICY, driver=driver).execute()

        assert result.state == BackupState.FAILED
        assert result.failed_stage == 'connection'
        assert 's3cret' not in result.error
        assert any(TROUBLESHOOTING[0] in line for line in result.logs)
        driver.list_tables.assert_not_called()
        driver.dispose.assert_called_once()

    def test_dump_failure_removes_partial_file(self, mysql_profile, backup_dir):
        driver = fake_driver(mysql_profile)

        def failing_dump(tables, include_data, dest_path):
            with open(dest_path, 'w') as f:
                f.write('-- partial')
            raise DumpFailed('mysql', 2, 'Lost connection')

        driver.dump.side_effect = failing_dump

        result = BackupExecutor(mysql_profile, BackupRequest(path=str(backup_dir)), POLICY, driver=driver).execute()

        assert result.state == BackupState.FAILED
        assert result.failed_stage == 'dump'
        assert 'exit code 2' in result.error
        assert os.listdir(backup_dir) == []

    @patch('sqlkeeper.backup.executor.compress')
    def test_compression_failure_keeps_dump(self, mock_compress, mysql_profile, backup_dir):
        mock_compress.side_effect = CompressionFailed('disk full')
        driver = fake_driver(mysql_profile)

        result = BackupExecutor(mysql_profile, BackupRequest(path=str(backup_dir)), POLICY, driver=driver).execute()

        assert result.failed_stage == 'compress'
        assert result.artifact is not None
        assert os.path.exists(result.artifact.path)

    def test_publish_failure_keeps_artifact(self, mysql_profile, backup_dir):
        driver = fake_driver(mysql_profile)
        request = BackupRequest(path=str(backup_dir), storage='s3')

        result = BackupExecutor(mysql_profile, request, POLICY, driver=driver, disks={}).execute()

        assert result.state == BackupState.FAILED
        assert result.failed_stage == 'publish'
        assert os.path.exists(result.artifact.path)
        assert result.artifact.path.endswith('.sql.gz')

    def test_publish_to_named_disk(self, mysql_profile, backup_dir, tmp_path):
        driver = fake_driver(mysql_profile)
        disks = {'nas': {'driver': 'local', 'root': str(tmp_path / 'nas')}}
        request = BackupRequest(path=str(backup_dir), storage='nas', format='zip')

        result = BackupExecutor(mysql_profile, request, POLICY, driver=driver, disks=disks).execute()

        assert result.succeeded
        assert result.published_to == str(tmp_path / 'nas' / result.artifact.filename)
        assert os.path.exists(result.published_to)

    def test_unexpected_error_reports_current_stage(self, mysql_profile, backup_dir):
        driver = fake_driver(mysql_profile)
        driver.list_tables.side_effect = RuntimeError('boom')

        result = BackupExecutor(mysql_profile, BackupRequest(path=str(backup_dir)), POLICY, driver=driver).execute()

        assert result.failed_stage == 'tables'
        assert result.error == 'boom'


class TestTableSelection:

    def test_full_dump_passes_no_tables(self, mysql_profile, backup_dir):
        driver = fake_driver(mysql_profile)

        BackupExecutor(mysql_profile, BackupRequest(path=str(backup_dir)), POLICY, driver=driver).execute()

        assert driver.dump.call_args.args[0] is None

    def test_exclude(self, mysql_profile, backup_dir):
        driver = fake_driver(mysql_profile, tables=['users', 'orders', 'sessions'])
        request = BackupRequest(path=str(backup_dir), exclude='sessions')

        BackupExecutor(mysql_profile, request, POLICY, driver=driver).execute()

        assert driver.dump.call_args.args[0] == ['users', 'orders']

    def test_exclude_everything_fails(self, mysql_profile, backup_dir):
        driver = fake_driver(mysql_profile, tables=['a'])
        request = BackupRequest(path=str(backup_dir), exclude=['a'])

        result = BackupExecutor(mysql_profile, request, POLICY, driver=driver).execute()

        assert result.failed_stage == 'tables'
        driver.dump.assert_not_called()

    def test_include_and_exclude_warns(self, mysql_profile, backup_dir):
        driver = fake_driver(mysql_profile)
        request = BackupRequest(path=str(backup_dir), tables=['a'], exclude=['a'])

        result = BackupExecutor(mysql_profile, request, POLICY, driver=driver).execute()

        assert result.succeeded
        assert driver.dump.call_args.args[0] == ['a']
        assert any('precedence' in warning for warning in result.warnings)

    def test_structure_only(self, mysql_profile, backup_dir):
        driver = fake_driver(mysql_profile)
        request = BackupRequest(path=str(backup_dir), include_data=False)

        BackupExecutor(mysql_profile, request, POLICY, driver=driver).execute()

        assert driver.dump.call_args.args[1] is False


class TestSQLiteBackup:

    def test_table_selection_warning(self, sqlite_profile, backup_dir):
        request = BackupRequest(path=str(backup_dir), tables=['users'], format='none')

        result = BackupExecutor(sqlite_profile, request, POLICY, driver=SQLiteDriver(sqlite_profile)).execute()

        assert result.succeeded
        assert result.artifact.filename.startswith('shop_')
        assert result.artifact.filename.endswith('.sql')
        assert any('whole database' in warning for warning in result.warnings)

    def test_structure_only_warns_that_data_is_included(self, sqlite_profile, backup_dir):
        request = BackupRequest(path=str(backup_dir), include_data=False, format='none')

        result = BackupExecutor(sqlite_profile, request, POLICY, driver=SQLiteDriver(sqlite_profile)).execute()

        assert result.state == BackupState.DONE
        assert any('contains table data' in warning for warning in result.warnings)
        assert not any('will not be included' in line for line in result.logs)

    def test_creates_backup_directory(self, sqlite_profile, tmp_path):
        target = tmp_path / 'nested' / 'backups'
        request = BackupRequest(path=str(target))

        result = BackupExecutor(sqlite_profile, request, POLICY).execute()

        assert result.succeeded
        assert target.is_dir()


class TestRetentionStep:

    def test_prunes_old_backups(self, mysql_profile, backup_dir):
        old = backup_dir / 'shop_2020-01-01_00-00-00.sql.gz'
        old.write_bytes(b'old')
        timestamp = (datetime.now() - timedelta(days=30)).timestamp()
        os.utime(old, (timestamp, timestamp))

        result = BackupExecutor(
            mysql_profile, BackupRequest(path=str(backup_dir)), POLICY, driver=fake_driver(mysql_profile)
        ).execute()

        assert result.succeeded
        assert result.pruned == [str(old)]
        assert not old.exists()

    @patch('sqlkeeper.backup.executor.RetentionManager')
    def test_prune_failure_does_not_fail_run(self, mock_manager, mysql_profile, backup_dir):
        mock_manager.return_value.logs = []
        mock_manager.return_value.prune.side_effect = PruneFailed(['/b/deleted.sql'], {'/b/locked.sql': 'denied'})

        result = BackupExecutor(
            mysql_profile, BackupRequest(path=str(backup_dir)), POLICY, driver=fake_driver(mysql_profile)
        ).execute()

        assert result.state == BackupState.DONE
        assert result.pruned == ['/b/deleted.sql']
        assert any('locked.sql' in warning for warning in result.warnings)


class TestLogging:

    def test_on_log_called_for_every_entry(self, mysql_profile, backup_dir):
        entries = []

        executor = BackupExecutor(
            mysql_profile, BackupRequest(path=str(backup_dir)), POLICY,
            driver=fake_driver(mysql_profile), on_log=entries.append
        )
        result = executor.execute()

        assert entries == result.logs
        assert entries[0].endswith("Starting backup of mysql database: shop")

    def test_size_warning(self, mysql_profile, backup_dir):
        driver = fake_driver(mysql_profile)
        driver.database_size.return_value = 2 * 1024 * 1024

        result = BackupExecutor(
            mysql_profile, BackupRequest(path=str(backup_dir)), POLICY,
            driver=driver, size_warning_bytes=1024 * 1024
        ).execute()

        assert result.succeeded
        assert result.database_size == 2 * 1024 * 1024
        assert any('exceeds the warning threshold' in warning for warning in result.warnings)

    def test_to_dict(self, mysql_profile, backup_dir):
        result = BackupExecutor(
            mysql_profile, BackupRequest(path=str(backup_dir)), POLICY, driver=fake_driver(mysql_profile)
        ).execute()

        data = result.to_dict()
        assert data['state'] == 'done'
        assert data['succeeded'] is True
        assert data['artifact'] == result.artifact.path


def test_failing_log_callback_does_not_abort_run(mysql_profile, backup_dir):
    on_log = MagicMock(side_effect=RuntimeError('database is locked'))

    result = BackupExecutor(
        mysql_profile, BackupRequest(path=str(backup_dir)), POLICY,
        driver=fake_driver(mysql_profile), on_log=on_log
    ).execute()

    assert result.succeeded
    assert on_log.call_count == len(result.logs)
