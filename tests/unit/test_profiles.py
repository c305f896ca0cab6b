"""
Unit tests for backup value objects (sqlkeeper/backup/profiles.py).
"""

import os

import pytest

from sqlkeeper.backup.profiles import (
    BackupArtifact,
    BackupRequest,
    ConnectionProfile,
    RetentionPolicy,
    load_profile,
    normalize_driver,
    normalize_format,
    split_names,
)


class TestConnectionProfile:
    """Test ConnectionProfile normalization."""

    def test_mysql_defaults(self):
        profile = ConnectionProfile(name='main', driver='mariadb', database='shop')

        assert profile.driver == 'mysql'
        assert profile.host == '127.0.0.1'
        assert profile.port == 3306

    def test_postgres_aliases(self):
        assert ConnectionProfile(name='pg', driver='pgsql', database='shop').port == 5432
        assert ConnectionProfile(name='pg', driver='postgresql', database='shop').driver == 'postgres'

    def test_sqlite_has_no_host(self):
        profile = ConnectionProfile(name='lite', driver='sqlite', database='/tmp/app.sqlite')

        assert profile.host is None
        assert profile.port is None

    def test_missing_database_raises(self):
        with pytest.raises(ValueError, match='no database'):
            ConnectionProfile(name='main', driver='mysql', database='')

    def test_unsupported_driver_raises(self):
        with pytest.raises(ValueError, match='Unsupported database driver'):
            ConnectionProfile(name='main', driver='oracle', database='shop')

    def test_password_not_in_repr(self, mysql_profile):
        assert 's3cret' not in repr(mysql_profile)

    def test_describe_masks_password(self, mysql_profile):
        details = mysql_profile.describe()

        assert details == {
            'driver': 'mysql',
            'host': 'db.internal',
            'port': '3306',
            'database': 'shop',
            'username': 'backup',
            'password': '********',
        }

    def test_describe_without_password(self):
        profile = ConnectionProfile(name='main', driver='mysql', database='shop')
        assert profile.describe()['password'] == 'null'

    def test_describe_sqlite(self, sqlite_profile):
        assert set(sqlite_profile.describe()) == {'driver', 'database'}

    def test_sqlalchemy_url_mysql(self, mysql_profile):
        url = mysql_profile.sqlalchemy_url()

        assert url.drivername == 'mysql+pymysql'
        assert url.host == 'db.internal'
        assert url.password == 's3cret'
        assert url.query['charset'] == 'utf8mb4'

    def test_sqlalchemy_url_postgres(self):
        profile = ConnectionProfile(name='pg', driver='postgres', database='shop', username='u')
        assert profile.sqlalchemy_url().drivername == 'postgresql+psycopg'


class TestLoadProfile:
    """Test building profiles from the configured connections."""

    CONNECTIONS = {
        'mysql': {'driver': 'mysql', 'host': 'db', 'database': 'shop', 'password': ''},
        'reports': {'driver': 'pgsql', 'database': 'reports', 'port': '6432'},
    }

    def test_default_connection(self):
        profile = load_profile(self.CONNECTIONS, default='mysql')

        assert profile.name == 'mysql'
        assert profile.host == 'db'
        assert profile.password is None

    def test_named_connection(self):
        profile = load_profile(self.CONNECTIONS, name='reports', default='mysql')

        assert profile.driver == 'postgres'
        assert profile.port == 6432

    def test_unknown_connection(self):
        with pytest.raises(ValueError, match='not configured: oracle'):
            load_profile(self.CONNECTIONS, name='oracle')


class TestBackupRequest:
    """Test BackupRequest normalization."""

    def test_defaults(self, tmp_path):
        request = BackupRequest(path=str(tmp_path))

        assert request.format == 'gzip'
        assert request.storage == 'local'
        assert request.include_data is True
        assert request.tables == ()

    def test_tables_from_comma_separated_string(self, tmp_path):
        request = BackupRequest(path=str(tmp_path), tables='users, orders,', exclude=['cache'])

        assert request.tables == ('users', 'orders')
        assert request.exclude == ('cache',)

    def test_format_aliases(self, tmp_path):
        assert BackupRequest(path=str(tmp_path), format='gz').format == 'gzip'
        assert BackupRequest(path=str(tmp_path), format='sql').format == 'none'
        assert BackupRequest(path=str(tmp_path), format=None).format == 'none'

    def test_invalid_format(self, tmp_path):
        with pytest.raises(ValueError, match='Invalid backup format'):
            BackupRequest(path=str(tmp_path), format='bz2')

    def test_path_is_absolute(self):
        request = BackupRequest(path='backups')
        assert os.path.isabs(request.path)


class TestBackupArtifact:
    """Test BackupArtifact construction."""

    def test_from_path(self, tmp_path):
        dump = tmp_path / 'shop.sql'
        dump.write_text('CREATE TABLE users;')

        artifact = BackupArtifact.from_path(str(dump), 'mysql')

        assert artifact.filename == 'shop.sql'
        assert artifact.size == len('CREATE TABLE users;')
        assert artifact.connection == 'mysql'

    def test_replace_path_keeps_creation_time(self, tmp_path):
        dump = tmp_path / 'shop.sql'
        dump.write_text('x' * 100)
        artifact = BackupArtifact.from_path(str(dump), 'mysql')

        compressed = tmp_path / 'shop.sql.gz'
        compressed.write_bytes(b'z' * 10)
        replaced = artifact.replace_path(str(compressed))

        assert replaced.filename == 'shop.sql.gz'
        assert replaced.size == 10
        assert replaced.created_at == artifact.created_at


class TestRetentionPolicy:

    def test_disabled_by_default(self):
        assert RetentionPolicy().enabled is False

    def test_enabled(self):
        assert RetentionPolicy(max_count=3).enabled is True

    def test_negative_limits_rejected(self):
        with pytest.raises(ValueError):
            RetentionPolicy(max_age_days=-1)


def test_normalizers():
    assert normalize_driver('MySQL') == 'mysql'
    assert normalize_format('ZIP') == 'zip'
    assert split_names(None) == ()
