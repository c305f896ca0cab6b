"""
Database drivers for backup operations.

Each driver knows how to check connectivity, list tables and produce a raw
dump file for one database engine:
- MySQLDriver: mysqldump, output captured from stdout
- PostgresDriver: pg_dump, writes its own output file
- SQLiteDriver: copies the database file

Dump utilities are always invoked with an argument vector, never through a
shell, and passwords are handed over through the environment.
"""

import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from .errors import ConnectionFailed, DumpFailed, DumpTimeout, EmptySelection
from .profiles import BackupArtifact, ConnectionProfile


logger = logging.getLogger(__name__)

DEFAULT_DUMP_TIMEOUT = 3600


def run_command(
    argv: List[str],
    stdout_path: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    timeout: float = DEFAULT_DUMP_TIMEOUT
) -> subprocess.CompletedProcess:
    """
    Run a command without a shell.

    Args:
        argv: Program and arguments
        stdout_path: File that receives stdout (captured in memory if omitted)
        env: Extra environment variables for the child process
        timeout: Seconds before the process is killed

    Returns:
        CompletedProcess with stderr as bytes

    Raises:
        subprocess.TimeoutExpired: If the process ran past ``timeout``
        OSError: If the program cannot be started
    """
    child_env = os.environ.copy()
    child_env.update(env or {})

    if stdout_path:
        with open(stdout_path, 'wb') as stdout:
            return subprocess.run(
                argv, stdout=stdout, stderr=subprocess.PIPE,
                env=child_env, timeout=timeout, check=False
            )

    return subprocess.run(
        argv, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
        env=child_env, timeout=timeout, check=False
    )


def _decode(output) -> str:
    if output is None:
        return ''
    if isinstance(output, bytes):
        return output.decode('utf-8', errors='replace')
    return str(output)


class DatabaseDriver(ABC):
    """
    Base class for database drivers.

    Subclasses set ``name`` and ``binary_name`` and implement ``dump``.
    """

    name = None
    binary_name = None
    supports_table_selection = True
    supports_structure_only = True

    def __init__(self, profile: ConnectionProfile, binary: Optional[str] = None,
                 timeout: float = DEFAULT_DUMP_TIMEOUT):
        """
        Initialize driver.

        Args:
            profile: Connection to back up
            binary: Path to the dump utility (resolved from PATH if omitted)
            timeout: Seconds a dump may run before it is killed
        """
        self.profile = profile
        self.binary = binary or self.binary_name
        self.timeout = timeout
        self._engine = None

    @property
    def engine(self):
        if self._engine is None:
            self._engine = create_engine(self.profile.sqlalchemy_url(), poolclass=NullPool)
        return self._engine

    def dispose(self):
        """Release the SQLAlchemy engine."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def test_connection(self) -> bool:
        """
        Check that the database accepts connections.

        Raises:
            ConnectionFailed: If the connection cannot be opened
        """
        try:
            with self.engine.connect() as connection:
                connection.execute(text('SELECT 1'))
        except SQLAlchemyError as e:
            raise ConnectionFailed(
                f"Failed to connect to database server: {e}",
                self.profile.describe()
            )
        return True

    def list_tables(self) -> List[str]:
        """
        List tables in the database.

        Raises:
            ConnectionFailed: If the table list cannot be read
        """
        try:
            return list(inspect(self.engine).get_table_names())
        except SQLAlchemyError as e:
            raise ConnectionFailed(f"Failed to list tables: {e}", self.profile.describe())

    def database_size(self) -> Optional[int]:
        """Size of the database in bytes, or None if it cannot be measured."""
        return None

    def binary_available(self) -> bool:
        """Check whether the dump utility can be found."""
        if self.binary is None:
            return True
        return shutil.which(self.binary) is not None

    @abstractmethod
    def dump(self, tables: Optional[List[str]], include_data: bool, dest_path: str) -> BackupArtifact:
        """
        Write a raw dump to ``dest_path``.

        Args:
            tables: Tables to dump, or None for the whole database
            include_data: False for a schema-only dump
            dest_path: File to create

        Returns:
            BackupArtifact for the created file

        Raises:
            EmptySelection: If ``tables`` is an empty list
            DumpFailed: If the dump utility fails
            DumpTimeout: If the dump runs past the timeout
        """

    def _run_dump(self, argv: List[str], stdout_path: Optional[str] = None,
                  env: Optional[Dict[str, str]] = None):
        logger.info(f"Running {os.path.basename(argv[0])} for database {self.profile.database}")

        try:
            result = run_command(argv, stdout_path=stdout_path, env=env, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            raise DumpTimeout(self.name, self.timeout)
        except OSError as e:
            raise DumpFailed(self.name, None, str(e))

        if result.returncode != 0:
            raise DumpFailed(self.name, result.returncode, _decode(result.stderr))

        return result

    def _artifact(self, dest_path: str) -> BackupArtifact:
        return BackupArtifact.from_path(dest_path, self.profile.name)


class MySQLDriver(DatabaseDriver):
    """Dump MySQL and MariaDB databases with mysqldump."""

    name = 'mysql'
    binary_name = 'mysqldump'

    def build_command(self, tables: Optional[List[str]], include_data: bool) -> List[str]:
        argv = [
            self.binary,
            f'--host={self.profile.host}',
            f'--port={self.profile.port}',
            f'--default-character-set={self.profile.charset}',
        ]
        if self.profile.username:
            argv.append(f'--user={self.profile.username}')

        if not include_data:
            argv.append('--no-data')

        argv.append(self.profile.database)
        argv.extend(tables or [])
        return argv

    def dump(self, tables, include_data, dest_path):
        if tables is not None and not tables:
            raise EmptySelection()

        env = {}
        if self.profile.password:
            env['MYSQL_PWD'] = self.profile.password

        self._run_dump(self.build_command(tables, include_data), stdout_path=dest_path, env=env)
        return self._artifact(dest_path)

    def database_size(self):
        query = text(
            "SELECT COALESCE(SUM(data_length + index_length), 0) "
            "FROM information_schema.tables WHERE table_schema = :database"
        )
        try:
            with self.engine.connect() as connection:
                return int(connection.execute(query, {'database': self.profile.database}).scalar())
        except SQLAlchemyError as e:
            logger.warning(f"Could not measure database size: {e}")
            return None


class PostgresDriver(DatabaseDriver):
    """Dump PostgreSQL databases with pg_dump."""

    name = 'postgres'
    binary_name = 'pg_dump'

    @staticmethod
    def quote_table(table: str) -> str:
        """
        Quote a table name for --table.

        pg_dump reads --table as a pattern: unquoted names are folded to lower
        case and `.`, `*` and `?` are special. Double quotes make it match the
        exact name.
        """
        escaped = table.replace('"', '""')
        return f'"{escaped}"'

    def build_command(self, tables: Optional[List[str]], include_data: bool, dest_path: str) -> List[str]:
        argv = [
            self.binary,
            f'--host={self.profile.host}',
            f'--port={self.profile.port}',
        ]
        if self.profile.username:
            argv.append(f'--username={self.profile.username}')
        argv.append(f'--dbname={self.profile.database}')

        if not include_data:
            argv.append('--schema-only')

        for table in tables or []:
            argv.append(f'--table={self.quote_table(table)}')

        argv.append(f'--file={dest_path}')
        return argv

    def dump(self, tables, include_data, dest_path):
        if tables is not None and not tables:
            raise EmptySelection()

        env = {}
        if self.profile.password:
            env['PGPASSWORD'] = self.profile.password

        self._run_dump(self.build_command(tables, include_data, dest_path), env=env)
        return self._artifact(dest_path)

    def database_size(self):
        try:
            with self.engine.connect() as connection:
                return int(connection.execute(text("SELECT pg_database_size(current_database())")).scalar())
        except SQLAlchemyError as e:
            logger.warning(f"Could not measure database size: {e}")
            return None


class SQLiteDriver(DatabaseDriver):
    """
    Back up SQLite databases by copying the database file.

    Table selection cannot be honoured: the copy always contains every table.
    """

    name = 'sqlite'
    binary_name = None
    supports_table_selection = False
    supports_structure_only = False

    def test_connection(self):
        # Connecting would silently create a missing database file
        if not os.path.isfile(self.profile.database):
            raise ConnectionFailed(
                f"SQLite database file not found: {self.profile.database}",
                self.profile.describe()
            )
        return super().test_connection()

    def dump(self, tables, include_data, dest_path):
        if tables is not None and not tables:
            raise EmptySelection()

        if tables is not None:
            logger.warning(
                "SQLite backups copy the whole database file; "
                f"table selection ({', '.join(tables)}) is not applied"
            )
        if not include_data:
            logger.warning("SQLite backups copy the whole database file; schema-only is not applied")

        try:
            shutil.copy2(self.profile.database, dest_path)
        except OSError as e:
            raise DumpFailed(self.name, None, f"Failed to copy {self.profile.database}: {e}")

        return self._artifact(dest_path)

    def database_size(self):
        try:
            return os.path.getsize(self.profile.database)
        except OSError:
            return None


DRIVERS = {
    'mysql': MySQLDriver,
    'postgres': PostgresDriver,
    'sqlite': SQLiteDriver,
}


def create_driver(profile: ConnectionProfile, binaries: Optional[Dict[str, str]] = None,
                  timeout: float = DEFAULT_DUMP_TIMEOUT) -> DatabaseDriver:
    """
    Factory function to create the driver for a connection profile.

    Args:
        profile: Connection to back up
        binaries: Optional mapping of driver name to dump utility path
        timeout: Dump timeout in seconds

    Returns:
        DatabaseDriver subclass instance

    Raises:
        ValueError: If the profile's driver is not supported
    """
    try:
        driver_class = DRIVERS[profile.driver]
    except KeyError:
        raise ValueError(f"Unsupported database driver: {profile.driver}")

    binary = (binaries or {}).get(profile.driver)
    return driver_class(profile, binary=binary, timeout=timeout)
