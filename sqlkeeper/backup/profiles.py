"""
Value objects passed into the backup pipeline.

- ConnectionProfile: where the database lives and how to log in
- BackupRequest: what a single run should produce
- BackupArtifact: a backup file on disk
- RetentionPolicy: how many old backups survive pruning
"""

import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.engine import URL


DRIVER_ALIASES = {
    'mysql': 'mysql',
    'mariadb': 'mysql',
    'postgres': 'postgres',
    'postgresql': 'postgres',
    'pgsql': 'postgres',
    'sqlite': 'sqlite',
}

DEFAULT_PORTS = {
    'mysql': 3306,
    'postgres': 5432,
}

FORMAT_ALIASES = {
    'none': 'none',
    'sql': 'none',
    'raw': 'none',
    'gzip': 'gzip',
    'gz': 'gzip',
    'zip': 'zip',
}


def normalize_driver(driver: str) -> str:
    """Map a configured driver name (mysql, pgsql, ...) to mysql, postgres or sqlite."""
    try:
        return DRIVER_ALIASES[(driver or '').lower()]
    except KeyError:
        raise ValueError(
            f"Unsupported database driver: {driver}. "
            f"Valid options: {sorted(set(DRIVER_ALIASES.values()))}"
        )


def normalize_format(output_format: Optional[str]) -> str:
    """Map a configured output format (sql, gz, zip, ...) to none, gzip or zip."""
    if not output_format:
        return 'none'
    try:
        return FORMAT_ALIASES[output_format.lower()]
    except KeyError:
        raise ValueError(
            f"Invalid backup format: {output_format}. "
            f"Valid options: {list(FORMAT_ALIASES.keys())}"
        )


def split_names(value) -> Tuple[str, ...]:
    """Accept 'a,b' or ['a', 'b'] and return trimmed, non-empty names."""
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(',')
    return tuple(name.strip() for name in value if name and name.strip())


@dataclass(frozen=True)
class ConnectionProfile:
    """Connection details for one named database connection."""

    name: str
    driver: str
    database: str
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    charset: str = 'utf8mb4'
    collation: str = 'utf8mb4_unicode_ci'

    def __post_init__(self):
        driver = normalize_driver(self.driver)
        object.__setattr__(self, 'driver', driver)

        if not self.database:
            raise ValueError(f"Connection '{self.name}' has no database configured")

        if driver != 'sqlite':
            port = self.port or DEFAULT_PORTS[driver]
            object.__setattr__(self, 'port', int(port))
            object.__setattr__(self, 'host', self.host or '127.0.0.1')

    def describe(self) -> Dict[str, str]:
        """Non-secret connection details, safe to show in error messages."""
        details = {'driver': self.driver}
        if self.driver != 'sqlite':
            details['host'] = str(self.host)
            details['port'] = str(self.port)
        details['database'] = self.database
        if self.driver != 'sqlite':
            details['username'] = str(self.username)
            details['password'] = '********' if self.password else 'null'
        return details

    def sqlalchemy_url(self) -> URL:
        if self.driver == 'sqlite':
            return URL.create('sqlite', database=self.database)

        if self.driver == 'mysql':
            return URL.create(
                'mysql+pymysql',
                username=self.username,
                password=self.password,
                host=self.host,
                port=self.port,
                database=self.database,
                query={'charset': self.charset},
            )

        return URL.create(
            'postgresql+psycopg',
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )


def load_profile(connections: Dict[str, Dict[str, Any]], name: Optional[str] = None,
                 default: Optional[str] = None) -> ConnectionProfile:
    """
    Build a ConnectionProfile from the configured connections mapping.

    Args:
        connections: Mapping of connection name to settings dict
        name: Connection to load (falls back to ``default``)
        default: Default connection name

    Raises:
        ValueError: If the connection is not configured
    """
    name = name or default
    if not name or name not in connections:
        raise ValueError(
            f"Database connection not configured: {name}. "
            f"Configured connections: {sorted(connections.keys())}"
        )

    settings = connections[name]
    return ConnectionProfile(
        name=name,
        driver=settings.get('driver', name),
        host=settings.get('host'),
        port=settings.get('port'),
        database=settings.get('database'),
        username=settings.get('username'),
        password=settings.get('password') or None,
        charset=settings.get('charset') or 'utf8mb4',
        collation=settings.get('collation') or 'utf8mb4_unicode_ci',
    )


@dataclass(frozen=True)
class BackupRequest:
    """Options for a single backup run."""

    path: str
    connection: Optional[str] = None
    tables: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    format: str = 'gzip'
    include_data: bool = True
    storage: str = 'local'
    filename: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'tables', split_names(self.tables))
        object.__setattr__(self, 'exclude', split_names(self.exclude))
        object.__setattr__(self, 'format', normalize_format(self.format))
        object.__setattr__(self, 'storage', self.storage or 'local')
        object.__setattr__(self, 'path', os.path.abspath(os.path.expanduser(self.path)))


@dataclass(frozen=True)
class BackupArtifact:
    """A backup file on disk, at any stage of compression."""

    filename: str
    path: str
    size: int
    created_at: datetime
    connection: str

    @classmethod
    def from_path(cls, path: str, connection: str) -> 'BackupArtifact':
        path = os.path.abspath(path)
        stat = os.stat(path)
        return cls(
            filename=os.path.basename(path),
            path=path,
            size=stat.st_size,
            created_at=datetime.fromtimestamp(stat.st_mtime),
            connection=connection,
        )

    def replace_path(self, path: str) -> 'BackupArtifact':
        """Return an artifact describing ``path``, which replaced this one."""
        path = os.path.abspath(path)
        return replace(
            self,
            filename=os.path.basename(path),
            path=path,
            size=os.path.getsize(path),
        )


@dataclass(frozen=True)
class RetentionPolicy:
    """Age and count limits applied to the backup directory. 0 disables a limit."""

    max_age_days: int = 0
    max_count: int = 0

    def __post_init__(self):
        if self.max_age_days < 0 or self.max_count < 0:
            raise ValueError("Retention limits must be zero or positive")

    @property
    def enabled(self) -> bool:
        return self.max_age_days > 0 or self.max_count > 0
