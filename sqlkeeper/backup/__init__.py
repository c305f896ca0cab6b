"""
Backup module for sqlkeeper.

This module handles the core backup functionality including:
- Connection profiles and backup requests
- Table selection
- Database drivers (MySQL, PostgreSQL, SQLite)
- Compression
- Storage (local, S3 and SFTP)
- Execution orchestration
- Retention policy enforcement
"""

from .errors import (
    BackupError,
    ConnectionFailed,
    EmptySelection,
    DumpFailed,
    DumpTimeout,
    CompressionFailed,
    PublishFailed,
    PruneFailed,
)
from .profiles import BackupArtifact, BackupRequest, ConnectionProfile, RetentionPolicy
from .selector import resolve_tables
from .drivers import create_driver
from .compression import compress, generate_backup_filename
from .storage import LocalStorage, S3Storage, SFTPStorage, publish
from .retention import RetentionManager, prune
from .executor import BackupExecutor, BackupResult, BackupState

__all__ = [
    'BackupError',
    'ConnectionFailed',
    'EmptySelection',
    'DumpFailed',
    'DumpTimeout',
    'CompressionFailed',
    'PublishFailed',
    'PruneFailed',
    'BackupArtifact',
    'BackupRequest',
    'ConnectionProfile',
    'RetentionPolicy',
    'resolve_tables',
    'create_driver',
    'compress',
    'generate_backup_filename',
    'LocalStorage',
    'S3Storage',
    'SFTPStorage',
    'publish',
    'RetentionManager',
    'prune',
    'BackupExecutor',
    'BackupResult',
    'BackupState',
]
