"""
Run service: builds backup inputs from the application config, executes the
backup and records the outcome as a BackupRun.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from sqlkeeper import db
from sqlkeeper.models import BackupRun
from .executor import BackupExecutor
from .profiles import BackupRequest, ConnectionProfile, RetentionPolicy, load_profile
from .retention import RetentionManager


logger = logging.getLogger(__name__)

# Flush run logs to the history row after this many entries
LOG_FLUSH_INTERVAL = 5

REQUEST_FIELDS = ('connection', 'tables', 'exclude', 'format', 'include_data',
                  'storage', 'path', 'filename')


def load_connection_profile(app_config: Mapping[str, Any], name: Optional[str] = None) -> ConnectionProfile:
    """
    Load a configured connection.

    Raises:
        ValueError: If the connection is unknown or incomplete
    """
    return load_profile(
        app_config.get('DB_CONNECTIONS') or {},
        name=name,
        default=app_config.get('DB_CONNECTION'),
    )


def build_request(app_config: Mapping[str, Any], **overrides) -> BackupRequest:
    """
    Build a BackupRequest from config defaults and per-run overrides.

    Overrides that are None are ignored, so CLI options and JSON bodies can be
    passed through unchanged.

    Raises:
        ValueError: On unknown override names or an invalid format
    """
    unknown = set(overrides) - set(REQUEST_FIELDS)
    if unknown:
        raise ValueError(f"Unknown backup options: {', '.join(sorted(unknown))}")

    options = {
        'connection': app_config.get('DB_CONNECTION'),
        'path': app_config.get('BACKUP_DIR'),
        'format': app_config.get('BACKUP_COMPRESSION', 'gzip'),
        'storage': app_config.get('BACKUP_STORAGE', 'local'),
    }
    options.update({key: value for key, value in overrides.items() if value is not None})

    if not options.get('path'):
        raise ValueError("No backup directory configured (BACKUP_DIR)")

    return BackupRequest(**options)


def build_policy(app_config: Mapping[str, Any]) -> RetentionPolicy:
    return RetentionPolicy(
        max_age_days=app_config.get('BACKUP_RETENTION_DAYS') or 0,
        max_count=app_config.get('BACKUP_MAX_COUNT') or 0,
    )


def prune_backups(directory: Optional[str] = None) -> List[str]:
    """
    Apply the configured retention policy outside a backup run.

    Raises:
        PruneFailed: If any deletion failed
    """
    app_config = current_app.config
    manager = RetentionManager(directory or app_config['BACKUP_DIR'])
    return manager.prune(build_policy(app_config))


def list_artifacts(directory: Optional[str] = None) -> List[Dict[str, Any]]:
    """Backups currently in the backup directory, newest first."""
    manager = RetentionManager(directory or current_app.config['BACKUP_DIR'])
    artifacts = []
    for entry in manager.list_backups():
        stat = entry.stat()
        artifacts.append({
            'name': entry.name,
            'path': entry.path,
            'size': stat.st_size,
            'modified': datetime.fromtimestamp(stat.st_mtime).isoformat(),
        })
    return artifacts


class _LogFlusher:
    """Persists the run logs every few entries for live visibility."""

    def __init__(self, run: BackupRun, logs: List[str]):
        self.run = run
        self.logs = logs
        self.counter = 0

    def __call__(self, entry: str):
        self.counter += 1
        if self.counter >= LOG_FLUSH_INTERVAL:
            self.flush()

    def flush(self):
        self.counter = 0
        self.run.logs = '\n'.join(self.logs)
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            raise


def execute_backup(request: Optional[BackupRequest] = None, trigger: str = 'manual') -> BackupRun:
    """
    Execute a backup with the application configuration.

    Must be called inside an application context.

    Args:
        request: Options for this run (config defaults if omitted)
        trigger: What started the run: manual, scheduled or cli

    Returns:
        BackupRun record with execution results

    Raises:
        ValueError: If the connection or request options are invalid
    """
    app_config = current_app.config

    if request is None:
        request = build_request(app_config)

    profile = load_connection_profile(app_config, request.connection)
    policy = build_policy(app_config)

    run = BackupRun(
        connection=profile.name,
        trigger=trigger,
        status='running',
        storage=request.storage,
        started_at=datetime.utcnow(),
    )
    db.session.add(run)
    db.session.commit()

    size_warning_mb = app_config.get('DB_SIZE_WARNING_MB')
    executor = BackupExecutor(
        profile,
        request,
        policy,
        disks=app_config.get('STORAGE_DISKS'),
        binaries=app_config.get('DUMP_BINARIES'),
        dump_timeout=app_config.get('DUMP_TIMEOUT', 3600),
        size_warning_bytes=size_warning_mb * 1024 * 1024 if size_warning_mb else None,
    )
    flusher = _LogFlusher(run, executor.logs)
    executor.on_log = flusher

    logger.info(f"Backup run {run.id} started ({trigger}) for connection {profile.name}")
    result = executor.execute()

    run.status = 'success' if result.succeeded else 'failed'
    run.state = result.state.value
    run.failed_stage = result.failed_stage
    run.completed_at = datetime.utcnow()
    run.error_message = result.error
    run.published_to = result.published_to
    run.pruned_count = len(result.pruned)
    run.warnings = '\n'.join(result.warnings) or None
    if result.artifact:
        run.artifact_path = result.artifact.path
        run.file_size_bytes = result.artifact.size
    flusher.flush()

    logger.info(f"Backup run {run.id} finished with status: {run.status}")
    return run
