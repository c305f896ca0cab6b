"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Verify the database connection
2. Resolve the tables to back up
3. Dump the database into the backup directory
4. Compress the dump (unless format is 'none')
5. Publish to a storage target (unless target is 'local')
6. Prune old backups
7. Report the final artifact

No step is retried. A failure stops the run, names the stage and keeps any
artifact produced so far, except a partial dump file which is removed.
"""

import enum
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .compression import compress, generate_backup_filename
from .drivers import DEFAULT_DUMP_TIMEOUT, DatabaseDriver, create_driver
from .errors import BackupError, ConnectionFailed, EmptySelection, PruneFailed
from .profiles import BackupArtifact, BackupRequest, ConnectionProfile, RetentionPolicy
from .retention import RetentionManager
from .selector import has_filter, resolve_tables
from .storage import publish


logger = logging.getLogger(__name__)

TROUBLESHOOTING = (
    "1. Verify your database server is running",
    "2. Check your database credentials",
    "3. Ensure your database user has proper permissions",
    "4. Check if the database host is accessible",
    "5. Verify the database port is correct",
)


class BackupState(enum.Enum):
    IDLE = 'idle'
    CONNECTION_VERIFIED = 'connection_verified'
    TABLES_RESOLVED = 'tables_resolved'
    DUMPED = 'dumped'
    COMPRESSED = 'compressed'
    PUBLISHED = 'published'
    PRUNED = 'pruned'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class BackupResult:
    """Outcome of a backup run."""

    state: BackupState = BackupState.IDLE
    artifact: Optional[BackupArtifact] = None
    published_to: Optional[str] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    tables: Optional[List[str]] = None
    pruned: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    database_size: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.state == BackupState.DONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'succeeded': self.succeeded,
            'artifact': self.artifact.path if self.artifact else None,
            'file_size_bytes': self.artifact.size if self.artifact else None,
            'published_to': self.published_to,
            'failed_stage': self.failed_stage,
            'error': self.error,
            'tables': self.tables,
            'pruned': self.pruned,
            'warnings': self.warnings,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one connection.
    """

    def __init__(
        self,
        profile: ConnectionProfile,
        request: BackupRequest,
        policy: RetentionPolicy,
        driver: Optional[DatabaseDriver] = None,
        disks: Optional[Dict[str, Dict[str, Any]]] = None,
        binaries: Optional[Dict[str, str]] = None,
        dump_timeout: float = DEFAULT_DUMP_TIMEOUT,
        size_warning_bytes: Optional[int] = None,
        on_log: Optional[Callable[[str], None]] = None
    ):
        """
        Initialize backup executor.

        Args:
            profile: Connection to back up
            request: Options for this run
            policy: Retention limits applied after the backup
            driver: Driver to use (built from the profile if omitted)
            disks: Storage disks available for publishing
            binaries: Dump utility paths by driver name
            dump_timeout: Dump timeout in seconds
            size_warning_bytes: Warn when the database is larger than this
            on_log: Called with every log entry, e.g. to persist progress
        """
        self.profile = profile
        self.request = request
        self.policy = policy
        self.driver = driver or create_driver(profile, binaries=binaries, timeout=dump_timeout)
        self.disks = disks or {}
        self.size_warning_bytes = size_warning_bytes
        self.on_log = on_log

        self.result = BackupResult()
        self.logs = self.result.logs

    @property
    def state(self) -> BackupState:
        return self.result.state

    def execute(self) -> BackupResult:
        """
        Execute the backup.

        Returns:
            BackupResult; ``state`` is DONE on success and FAILED otherwise
        """
        self.result.started_at = datetime.now()
        self._log(f"Starting backup of {self.profile.driver} database: {self.profile.database}")

        stage = 'connection'
        try:
            self._verify_connection()

            stage = 'tables'
            tables = self._resolve_tables()

            stage = 'dump'
            self._dump(tables)

            stage = 'compress'
            self._compress()

            stage = 'publish'
            self._publish()

            self._prune()

            self._advance(BackupState.DONE)
            self._log(
                f"Backup completed successfully: {self.result.artifact.path} "
                f"({self.result.artifact.size / 1024 / 1024:.2f} MB)"
            )

        except BackupError as e:
            self._fail(e.stage, e)
        except Exception as e:
            logger.exception("Unexpected error during backup")
            self._fail(stage, e)
        finally:
            self.result.completed_at = datetime.now()
            self.driver.dispose()

        return self.result

    def _verify_connection(self):
        self._log("Testing database connection")
        try:
            self.driver.test_connection()
        except ConnectionFailed:
            for line in TROUBLESHOOTING:
                self._log(line, level=logging.WARNING)
            raise

        self._advance(BackupState.CONNECTION_VERIFIED)
        self._log("Successfully connected to database server")

        self.result.database_size = self.driver.database_size()
        if self.result.database_size is not None:
            size_mb = self.result.database_size / 1024 / 1024
            self._log(f"Database size: {size_mb:.2f} MB")
            if self.size_warning_bytes and self.result.database_size > self.size_warning_bytes:
                self._warn(
                    f"Database size {size_mb:.2f} MB exceeds the warning threshold of "
                    f"{self.size_warning_bytes / 1024 / 1024:.0f} MB"
                )

    def _resolve_tables(self) -> Optional[List[str]]:
        """
        Resolve the table selection.

        Returns:
            Tables to pass to the driver, or None to dump the whole database
        """
        include = list(self.request.tables)
        exclude = list(self.request.exclude)

        if include and exclude:
            self._warn("Both tables and exclude were given; the tables list takes precedence")

        all_tables = self.driver.list_tables()
        selected = resolve_tables(all_tables, include, exclude)
        self.result.tables = selected

        if has_filter(include, exclude) and not selected:
            raise EmptySelection(include, [] if include else exclude)

        self._advance(BackupState.TABLES_RESOLVED)
        self._log(f"Tables to backup: {len(selected)} of {len(all_tables)}")

        if not has_filter(include, exclude):
            return None

        if not self.driver.supports_table_selection and len(selected) < len(all_tables):
            self._warn(
                f"{self.profile.driver} backups copy the whole database; "
                f"the table selection ({', '.join(selected)}) is not applied"
            )

        return selected

    def _dump(self, tables: Optional[List[str]]):
        if not os.path.isdir(self.request.path):
            self._log(f"Creating backup directory: {self.request.path}")
            os.makedirs(self.request.path, exist_ok=True)

        filename = generate_backup_filename(self.profile.database, self.request.filename)
        dest_path = os.path.join(self.request.path, filename)

        if not self.request.include_data:
            if self.driver.supports_structure_only:
                self._log("Structure only: table data will not be included")
            else:
                self._warn(
                    f"{self.profile.driver} backups copy the whole database; "
                    "structure only is not applied and the backup contains table data"
                )
        self._log(f"Dumping database to {dest_path}")

        try:
            self.result.artifact = self.driver.dump(tables, self.request.include_data, dest_path)
        except Exception:
            if os.path.exists(dest_path):
                os.remove(dest_path)
                self._log(f"Removed partial dump: {dest_path}")
            raise

        self._advance(BackupState.DUMPED)
        self._log(f"Dump created: {filename} ({self.result.artifact.size} bytes)")

    def _compress(self):
        if self.request.format == 'none':
            self._log("Compression disabled, skipping")
        else:
            self._log(f"Compressing backup (format: {self.request.format})")
            compressed_path = compress(self.result.artifact.path, self.request.format)
            self.result.artifact = self.result.artifact.replace_path(compressed_path)
            self._log(f"Compressed to {self.result.artifact.filename} ({self.result.artifact.size} bytes)")

        self._advance(BackupState.COMPRESSED)

    def _publish(self):
        if self.request.storage == 'local':
            self._log("Storage target is local, skipping publish")
        else:
            self._log(f"Publishing backup to {self.request.storage}")
            self.result.published_to = publish(self.result.artifact.path, self.request.storage, self.disks)
            self._log(f"Stored in {self.request.storage} as {self.result.published_to}")

        self._advance(BackupState.PUBLISHED)

    def _prune(self):
        manager = RetentionManager(self.request.path)
        try:
            self.result.pruned = manager.prune(self.policy)
        except PruneFailed as e:
            self.result.pruned = e.deleted
            self._warn(f"Retention cleanup incomplete: {e}")
        except Exception as e:
            logger.exception("Retention cleanup failed")
            self._warn(f"Retention cleanup failed: {e}")
        finally:
            for message in manager.logs:
                self._log(message)

        self._advance(BackupState.PRUNED)

    def _advance(self, state: BackupState):
        logger.debug(f"Backup state: {self.result.state.value} -> {state.value}")
        self.result.state = state

    def _fail(self, stage: str, error: Exception):
        self.result.state = BackupState.FAILED
        self.result.failed_stage = stage
        self.result.error = str(error)
        self._log(f"Backup failed during {stage}: {error}", level=logging.ERROR)

        if self.result.artifact and os.path.exists(self.result.artifact.path):
            self._log(f"Artifact kept for inspection: {self.result.artifact.path}")

    def _warn(self, message: str):
        self.result.warnings.append(message)
        self._log(message, level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        log_entry = f"[{timestamp}] {message}"
        self.logs.append(log_entry)
        logger.log(level, message)

        if self.on_log:
            try:
                self.on_log(log_entry)
            except Exception:
                logger.exception("Log callback failed")
