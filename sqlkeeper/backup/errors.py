"""
Exceptions raised by the backup pipeline.

Every error carries the name of the stage it belongs to so the executor can
report where a run stopped:

- connection: ConnectionFailed
- tables: EmptySelection
- dump: DumpFailed, DumpTimeout
- compress: CompressionFailed
- publish: PublishFailed
- prune: PruneFailed (never fails a run)
"""

from typing import Dict, List, Optional


class BackupError(Exception):
    """Base class for backup pipeline failures."""

    stage = 'backup'


class ConnectionFailed(BackupError):
    """Raised when the database cannot be reached with the configured profile."""

    stage = 'connection'

    def __init__(self, message: str, connection: Optional[Dict[str, str]] = None):
        self.connection = connection or {}
        super().__init__(message)

    def __str__(self):
        message = super().__str__()
        if not self.connection:
            return message

        details = ', '.join(f"{key}={value}" for key, value in self.connection.items())
        return f"{message} ({details})"


class EmptySelection(BackupError):
    """Raised when an explicit table selection matches no tables."""

    stage = 'tables'

    def __init__(self, include: Optional[List[str]] = None, exclude: Optional[List[str]] = None):
        self.include = list(include or [])
        self.exclude = list(exclude or [])

        if self.include:
            message = f"None of the requested tables exist: {', '.join(self.include)}"
        elif self.exclude:
            message = f"Excluding {', '.join(self.exclude)} leaves no tables to back up"
        else:
            message = "Table selection is empty"
        super().__init__(message)


class DumpFailed(BackupError):
    """Raised when the dump utility exits non-zero or the file copy fails."""

    stage = 'dump'

    def __init__(self, driver: str, exit_code: Optional[int], stderr: str):
        self.driver = driver
        self.exit_code = exit_code
        self.stderr = (stderr or '').strip()

        if exit_code is None:
            message = f"{driver} dump failed: {self.stderr}"
        else:
            message = f"{driver} dump failed (exit code {exit_code}): {self.stderr}"
        super().__init__(message)


class DumpTimeout(BackupError):
    """Raised when the dump subprocess runs past its time limit."""

    stage = 'dump'

    def __init__(self, driver: str, timeout: float):
        self.driver = driver
        self.timeout = timeout
        super().__init__(f"{driver} dump timed out after {timeout} seconds")


class CompressionFailed(BackupError):
    """Raised when the compressed artifact cannot be written."""

    stage = 'compress'


class PublishFailed(BackupError):
    """Raised when an artifact cannot be copied to a storage target."""

    stage = 'publish'

    def __init__(self, target: str, cause):
        self.target = target
        self.cause = cause
        super().__init__(f"Failed to publish to '{target}': {cause}")


class PruneFailed(BackupError):
    """
    Raised after pruning when one or more deletions failed.

    The files that were removed are still reported through ``deleted``.
    """

    stage = 'prune'

    def __init__(self, deleted: List[str], failures: Dict[str, str]):
        self.deleted = list(deleted)
        self.failures = dict(failures)
        super().__init__(
            f"Failed to delete {len(self.failures)} file(s): "
            + '; '.join(f"{path}: {error}" for path, error in self.failures.items())
        )
