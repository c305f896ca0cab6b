"""
Retention policy enforcement for the backup directory.

Pruning looks at every file directly inside the backup directory, not only
at the backup that was just created. Age based deletion runs first, then the
newest ``max_count`` of the remaining files are kept.

There is no locking: overlapping runs against the same directory are not
supported.
"""

import logging
import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .errors import PruneFailed
from .profiles import RetentionPolicy


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Deletes old backups from a directory according to a RetentionPolicy.
    """

    def __init__(self, directory: str):
        """
        Initialize retention manager.

        Args:
            directory: Backup directory to prune
        """
        self.directory = directory
        self.logs = []

    def list_backups(self) -> List[os.DirEntry]:
        """Regular files directly inside the directory, newest first."""
        if not os.path.isdir(self.directory):
            return []

        with os.scandir(self.directory) as entries:
            files = [entry for entry in entries if entry.is_file(follow_symlinks=False)]

        files.sort(key=lambda entry: entry.stat().st_mtime, reverse=True)
        return files

    def prune(self, policy: RetentionPolicy, now: Optional[datetime] = None) -> List[str]:
        """
        Apply the retention policy.

        Args:
            policy: Age and count limits (0 disables a limit)
            now: Reference time for the age limit (defaults to now)

        Returns:
            Paths of deleted files

        Raises:
            PruneFailed: If any deletion failed; carries the files that were deleted
        """
        deleted = []
        failures = {}

        if not policy.enabled:
            self._log("Retention: no limits configured, skipping")
            return deleted

        files = self.list_backups()

        if policy.max_age_days > 0:
            cutoff = (now or datetime.now()) - timedelta(days=policy.max_age_days)
            cutoff_timestamp = cutoff.timestamp()
            self._log(f"Removing backups older than {policy.max_age_days} days")

            kept = []
            for entry in files:
                if entry.stat().st_mtime < cutoff_timestamp:
                    self._delete(entry, deleted, failures, "old")
                else:
                    kept.append(entry)
            files = kept

        if policy.max_count > 0 and len(files) > policy.max_count:
            self._log(f"Limiting to {policy.max_count} most recent backups")

            for entry in files[policy.max_count:]:
                self._delete(entry, deleted, failures, "excess")

        self._log(f"Retention complete. Deleted: {len(deleted)}, errors: {len(failures)}")

        if failures:
            raise PruneFailed(deleted, failures)

        return deleted

    def _delete(self, entry: os.DirEntry, deleted: List[str], failures: Dict[str, str], reason: str):
        try:
            os.remove(entry.path)
        except OSError as e:
            failures[entry.path] = str(e)
            self._log(f"Failed to delete {reason} backup {entry.name}: {e}", level=logging.WARNING)
            return

        deleted.append(entry.path)
        self._log(f"Deleted {reason} backup: {entry.name}")

    def _log(self, message: str, level: int = logging.INFO):
        self.logs.append(message)
        logger.log(level, message)


def prune(directory: str, max_age_days: int = 0, max_count: int = 0,
          now: Optional[datetime] = None) -> List[str]:
    """
    Prune a backup directory.

    Args:
        directory: Backup directory
        max_age_days: Delete files older than this many days (0 disables)
        max_count: Keep at most this many files (0 disables)
        now: Reference time for the age limit

    Returns:
        Paths of deleted files

    Raises:
        PruneFailed: If any deletion failed
    """
    policy = RetentionPolicy(max_age_days=max_age_days, max_count=max_count)
    return RetentionManager(directory).prune(policy, now=now)
