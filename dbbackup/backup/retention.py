"""
Retention policy enforcement for backups.

Deletes archives and leftover run directories under the backup root that are
older than the configured number of days. Best effort: a deletion that fails
is logged and counted, never raised.
"""

import re
import shutil
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from .compression import ARCHIVE_MARKER, ARCHIVE_EXTENSION, DUMP_EXTENSION


logger = logging.getLogger(__name__)

ARCHIVE_PATTERN = re.compile(
    re.escape(ARCHIVE_MARKER) + r'\d{4}-\d{2}-\d{2}-\d{4}' + re.escape(ARCHIVE_EXTENSION)
    + r'(\.gpg|\.enc)?$'
)
RUN_DIR_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}-\d{4}$')


class RetentionManager:
    """
    Prunes old archives and stale run directories from the backup root.

    A stamp-shaped directory is only removed when it holds nothing but dump
    files, so an unrelated directory that happens to share the naming
    pattern is left alone.
    """

    def __init__(self, backup_root: Path, keep_days: int, protect: Optional[List[Path]] = None):
        """
        Args:
            backup_root: Directory holding archives and run directories
            keep_days: Age threshold in days; 0 disables pruning
            protect: Paths never to delete (e.g. the current run directory)
        """
        self.backup_root = Path(backup_root)
        self.keep_days = keep_days
        self.protect = {Path(p).resolve() for p in (protect or [])}

    @property
    def enabled(self) -> bool:
        return self.keep_days > 0

    def enforce(self) -> Dict[str, Any]:
        """
        Enforce the retention policy.

        Returns:
            Dict with summary of cleanup operations:
            {
                'archives_deleted': List[str],
                'directories_deleted': List[str],
                'skipped': List[str],
                'errors': List[str]
            }
        """
        summary = {
            'archives_deleted': [],
            'directories_deleted': [],
            'skipped': [],
            'errors': []
        }

        if not self.enabled:
            logger.info("Retention: not configured, skipping")
            return summary

        if not self.backup_root.is_dir():
            logger.warning(f"Retention: backup root {self.backup_root} does not exist")
            return summary

        # Calculate cutoff date
        cutoff_date = datetime.now() - timedelta(days=self.keep_days)
        logger.info(f"Pruning archives older than {self.keep_days} days in {self.backup_root}")

        try:
            entries = sorted(self.backup_root.iterdir())
        except OSError as e:
            summary['errors'].append(f"{self.backup_root}: {e}")
            logger.warning(f"Retention: cannot list {self.backup_root}: {e}")
            return summary

        for entry in entries:
            if entry.resolve() in self.protect:
                continue
            try:
                modified = datetime.fromtimestamp(entry.stat().st_mtime)
            except OSError as e:
                summary['errors'].append(f"{entry}: {e}")
                continue
            if modified >= cutoff_date:
                continue

            if entry.is_file() and ARCHIVE_PATTERN.search(entry.name):
                self._delete_file(entry, summary)
            elif entry.is_dir() and not entry.is_symlink() and RUN_DIR_PATTERN.match(entry.name):
                try:
                    leftover = self._is_run_leftover(entry)
                except OSError as e:
                    summary['errors'].append(f"{entry}: {e}")
                    logger.warning(f"Cannot inspect run directory {entry}: {e}")
                    continue
                if leftover:
                    self._delete_directory(entry, summary)
                else:
                    logger.warning(f"Not pruning {entry}: contains files other than dumps")
                    summary['skipped'].append(str(entry))

        logger.info(
            f"Retention enforcement complete. "
            f"Archives deleted: {len(summary['archives_deleted'])}, "
            f"Directories deleted: {len(summary['directories_deleted'])}, "
            f"Errors: {len(summary['errors'])}"
        )
        return summary

    @staticmethod
    def _is_run_leftover(directory: Path) -> bool:
        for item in directory.iterdir():
            if not item.is_file() or not item.name.endswith(DUMP_EXTENSION):
                return False
        return True

    def _delete_file(self, path: Path, summary: Dict[str, Any]):
        try:
            path.unlink()
            summary['archives_deleted'].append(str(path))
            logger.info(f"Deleted archive: {path}")
        except OSError as e:
            summary['errors'].append(f"{path}: {e}")
            logger.warning(f"Failed to delete archive {path}: {e}")

    def _delete_directory(self, path: Path, summary: Dict[str, Any]):
        try:
            shutil.rmtree(path)
            summary['directories_deleted'].append(str(path))
            logger.info(f"Deleted run directory: {path}")
        except OSError as e:
            summary['errors'].append(f"{path}: {e}")
            logger.warning(f"Failed to delete run directory {path}: {e}")
