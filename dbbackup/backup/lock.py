"""
Single-run lock for the backup root.

An advisory, non-blocking flock on <root>/.db_backup.lock. Failing to get it
means another run owns this cycle; callers treat that as a clean exit.
"""

import os
import fcntl
import logging
from pathlib import Path
from typing import Optional


logger = logging.getLogger(__name__)


class RunLock:
    """
    Exclusive run token held for the lifetime of a run.

    The kernel drops the lock when the descriptor is closed, so an aborted
    process never leaves a stale lock behind.
    """

    def __init__(self, path: Path):
        """
        Args:
            path: Lock file path (created if missing)
        """
        self.path = Path(path)
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        """
        Try to take the lock without blocking.

        Returns:
            True if acquired, False if another process holds it
        """
        if self._fd is not None:
            return True

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            logger.debug(f"Lock {self.path} is held by another process")
            return False
        except OSError:
            os.close(fd)
            raise

        self._fd = fd
        return True

    def release(self):
        """Release the lock if held."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
