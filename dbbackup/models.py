"""
In-memory records of a backup run.

Nothing here is persisted: a run lives as long as the process that owns the
lock, and its outcome is reported through the log, the notifier and the exit
code.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional


STAMP_FORMAT = '%Y-%m-%d-%H%M'


class RunState(str, enum.Enum):
    CREATED = 'created'
    DUMPING = 'dumping'
    ARCHIVING = 'archiving'
    VERIFYING = 'verifying'
    UPLOADING = 'uploading'
    COMPLETED = 'completed'
    COMPLETED_WITH_ERRORS = 'completed_with_errors'
    FAILED = 'failed'
    SKIPPED = 'skipped'


class DumpOutcome(str, enum.Enum):
    OK = 'ok'
    FAILED = 'failed'


@dataclass(frozen=True)
class DatabaseDumpUnit:
    """Result of dumping one database."""
    name: str
    path: Path
    outcome: DumpOutcome
    size_bytes: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is DumpOutcome.OK


@dataclass
class ArchiveArtifact:
    """The single archive produced by a run."""
    path: Path
    encrypted: bool
    size_bytes: int = 0
    verified: bool = False
    members: List[str] = field(default_factory=list)
    remote_location: Optional[str] = None

    @property
    def exists_locally(self) -> bool:
        return self.path.exists()


@dataclass
class BackupRun:
    """
    A single invocation of the pipeline.

    The stamp has minute resolution and names both the run directory and
    the archive.
    """
    stamp: str
    run_dir: Path
    state: RunState = RunState.CREATED
    units: List[DatabaseDumpUnit] = field(default_factory=list)
    corrupt_files: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    archive: Optional[ArchiveArtifact] = None

    @classmethod
    def create(cls, backup_root: Path, now: Optional[datetime] = None) -> 'BackupRun':
        stamp = (now or datetime.now()).strftime(STAMP_FORMAT)
        return cls(stamp=stamp, run_dir=backup_root / stamp)

    @property
    def failures(self) -> List[str]:
        """Failed database names, then corrupt dump files, then run-level errors."""
        return (
            [unit.name for unit in self.units if not unit.ok]
            + list(self.corrupt_files)
            + list(self.errors)
        )


@dataclass(frozen=True)
class RunReport:
    """Final outcome of a run."""
    state: RunState
    exit_code: int
    stamp: Optional[str] = None
    failures: List[str] = field(default_factory=list)
    archive: Optional[ArchiveArtifact] = None
    summary: str = ''
    error: Optional[str] = None
