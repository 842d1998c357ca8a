"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Acquire the run lock (contended: exit 0, nothing touched)
2. Check preconditions and create the run directory
3. Enumerate databases and dump each one (failures recorded, not fatal)
4. Test every compressed dump (stage 1)
5. Archive, compress and optionally encrypt the run directory
6. Verify the archive end to end (stage 2)
7. Remove the run directory
8. Replicate to the remote target, then drop the local archive
9. Prune old archives
10. Report and notify
"""

import shutil
import logging
from datetime import datetime
from typing import Optional

from dbbackup.config import RunConfig
from dbbackup.exceptions import BackupError, ClientNotFoundError, DumpError, RunDirectoryMissingError, SourceError
from dbbackup.models import (
    ArchiveArtifact,
    BackupRun,
    DatabaseDumpUnit,
    DumpOutcome,
    RunReport,
    RunState,
)
from dbbackup.notify import Notifier
from .compression import (
    Compressor,
    create_archive,
    dump_filename,
    format_size,
    generate_archive_filename,
    get_archive_size,
    select_compressor,
)
from .encryption import create_encryptor
from .lock import RunLock
from .retention import RetentionManager
from .sources import create_source
from .storage import create_transport
from .verification import expected_members, verify_archive, verify_dumps


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_COMPLETED_WITH_ERRORS = 1
EXIT_FAILURE = 4

# Marks collaborators that should be built from the config
_FROM_CONFIG = object()


class BackupExecutor:
    """
    Orchestrates one backup run against the configured server.

    Every external capability is a collaborator that can be passed in;
    anything left out is built from the RunConfig when the run needs it.
    """

    def __init__(
        self,
        config: RunConfig,
        source=None,
        compressor: Optional[Compressor] = None,
        encryptor=_FROM_CONFIG,
        transport=_FROM_CONFIG,
        notifier: Optional[Notifier] = None,
        now: Optional[datetime] = None
    ):
        """
        Initialize backup executor.

        Args:
            config: Run configuration
            source: DatabaseEnumerator + DumpProducer (default: MySQL client tools)
            compressor: Compressor (default: pigz, falling back to gzip)
            encryptor: Encryptor or None (default: from config)
            transport: RemoteTransport or None (default: from config)
            notifier: Notifier (default: from config)
            now: Run timestamp (default: current time)
        """
        self.config = config
        self.source = source
        self.compressor = compressor
        self.encryptor = encryptor
        self.transport = transport
        self.notifier = notifier or Notifier(config.notify_url, config.notify_token)
        self.now = now
        self.run: Optional[BackupRun] = None

    @property
    def hostname(self) -> str:
        return self.config.hostname

    def execute(self) -> RunReport:
        """
        Execute the backup run.

        Returns:
            RunReport with final state and exit code
        """
        self.config.backup_root.mkdir(parents=True, exist_ok=True)

        lock = RunLock(self.config.lock_file)
        if not lock.acquire():
            logger.info("Another backup run is in progress. Exiting.")
            return RunReport(state=RunState.SKIPPED, exit_code=EXIT_OK)

        try:
            self.run = BackupRun.create(self.config.backup_root, self.now)
            try:
                self._execute_workflow()
            except BackupError as e:
                return self._fail(e, e.exit_code)
            except Exception as e:
                logger.exception(f"Unexpected error during backup: {e}")
                return self._fail(e, EXIT_FAILURE)
            return self._finish()
        finally:
            lock.release()

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        run = self.run

        # Step 1: Preconditions
        if self.encryptor is _FROM_CONFIG:
            self.encryptor = create_encryptor(self.config)
        if self.transport is _FROM_CONFIG:
            self.transport = create_transport(self.config.remote)

        # Step 2: Run directory
        run.run_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"==== START per-db backup -> {run.run_dir} ====")
        self._notify(
            f"DB Backup Started on {self.hostname}",
            f"Starting at {datetime.now():%Y-%m-%d %H:%M:%S}"
        )

        if self.compressor is None:
            self.compressor = select_compressor()
        logger.info(f"Compressor: {self.compressor}")

        if self.source is None:
            self.source = create_source(self.config)

        # Step 3: Enumerate and dump
        run.state = RunState.DUMPING
        databases = self._enumerate()
        logger.info(f"Backing up to {run.run_dir}")
        run.units = [self._dump_database(name) for name in databases]

        # Step 4: Stage 1 verification
        logger.info("Verifying compressed dumps")
        run.corrupt_files = verify_dumps(run.run_dir, self.compressor)

        # Step 5: Archive (+ encrypt)
        if not run.run_dir.is_dir():
            raise RunDirectoryMissingError(run.run_dir)

        run.state = RunState.ARCHIVING
        expected = expected_members(run.run_dir)
        archive_path = self.config.backup_root / generate_archive_filename(
            self.hostname, run.stamp, self.encryptor
        )
        action = "Archiving & encrypting" if self.encryptor else "Archiving"
        logger.info(f"{action} folder {run.run_dir} -> {archive_path}")
        create_archive(run.run_dir, archive_path, self.compressor, self.encryptor)
        run.archive = ArchiveArtifact(
            path=archive_path,
            encrypted=self.encryptor is not None,
            size_bytes=get_archive_size(archive_path)
        )
        logger.info(f"  OK: Archive created ({format_size(run.archive.size_bytes)})")

        # Step 6: Stage 2 verification
        run.state = RunState.VERIFYING
        logger.info("Verifying archive")
        run.archive.members = verify_archive(archive_path, self.encryptor, expected)
        run.archive.verified = True
        logger.info(f"  OK: Archive verified ({len(expected)} dump(s))")

        # Step 7: Run directory is folded into a verified archive now
        if self.config.remove_run_dir:
            self._remove_run_dir()

        # Step 8: Remote replication
        if self.transport is not None:
            run.state = RunState.UPLOADING
            logger.info("Uploading to remote storage")
            run.archive.remote_location = self.transport.replicate(archive_path)
            logger.info(f"  OK: Remote file verified: {run.archive.remote_location}")
            archive_path.unlink()
            logger.info("  OK: Local archive removed after successful upload")

        # Step 9: Retention
        if self.config.retention_days > 0:
            RetentionManager(
                self.config.backup_root,
                self.config.retention_days,
                protect=[run.run_dir, archive_path]
            ).enforce()

    def _enumerate(self):
        try:
            databases = self.source.list_databases()
        except ClientNotFoundError:
            raise
        except SourceError as e:
            logger.error(f"Could not list databases: {e}")
            self.run.errors.append(f"database enumeration: {e}")
            databases = []

        if not databases:
            logger.warning("No databases to back up (after exclusions).")
        return databases

    def _dump_database(self, name: str) -> DatabaseDumpUnit:
        dest = self.run.run_dir / dump_filename(name, self.run.stamp)
        logger.info(f"  → Dumping: {name}")

        try:
            size = self.source.dump(name, self.compressor, dest)
        except (DumpError, OSError) as e:
            logger.error(f"    FAILED: {name} ({e})")
            # A failed dump leaves no file behind
            try:
                dest.unlink()
            except FileNotFoundError:
                pass
            except OSError as unlink_error:
                logger.warning(f"Could not remove partial dump {dest}: {unlink_error}")
            return DatabaseDumpUnit(name=name, path=dest, outcome=DumpOutcome.FAILED, error=str(e))

        logger.info(f"    OK: {name}  (compressed: {format_size(size)})")
        return DatabaseDumpUnit(name=name, path=dest, outcome=DumpOutcome.OK, size_bytes=size)

    def _notify(self, title: str, message: str):
        # Notifications never change the outcome of a run
        try:
            self.notifier.notify(title, message)
        except Exception as e:
            logger.warning(f"Notification '{title}' failed: {e}")

    def _remove_run_dir(self):
        logger.info(f"Removing folder {self.run.run_dir}")
        try:
            shutil.rmtree(self.run.run_dir)
        except OSError as e:
            logger.warning(f"Failed to remove folder {self.run.run_dir}: {e}")

    def _archive_description(self) -> str:
        archive = self.run.archive
        if archive.exists_locally:
            size = format_size(get_archive_size(archive.path))
        else:
            size = "Transferred to remote (local copy removed)"
        return f"Archive: {archive.path} ({size})"

    def _finish(self) -> RunReport:
        run = self.run
        failures = run.failures

        if failures:
            lines = ["[SUMMARY] Completed with failures:"]
            lines += [f" - {failure}" for failure in failures]
            lines.append(self._archive_description())
            summary = '\n'.join(lines)
            run.state = RunState.COMPLETED_WITH_ERRORS
            exit_code = EXIT_COMPLETED_WITH_ERRORS
            title = f"DB Backup Completed with Errors on {self.hostname}"
        else:
            lines = ["[SUMMARY] All per-DB dumps verified OK.", self._archive_description()]
            if run.archive.remote_location:
                lines.append("Successfully transferred to remote storage and local copy removed.")
            summary = '\n'.join(lines)
            run.state = RunState.COMPLETED
            exit_code = EXIT_OK
            title = f"DB Backup Successful on {self.hostname}"

        logger.info(summary)
        self._notify(title, summary)
        outcome = 'with errors' if failures else 'success'
        logger.info(f"==== END ({outcome}) ====")

        return RunReport(
            state=run.state,
            exit_code=exit_code,
            stamp=run.stamp,
            failures=failures,
            archive=run.archive,
            summary=summary
        )

    def _fail(self, error: Exception, exit_code: int) -> RunReport:
        run = self.run
        run.state = RunState.FAILED
        logger.error(f"Backup failed: {error}")
        self._notify(f"DB Backup Failed on {self.hostname}", str(error))
        logger.info("==== END (failed) ====")

        return RunReport(
            state=run.state,
            exit_code=exit_code,
            stamp=run.stamp,
            failures=run.failures,
            archive=run.archive,
            error=str(error)
        )


def run_backup(config: RunConfig, **collaborators) -> RunReport:
    """
    Execute one backup run.

    Args:
        config: Run configuration
        **collaborators: Optional overrides passed to BackupExecutor

    Returns:
        RunReport with the exit code to terminate with
    """
    executor = BackupExecutor(config, **collaborators)
    return executor.execute()


def prune_backups(config: RunConfig) -> Optional[dict]:
    """
    Run only the retention pruner, under the run lock.

    Returns:
        Summary dict from RetentionManager.enforce(), or None if another run holds the lock
    """
    with RunLock(config.lock_file) as acquired:
        if not acquired:
            logger.info("Another backup run is in progress. Exiting.")
            return None
        return RetentionManager(config.backup_root, config.retention_days).enforce()
