"""
Compression and archiving for database backups.

Supports:
- pigz: multi-threaded gzip, preferred when installed
- gzip: single-threaded fallback

The compressor chosen at the start of a run is used both for the per-database
dumps and for the final tar archive.
"""

import os
import shutil
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, List, Optional, TYPE_CHECKING

from dbbackup.exceptions import BackupError, CompressionError
from dbbackup.utils.process import stderr_file, read_stderr

if TYPE_CHECKING:
    from .encryption import Encryptor


logger = logging.getLogger(__name__)

ARCHIVE_MARKER = '-db_backups-'
ARCHIVE_EXTENSION = '.tar.gz'
DUMP_EXTENSION = '.sql.gz'


class Compressor(ABC):
    """An external stream compressor (stdin -> stdout)."""

    binary: str = ''

    @abstractmethod
    def command(self) -> List[str]:
        """Return the argv used to compress stdin to stdout."""

    def spawn(self, stdin, stdout, stderr=None) -> subprocess.Popen:
        """
        Start the compressor process.

        Args:
            stdin: Readable end feeding the compressor
            stdout: File or PIPE receiving compressed bytes
            stderr: Optional stderr sink

        Returns:
            The running process
        """
        return subprocess.Popen(self.command(), stdin=stdin, stdout=stdout, stderr=stderr)

    def test(self, path: Path) -> bool:
        """
        Test the compressed-stream integrity of a file.

        Only the container is checked (CRC and length), not the SQL inside.

        Args:
            path: File to test

        Returns:
            True if the file decompresses cleanly
        """
        result = subprocess.run(
            [self.binary, '-t', str(path)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE
        )
        if result.returncode != 0:
            logger.debug(f"{self.binary} -t {path}: {result.stderr.decode(errors='replace').strip()}")
        return result.returncode == 0

    def __str__(self):
        return ' '.join(self.command())


class PigzCompressor(Compressor):
    binary = 'pigz'

    def __init__(self, threads: int = 2):
        self.threads = max(1, int(threads))

    def command(self) -> List[str]:
        return [self.binary, '-9', '-p', str(self.threads)]


class GzipCompressor(Compressor):
    binary = 'gzip'

    def command(self) -> List[str]:
        return [self.binary, '-9']


def select_compressor() -> Compressor:
    """
    Pick the compressor for this run.

    Returns:
        PigzCompressor using every CPU if pigz is installed, else GzipCompressor
    """
    if shutil.which('pigz'):
        return PigzCompressor(os.cpu_count() or 2)
    return GzipCompressor()


def dump_filename(database: str, stamp: str) -> str:
    """Format: {database}-{stamp}.sql.gz"""
    return f"{database}-{stamp}{DUMP_EXTENSION}"


def generate_archive_filename(hostname: str, stamp: str, encryptor: Optional['Encryptor'] = None) -> str:
    """
    Generate the archive filename for a run.

    Format: {hostname}-db_backups-{stamp}.tar.gz[.gpg|.enc]

    Args:
        hostname: Host the databases were dumped on
        stamp: Run stamp
        encryptor: Encryptor in use, adds its extension

    Returns:
        Filename (without path)
    """
    filename = f"{hostname}{ARCHIVE_MARKER}{stamp}{ARCHIVE_EXTENSION}"
    if encryptor is not None:
        filename += encryptor.extension
    return filename


def create_archive(
    run_dir: Path,
    archive_path: Path,
    compressor: Compressor,
    encryptor: Optional['Encryptor'] = None
) -> Path:
    """
    Fold a run directory into one compressed, optionally encrypted archive.

    tar runs with -C on the parent so members are stored as
    <stamp>/<file>, never as absolute paths.

    Args:
        run_dir: Directory to archive
        archive_path: Output path
        compressor: Compressor for the tar stream
        encryptor: Optional encryptor applied to the compressed stream

    Returns:
        Path to the created archive

    Raises:
        CompressionError: If tar or the compressor fails
        EncryptionError: If encryption fails
    """
    run_dir = Path(run_dir)
    archive_path = Path(archive_path)
    tar_cmd = ['tar', '-C', str(run_dir.parent), '-cf', '-', run_dir.name]

    try:
        with open(archive_path, 'wb') as out, stderr_file() as errlog:
            tar = subprocess.Popen(tar_cmd, stdout=subprocess.PIPE, stderr=errlog)
            try:
                if encryptor is None:
                    compress = compressor.spawn(stdin=tar.stdout, stdout=out, stderr=errlog)
                else:
                    compress = compressor.spawn(stdin=tar.stdout, stdout=subprocess.PIPE, stderr=errlog)
            except OSError:
                tar.kill()
                tar.wait()
                raise
            finally:
                # Only the compressor reads tar's output from here on
                tar.stdout.close()

            try:
                if encryptor is not None:
                    _encrypt_output(compress, encryptor, out)
            finally:
                compress_rc = compress.wait()
                tar_rc = tar.wait()

            if tar_rc != 0 or compress_rc != 0:
                raise CompressionError(
                    f"tar exited {tar_rc}, {compressor.binary} exited {compress_rc}: "
                    f"{read_stderr(errlog)}"
                )
        return archive_path

    except Exception as e:
        # Clean up partial archive on failure
        _remove_partial(archive_path)
        if isinstance(e, BackupError):
            raise
        raise CompressionError(f"Failed to create archive: {e}")


def _encrypt_output(compress: subprocess.Popen, encryptor: 'Encryptor', out: IO[bytes]):
    try:
        encryptor.encrypt(compress.stdout, out)
    finally:
        compress.stdout.close()


def _remove_partial(path: Path):
    try:
        if path.exists():
            path.unlink()
    except OSError as e:
        logger.warning(f"Could not remove partial archive {path}: {e}")


def get_archive_size(archive_path: Path) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")


def format_size(size_bytes: int) -> str:
    """Human readable size, e.g. 1.50 MB."""
    size = float(size_bytes)
    if size < 1024:
        return f"{size_bytes} B"
    for unit in ('KB', 'MB', 'GB'):
        size /= 1024
        if size < 1024:
            return f"{size:.2f} {unit}"
    return f"{size / 1024:.2f} TB"
