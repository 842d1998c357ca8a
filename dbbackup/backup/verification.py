"""
Two-stage integrity verification.

Stage 1 tests every compressed dump in the run directory. Stage 2 reads the
finished archive end to end (decrypting it first when encrypted) and checks
the tar listing against the dumps that went into it. Nothing is extracted to
disk.
"""

import gzip
import logging
import tarfile
import zlib
from pathlib import Path
from typing import Iterable, List, Optional

from dbbackup.exceptions import EncryptionError, VerificationError
from .compression import Compressor, DUMP_EXTENSION
from .encryption import Encryptor


logger = logging.getLogger(__name__)

_READ_SIZE = 1024 * 1024


def verify_dumps(run_dir: Path, compressor: Compressor) -> List[str]:
    """
    Test the compressed-stream integrity of every dump in a run directory.

    Corrupt files are reported, not removed; they still go into the archive.

    Args:
        run_dir: Run directory
        compressor: Compressor whose test mode is used

    Returns:
        Paths of corrupt files (empty if all verified)
    """
    corrupt = []
    for path in sorted(Path(run_dir).glob(f'*{DUMP_EXTENSION}')):
        if compressor.test(path):
            logger.info(f"  OK: {path}")
        else:
            logger.error(f"  CORRUPT: {path}")
            corrupt.append(str(path))
    return corrupt


def expected_members(run_dir: Path) -> List[str]:
    """Archive member names the dumps in run_dir will have."""
    run_dir = Path(run_dir)
    return [
        f"{run_dir.name}/{path.name}"
        for path in sorted(run_dir.glob(f'*{DUMP_EXTENSION}'))
    ]


def verify_archive(
    archive_path: Path,
    encryptor: Optional[Encryptor] = None,
    expected: Optional[Iterable[str]] = None
) -> List[str]:
    """
    Verify that an archive is a readable tar.gz holding the expected dumps.

    Args:
        archive_path: Archive to check
        encryptor: Encryptor to decrypt with, if the archive is encrypted
        expected: Member names that must be present

    Returns:
        Member names found in the archive

    Raises:
        VerificationError: If the archive cannot be decrypted, decompressed or
            listed, or an expected member is missing
    """
    archive_path = Path(archive_path)
    if not archive_path.is_file():
        raise VerificationError(f"Archive not found: {archive_path}")

    try:
        if encryptor is not None:
            with encryptor.decrypt(archive_path) as stream:
                members = _list_members(stream)
        else:
            with open(archive_path, 'rb') as stream:
                members = _list_members(stream)
    except EncryptionError as e:
        raise VerificationError(f"Archive could not be decrypted: {e}")
    except (tarfile.TarError, zlib.error, EOFError, OSError) as e:
        raise VerificationError(f"Archive is not readable: {e}")

    if expected is not None:
        missing = sorted(set(expected) - set(members))
        if missing:
            raise VerificationError(f"Archive is missing {len(missing)} dump(s): {', '.join(missing)}")

    return members


def _list_members(stream) -> List[str]:
    """List a tar.gz stream and read it through to the gzip trailer."""
    with gzip.GzipFile(fileobj=stream, mode='rb') as gz:
        with tarfile.open(fileobj=gz, mode='r|') as tar:
            members = [member.name for member in tar]
        # Drain the rest so the CRC and the decryption tail are checked too
        while gz.read(_READ_SIZE):
            pass
    # And anything the encryptor still holds after the gzip member
    while stream.read(_READ_SIZE):
        pass
    return members
