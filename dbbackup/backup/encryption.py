"""
Encryptors for backup archives.

Supports:
- GpgEncryptor: gpg symmetric AES256 (.gpg), the format operators restore with gpg -d
- AesGcmEncryptor: in-process chunked AES-256-GCM (.enc), no gpg binary needed
"""

import io
import os
import logging
import subprocess
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from dbbackup.config import RunConfig
from dbbackup.exceptions import EncryptionError, MissingSecretError
from dbbackup.utils.crypto import StreamCipher, DecryptionError, ITERATIONS
from dbbackup.utils.process import stderr_file, read_stderr


logger = logging.getLogger(__name__)

# Time to let gpg exit on its own once the reader gives up on its output
EXIT_GRACE_SECONDS = 5


class Encryptor(ABC):
    """Symmetric encryption of the compressed archive stream."""

    extension: str = ''
    name: str = ''

    @abstractmethod
    def encrypt(self, source: BinaryIO, dest: BinaryIO):
        """
        Encrypt everything readable from source into dest.

        Raises:
            EncryptionError: If encryption fails
        """

    @abstractmethod
    def decrypt(self, path: Path):
        """
        Context manager yielding a readable plaintext stream of path.

        Raises:
            EncryptionError: If the file cannot be decrypted
        """


class GpgEncryptor(Encryptor):
    """
    gpg --symmetric with AES256.

    The passphrase goes through an inherited pipe (--passphrase-fd) rather
    than argv, keeping it out of the process list.
    """

    extension = '.gpg'
    name = 'gpg'
    cipher_algo = 'AES256'

    def __init__(self, passphrase: str, binary: str = 'gpg'):
        self.passphrase = passphrase
        self.binary = binary

    def _passphrase_fd(self) -> int:
        read_fd, write_fd = os.pipe()
        try:
            os.write(write_fd, self.passphrase.encode() + b'\n')
        finally:
            os.close(write_fd)
        return read_fd

    def _base_args(self, fd: int):
        return [
            self.binary, '--batch', '--quiet', '--pinentry-mode=loopback',
            '--passphrase-fd', str(fd),
        ]

    def encrypt(self, source: BinaryIO, dest: BinaryIO):
        fd = self._passphrase_fd()
        cmd = self._base_args(fd) + [
            '--yes', '--symmetric', '--cipher-algo', self.cipher_algo, '--output', '-'
        ]
        with stderr_file() as errlog:
            try:
                proc = subprocess.Popen(cmd, stdin=source, stdout=dest, stderr=errlog, pass_fds=(fd,))
            except OSError as e:
                raise EncryptionError(f"Failed to start {self.binary}: {e}")
            finally:
                os.close(fd)

            if proc.wait() != 0:
                raise EncryptionError(f"{self.binary} exited {proc.returncode}: {read_stderr(errlog)}")

    @contextmanager
    def decrypt(self, path: Path) -> Iterator[BinaryIO]:
        fd = self._passphrase_fd()
        cmd = self._base_args(fd) + ['--decrypt', str(path)]
        with stderr_file() as errlog:
            try:
                proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=errlog, pass_fds=(fd,))
            except OSError as e:
                raise EncryptionError(f"Failed to start {self.binary}: {e}")
            finally:
                os.close(fd)

            try:
                yield proc.stdout
            except Exception:
                # A wrong passphrase shows up first as an unreadable stream
                proc.stdout.close()
                try:
                    failed = proc.wait(timeout=EXIT_GRACE_SECONDS) > 0
                except subprocess.TimeoutExpired:
                    failed = False
                if failed:
                    raise EncryptionError(f"{self.binary} exited {proc.returncode}: {read_stderr(errlog)}")
                proc.kill()
                proc.wait()
                raise
            except BaseException:
                proc.stdout.close()
                proc.kill()
                proc.wait()
                raise

            proc.stdout.close()
            if proc.wait() != 0:
                raise EncryptionError(f"{self.binary} exited {proc.returncode}: {read_stderr(errlog)}")


class _DecryptingReader(io.RawIOBase):
    """Raw reader over StreamCipher.decrypt_stream()."""

    def __init__(self, chunks: Iterator[bytes]):
        self._chunks = chunks
        self._buffer = b''

    def readable(self):
        return True

    def readinto(self, b):
        while not self._buffer:
            try:
                self._buffer = next(self._chunks)
            except StopIteration:
                return 0
            except DecryptionError as e:
                raise EncryptionError(f"Decryption failed: {e}")
        size = min(len(b), len(self._buffer))
        b[:size] = self._buffer[:size]
        self._buffer = self._buffer[size:]
        return size


class AesGcmEncryptor(Encryptor):
    """Chunked AES-256-GCM, see dbbackup.utils.crypto."""

    extension = '.enc'
    name = 'aes-gcm'

    def __init__(self, passphrase: str, iterations: int = ITERATIONS):
        self.cipher = StreamCipher(passphrase, iterations=iterations)

    def encrypt(self, source: BinaryIO, dest: BinaryIO):
        try:
            self.cipher.encrypt_stream(source, dest)
        except (OSError, ValueError, OverflowError) as e:
            raise EncryptionError(f"Encryption failed: {e}")

    @contextmanager
    def decrypt(self, path: Path) -> Iterator[BinaryIO]:
        try:
            f = open(path, 'rb')
        except OSError as e:
            raise EncryptionError(f"Cannot open {path}: {e}")
        with f:
            yield io.BufferedReader(_DecryptingReader(self.cipher.decrypt_stream(f)))


def create_encryptor(config: RunConfig) -> Optional[Encryptor]:
    """
    Factory function to create the configured encryptor.

    Returns:
        None when encryption is disabled

    Raises:
        MissingSecretError: If encryption is enabled without a passphrase
    """
    if not config.encrypt:
        return None
    if not config.passphrase:
        raise MissingSecretError(config.passphrase_file)
    if config.cipher == 'aes-gcm':
        return AesGcmEncryptor(config.passphrase)
    return GpgEncryptor(config.passphrase)
