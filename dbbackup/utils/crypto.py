"""
Streaming authenticated encryption for backup archives.

AES-256-GCM over fixed-size chunks with a key derived from the passphrase
(PBKDF2-HMAC-SHA256). Each chunk nonce is a random per-file prefix, the chunk
counter and a last-chunk flag, so reordered, dropped or truncated chunks fail
authentication. The header is bound to every chunk as associated data.

File layout:
    MAGIC(8) | iterations(4) | chunk_size(4) | salt(16) | nonce_prefix(7) | chunks...
"""

import os
import struct
from typing import BinaryIO, Iterator

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


MAGIC = b'DBBKAES1'
SALT_SIZE = 16
NONCE_PREFIX_SIZE = 7
TAG_SIZE = 16
CHUNK_SIZE = 64 * 1024
ITERATIONS = 480000  # OWASP recommended iterations for 2023+
MAX_CHUNKS = 2 ** 32
MAX_CHUNK_SIZE = 16 * 1024 * 1024
MAX_ITERATIONS = 10000000

_HEADER = struct.Struct('>8sII16s7s')


class DecryptionError(Exception):
    """Raised when an encrypted stream is malformed or fails authentication."""
    pass


def derive_key(passphrase: str, salt: bytes, iterations: int = ITERATIONS) -> bytes:
    """
    Derive a 32-byte key from a passphrase using PBKDF2.

    Args:
        passphrase: User passphrase
        salt: Random salt stored in the file header
        iterations: PBKDF2 iteration count

    Returns:
        Raw AES-256 key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode())


def _nonce(prefix: bytes, index: int, last: bool) -> bytes:
    if index >= MAX_CHUNKS:
        raise OverflowError("Stream too long for nonce counter")
    return prefix + index.to_bytes(4, 'big') + (b'\x01' if last else b'\x00')


def _read_exact(source: BinaryIO, size: int) -> bytes:
    """Read up to size bytes, only returning short at end of stream."""
    parts = []
    remaining = size
    while remaining > 0:
        data = source.read(remaining)
        if not data:
            break
        parts.append(data)
        remaining -= len(data)
    return b''.join(parts)


class StreamCipher:
    """Encrypts and decrypts chunked AES-GCM streams."""

    def __init__(self, passphrase: str, chunk_size: int = CHUNK_SIZE, iterations: int = ITERATIONS):
        if not passphrase:
            raise ValueError("Passphrase must not be empty")
        self.passphrase = passphrase
        self.chunk_size = chunk_size
        self.iterations = iterations

    def encrypt_stream(self, source: BinaryIO, dest: BinaryIO) -> int:
        """
        Encrypt source into dest.

        Args:
            source: Readable binary stream (may be a pipe)
            dest: Writable binary stream

        Returns:
            Number of bytes written to dest
        """
        salt = os.urandom(SALT_SIZE)
        prefix = os.urandom(NONCE_PREFIX_SIZE)
        header = _HEADER.pack(MAGIC, self.iterations, self.chunk_size, salt, prefix)
        aead = AESGCM(derive_key(self.passphrase, salt, self.iterations))

        dest.write(header)
        written = len(header)

        index = 0
        chunk = _read_exact(source, self.chunk_size)
        while True:
            if len(chunk) < self.chunk_size:
                following = b''
            else:
                following = _read_exact(source, self.chunk_size)
            last = not following

            sealed = aead.encrypt(_nonce(prefix, index, last), chunk, header)
            dest.write(sealed)
            written += len(sealed)

            if last:
                return written
            chunk = following
            index += 1

    def decrypt_stream(self, source: BinaryIO) -> Iterator[bytes]:
        """
        Decrypt source chunk by chunk.

        Args:
            source: Readable binary stream positioned at the header

        Yields:
            Plaintext chunks

        Raises:
            DecryptionError: On a bad header, wrong passphrase, tampering or truncation
        """
        header = _read_exact(source, _HEADER.size)
        if len(header) != _HEADER.size:
            raise DecryptionError("Truncated header")
        magic, iterations, chunk_size, salt, prefix = _HEADER.unpack(header)
        if magic != MAGIC:
            raise DecryptionError("Not an encrypted backup stream")
        if not 0 < chunk_size <= MAX_CHUNK_SIZE:
            raise DecryptionError(f"Invalid chunk size: {chunk_size}")
        if not 0 < iterations <= MAX_ITERATIONS:
            raise DecryptionError(f"Invalid iteration count: {iterations}")

        aead = AESGCM(derive_key(self.passphrase, salt, iterations))
        sealed_size = chunk_size + TAG_SIZE

        index = 0
        block = _read_exact(source, sealed_size)
        while True:
            if len(block) < TAG_SIZE:
                raise DecryptionError("Truncated stream")
            if len(block) < sealed_size:
                following = b''
            else:
                following = _read_exact(source, sealed_size)
            last = not following

            try:
                plaintext = aead.decrypt(_nonce(prefix, index, last), block, header)
            except InvalidTag:
                raise DecryptionError(f"Authentication failed at chunk {index}")
            yield plaintext

            if last:
                return
            block = following
            index += 1
