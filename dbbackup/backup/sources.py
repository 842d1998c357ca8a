"""
Database source for backup operations.

Supports MariaDB and MySQL through their command line clients:
- enumeration via `SHOW DATABASES`, minus the system schemas
- per-database dumps via mariadb-dump / mysqldump piped into the compressor
"""

import os
import stat
import shutil
import logging
import subprocess
import configparser
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dbbackup.config import RunConfig
from dbbackup.exceptions import ClientNotFoundError, DumpError, SourceError
from dbbackup.utils.process import stderr_file, read_stderr
from .compression import Compressor


logger = logging.getLogger(__name__)

# (client, dump tool), in order of preference
DB_CLIENTS = (
    ('mariadb', 'mariadb-dump'),
    ('mysql', 'mysqldump'),
)

SYSTEM_SCHEMAS = frozenset({'information_schema', 'performance_schema', 'sys', 'mysql'})

# Consistent, complete, binary-safe dumps
DUMP_OPTIONS = [
    '--single-transaction', '--quick',
    '--routines', '--events', '--triggers',
    '--hex-blob', '--default-character-set=utf8mb4',
]

QUERY_TIMEOUT = 60


@dataclass(frozen=True)
class DatabaseClient:
    client: str
    dump: str


def detect_client() -> DatabaseClient:
    """
    Find an installed database client.

    Returns:
        The MariaDB client if installed, otherwise the MySQL one

    Raises:
        ClientNotFoundError: If neither is on PATH
    """
    for client, dump in DB_CLIENTS:
        if shutil.which(client):
            return DatabaseClient(client, dump)
    raise ClientNotFoundError()


def read_client_user(path: Path) -> Optional[str]:
    """
    Read the user name from a [client] defaults file.

    Returns:
        The configured user, or None if the file has no [client] user
    """
    parser = configparser.ConfigParser(interpolation=None, allow_no_value=True, strict=False)
    try:
        parser.read(path)
    except configparser.Error as e:
        logger.warning(f"Could not parse credentials file {path}: {e}")
        return None
    if not parser.has_section('client'):
        return None
    return parser.get('client', 'user', fallback=None)


class DatabaseEnumerator(ABC):
    @abstractmethod
    def list_databases(self) -> List[str]:
        """Return the user databases on the server."""


class DumpProducer(ABC):
    @abstractmethod
    def dump(self, database: str, compressor: Compressor, dest: Path) -> int:
        """
        Dump one database through the compressor into dest.

        Returns:
            Size of dest in bytes

        Raises:
            DumpError: If the dump tool or the compressor fails
        """


class MySQLSource(DatabaseEnumerator, DumpProducer):
    """
    MariaDB/MySQL server reached through the local client tools.

    Authentication prefers the protected credentials file, falling back to
    socket/ambient authentication. Transport prefers the server's unix socket
    when it exists on disk.
    """

    def __init__(self, client: DatabaseClient, credentials_file: Optional[Path] = None):
        """
        Args:
            client: Detected client and dump tool
            credentials_file: Optional [client] defaults file with user/password
        """
        self.client = client
        self.credentials_file = credentials_file
        self.protocol_args: List[str] = []
        self._connected = False

    def _defaults_args(self) -> List[str]:
        # --defaults-extra-file must come first on the command line
        if self.credentials_file:
            return [f'--defaults-extra-file={self.credentials_file}']
        return []

    def _query(self, sql: str, use_protocol: bool = True) -> List[str]:
        cmd = [self.client.client] + self._defaults_args()
        if use_protocol:
            cmd += self.protocol_args
        cmd += ['-NBe', sql]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=QUERY_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise SourceError(f"Failed to run {self.client.client}: {e}")

        if result.returncode != 0:
            raise SourceError(
                f"{self.client.client} exited {result.returncode}: {result.stderr.strip()}"
            )
        return [line for line in result.stdout.splitlines() if line.strip()]

    def connect(self):
        """Log the authentication method and detect the server socket."""
        if self._connected:
            return

        if self.credentials_file:
            user = read_client_user(self.credentials_file)
            logger.info(f"Using credentials file {self.credentials_file}" + (f" (user: {user})" if user else ''))
        else:
            logger.info("No credentials file, using socket authentication")

        socket_path = self._detect_socket()
        if socket_path:
            self.protocol_args = ['--protocol=SOCKET', '-S', socket_path]
            logger.info(f"Using socket {socket_path}")
        self._connected = True

    def _detect_socket(self) -> Optional[str]:
        try:
            rows = self._query("SHOW VARIABLES LIKE 'socket'", use_protocol=False)
        except SourceError as e:
            logger.debug(f"Socket detection failed: {e}")
            return None

        for row in rows:
            parts = row.split('\t') if '\t' in row else row.split()
            if len(parts) < 2:
                continue
            path = parts[1].strip()
            try:
                if path and stat.S_ISSOCK(os.stat(path).st_mode):
                    return path
            except OSError:
                pass
        return None

    def list_databases(self) -> List[str]:
        """
        List user databases, excluding the system schemas.

        Returns:
            Database names in server order (possibly empty)

        Raises:
            SourceError: If the server cannot be queried
        """
        self.connect()
        names = []
        for name in self._query('SHOW DATABASES'):
            name = name.strip()
            if name and name not in SYSTEM_SCHEMAS and name not in names:
                names.append(name)
        return names

    def dump_command(self, database: str) -> List[str]:
        return (
            [self.client.dump] + self._defaults_args() + self.protocol_args
            + ['--databases', database] + DUMP_OPTIONS
        )

    def dump(self, database: str, compressor: Compressor, dest: Path) -> int:
        self.connect()
        cmd = self.dump_command(database)

        try:
            with open(dest, 'wb') as out, stderr_file() as errlog:
                dump = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=errlog)
                try:
                    compress = compressor.spawn(stdin=dump.stdout, stdout=out, stderr=errlog)
                except OSError:
                    dump.kill()
                    dump.wait()
                    raise
                finally:
                    dump.stdout.close()

                compress_rc = compress.wait()
                dump_rc = dump.wait()

                if dump_rc != 0 or compress_rc != 0:
                    raise DumpError(
                        database,
                        f"{self.client.dump} exited {dump_rc}, {compressor.binary} exited {compress_rc}: "
                        f"{read_stderr(errlog)}"
                    )
        except OSError as e:
            raise DumpError(database, str(e))

        return os.path.getsize(dest)


def create_source(config: RunConfig) -> MySQLSource:
    """
    Factory function to create the database source.

    Raises:
        ClientNotFoundError: If no supported client is installed
    """
    client = detect_client()
    logger.info(f"Using database client: {client.client}")
    return MySQLSource(client, config.credentials_file)
