"""
Unit tests for the database source (dbbackup/backup/sources.py).

The client and dump tools are replaced by small shell scripts so the real
subprocess pipeline (dump tool -> compressor -> file) is exercised.
"""

import gzip
import socket
import stat
from unittest.mock import patch

import pytest

from dbbackup.backup.sources import (
    DatabaseClient,
    MySQLSource,
    SYSTEM_SCHEMAS,
    create_source,
    detect_client,
    read_client_user,
)
from dbbackup.exceptions import ClientNotFoundError, DumpError, SourceError


CLIENT_SCRIPT = """#!/bin/sh
case "$*" in
  *"SHOW VARIABLES"*) printf 'socket\\t%s\\n' "{socket}" ;;
  *"SHOW DATABASES"*) printf 'information_schema\\napp\\nmysql\\nshop\\nperformance_schema\\nsys\\napp\\n' ;;
  *) exit 1 ;;
esac
"""

FAILING_CLIENT_SCRIPT = """#!/bin/sh
echo "ERROR 2002 (HY000): Can't connect to local server" >&2
exit 1
"""

DUMP_SCRIPT = """#!/bin/sh
echo "-- dump args: $*"
echo "CREATE TABLE t (id int);"
"""

FAILING_DUMP_SCRIPT = """#!/bin/sh
echo "-- partial"
echo "mysqldump: Got error: 1044: Access denied" >&2
exit 2
"""


def _script(tmp_path, name, content):
    path = tmp_path / name
    path.write_text(content)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


@pytest.fixture
def source(tmp_path):
    client = DatabaseClient(
        _script(tmp_path, 'mysql', CLIENT_SCRIPT.format(socket='/nonexistent/mysqld.sock')),
        _script(tmp_path, 'mysqldump', DUMP_SCRIPT),
    )
    return MySQLSource(client)


class TestDetectClient:
    """Test client detection."""

    @patch('dbbackup.backup.sources.shutil.which', return_value='/usr/bin/x')
    def test_prefers_mariadb(self, mock_which):
        """Test MariaDB tools win when both are installed."""
        assert detect_client() == DatabaseClient('mariadb', 'mariadb-dump')

    @patch('dbbackup.backup.sources.shutil.which')
    def test_falls_back_to_mysql(self, mock_which):
        """Test MySQL tools are used when MariaDB is absent."""
        mock_which.side_effect = lambda name: '/usr/bin/mysql' if name == 'mysql' else None
        assert detect_client() == DatabaseClient('mysql', 'mysqldump')

    @patch('dbbackup.backup.sources.shutil.which', return_value=None)
    def test_no_client(self, mock_which):
        """Test a missing client is fatal with its own exit code."""
        with pytest.raises(ClientNotFoundError) as exc_info:
            detect_client()
        assert exc_info.value.exit_code == 5

    @patch('dbbackup.backup.sources.shutil.which', return_value=None)
    def test_create_source_without_client(self, mock_which, run_config):
        """Test the factory propagates a missing client."""
        with pytest.raises(ClientNotFoundError):
            create_source(run_config)

    @patch('dbbackup.backup.sources.shutil.which', return_value='/usr/bin/x')
    def test_create_source_uses_credentials(self, mock_which, run_config):
        """Test the factory passes the credentials file when present."""
        (run_config.secrets_dir / '.db.cnf').write_text('[client]\nuser=backup\n')

        source = create_source(run_config)

        assert source.client.client == 'mariadb'
        assert source.credentials_file == run_config.secrets_dir / '.db.cnf'


class TestCredentials:
    """Test reading the client defaults file."""

    def test_read_user(self, tmp_path):
        """Test the user is read from the [client] section."""
        path = tmp_path / '.db.cnf'
        path.write_text('[client]\nuser = backup\npassword = p%ss\n')
        assert read_client_user(path) == 'backup'

    def test_no_client_section(self, tmp_path):
        """Test a file without [client] yields no user."""
        path = tmp_path / '.db.cnf'
        path.write_text('[mysqldump]\nquick\n')
        assert read_client_user(path) is None


class TestListDatabases:
    """Test database enumeration."""

    def test_excludes_system_schemas(self, source):
        """Test system schemas are filtered and duplicates dropped."""
        databases = source.list_databases()

        assert databases == ['app', 'shop']
        assert not SYSTEM_SCHEMAS & set(databases)

    def test_stale_socket_not_used(self, source):
        """Test a reported socket that does not exist is ignored."""
        source.list_databases()
        assert source.protocol_args == []

    def test_existing_socket_used(self, tmp_path):
        """Test an existing server socket is passed to every command."""
        socket_path = tmp_path / 'mysqld.sock'
        server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        server.bind(str(socket_path))
        try:
            client = DatabaseClient(
                _script(tmp_path, 'mysql', CLIENT_SCRIPT.format(socket=socket_path)),
                _script(tmp_path, 'mysqldump', DUMP_SCRIPT),
            )
            source = MySQLSource(client)
            source.list_databases()
        finally:
            server.close()

        assert source.protocol_args == ['--protocol=SOCKET', '-S', str(socket_path)]
        assert source.dump_command('app')[1:4] == ['--protocol=SOCKET', '-S', str(socket_path)]

    def test_query_failure(self, tmp_path):
        """Test an unreachable server raises SourceError."""
        client = DatabaseClient(
            _script(tmp_path, 'mysql', FAILING_CLIENT_SCRIPT),
            _script(tmp_path, 'mysqldump', DUMP_SCRIPT),
        )

        with pytest.raises(SourceError, match="Can't connect"):
            MySQLSource(client).list_databases()

    def test_client_not_executable(self, tmp_path):
        """Test a client that cannot be started raises SourceError."""
        source = MySQLSource(DatabaseClient(str(tmp_path / 'missing'), 'mysqldump'))

        with pytest.raises(SourceError, match="Failed to run"):
            source.list_databases()


class TestDump:
    """Test per-database dumps."""

    def test_dump_command(self, tmp_path):
        """Test the credentials file comes first and the options are complete."""
        creds = tmp_path / '.db.cnf'
        source = MySQLSource(DatabaseClient('mariadb', 'mariadb-dump'), creds)

        cmd = source.dump_command('shop')

        assert cmd[0] == 'mariadb-dump'
        assert cmd[1] == f'--defaults-extra-file={creds}'
        assert cmd[2:4] == ['--databases', 'shop']
        for option in ('--single-transaction', '--quick', '--routines', '--events',
                       '--triggers', '--hex-blob', '--default-character-set=utf8mb4'):
            assert option in cmd

    def test_dump_writes_compressed_file(self, source, compressor, tmp_path):
        """Test a dump is piped through the compressor into the file."""
        dest = tmp_path / 'app-2024-01-15-0230.sql.gz'

        size = source.dump('app', compressor, dest)

        assert size == dest.stat().st_size
        with gzip.open(dest, 'rt') as f:
            content = f.read()
        assert '--databases app' in content
        assert 'CREATE TABLE t' in content

    def test_dump_failure(self, tmp_path, compressor):
        """Test a failing dump tool raises DumpError with its stderr."""
        client = DatabaseClient(
            _script(tmp_path, 'mysql', CLIENT_SCRIPT.format(socket='/nonexistent')),
            _script(tmp_path, 'mysqldump', FAILING_DUMP_SCRIPT),
        )
        dest = tmp_path / 'app.sql.gz'

        with pytest.raises(DumpError) as exc_info:
            MySQLSource(client).dump('app', compressor, dest)

        assert exc_info.value.database == 'app'
        assert 'Access denied' in str(exc_info.value)

    def test_dump_tool_missing(self, tmp_path, compressor):
        """Test a missing dump tool raises DumpError."""
        client = DatabaseClient(
            _script(tmp_path, 'mysql', CLIENT_SCRIPT.format(socket='/nonexistent')),
            str(tmp_path / 'no-such-dump'),
        )

        with pytest.raises(DumpError):
            MySQLSource(client).dump('app', compressor, tmp_path / 'app.sql.gz')
