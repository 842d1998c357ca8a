"""
Shared pytest fixtures for dbbackup tests.

This module provides fixtures for:
- RunConfig pointing at a temporary backup root
- Fake collaborators (database source, transport, notifier)
- Real gzip compressor and a fast AES-GCM encryptor
- Mock fixtures for external services (S3, SSH)
"""

import gzip
import os
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from dbbackup.config import RunConfig, RemoteTarget
from dbbackup.exceptions import DumpError
from dbbackup.backup.compression import GzipCompressor
from dbbackup.backup.encryption import AesGcmEncryptor


RUN_TIME = datetime(2024, 1, 15, 2, 30)
RUN_STAMP = '2024-01-15-0230'
HOSTNAME = 'db1.example.com'


class FakeSource:
    """
    Database source that writes small gzip dumps in-process.

    Databases listed in `failing` raise DumpError after writing a partial file.
    """

    def __init__(self, databases=None, failing=None, list_error=None):
        self.databases = list(databases or [])
        self.failing = set(failing or [])
        self.list_error = list_error
        self.dumped = []

    def list_databases(self):
        if self.list_error:
            raise self.list_error
        return list(self.databases)

    def dump(self, database, compressor, dest):
        self.dumped.append(database)
        if database in self.failing:
            Path(dest).write_bytes(b'partial')
            raise DumpError(database, "mysqldump exited 2")
        with gzip.open(dest, 'wb') as f:
            f.write(f"CREATE DATABASE `{database}`;\n".encode() * 50)
        return os.path.getsize(dest)


class FakeTransport:
    """Remote transport recording what it was asked to replicate."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []
        self.run_dir_present = None

    def replicate(self, local_path):
        self.calls.append(Path(local_path))
        stamp = Path(local_path).name.split("-db_backups-")[1].split(".")[0]
        self.run_dir_present = (Path(local_path).parent / stamp).exists()
        if self.error:
            raise self.error
        return f"remote:backups/{Path(local_path).name}"


class RecordingNotifier:
    """Notifier collecting (title, message) tuples."""

    def __init__(self, error=None):
        self.sent = []
        self.error = error

    def notify(self, title, message):
        self.sent.append((title, message))
        if self.error:
            raise self.error
        return True

    @property
    def titles(self):
        return [title for title, _ in self.sent]


@pytest.fixture
def backup_root(tmp_path):
    root = tmp_path / 'db_backups'
    root.mkdir()
    return root


@pytest.fixture
def secrets_dir(tmp_path):
    secrets = tmp_path / 'secrets'
    secrets.mkdir()
    return secrets


@pytest.fixture
def run_config(backup_root, secrets_dir):
    """
    Plain local configuration: no encryption, no remote, no retention.
    """
    return RunConfig(
        backup_root=backup_root,
        secrets_dir=secrets_dir,
        hostname=HOSTNAME,
        retention_days=0,
    )


@pytest.fixture
def encrypted_config(run_config):
    """Configuration with AES-GCM encryption enabled."""
    return replace(run_config, encrypt=True, cipher='aes-gcm', passphrase='test_passphrase_123')


@pytest.fixture
def remote_config(run_config):
    """Configuration with an rclone remote target."""
    return replace(run_config, remote=RemoteTarget(type='rclone', name='wasabi', path='bucket/db'))


@pytest.fixture
def compressor():
    return GzipCompressor()


@pytest.fixture
def aes_encryptor():
    """AES-GCM encryptor with a low iteration count to keep tests fast."""
    return AesGcmEncryptor('test_passphrase_123', iterations=1000)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def run_dir(backup_root):
    """
    Run directory holding two valid dumps.
    """
    directory = backup_root / RUN_STAMP
    directory.mkdir()
    for name in ('app', 'shop'):
        with gzip.open(directory / f'{name}-{RUN_STAMP}.sql.gz', 'wb') as f:
            f.write(f"-- dump of {name}\n".encode() * 100)
    return directory


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.
    """
    with patch('dbbackup.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh
