"""
Remote transports for backup archives.

Supports:
- RcloneTransport: any rclone remote (copy + one-way size check)
- S3Transport: AWS S3 or compatible, through boto3
- SFTPTransport: SSH/SFTP host, through paramiko

Each transport copies the archive and then compares the remote size of that
one file with the local one. A transport never deletes the local archive;
the executor does that once replicate() has returned.
"""

import os
import logging
import posixpath
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
import paramiko
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy

from dbbackup.config import RemoteTarget
from dbbackup.exceptions import ConfigError, StorageError, RemoteVerificationError


logger = logging.getLogger(__name__)


class RemoteTransport(ABC):
    """Off-host replication of one archive."""

    @abstractmethod
    def replicate(self, local_path: Path) -> str:
        """
        Copy the archive to the remote target and confirm the copy.

        Args:
            local_path: Archive to replicate

        Returns:
            Remote location of the copy

        Raises:
            StorageError: If the copy fails
            RemoteVerificationError: If the remote size does not match
        """


def _local_size(local_path: Path) -> int:
    try:
        return os.path.getsize(local_path)
    except OSError as e:
        raise StorageError(f"Local file not found: {local_path} ({e})")


class RcloneTransport(RemoteTransport):
    """
    Replicates through rclone.

    Uploads with `rclone copy` and verifies with `rclone check --one-way
    --size-only` restricted to the archive's filename.
    """

    def __init__(self, remote: str, path: str = '', binary: str = 'rclone'):
        self.remote = remote
        self.path = path
        self.binary = binary

    @property
    def destination(self) -> str:
        return f"{self.remote}:{self.path}"

    def _run(self, args):
        try:
            return subprocess.run([self.binary] + args, capture_output=True, text=True)
        except OSError as e:
            raise StorageError(f"Failed to run {self.binary}: {e}")

    def replicate(self, local_path: Path) -> str:
        local_path = Path(local_path)
        _local_size(local_path)

        result = self._run(['copy', str(local_path), self.destination])
        if result.returncode != 0:
            raise StorageError(f"rclone copy failed ({result.returncode}): {result.stderr.strip()}")

        result = self._run([
            'check', str(local_path.parent), self.destination,
            '--one-way', '--size-only', '--include', local_path.name
        ])
        if result.returncode != 0:
            raise RemoteVerificationError(
                f"Remote verification failed for {local_path.name}: {result.stderr.strip()}"
            )

        return f"{self.destination.rstrip('/')}/{local_path.name}"


class S3Transport(RemoteTransport):
    """
    Replicates to AWS S3.

    Credentials come from the standard boto3 chain (environment, shared
    config, instance role). Key format: {prefix}/{filename}
    """

    MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
    CHUNK_SIZE = 10 * 1024 * 1024  # 10MB

    def __init__(self, bucket_name: str, prefix: str = '', region: Optional[str] = None, client=None):
        """
        Args:
            bucket_name: S3 bucket name
            prefix: Key prefix (the remote sub-path)
            region: AWS region (default: from the boto3 chain)
            client: Pre-built boto3 S3 client
        """
        self.bucket_name = bucket_name
        self.prefix = prefix.strip('/')

        try:
            self.s3_client = client or boto3.client('s3', region_name=region)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def key_for(self, local_path: Path) -> str:
        filename = Path(local_path).name
        return f"{self.prefix}/{filename}" if self.prefix else filename

    def replicate(self, local_path: Path) -> str:
        local_path = Path(local_path)
        file_size = _local_size(local_path)
        s3_key = self.key_for(local_path)

        try:
            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 upload failed: {e}")

        remote_size = self._remote_size(s3_key)
        if remote_size != file_size:
            raise RemoteVerificationError(
                f"Size mismatch for s3://{self.bucket_name}/{s3_key}: "
                f"local {file_size}, remote {remote_size}"
            )

        return f"s3://{self.bucket_name}/{s3_key}"

    def _simple_upload(self, local_path: Path, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=s3_key, Body=f)

    def _multipart_upload(self, local_path: Path, s3_key: str):
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=s3_key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break
                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name, Key=s3_key, UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as e:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {e}")
            raise

    def _remote_size(self, s3_key: str) -> int:
        try:
            response = self.s3_client.head_object(Bucket=self.bucket_name, Key=s3_key)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise RemoteVerificationError(f"Remote object not found ({error_code}): {s3_key}")
        except BotoCoreError as e:
            raise RemoteVerificationError(f"Failed to check remote object: {e}")
        return response['ContentLength']


class SFTPTransport(RemoteTransport):
    """
    Replicates to a host over SFTP.

    Remote name format: [user@]host[:port]
    """

    def __init__(
        self,
        host: str,
        path: str = '',
        username: Optional[str] = None,
        port: int = 22,
        password: Optional[str] = None,
        private_key: Optional[str] = None
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key
        self.path = path

    @classmethod
    def from_remote_name(cls, name: str, path: str = '', password: Optional[str] = None,
                         private_key: Optional[str] = None) -> 'SFTPTransport':
        username = None
        host = name
        if '@' in host:
            username, host = host.rsplit('@', 1)
        port = 22
        if ':' in host:
            host, port_str = host.rsplit(':', 1)
            try:
                port = int(port_str)
            except ValueError:
                raise ConfigError(f"Invalid SFTP port in remote name: {name}")
        return cls(host, path, username=username, port=port, password=password, private_key=private_key)

    def _connect(self) -> SSHClient:
        ssh_client = SSHClient()
        ssh_client.load_system_host_keys()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }
        if self.password:
            connect_kwargs['password'] = self.password
        if self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise StorageError(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)

        try:
            ssh_client.connect(**connect_kwargs)
        except paramiko.AuthenticationException as e:
            raise StorageError(f"SSH authentication failed: {e}")
        except (paramiko.SSHException, OSError) as e:
            raise StorageError(f"Failed to connect to {self.host}: {e}")
        return ssh_client

    def replicate(self, local_path: Path) -> str:
        local_path = Path(local_path)
        file_size = _local_size(local_path)
        remote_path = posixpath.join(self.path, local_path.name) if self.path else local_path.name

        ssh_client = self._connect()
        try:
            sftp = ssh_client.open_sftp()
            try:
                try:
                    sftp.put(str(local_path), remote_path)
                except (IOError, paramiko.SSHException) as e:
                    raise StorageError(f"SFTP upload of {local_path.name} failed: {e}")

                try:
                    remote_size = sftp.stat(remote_path).st_size
                except IOError as e:
                    raise RemoteVerificationError(f"Remote file not found: {remote_path} ({e})")
            finally:
                sftp.close()
        finally:
            ssh_client.close()

        if remote_size != file_size:
            raise RemoteVerificationError(
                f"Size mismatch for {self.host}:{remote_path}: local {file_size}, remote {remote_size}"
            )
        return f"sftp://{self.host}:{self.port}/{remote_path.lstrip('/')}"


def create_transport(remote: Optional[RemoteTarget]) -> Optional[RemoteTransport]:
    """
    Factory function to create the configured transport.

    Returns:
        None if no remote target is configured

    Raises:
        ConfigError: If the remote type is unknown
    """
    if remote is None:
        return None
    if remote.type == 'rclone':
        return RcloneTransport(remote.name, remote.path)
    if remote.type == 's3':
        return S3Transport(remote.name, remote.path)
    if remote.type == 'sftp':
        return SFTPTransport.from_remote_name(
            remote.name, remote.path, password=remote.password, private_key=remote.key_file
        )
    raise ConfigError(f"Invalid remote type: {remote.type}")
