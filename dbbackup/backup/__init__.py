"""
Backup module for dbbackup.

This module handles the backup pipeline including:
- Run locking
- Database enumeration and dumps (MariaDB / MySQL)
- Compression, archiving and encryption
- Two-stage verification
- Remote replication (rclone, S3, SFTP)
- Retention policy enforcement
- Execution orchestration
"""

from .executor import BackupExecutor, run_backup, prune_backups
from .lock import RunLock
from .sources import MySQLSource, create_source
from .compression import create_archive, select_compressor
from .encryption import GpgEncryptor, AesGcmEncryptor, create_encryptor
from .verification import verify_archive, verify_dumps
from .storage import RcloneTransport, S3Transport, SFTPTransport, create_transport
from .retention import RetentionManager

__all__ = [
    'BackupExecutor',
    'run_backup',
    'prune_backups',
    'RunLock',
    'MySQLSource',
    'create_source',
    'create_archive',
    'select_compressor',
    'GpgEncryptor',
    'AesGcmEncryptor',
    'create_encryptor',
    'verify_archive',
    'verify_dumps',
    'RcloneTransport',
    'S3Transport',
    'SFTPTransport',
    'create_transport',
    'RetentionManager'
]
