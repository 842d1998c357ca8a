"""
Exceptions raised by the backup pipeline.

Every fatal error carries the process exit code it maps to; per-database
failures (DumpError) are recorded by the executor and never escalate.
"""


class BackupError(Exception):
    """Base exception for backup runs"""
    exit_code = 4


class ConfigError(BackupError):
    """Raised when the run configuration is unusable"""
    exit_code = 2


class MissingSecretError(ConfigError):
    """Raised when encryption is enabled but no passphrase is available"""
    def __init__(self, path):
        self.path = path
        super().__init__(f"Encryption passphrase file not found: {path}")


class RunDirectoryMissingError(BackupError):
    """Raised when the run directory vanished before archiving"""
    exit_code = 3

    def __init__(self, path):
        self.path = path
        super().__init__(f"Backup folder missing: {path}")


class SourceError(BackupError):
    """Raised when the database server cannot be queried"""
    pass


class ClientNotFoundError(SourceError):
    """Raised when neither the MariaDB nor the MySQL client is installed"""
    exit_code = 5

    def __init__(self):
        super().__init__("Neither MariaDB nor MySQL client found.")


class DumpError(BackupError):
    """Raised when a single database dump fails"""
    def __init__(self, database: str, reason: str):
        self.database = database
        self.reason = reason
        super().__init__(f"Dump of {database} failed: {reason}")


class CompressionError(BackupError):
    """Raised when archive creation fails"""
    pass


class EncryptionError(BackupError):
    """Raised when the archive cannot be encrypted or decrypted"""
    pass


class VerificationError(BackupError):
    """Raised when the finished archive does not verify"""
    pass


class StorageError(BackupError):
    """Raised when a remote copy fails"""
    pass


class RemoteVerificationError(StorageError):
    """Raised when the remote copy does not match the local archive"""
    pass
