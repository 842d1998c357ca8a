import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dbbackup.exceptions import ConfigError


# Secret files looked up in the secrets directory
PASSPHRASE_FILE = '.passphrase'
NOTIFY_TOKEN_FILE = '.ntfy-token'
CREDENTIALS_FILE = '.db.cnf'
SFTP_PASSWORD_FILE = '.sftp-password'

# Files living in the backup root
LOG_FILE = 'logfile.log'
LOCK_FILE = '.db_backup.lock'

CIPHERS = ('gpg', 'aes-gcm')
REMOTE_TYPES = ('rclone', 's3', 'sftp')

_TRUE = ('1', 'true', 'yes', 'y', 'on')
_FALSE = ('0', 'false', 'no', 'n', 'off', '')


@dataclass(frozen=True)
class RemoteTarget:
    """Where the archive is replicated to."""
    type: str
    name: str
    path: str = ''
    key_file: Optional[str] = None
    password: Optional[str] = None

    def __str__(self):
        return f"{self.type}:{self.name}:{self.path}"


@dataclass(frozen=True)
class RunConfig:
    """
    Immutable configuration of a backup run.

    Built once at startup by load_config() and handed to every stage.
    """
    backup_root: Path
    secrets_dir: Path
    hostname: str
    encrypt: bool = False
    cipher: str = 'gpg'
    passphrase: Optional[str] = None
    remote: Optional[RemoteTarget] = None
    notify_url: Optional[str] = None
    notify_token: Optional[str] = None
    retention_days: int = 14
    remove_run_dir: bool = True
    schedule: str = '0 0 * * *'
    assume_yes: bool = False

    @property
    def log_file(self) -> Path:
        return self.backup_root / LOG_FILE

    @property
    def lock_file(self) -> Path:
        return self.backup_root / LOCK_FILE

    @property
    def passphrase_file(self) -> Path:
        return self.secrets_dir / PASSPHRASE_FILE

    @property
    def credentials_file(self) -> Optional[Path]:
        """Client defaults file, only when it exists and is readable."""
        path = self.secrets_dir / CREDENTIALS_FILE
        if path.is_file() and os.access(path, os.R_OK):
            return path
        return None


def read_secret(path: Path) -> Optional[str]:
    """
    Read a single-line secret file.

    Returns:
        The stripped content, or None when the file is missing, unreadable or empty
    """
    try:
        with open(path, 'r') as f:
            value = f.read().strip()
    except OSError:
        return None
    return value or None


def _bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {raw!r}")


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"Invalid integer for {key}: {raw!r}")
    if value < 0:
        raise ConfigError(f"{key} must not be negative: {value}")
    return value


def _hostname() -> str:
    return socket.getfqdn() or socket.gethostname()


def load_config(environ: Optional[Mapping[str, str]] = None) -> RunConfig:
    """
    Build the RunConfig from environment variables and secret files.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        RunConfig instance

    Raises:
        ConfigError: If a value is malformed or the remote target is incomplete
    """
    env = os.environ if environ is None else environ
    cwd = Path.cwd()

    backup_root = Path(env.get('DB_BACKUP_DIR') or cwd / 'db_backups').expanduser().resolve()
    secrets_dir = Path(env.get('DB_BACKUP_SECRETS_DIR') or cwd).expanduser().resolve()

    # Encryption
    encrypt = _bool(env, 'DB_BACKUP_ENCRYPT', False)
    cipher = (env.get('DB_BACKUP_CIPHER') or 'gpg').strip().lower()
    if cipher not in CIPHERS:
        raise ConfigError(f"Invalid cipher: {cipher}. Valid options: {list(CIPHERS)}")
    passphrase = read_secret(secrets_dir / PASSPHRASE_FILE) if encrypt else None

    # Remote target
    remote = None
    if _bool(env, 'DB_BACKUP_REMOTE_ENABLED', False):
        remote_type = (env.get('DB_BACKUP_REMOTE_TYPE') or 'rclone').strip().lower()
        if remote_type not in REMOTE_TYPES:
            raise ConfigError(
                f"Invalid remote type: {remote_type}. Valid options: {list(REMOTE_TYPES)}"
            )
        remote_name = (env.get('DB_BACKUP_REMOTE_NAME') or '').strip()
        if not remote_name:
            raise ConfigError("Remote storage enabled but DB_BACKUP_REMOTE_NAME is empty")
        remote = RemoteTarget(
            type=remote_type,
            name=remote_name.rstrip(':'),
            path=(env.get('DB_BACKUP_REMOTE_PATH') or '').strip().strip('/'),
            key_file=env.get('DB_BACKUP_SFTP_KEY') or None,
            password=read_secret(secrets_dir / SFTP_PASSWORD_FILE) if remote_type == 'sftp' else None,
        )

    # Notifications
    notify_url = (env.get('DB_BACKUP_NOTIFY_URL') or '').strip() or None
    notify_token = read_secret(secrets_dir / NOTIFY_TOKEN_FILE) if notify_url else None

    return RunConfig(
        backup_root=backup_root,
        secrets_dir=secrets_dir,
        hostname=env.get('DB_BACKUP_HOSTNAME') or _hostname(),
        encrypt=encrypt,
        cipher=cipher,
        passphrase=passphrase,
        remote=remote,
        notify_url=notify_url,
        notify_token=notify_token,
        retention_days=_int(env, 'DB_BACKUP_KEEP_DAYS', 14),
        remove_run_dir=_bool(env, 'DB_BACKUP_REMOVE_RUN_DIR', True),
        schedule=env.get('DB_BACKUP_SCHEDULE') or '0 0 * * *',
        assume_yes=env.get('YES') == '1',
    )
