"""
Unit tests for archive encryptors (dbbackup/backup/encryption.py).
"""

import io
import os
import shutil
import subprocess
import tarfile
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from dbbackup.backup.compression import GzipCompressor, create_archive
from dbbackup.backup.encryption import AesGcmEncryptor, GpgEncryptor, create_encryptor
from dbbackup.backup.verification import expected_members, verify_archive
from dbbackup.exceptions import EncryptionError, MissingSecretError, VerificationError


needs_gpg = pytest.mark.skipif(shutil.which('gpg') is None, reason="gpg is not installed")


@pytest.fixture
def gnupg_home(tmp_path, monkeypatch):
    """Throwaway GNUPGHOME so gpg never touches the real keyrings or agent."""
    home = tmp_path / 'gnupg'
    home.mkdir()
    home.chmod(0o700)
    monkeypatch.setenv('GNUPGHOME', str(home))
    yield home
    if shutil.which('gpgconf'):
        for used in tmp_path.glob('gnupg*'):
            subprocess.run(
                ['gpgconf', '--kill', 'gpg-agent'],
                env=dict(os.environ, GNUPGHOME=str(used)),
                capture_output=True,
            )


class TestCreateEncryptor:
    """Test encryptor selection from the configuration."""

    def test_disabled(self, run_config):
        """Test no encryptor when encryption is off."""
        assert create_encryptor(run_config) is None

    def test_missing_passphrase(self, run_config):
        """Test enabling encryption without a passphrase is a config error."""
        config = replace(run_config, encrypt=True)

        with pytest.raises(MissingSecretError) as exc_info:
            create_encryptor(config)

        assert exc_info.value.exit_code == 2
        assert str(config.passphrase_file) in str(exc_info.value)

    def test_gpg_by_default(self, run_config):
        """Test gpg is the default cipher."""
        encryptor = create_encryptor(replace(run_config, encrypt=True, passphrase='pw'))

        assert isinstance(encryptor, GpgEncryptor)
        assert encryptor.extension == '.gpg'

    def test_aes_gcm(self, encrypted_config):
        """Test the in-process cipher is selectable."""
        encryptor = create_encryptor(encrypted_config)

        assert isinstance(encryptor, AesGcmEncryptor)
        assert encryptor.extension == '.enc'


class TestGpgEncryptor:
    """Test the gpg command line, with gpg itself mocked."""

    @patch('dbbackup.backup.encryption.subprocess.Popen')
    def test_encrypt_command(self, mock_popen):
        """Test symmetric AES256 and passphrase delivery through a descriptor."""
        delivered = {}

        def start(cmd, **kwargs):
            fd = kwargs['pass_fds'][0]
            delivered['passphrase'] = os.read(fd, 100)
            delivered['cmd'] = cmd
            proc = MagicMock()
            proc.wait.return_value = 0
            proc.returncode = 0
            return proc

        mock_popen.side_effect = start

        GpgEncryptor('top-secret').encrypt(io.BytesIO(b'data'), io.BytesIO())

        cmd = delivered['cmd']
        assert cmd[0] == 'gpg'
        assert '--symmetric' in cmd
        assert cmd[cmd.index('--cipher-algo') + 1] == 'AES256'
        assert '--batch' in cmd
        assert 'top-secret' not in ' '.join(cmd)
        assert delivered['passphrase'] == b'top-secret\n'

    @patch('dbbackup.backup.encryption.subprocess.Popen')
    def test_encrypt_failure(self, mock_popen):
        """Test a non-zero gpg exit raises EncryptionError."""
        proc = MagicMock()
        proc.wait.return_value = 2
        proc.returncode = 2
        mock_popen.return_value = proc

        with pytest.raises(EncryptionError, match="gpg exited 2"):
            GpgEncryptor('pw').encrypt(io.BytesIO(b'data'), io.BytesIO())

    @patch('dbbackup.backup.encryption.subprocess.Popen', side_effect=FileNotFoundError('gpg'))
    def test_gpg_not_installed(self, mock_popen):
        """Test a missing gpg binary raises EncryptionError."""
        with pytest.raises(EncryptionError, match="Failed to start gpg"):
            GpgEncryptor('pw').encrypt(io.BytesIO(b'data'), io.BytesIO())

    @patch('dbbackup.backup.encryption.subprocess.Popen')
    def test_decrypt_yields_stdout(self, mock_popen, tmp_path):
        """Test decryption streams gpg's stdout."""
        proc = MagicMock()
        proc.stdout = io.BytesIO(b'plaintext')
        proc.wait.return_value = 0
        proc.returncode = 0
        mock_popen.return_value = proc
        archive = tmp_path / 'a.tar.gz.gpg'

        with GpgEncryptor('pw').decrypt(archive) as stream:
            assert stream.read() == b'plaintext'

        cmd = mock_popen.call_args[0][0]
        assert cmd[-2:] == ['--decrypt', str(archive)]

    @patch('dbbackup.backup.encryption.subprocess.Popen')
    def test_decrypt_failure(self, mock_popen, tmp_path):
        """Test a failed decryption raises after the stream is consumed."""
        proc = MagicMock()
        proc.stdout = io.BytesIO(b'')
        proc.wait.return_value = 2
        proc.returncode = 2
        mock_popen.return_value = proc

        with pytest.raises(EncryptionError, match="gpg exited 2"):
            with GpgEncryptor('pw').decrypt(tmp_path / 'a.gpg') as stream:
                stream.read()


    @patch('dbbackup.backup.encryption.subprocess.Popen')
    def test_unreadable_output_after_gpg_failure(self, mock_popen, tmp_path):
        """Test a reader error is reported as a gpg failure when gpg exited non-zero."""
        proc = MagicMock()
        proc.stdout = io.BytesIO(b'')
        proc.wait.return_value = 2
        proc.returncode = 2
        mock_popen.return_value = proc

        with pytest.raises(EncryptionError, match="gpg exited 2"):
            with GpgEncryptor('pw').decrypt(tmp_path / 'a.gpg'):
                raise tarfile.ReadError("empty file")

        proc.kill.assert_not_called()

    @patch('dbbackup.backup.encryption.subprocess.Popen')
    def test_reader_error_kept_when_gpg_succeeds(self, mock_popen, tmp_path):
        """Test a reader error is re-raised when gpg itself did not fail."""
        proc = MagicMock()
        proc.stdout = io.BytesIO(b'plaintext')
        proc.wait.return_value = 0
        proc.returncode = 0
        mock_popen.return_value = proc

        with pytest.raises(tarfile.ReadError):
            with GpgEncryptor('pw').decrypt(tmp_path / 'a.gpg'):
                raise tarfile.ReadError("not a gzip file")

class TestAesGcmEncryptor:
    """Test the in-process encryptor."""

    def test_encrypt_then_decrypt(self, aes_encryptor, tmp_path):
        """Test a file encrypted to disk reads back through decrypt()."""
        data = os.urandom(200 * 1024)
        path = tmp_path / 'a.tar.gz.enc'
        with open(path, 'wb') as out:
            aes_encryptor.encrypt(io.BytesIO(data), out)

        with aes_encryptor.decrypt(path) as stream:
            assert stream.read() == data

    def test_decrypt_missing_file(self, aes_encryptor, tmp_path):
        """Test a missing file raises EncryptionError."""
        with pytest.raises(EncryptionError, match="Cannot open"):
            with aes_encryptor.decrypt(tmp_path / 'missing.enc'):
                pass

    def test_decrypt_wrong_passphrase(self, aes_encryptor, tmp_path):
        """Test a wrong passphrase surfaces as EncryptionError while reading."""
        path = tmp_path / 'a.enc'
        with open(path, 'wb') as out:
            aes_encryptor.encrypt(io.BytesIO(b'secret dump'), out)

        other = AesGcmEncryptor('different_passphrase', iterations=1000)
        with pytest.raises(EncryptionError, match="Decryption failed"):
            with other.decrypt(path) as stream:
                stream.read()


@needs_gpg
class TestGpgRoundTrip:
    """Test archives encrypted and verified with a real gpg binary."""

    def test_archive_verifies(self, gnupg_home, run_dir, tmp_path):
        """Test a gpg-encrypted archive decrypts and lists every dump."""
        archive = create_archive(run_dir, tmp_path / 'a.tar.gz.gpg', GzipCompressor(), GpgEncryptor('gpg-pass'))
        expected = expected_members(run_dir)

        members = verify_archive(archive, GpgEncryptor('gpg-pass'), expected)

        assert set(expected) <= set(members)
        assert archive.read_bytes()[:2] != b'\x1f\x8b'

    def test_wrong_passphrase(self, gnupg_home, run_dir, tmp_path, monkeypatch):
        """Test a wrong passphrase fails verification as a decryption error."""
        archive = create_archive(run_dir, tmp_path / 'a.tar.gz.gpg', GzipCompressor(), GpgEncryptor('gpg-pass'))
        # Fresh home so no agent state from encrypting carries over
        other_home = tmp_path / 'gnupg-other'
        other_home.mkdir()
        other_home.chmod(0o700)
        monkeypatch.setenv('GNUPGHOME', str(other_home))

        with pytest.raises(VerificationError, match="could not be decrypted"):
            verify_archive(archive, GpgEncryptor('not-the-pass'), expected_members(run_dir))
