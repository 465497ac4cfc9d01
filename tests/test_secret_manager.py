import os
import stat
import sys

import pytest
from cryptography.fernet import Fernet

from forgewatch_engine.exceptions import JobConfigError
from forgewatch_engine.secret_manager import SecretManager


@pytest.fixture
def key():
    return Fernet.generate_key().decode("ascii")


def test_encrypt_and_decrypt(key):
    manager = SecretManager(key=key)
    cipher = manager.encrypt("glpat-123")
    assert cipher.startswith("enc:")
    assert "glpat-123" not in cipher
    assert manager.decrypt(cipher) == "glpat-123"


def test_encrypt_is_idempotent(key):
    manager = SecretManager(key=key)
    cipher = manager.encrypt("value")
    assert manager.encrypt(cipher) == cipher
    assert manager.encrypt("") == ""


def test_plain_values_pass_through(key):
    manager = SecretManager(key=key)
    assert manager.decrypt("legacy-plain-token") == "legacy-plain-token"
    assert manager.decrypt(None) is None


def test_wrong_key_is_a_config_error(key):
    cipher = SecretManager(key=key).encrypt("value")
    other = SecretManager(key=Fernet.generate_key().decode("ascii"))
    with pytest.raises(JobConfigError):
        other.decrypt(cipher)


def test_invalid_or_missing_key(tmp_path):
    with pytest.raises(JobConfigError):
        SecretManager(key="not-a-fernet-key")
    with pytest.raises(JobConfigError):
        SecretManager()


def test_key_file_is_created_once(tmp_path):
    key_file = tmp_path / "data" / "secret.key"
    first = SecretManager(key_file=key_file)
    cipher = first.encrypt("shared")
    assert key_file.exists()
    assert SecretManager(key_file=key_file).decrypt(cipher) == "shared"


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
def test_key_file_is_private(tmp_path):
    key_file = tmp_path / "secret.key"
    SecretManager(key_file=key_file)
    assert stat.S_IMODE(os.stat(key_file).st_mode) == 0o600
