import os
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .exceptions import JobConfigError
from .logger_setup import logger

ENCRYPTED_PREFIX = "enc:"
KEY_FILE_NAME = "secret.key"


class SecretManager:
    """Encrypts job credentials at rest.

    Values are stored as ``enc:<fernet token>``. Anything without the prefix is
    treated as a legacy plain value and returned unchanged by ``decrypt``.
    """

    def __init__(self, key: Optional[str] = None, key_file: Optional[Path] = None):
        if not key and key_file:
            key = self._load_or_create_key(Path(key_file))
        if not key:
            raise JobConfigError("No encryption key configured (set FORGEWATCH_ENCRYPTION_KEY or a key file)")
        try:
            self._fernet = Fernet(key.encode("ascii") if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise JobConfigError(f"Invalid encryption key: {e}")

    @staticmethod
    def _load_or_create_key(key_file: Path) -> str:
        if key_file.exists():
            return key_file.read_text(encoding="ascii").strip()
        key_file.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key().decode("ascii")
        key_file.write_text(key, encoding="ascii")
        try:
            os.chmod(key_file, 0o600)
        except OSError:
            logger.warning(f"Could not restrict permissions on {key_file}")
        logger.info(f"Generated new encryption key at {key_file}")
        return key

    @staticmethod
    def is_encrypted(value: Optional[str]) -> bool:
        return isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)

    def encrypt(self, text: str) -> str:
        if not text or self.is_encrypted(text):
            return text
        token = self._fernet.encrypt(text.encode("utf-8")).decode("ascii")
        return f"{ENCRYPTED_PREFIX}{token}"

    def decrypt(self, cipher: Optional[str]) -> Optional[str]:
        if not self.is_encrypted(cipher):
            return cipher
        try:
            return self._fernet.decrypt(cipher[len(ENCRYPTED_PREFIX):].encode("ascii")).decode("utf-8")
        except InvalidToken:
            raise JobConfigError("Stored secret cannot be decrypted with the configured key")
