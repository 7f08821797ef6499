"""Fernet encryption for backup blobs and stored rollback data."""

from __future__ import annotations

from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

from sitemend.core.errors import BackupError


def get_or_create_key(sitemend_dir: Path) -> bytes:
    """Get existing Fernet key or create a new one."""
    key_file = sitemend_dir / "key"
    if key_file.exists():
        return key_file.read_bytes().strip()

    key = Fernet.generate_key()
    sitemend_dir.mkdir(parents=True, exist_ok=True)
    key_file.write_bytes(key)
    key_file.chmod(0o600)
    return key


def get_fernet(sitemend_dir: Path) -> Fernet:
    """Get a Fernet instance with the project's encryption key."""
    key = get_or_create_key(sitemend_dir)
    return Fernet(key)


class Sealer:
    """Encrypts or passes through blobs depending on configuration.

    The key is loaded once per instance instead of on every call.
    """

    def __init__(self, sitemend_dir: Path, enabled: bool = True):
        self.enabled = enabled
        self._fernet = get_fernet(sitemend_dir) if enabled else None

    def seal(self, data: bytes) -> bytes:
        if self._fernet is None:
            return data
        return self._fernet.encrypt(data)

    def open(self, token: bytes) -> bytes:
        if self._fernet is None:
            return token
        try:
            return self._fernet.decrypt(token)
        except InvalidToken as e:
            raise BackupError("encrypted blob cannot be decrypted with the project key") from e
