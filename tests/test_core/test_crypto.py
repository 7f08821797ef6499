"""Tests for key management and blob sealing."""

from __future__ import annotations

import stat
from pathlib import Path

import pytest

from sitemend.core.crypto import Sealer, get_or_create_key
from sitemend.core.errors import BackupError


class TestKey:
    def test_key_created_once(self, tmp_path: Path):
        """The same key is returned on every call."""
        first = get_or_create_key(tmp_path)
        second = get_or_create_key(tmp_path)
        assert first == second

    def test_key_file_private(self, tmp_path: Path):
        """The key file is only readable by its owner."""
        get_or_create_key(tmp_path)
        mode = stat.S_IMODE((tmp_path / "key").stat().st_mode)
        assert mode == 0o600


class TestSealer:
    def test_encrypts(self, tmp_path: Path):
        """Sealed bytes differ from the plaintext and open back to it."""
        sealer = Sealer(tmp_path)
        token = sealer.seal(b"define('DB_PASSWORD', 'secret');")
        assert b"secret" not in token
        assert sealer.open(token) == b"define('DB_PASSWORD', 'secret');"

    def test_disabled_passes_through(self, tmp_path: Path):
        """With encryption off, bytes are stored as-is."""
        sealer = Sealer(tmp_path, enabled=False)
        assert sealer.seal(b"abc") == b"abc"
        assert not (tmp_path / "key").exists()

    def test_wrong_key(self, tmp_path: Path):
        """A blob sealed under another key cannot be opened."""
        other = tmp_path / "other"
        token = Sealer(other).seal(b"abc")
        with pytest.raises(BackupError):
            Sealer(tmp_path).open(token)
