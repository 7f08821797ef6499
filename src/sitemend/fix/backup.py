"""Write-once snapshots of site resources taken before any fix mutates them.

Each snapshot is a directory under ``.sitemend/backups/<id>/`` holding a
``manifest.json`` and one blob per captured file. The manifest is written
once and never edited; releasing a snapshot drops a ``released`` marker
next to it, and only released snapshots are eligible for cleanup.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sitemend.core.config import BackupConfig
from sitemend.core.crypto import Sealer
from sitemend.core.errors import BackupError
from sitemend.core.models import RollbackResult
from sitemend.core.site import Site

logger = logging.getLogger(__name__)

MANIFEST = "manifest.json"
RELEASED_MARKER = "released"


@dataclass
class ResourceState:
    """Captured prior state of one file, directory or option."""

    kind: str  # file | dir | option
    present: bool
    mode: int | None = None
    blob: str | None = None
    sha256: str | None = None
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "present": self.present,
            "mode": self.mode,
            "blob": self.blob,
            "sha256": self.sha256,
            "value": self.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceState:
        return cls(
            kind=data["kind"],
            present=data["present"],
            mode=data.get("mode"),
            blob=data.get("blob"),
            sha256=data.get("sha256"),
            value=data.get("value"),
        )


@dataclass
class BackupSnapshot:
    id: str
    created_at: datetime
    label: str = ""
    encrypted: bool = True
    resource_map: dict[str, ResourceState] = field(default_factory=dict)
    option_map: dict[str, ResourceState] = field(default_factory=dict)
    released: bool = False

    @property
    def file_count(self) -> int:
        return sum(1 for s in self.resource_map.values() if s.kind == "file" and s.present)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "label": self.label,
            "encrypted": self.encrypted,
            "resources": {path: s.to_dict() for path, s in self.resource_map.items()},
            "options": {key: s.to_dict() for key, s in self.option_map.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], released: bool = False) -> BackupSnapshot:
        return cls(
            id=data["id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            label=data.get("label", ""),
            encrypted=data.get("encrypted", True),
            resource_map={p: ResourceState.from_dict(s) for p, s in data.get("resources", {}).items()},
            option_map={k: ResourceState.from_dict(s) for k, s in data.get("options", {}).items()},
            released=released,
        )


class BackupManager:
    """Creates, verifies, restores and prunes snapshots."""

    def __init__(self, site: Site, config: BackupConfig | None = None, backup_dir: Path | None = None):
        self.site = site
        self.config = config or BackupConfig()
        self.backup_dir = backup_dir or site.state_dir / "backups"
        self._sealers: dict[bool, Sealer] = {}

    def _sealer(self, encrypted: bool) -> Sealer:
        if encrypted not in self._sealers:
            self._sealers[encrypted] = Sealer(self.site.state_dir, enabled=encrypted)
        return self._sealers[encrypted]

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self, paths: list[str], option_keys: list[str] | None = None, label: str = "") -> BackupSnapshot:
        """Capture the current state of ``paths`` and ``option_keys``.

        Directories are captured recursively. Paths that do not exist are
        recorded as absent so a restore deletes anything the fix created.

        Raises:
            BackupError: if any resource cannot be read or the snapshot
                cannot be written. A partial snapshot directory is removed.
        """
        snap_id = f"{self.site.clock():%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"
        snap_dir = self.backup_dir / snap_id
        encrypted = self.config.encrypt
        sealer = self._sealer(encrypted)
        snapshot = BackupSnapshot(id=snap_id, created_at=self.site.clock(), label=label, encrypted=encrypted)

        try:
            snap_dir.mkdir(parents=True, exist_ok=False)
            (snap_dir / "blobs").mkdir()
            for path in self._expand(paths):
                snapshot.resource_map[path] = self._capture(path, snap_dir, len(snapshot.resource_map), sealer)
            for key in option_keys or []:
                options = self.site.options
                if options.has(key):
                    snapshot.option_map[key] = ResourceState(kind="option", present=True, value=options.get(key))
                else:
                    snapshot.option_map[key] = ResourceState(kind="option", present=False)
            (snap_dir / MANIFEST).write_text(json.dumps(snapshot.to_dict(), indent=2, default=str))
        except (OSError, TypeError, ValueError) as e:
            shutil.rmtree(snap_dir, ignore_errors=True)
            raise BackupError(f"snapshot failed: {e}") from e

        logger.debug("Snapshot %s captured %d resources", snap_id, len(snapshot.resource_map))
        return snapshot

    def _expand(self, paths: list[str]) -> list[str]:
        fs = self.site.fs
        expanded: list[str] = []
        seen: set[str] = set()
        for path in paths:
            clean = path.replace("\\", "/").strip("/")
            candidates = [clean]
            if fs.is_dir(clean):
                candidates.extend(fs.list_files(clean))
            for candidate in candidates:
                if candidate not in seen:
                    seen.add(candidate)
                    expanded.append(candidate)
        return expanded

    def _capture(self, path: str, snap_dir: Path, index: int, sealer: Sealer) -> ResourceState:
        fs = self.site.fs
        if not fs.exists(path):
            return ResourceState(kind="file", present=False)
        if fs.is_dir(path):
            return ResourceState(kind="dir", present=True, mode=fs.mode(path))

        content = fs.read(path)
        blob_name = f"{index:05d}.bin"
        (snap_dir / "blobs" / blob_name).write_bytes(sealer.seal(content))
        return ResourceState(
            kind="file",
            present=True,
            mode=fs.mode(path),
            blob=blob_name,
            sha256=hashlib.sha256(content).hexdigest(),
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, snapshot_id: str) -> BackupSnapshot:
        snap_dir = self.backup_dir / snapshot_id
        manifest = snap_dir / MANIFEST
        if not manifest.exists():
            raise BackupError(f"snapshot {snapshot_id} not found")
        try:
            data = json.loads(manifest.read_text())
        except (OSError, ValueError) as e:
            raise BackupError(f"snapshot {snapshot_id} manifest unreadable: {e}") from e
        return BackupSnapshot.from_dict(data, released=(snap_dir / RELEASED_MARKER).exists())

    def exists(self, snapshot_id: str) -> bool:
        return (self.backup_dir / snapshot_id / MANIFEST).exists()

    def list_snapshots(self) -> list[BackupSnapshot]:
        """All readable snapshots, newest first."""
        if not self.backup_dir.exists():
            return []
        snapshots = []
        for snap_dir in sorted(self.backup_dir.iterdir(), reverse=True):
            if not (snap_dir / MANIFEST).exists():
                continue
            try:
                snapshots.append(self.get(snap_dir.name))
            except BackupError as e:
                logger.warning("Skipping unreadable snapshot %s: %s", snap_dir.name, e)
        return snapshots

    def _blob(self, snapshot: BackupSnapshot, state: ResourceState) -> bytes:
        blob_path = self.backup_dir / snapshot.id / "blobs" / (state.blob or "")
        try:
            token = blob_path.read_bytes()
        except OSError as e:
            raise BackupError(f"blob {state.blob} missing from snapshot {snapshot.id}") from e
        content = self._sealer(snapshot.encrypted).open(token)
        if hashlib.sha256(content).hexdigest() != state.sha256:
            raise BackupError(f"blob {state.blob} in snapshot {snapshot.id} failed checksum")
        return content

    def verify(self, snapshot_id: str) -> bool:
        """Check every blob decrypts and matches its recorded checksum."""
        try:
            snapshot = self.get(snapshot_id)
            for state in snapshot.resource_map.values():
                if state.kind == "file" and state.present:
                    self._blob(snapshot, state)
        except BackupError as e:
            logger.warning("Snapshot %s failed verification: %s", snapshot_id, e)
            return False
        return True

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, snapshot_id: str) -> RollbackResult:
        """Put every captured resource back exactly as it was.

        Errors on individual resources are collected; the result is only
        successful when every resource was restored.
        """
        try:
            snapshot = self.get(snapshot_id)
        except BackupError as e:
            return RollbackResult(success=False, errors=[str(e)], message=str(e))

        fs = self.site.fs
        result = RollbackResult(success=True)
        items = sorted(snapshot.resource_map.items(), key=lambda kv: kv[0].count("/"))

        # Directories first so files have somewhere to land.
        for path, state in items:
            if state.kind == "dir" and state.present and not fs.exists(path):
                if not fs.mkdir(path):
                    result.errors.append(f"could not recreate directory {path}")

        for path, state in items:
            if state.kind != "file":
                continue
            if state.present:
                try:
                    content = self._blob(snapshot, state)
                except BackupError as e:
                    result.errors.append(str(e))
                    continue
                if not fs.write(path, content):
                    result.errors.append(f"could not write {path}")
                    continue
                if state.mode is not None and not fs.chmod(path, state.mode):
                    result.errors.append(f"could not restore mode of {path}")
                    continue
                result.restored.append(path)
            elif fs.exists(path):
                if fs.delete(path):
                    result.restored.append(path)
                else:
                    result.errors.append(f"could not remove {path}")

        # Directory modes last, deepest first, so restrictive modes do not block writes.
        for path, state in reversed(items):
            if state.kind == "dir" and state.present and state.mode is not None:
                if fs.chmod(path, state.mode):
                    result.restored.append(path)
                else:
                    result.errors.append(f"could not restore mode of {path}")

        options = self.site.options
        for key, state in snapshot.option_map.items():
            ok = options.set(key, state.value) if state.present else options.delete(key)
            if ok:
                result.restored.append(f"option:{key}")
            else:
                result.errors.append(f"could not restore option {key}")

        result.success = not result.errors
        result.message = (
            f"restored {len(result.restored)} resources from {snapshot_id}"
            if result.success
            else f"restore from {snapshot_id} incomplete: {len(result.errors)} errors"
        )
        return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def release(self, snapshot_id: str) -> None:
        """Mark a snapshot as no longer needed by an in-flight fix."""
        snap_dir = self.backup_dir / snapshot_id
        if snap_dir.exists():
            (snap_dir / RELEASED_MARKER).touch()

    def cleanup(self) -> int:
        """Delete released snapshots beyond retention or the count cap."""
        now = self.site.clock()
        cutoff = now - timedelta(days=self.config.retention_days)
        snapshots = self.list_snapshots()
        removed = 0

        for index, snapshot in enumerate(snapshots):
            if not snapshot.released:
                continue
            if index >= self.config.max_backups or snapshot.created_at < cutoff:
                shutil.rmtree(self.backup_dir / snapshot.id, ignore_errors=True)
                removed += 1

        if removed:
            logger.info("Removed %d old snapshot(s)", removed)
        return removed
