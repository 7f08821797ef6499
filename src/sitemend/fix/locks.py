"""In-flight guards for fixes and the maintenance lease.

Fixes run one at a time, but the engine still refuses to start a second
pipeline for a vulnerability (or a resource path) that already has one in
flight. That keeps the ordering guarantee intact when an engine is shared
between threads, or when a strategy re-enters the engine.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterator

from sitemend.core.errors import LeaseHeldError
from sitemend.core.site import Filesystem

logger = logging.getLogger(__name__)


class ResourceLocks:
    """Advisory, non-blocking locks keyed by vulnerability id and path."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._vulns: set[str] = set()
        self._paths: dict[str, str] = {}

    def try_acquire(self, vuln_id: str, paths: list[str]) -> str | None:
        """Claim the vulnerability and its paths.

        Returns ``None`` on success, or a description of what is busy.
        """
        normalized = {_norm(p) for p in paths}
        with self._lock:
            if vuln_id in self._vulns:
                return f"a fix for {vuln_id} is already in flight"
            for path in sorted(normalized):
                owner = self._paths.get(path)
                if owner is not None:
                    return f"{path} is being fixed for {owner}"
            self._vulns.add(vuln_id)
            for path in normalized:
                self._paths[path] = vuln_id
        return None

    def release(self, vuln_id: str) -> None:
        with self._lock:
            self._vulns.discard(vuln_id)
            for path in [p for p, owner in self._paths.items() if owner == vuln_id]:
                del self._paths[path]

    def busy(self, vuln_id: str) -> bool:
        with self._lock:
            return vuln_id in self._vulns

    @contextmanager
    def holding(self, vuln_id: str, paths: list[str]) -> Iterator[str | None]:
        """Context form of try_acquire; yields the busy reason or ``None``."""
        reason = self.try_acquire(vuln_id, paths)
        try:
            yield reason
        finally:
            if reason is None:
                self.release(vuln_id)


def _norm(path: str) -> str:
    return path.replace("\\", "/").strip("/").lower()


# ---------------------------------------------------------------------------
# Maintenance lease
# ---------------------------------------------------------------------------

MAINTENANCE_MARKER = ".maintenance"
_LEASE_RE = re.compile(r"//\s*sitemend-lease\s+(\{.*\})")


@dataclass
class Lease:
    owner: str
    acquired_at: datetime
    expires_at: datetime
    reason: str = ""

    def expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class MaintenanceLease:
    """Owner-stamped maintenance marker with an expiry.

    The marker doubles as the platform's maintenance-mode flag, so visitors
    see a maintenance page while it exists. Acquisition is check-then-write
    followed by a read-back; two processes racing inside that window can
    both write, and the read-back makes the loser raise LeaseHeldError.
    """

    def __init__(
        self,
        fs: Filesystem,
        clock: Callable[[], datetime] = datetime.now,
        ttl_seconds: int = 600,
    ):
        self.fs = fs
        self.clock = clock
        self.ttl = timedelta(seconds=ttl_seconds)

    def current(self) -> Lease | None:
        if not self.fs.exists(MAINTENANCE_MARKER):
            return None
        try:
            text = self.fs.read(MAINTENANCE_MARKER).decode("utf-8", errors="replace")
        except OSError:
            return None
        match = _LEASE_RE.search(text)
        if not match:
            # Foreign maintenance marker: treat as held until it goes away.
            return Lease(owner="unknown", acquired_at=self.clock(), expires_at=datetime.max)
        data = json.loads(match.group(1))
        return Lease(
            owner=data["owner"],
            acquired_at=datetime.fromisoformat(data["acquired_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            reason=data.get("reason", ""),
        )

    def acquire(self, owner: str, reason: str = "") -> Lease:
        now = self.clock()
        existing = self.current()
        if existing is not None and existing.owner != owner and not existing.expired(now):
            raise LeaseHeldError(
                f"maintenance lease held by {existing.owner} until {existing.expires_at:%H:%M:%S}"
            )
        if existing is not None and existing.owner != owner:
            logger.warning("Taking over expired maintenance lease from %s", existing.owner)

        lease = Lease(owner=owner, acquired_at=now, expires_at=now + self.ttl, reason=reason)
        payload = json.dumps({
            "owner": lease.owner,
            "acquired_at": lease.acquired_at.isoformat(),
            "expires_at": lease.expires_at.isoformat(),
            "reason": lease.reason,
        })
        marker = f"<?php $upgrading = {int(now.timestamp())}; // sitemend-lease {payload}\n"
        if not self.fs.write(MAINTENANCE_MARKER, marker.encode("utf-8")):
            raise LeaseHeldError("could not write maintenance marker")

        confirmed = self.current()
        if confirmed is None or confirmed.owner != owner:
            raise LeaseHeldError("maintenance lease was taken by a concurrent operation")
        return lease

    def release(self, owner: str) -> bool:
        existing = self.current()
        if existing is None:
            return True
        if existing.owner != owner:
            logger.warning("Not releasing maintenance lease owned by %s", existing.owner)
            return False
        return self.fs.delete(MAINTENANCE_MARKER)

    @contextmanager
    def held(self, owner: str, reason: str = "") -> Iterator[Lease]:
        lease = self.acquire(owner, reason)
        try:
            yield lease
        finally:
            if not self.release(owner):
                logger.error("Maintenance marker could not be removed; site may stay in maintenance mode")
