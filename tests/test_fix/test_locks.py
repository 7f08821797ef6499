"""Tests for resource locks, the maintenance lease and fix deadlines."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

import pytest

from sitemend.core.errors import FixCancelledError, FixTimeoutError, LeaseHeldError
from sitemend.fix.deadline import CancelToken, Deadline
from sitemend.fix.locks import MAINTENANCE_MARKER, MaintenanceLease, ResourceLocks

START = datetime(2026, 3, 7, 22, 0)


class TestResourceLocks:
    def test_acquire_and_release(self):
        """A released vulnerability can be claimed again."""
        locks = ResourceLocks()
        assert locks.try_acquire("v1", ["wp-config.php"]) is None
        assert locks.busy("v1")
        locks.release("v1")
        assert not locks.busy("v1")
        assert locks.try_acquire("v1", ["wp-config.php"]) is None

    def test_same_vulnerability_busy(self):
        """A second pipeline for the same vulnerability is refused."""
        locks = ResourceLocks()
        locks.try_acquire("v1", [])
        reason = locks.try_acquire("v1", [])
        assert reason is not None
        assert "already in flight" in reason

    def test_overlapping_paths_busy(self):
        """Two vulnerabilities touching the same path cannot run together."""
        locks = ResourceLocks()
        locks.try_acquire("v1", ["WP-Config.php"])
        reason = locks.try_acquire("v2", ["/wp-config.php"])
        assert reason == "wp-config.php is being fixed for v1"
        assert not locks.busy("v2")

    def test_holding_releases(self):
        """The context manager releases on exit, even after an error."""
        locks = ResourceLocks()
        with pytest.raises(RuntimeError):
            with locks.holding("v1", ["a.php"]) as reason:
                assert reason is None
                raise RuntimeError("boom")
        assert not locks.busy("v1")

    def test_holding_busy_does_not_release_owner(self):
        """A refused claim leaves the original holder in place."""
        locks = ResourceLocks()
        locks.try_acquire("v1", ["a.php"])
        with locks.holding("v1", ["a.php"]) as reason:
            assert reason is not None
        assert locks.busy("v1")


class TestMaintenanceLease:
    def test_acquire_writes_marker(self, site, site_root):
        """Acquiring writes a maintenance marker naming the owner."""
        lease = MaintenanceLease(site.fs, clock=lambda: START)
        acquired = lease.acquire("fix-1", reason="core update")
        assert (site_root / MAINTENANCE_MARKER).exists()
        assert acquired.expires_at == START + timedelta(seconds=600)
        current = lease.current()
        assert current.owner == "fix-1"
        assert current.reason == "core update"

    def test_held_by_other_owner(self, site):
        """A live lease held by someone else blocks acquisition."""
        lease = MaintenanceLease(site.fs, clock=lambda: START)
        lease.acquire("fix-1")
        with pytest.raises(LeaseHeldError):
            lease.acquire("fix-2")

    def test_reacquire_by_owner(self, site):
        """The owner may refresh its own lease."""
        lease = MaintenanceLease(site.fs, clock=lambda: START)
        lease.acquire("fix-1")
        assert lease.acquire("fix-1").owner == "fix-1"

    def test_expired_lease_taken_over(self, site, caplog):
        """An expired lease is taken over with a warning."""
        now = [START]
        lease = MaintenanceLease(site.fs, clock=lambda: now[0], ttl_seconds=60)
        lease.acquire("fix-1")
        now[0] = START + timedelta(minutes=5)
        with caplog.at_level(logging.WARNING, logger="sitemend"):
            assert lease.acquire("fix-2").owner == "fix-2"
        assert "expired maintenance lease" in caplog.text

    def test_foreign_marker_blocks(self, site, site_root):
        """A maintenance marker not written by us is treated as held."""
        (site_root / MAINTENANCE_MARKER).write_text("<?php $upgrading = 1700000000;\n")
        lease = MaintenanceLease(site.fs, clock=lambda: START)
        assert lease.current().owner == "unknown"
        with pytest.raises(LeaseHeldError):
            lease.acquire("fix-1")

    def test_release_only_by_owner(self, site, site_root):
        """Only the owner removes the marker."""
        lease = MaintenanceLease(site.fs, clock=lambda: START)
        lease.acquire("fix-1")
        assert lease.release("fix-2") is False
        assert (site_root / MAINTENANCE_MARKER).exists()
        assert lease.release("fix-1") is True
        assert not (site_root / MAINTENANCE_MARKER).exists()

    def test_release_without_lease(self, site):
        """Releasing when nothing is held succeeds."""
        assert MaintenanceLease(site.fs).release("fix-1") is True

    def test_held_context(self, site, site_root):
        """The marker exists only inside the context."""
        lease = MaintenanceLease(site.fs, clock=lambda: START)
        with pytest.raises(ValueError):
            with lease.held("fix-1"):
                assert (site_root / MAINTENANCE_MARKER).exists()
                raise ValueError("apply failed")
        assert not (site_root / MAINTENANCE_MARKER).exists()


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestDeadline:
    def test_within_budget(self):
        """Checks pass while time remains."""
        clock = _FakeClock()
        deadline = Deadline(10, clock=clock)
        clock.now += 4
        deadline.check("backup")
        assert deadline.remaining() == 6
        assert not deadline.expired

    def test_expired_raises(self):
        """Checks past the budget raise a timeout naming the step."""
        clock = _FakeClock()
        deadline = Deadline(10, clock=clock)
        clock.now += 10
        with pytest.raises(FixTimeoutError, match="during apply"):
            deadline.check("apply")
        assert deadline.remaining() == 0.0

    def test_unbounded(self):
        """A deadline without a budget never expires."""
        deadline = Deadline(None)
        assert deadline.remaining() is None
        deadline.check()

    def test_cancelled_token(self):
        """A cancelled token aborts at the next check."""
        token = CancelToken()
        deadline = Deadline(None, token=token)
        deadline.check()
        token.cancel()
        assert token.cancelled
        with pytest.raises(FixCancelledError):
            deadline.check("validate")
