"""Tests for vulnerability parsing, rollback data tagging and batch reports."""

from __future__ import annotations

from datetime import datetime

import pytest

from sitemend.core.errors import ValidationError
from sitemend.core.models import (
    BatchReport,
    CodeRollback,
    ConfigRollback,
    CoreRollback,
    FixRecord,
    FixStatus,
    Outcome,
    PermissionsRollback,
    Severity,
    ValidationResult,
    VulnStatus,
    Vulnerability,
    normalize_type,
    rollback_from_dict,
    rollback_to_dict,
)


def _make_record(outcome: Outcome | None, error: str | None = None) -> FixRecord:
    return FixRecord(vulnerability_id="v1", outcome=outcome, error=error)


class TestSeverity:
    def test_buckets(self):
        """Scores bucket at 9, 7, 4 and 0.1."""
        assert Severity.from_score(9.0) == Severity.CRITICAL
        assert Severity.from_score(8.99) == Severity.HIGH
        assert Severity.from_score(7.0) == Severity.HIGH
        assert Severity.from_score(6.9) == Severity.MEDIUM
        assert Severity.from_score(4.0) == Severity.MEDIUM
        assert Severity.from_score(3.9) == Severity.LOW
        assert Severity.from_score(0.1) == Severity.LOW
        assert Severity.from_score(0.0) == Severity.INFO

    def test_rank_order(self):
        """Critical outranks every other level."""
        ranks = [s.rank for s in (Severity.INFO, Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL)]
        assert ranks == sorted(ranks)


class TestNormalizeType:
    def test_dashes_and_case(self):
        """Type keys are lowercase with underscores."""
        assert normalize_type("SQL-Injection") == "sql_injection"
        assert normalize_type(" file permissions ") == "file_permissions"


class TestVulnerabilityFromDict:
    def test_minimal_record(self):
        """Only id and type are required."""
        vuln = Vulnerability.from_dict({"id": 7, "type": "xss"})
        assert vuln.id == "7"
        assert vuln.severity == Severity.MEDIUM
        assert vuln.confidence == 0.8
        assert vuln.status == VulnStatus.OPEN
        assert vuln.affected_resources == []

    def test_full_record(self):
        """All detector fields are carried over."""
        vuln = Vulnerability.from_dict({
            "id": "v-1",
            "type": "sql-injection",
            "category": "Injection",
            "severity": "CRITICAL",
            "confidence": 0.95,
            "affected_resources": "wp-admin/admin.php",
            "detected_at": "2026-03-01T10:00:00",
            "fix_available": "6.4.2",
            "metadata": {"queries": 3},
        })
        assert vuln.type_key == "sql_injection"
        assert vuln.category_key == "injection"
        assert vuln.severity == Severity.CRITICAL
        assert vuln.affected_resources == ["wp-admin/admin.php"]
        assert vuln.detected_at == datetime(2026, 3, 1, 10, 0)
        assert vuln.metadata == {"queries": 3}

    @pytest.mark.parametrize(
        "data",
        [
            {"type": "xss"},
            {"id": "v1"},
            {"id": "v1", "type": "xss", "severity": "catastrophic"},
            {"id": "v1", "type": "xss", "confidence": 1.5},
            {"id": "v1", "type": "xss", "confidence": "very"},
            {"id": "v1", "type": "xss", "affected_resources": {"a": 1}},
            {"id": "v1", "type": "xss", "detected_at": "yesterday"},
            {"id": "v1", "type": "xss", "status": "maybe"},
        ],
    )
    def test_rejects_malformed(self, data):
        """Malformed records raise ValidationError."""
        with pytest.raises(ValidationError):
            Vulnerability.from_dict(data)

    def test_rejects_non_object(self):
        """A list is not a vulnerability record."""
        with pytest.raises(ValidationError):
            Vulnerability.from_dict(["v1", "xss"])  # type: ignore[arg-type]

    def test_to_dict_round_trip(self):
        """to_dict output parses back to an equal record."""
        vuln = Vulnerability(id="v1", type="xss", affected_resources=["a.php"], detected_at=datetime(2026, 1, 1))
        assert Vulnerability.from_dict(vuln.to_dict()) == vuln


class TestRollbackData:
    def test_tagged_serialization(self):
        """Each variant carries its kind tag and restores to the same type."""
        samples = [
            ConfigRollback(files={"wp-config.php": b"<?php\n", ".htaccess": None}, options={"a": 1}, absent_options=["b"]),
            CoreRollback(files={"wp-includes/version.php": b"\x00\xff"}, previous_version="6.4.1"),
            PermissionsRollback(modes={"wp-config.php": 0o644}, created=["wp-content/uploads/.htaccess"]),
            CodeRollback(files={"a.php": b"x"}, quarantined={"a.php": "/q/a.php"}),
        ]
        for sample in samples:
            data = rollback_to_dict(sample)
            assert data["kind"] == sample.kind.value
            assert rollback_from_dict(data) == sample

    def test_unknown_kind(self):
        """An unknown tag is rejected."""
        with pytest.raises(ValidationError):
            rollback_from_dict({"kind": "plugin_update"})

    def test_is_empty(self):
        """Empty rollback data reports itself empty."""
        assert ConfigRollback().is_empty
        assert not PermissionsRollback(modes={"a": 0o644}).is_empty


class TestValidationResult:
    def test_record_failure_adds_issue(self):
        """A failed test appends its message to issues_found."""
        result = ValidationResult(is_valid=True, confidence=80)
        result.record("site_responding", False, "Site down")
        result.record("syntax", True)
        assert result.issues_found == ["Site down"]
        assert result.validation_tests["syntax"].passed

    def test_round_trip(self):
        """to_dict output rebuilds an equal result."""
        result = ValidationResult(is_valid=False, confidence=40)
        result.record("a", False, "bad")
        assert ValidationResult.from_dict(result.to_dict()) == result


class TestFixRecord:
    def test_duration(self):
        """Duration is None until the record finishes."""
        record = FixRecord(vulnerability_id="v1", start_time=datetime(2026, 1, 1, 10, 0, 0))
        assert record.duration is None
        record.end_time = datetime(2026, 1, 1, 10, 0, 5)
        assert record.duration == 5.0

    def test_terminal_statuses(self):
        """Pending and applied are the only non-terminal statuses."""
        assert not FixStatus.PENDING.is_terminal
        assert not FixStatus.APPLIED.is_terminal
        assert FixStatus.VALIDATED.is_terminal
        assert FixStatus.ROLLBACK_FAILED.is_terminal


class TestBatchReport:
    def test_counts_sum_to_total(self):
        """Every outcome lands in exactly one bucket."""
        report = BatchReport()
        for outcome in (
            Outcome.AUTO_FIXED,
            Outcome.MANUAL_REQUIRED,
            Outcome.SKIPPED,
            Outcome.FAILED,
            Outcome.ROLLBACK_FAILED,
        ):
            report.add(_make_record(outcome))
        assert report.total_processed == 5
        assert report.auto_fixed + report.manual_required + report.failed + report.skipped == 5
        assert report.failed == 2
        assert report.rollback_failed == 1

    def test_errors_collected(self):
        """Record errors are prefixed with the vulnerability id."""
        report = BatchReport()
        report.add(_make_record(Outcome.FAILED, error="boom"))
        assert report.errors == ["v1: boom"]

    def test_worst_outcome(self):
        """Rollback failure is the most urgent outcome."""
        report = BatchReport()
        assert report.worst_outcome is None
        report.add(_make_record(Outcome.AUTO_FIXED))
        report.add(_make_record(Outcome.ROLLBACK_FAILED))
        report.add(_make_record(Outcome.FAILED))
        assert report.worst_outcome == Outcome.ROLLBACK_FAILED
