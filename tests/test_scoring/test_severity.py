"""Tests for severity scoring, composite risk and trends."""

from __future__ import annotations

import pytest

from sitemend.core.models import Severity, Vulnerability
from sitemend.scoring.severity import (
    MAX_CONTEXT_MULTIPLIER,
    MIN_CONTEXT_MULTIPLIER,
    ResourceContext,
    SeverityResult,
    TYPE_METRICS,
    base_score,
    calculate_composite_risk,
    calculate_risk_trend,
    calculate_severity,
    context_multiplier,
    metrics_for,
)

ADMIN_CONFIG = ResourceContext(file_type="config", location="admin")


def _make_vuln(vuln_type: str, confidence: float = 0.8) -> Vulnerability:
    return Vulnerability(id=f"v-{vuln_type}", type=vuln_type, confidence=confidence)


def _make_result(final: float) -> SeverityResult:
    return SeverityResult(
        severity=Severity.from_score(final),
        cvss_score=final,
        adjusted_score=final,
        final_score=final,
        risk_score=final * 10,
        confidence=1.0,
    )


class TestBaseScore:
    def test_sql_injection_base(self):
        """High C/I/A over the network with no privileges scores near 9.8."""
        base, impact, exploitability = base_score(metrics_for("sql_injection"))
        assert round(base, 1) == 9.8
        assert impact > 5.8
        assert exploitability > 3.8

    def test_no_impact_scores_zero(self):
        """A type with no impact has a zero base score."""
        from sitemend.scoring.severity import Metrics

        base, impact, _ = base_score(Metrics(confidentiality="none", integrity="none", availability="none"))
        assert base == 0.0
        assert impact == 0.0

    def test_dash_and_underscore_types_match(self):
        """sql-injection and sql_injection use the same metrics."""
        assert metrics_for("sql-injection") is TYPE_METRICS["sql_injection"]


class TestContextMultiplier:
    def test_none_context(self):
        """No context means no scaling."""
        assert context_multiplier("xss", None) == 1.0

    def test_clamped_high(self):
        """Stacked factors never exceed the upper clamp."""
        ctx = ResourceContext(file_type="config", location="admin", data_access={"database", "user_data"}, exposure="public")
        assert context_multiplier("sql_injection", ctx) == MAX_CONTEXT_MULTIPLIER

    def test_clamped_low(self):
        """Dampening factors never go below the lower clamp."""
        ctx = ResourceContext(file_type="upload", location="cron", exposure="internal")
        assert context_multiplier("xss", ctx) >= MIN_CONTEXT_MULTIPLIER

    def test_type_specific_factor(self):
        """Heavy SQL usage raises SQL injection scores only."""
        ctx = ResourceContext(sql_queries=10)
        assert context_multiplier("sql_injection", ctx) == pytest.approx(1.2)
        assert context_multiplier("xss", ctx) == 1.0

    def test_from_path(self):
        """File type and location are inferred from the path."""
        ctx = ResourceContext.from_path("wp-admin/wp-config.php")
        assert ctx.file_type == "config"
        assert ctx.location == "admin"

        plugin = ResourceContext.from_path("wp-content/plugins/shop/api/orders.php")
        assert plugin.file_type == "plugin"
        assert plugin.location == "api"

        upload = ResourceContext.from_path("wp-content/uploads/2026/x.php", exposure="public")
        assert upload.file_type == "upload"
        assert upload.exposure == "public"


class TestCalculateSeverity:
    def test_sql_injection_in_admin_config_is_critical(self):
        """SQL injection in an admin-area config file is critical at high confidence."""
        result = calculate_severity(_make_vuln("sql-injection", confidence=0.95), ADMIN_CONFIG)
        assert result.severity == Severity.CRITICAL
        assert result.final_score >= 9.0
        assert result.adjusted_score == 10.0

    def test_default_confidence_caps_at_eight(self):
        """With confidence 0.8 the capped score tops out at 8.0."""
        result = calculate_severity(_make_vuln("sql-injection", confidence=0.8), ADMIN_CONFIG)
        assert result.final_score == 8.0
        assert result.severity == Severity.HIGH
        assert result.risk_score == 80.0

    def test_xss_scores_lower_than_sql_injection(self):
        """XSS in the same place lands in a lower bucket."""
        sqli = calculate_severity(_make_vuln("sql-injection", confidence=0.95), ADMIN_CONFIG)
        xss = calculate_severity(_make_vuln("xss", confidence=0.95), ADMIN_CONFIG)
        assert xss.final_score < sqli.final_score
        assert xss.severity in (Severity.MEDIUM, Severity.HIGH)

    def test_xss_default_confidence(self):
        """XSS at the default confidence is medium or high."""
        result = calculate_severity(_make_vuln("xss"), ADMIN_CONFIG)
        assert result.severity in (Severity.MEDIUM, Severity.HIGH)

    def test_monotonic_in_confidence(self):
        """Raising confidence never lowers the score."""
        scores = [
            calculate_severity(_make_vuln("file_inclusion", confidence=c / 10), ADMIN_CONFIG).final_score
            for c in range(0, 11)
        ]
        assert scores == sorted(scores)

    def test_scores_stay_in_range(self):
        """Every type and context keeps scores within 0..10 and risk within 0..100."""
        contexts = [None, ADMIN_CONFIG, ResourceContext(file_type="upload", location="cron")]
        for vuln_type in [*TYPE_METRICS, "unheard_of"]:
            for ctx in contexts:
                result = calculate_severity(_make_vuln(vuln_type, confidence=1.0), ctx)
                assert 0.0 <= result.final_score <= 10.0
                assert 0.0 <= result.adjusted_score <= 10.0
                assert 0.0 <= result.risk_score <= 100.0

    def test_unknown_type_uses_default_metrics(self):
        """Unknown types score with the low-impact defaults."""
        result = calculate_severity(_make_vuln("quantum_leak"))
        assert result.factors["known_type"] is False
        assert result.severity in (Severity.MEDIUM, Severity.LOW)

    def test_deterministic(self):
        """The same input always yields the same result."""
        a = calculate_severity(_make_vuln("csrf"), ADMIN_CONFIG)
        b = calculate_severity(_make_vuln("csrf"), ADMIN_CONFIG)
        assert a == b

    def test_zero_confidence(self):
        """Zero confidence yields an informational score."""
        result = calculate_severity(_make_vuln("sql_injection", confidence=0.0), ADMIN_CONFIG)
        assert result.final_score == 0.0
        assert result.severity == Severity.INFO


class TestCompositeRisk:
    def test_empty(self):
        """No results gives a zero composite."""
        composite = calculate_composite_risk([])
        assert composite.composite_score == 0.0
        assert composite.count == 0
        assert composite.severity == Severity.INFO

    def test_at_least_max_member(self):
        """The composite is never below the largest member score."""
        results = [_make_result(s) for s in (9.5, 2.0, 1.0, 0.5, 0.5, 0.5)]
        composite = calculate_composite_risk(results)
        assert composite.composite_score >= composite.max_score
        assert composite.composite_score <= 10.0

    def test_amplified_by_severe_members(self):
        """Several high findings push the composite above any one of them."""
        composite = calculate_composite_risk([_make_result(7.0), _make_result(7.0)])
        assert composite.composite_score == 10.0
        assert composite.severity_breakdown["high"] == 2

    def test_breakdown_and_stats(self):
        """Breakdown counts each bucket; stats are over final scores."""
        composite = calculate_composite_risk([_make_result(5.0), _make_result(3.0)])
        assert composite.severity_breakdown["medium"] == 1
        assert composite.severity_breakdown["low"] == 1
        assert composite.average_score == 4.0
        assert composite.min_score == 3.0
        assert composite.max_score == 5.0
        assert composite.count == 2


class TestRiskTrend:
    def test_increasing(self):
        """More than a ten percent rise is increasing."""
        trend = calculate_risk_trend(5.0, 6.0, days=2)
        assert trend.direction == "increasing"
        assert trend.change_percent == 20.0
        assert trend.risk_velocity == 0.5

    def test_decreasing(self):
        """More than a ten percent drop is decreasing."""
        assert calculate_risk_trend(8.0, 4.0).direction == "decreasing"

    def test_stable(self):
        """Small moves are stable."""
        assert calculate_risk_trend(5.0, 5.2).direction == "stable"

    def test_from_zero(self):
        """Any risk after none is a full increase."""
        trend = calculate_risk_trend(0.0, 3.0)
        assert trend.direction == "increasing"
        assert trend.change_percent == 100.0
