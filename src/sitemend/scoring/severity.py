"""Severity and risk scoring.

CVSS-style base score from a static type table, scaled by where the
vulnerable resource lives and what it touches, then weighted by detector
confidence. Everything here is pure and deterministic.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from sitemend.core.models import Severity, Vulnerability, normalize_type

# Weight tables
IMPACT_WEIGHTS = {"none": 0.0, "low": 0.22, "high": 0.56}
ATTACK_VECTOR = {"network": 0.85, "adjacent": 0.62, "local": 0.55, "physical": 0.2}
ATTACK_COMPLEXITY = {"low": 0.77, "high": 0.44}
PRIVILEGES_REQUIRED = {"none": 0.85, "low": 0.62, "high": 0.27}
USER_INTERACTION = {"none": 0.85, "required": 0.62}
SCOPE_CHANGED_FACTOR = 1.08

DEFAULT_CONFIDENCE = 0.8


@dataclass(frozen=True)
class Metrics:
    confidentiality: str = "low"
    integrity: str = "low"
    availability: str = "none"
    attack_vector: str = "network"
    attack_complexity: str = "low"
    privileges_required: str = "none"
    user_interaction: str = "none"
    scope_changed: bool = False


TYPE_METRICS: dict[str, Metrics] = {
    "sql_injection": Metrics("high", "high", "high", "network", "low", "none", "none"),
    "xss": Metrics("low", "low", "none", "network", "low", "none", "required"),
    "csrf": Metrics("none", "high", "none", "network", "low", "none", "required"),
    "file_inclusion": Metrics("high", "high", "high", "network", "low", "none", "none"),
    "auth_bypass": Metrics("high", "high", "high", "network", "low", "none", "none"),
    "path_traversal": Metrics("high", "low", "none", "network", "low", "none", "none"),
    "code_injection": Metrics("high", "high", "high", "network", "low", "none", "none"),
    "privilege_escalation": Metrics("high", "high", "high", "network", "low", "low", "none"),
    "information_disclosure": Metrics("low", "none", "none", "network", "low", "none", "none"),
    "weak_crypto": Metrics("low", "low", "none", "network", "high", "none", "none"),
}

UNKNOWN_METRICS = Metrics()

# Context multipliers
FILE_TYPE_FACTORS = {"core": 1.5, "plugin": 1.2, "theme": 1.1, "config": 1.8, "upload": 0.8}
LOCATION_FACTORS = {"admin": 1.4, "public": 1.2, "api": 1.3, "ajax": 1.1, "cron": 0.9}
DATA_ACCESS_FACTORS = {
    "database": 1.4,
    "filesystem": 1.3,
    "network": 1.2,
    "user_data": 1.5,
    "config_data": 1.6,
}
EXPOSURE_FACTORS = {"public": 1.3, "authenticated": 1.1, "internal": 0.9}

MIN_CONTEXT_MULTIPLIER = 0.5
MAX_CONTEXT_MULTIPLIER = 1.75

SQL_QUERY_THRESHOLD = 5
SQL_HEAVY_FACTOR = 1.2
XSS_USER_INPUT_FACTOR = 1.15
INCLUSION_FILE_OPS_FACTOR = 1.3

# Composite amplification per member severity
COMPOSITE_WEIGHTS = {Severity.CRITICAL: 0.5, Severity.HIGH: 0.3, Severity.MEDIUM: 0.1}

TREND_THRESHOLD_PERCENT = 10.0


@dataclass
class ResourceContext:
    """Where a vulnerable resource lives and what it can reach."""

    file_type: str | None = None
    location: str | None = None
    data_access: set[str] = field(default_factory=set)
    exposure: str | None = None
    sql_queries: int = 0
    has_user_input: bool = False
    has_file_operations: bool = False

    @classmethod
    def from_path(cls, path: str, **overrides: Any) -> ResourceContext:
        """Infer file type and location from a site-relative path."""
        lowered = path.replace("\\", "/").lower()
        name = lowered.rsplit("/", 1)[-1]

        if name.startswith("wp-config") or name in (".htaccess", "web.config", ".user.ini"):
            file_type = "config"
        elif "/uploads/" in f"/{lowered}":
            file_type = "upload"
        elif "/plugins/" in f"/{lowered}":
            file_type = "plugin"
        elif "/themes/" in f"/{lowered}":
            file_type = "theme"
        elif lowered.startswith(("wp-admin/", "wp-includes/")):
            file_type = "core"
        else:
            file_type = None

        if "wp-admin/" in lowered or "/admin/" in f"/{lowered}":
            location = "admin"
        elif "admin-ajax" in name or "/ajax/" in f"/{lowered}":
            location = "ajax"
        elif "/api/" in f"/{lowered}" or "wp-json" in lowered:
            location = "api"
        elif "cron" in name:
            location = "cron"
        else:
            location = None

        ctx = cls(file_type=file_type, location=location)
        for key, value in overrides.items():
            setattr(ctx, key, value)
        return ctx


@dataclass
class SeverityResult:
    severity: Severity
    cvss_score: float
    adjusted_score: float
    final_score: float
    risk_score: float
    confidence: float
    factors: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "cvss_score": self.cvss_score,
            "adjusted_score": self.adjusted_score,
            "final_score": self.final_score,
            "risk_score": self.risk_score,
            "confidence": self.confidence,
            "factors": dict(self.factors),
        }


@dataclass
class CompositeRisk:
    composite_score: float
    severity: Severity
    severity_breakdown: dict[str, int]
    average_score: float
    max_score: float
    min_score: float
    count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "composite_score": self.composite_score,
            "severity": self.severity.value,
            "severity_breakdown": dict(self.severity_breakdown),
            "average_score": self.average_score,
            "max_score": self.max_score,
            "min_score": self.min_score,
            "count": self.count,
        }


@dataclass
class RiskTrend:
    direction: str
    change_percent: float
    risk_velocity: float


def metrics_for(vuln_type: str) -> Metrics:
    return TYPE_METRICS.get(normalize_type(vuln_type), UNKNOWN_METRICS)


def base_score(metrics: Metrics) -> tuple[float, float, float]:
    """Return (base, impact, exploitability) for a metrics set."""
    c = IMPACT_WEIGHTS[metrics.confidentiality]
    i = IMPACT_WEIGHTS[metrics.integrity]
    a = IMPACT_WEIGHTS[metrics.availability]
    impact = 6.42 * (1 - (1 - c) * (1 - i) * (1 - a))

    exploitability = (
        8.22
        * ATTACK_VECTOR[metrics.attack_vector]
        * ATTACK_COMPLEXITY[metrics.attack_complexity]
        * PRIVILEGES_REQUIRED[metrics.privileges_required]
        * USER_INTERACTION[metrics.user_interaction]
    )

    if impact <= 0:
        return 0.0, impact, exploitability

    raw = impact + exploitability
    if metrics.scope_changed:
        raw *= SCOPE_CHANGED_FACTOR
    return min(10.0, raw), impact, exploitability


def context_multiplier(vuln_type: str, context: ResourceContext | None) -> float:
    """Product of every applicable context factor, clamped."""
    if context is None:
        return 1.0

    multiplier = 1.0
    if context.file_type in FILE_TYPE_FACTORS:
        multiplier *= FILE_TYPE_FACTORS[context.file_type]
    if context.location in LOCATION_FACTORS:
        multiplier *= LOCATION_FACTORS[context.location]
    for flag in sorted(context.data_access):
        multiplier *= DATA_ACCESS_FACTORS.get(flag, 1.0)
    if context.exposure in EXPOSURE_FACTORS:
        multiplier *= EXPOSURE_FACTORS[context.exposure]

    key = normalize_type(vuln_type)
    if key == "sql_injection" and context.sql_queries > SQL_QUERY_THRESHOLD:
        multiplier *= SQL_HEAVY_FACTOR
    elif key == "xss" and context.has_user_input:
        multiplier *= XSS_USER_INPUT_FACTOR
    elif key == "file_inclusion" and context.has_file_operations:
        multiplier *= INCLUSION_FILE_OPS_FACTOR

    return max(MIN_CONTEXT_MULTIPLIER, min(MAX_CONTEXT_MULTIPLIER, multiplier))


def calculate_severity(
    vulnerability: Vulnerability,
    context: ResourceContext | None = None,
) -> SeverityResult:
    """Score one vulnerability.

    The pre-confidence score is capped at 10, so with the default
    confidence of 0.8 the final score can reach at most 8.0. Reaching the
    critical bucket takes a detector confidence of 0.9 or more.

    Args:
        vulnerability: Detector record; only ``type`` and ``confidence`` are read.
        context:       Resource attributes. ``None`` means no context scaling.

    Returns:
        SeverityResult with scores rounded to one decimal.
    """
    metrics = metrics_for(vulnerability.type)
    base, impact, exploitability = base_score(metrics)

    multiplier = context_multiplier(vulnerability.type, context)
    adjusted = min(10.0, base * multiplier)

    confidence = vulnerability.confidence if vulnerability.confidence is not None else DEFAULT_CONFIDENCE
    final = adjusted * confidence
    risk = min(100.0, final / 10 * 100)

    return SeverityResult(
        severity=Severity.from_score(final),
        cvss_score=round(base, 1),
        adjusted_score=round(adjusted, 1),
        final_score=round(final, 1),
        risk_score=round(risk, 1),
        confidence=confidence,
        factors={
            "type": normalize_type(vulnerability.type),
            "impact": round(impact, 3),
            "exploitability": round(exploitability, 3),
            "context_multiplier": round(multiplier, 3),
            "known_type": normalize_type(vulnerability.type) in TYPE_METRICS,
            "scope_changed": metrics.scope_changed,
        },
    )


def calculate_composite_risk(results: list[SeverityResult]) -> CompositeRisk:
    """Aggregate risk over a set of scored vulnerabilities.

    Root-mean-square of the final scores, amplified by how many members
    are critical, high or medium, then floored at the largest member score
    and clamped to 10.
    """
    if not results:
        return CompositeRisk(0.0, Severity.INFO, {s.value: 0 for s in Severity}, 0.0, 0.0, 0.0, 0)

    scores = [r.final_score for r in results]
    breakdown = {s.value: 0 for s in Severity}
    for r in results:
        breakdown[r.severity.value] += 1

    rms = math.sqrt(sum(s * s for s in scores) / len(scores))
    amplifier = 1.0 + sum(
        weight * breakdown[sev.value] for sev, weight in COMPOSITE_WEIGHTS.items()
    )
    composite = min(10.0, max(rms * amplifier, max(scores)))

    return CompositeRisk(
        composite_score=round(composite, 1),
        severity=Severity.from_score(composite),
        severity_breakdown=breakdown,
        average_score=round(sum(scores) / len(scores), 1),
        max_score=max(scores),
        min_score=min(scores),
        count=len(scores),
    )


def calculate_risk_trend(previous: float, current: float, days: float = 1.0) -> RiskTrend:
    """Compare two composite scores taken ``days`` apart."""
    if previous > 0:
        change = (current - previous) / previous * 100
    else:
        change = 100.0 if current > 0 else 0.0

    if change > TREND_THRESHOLD_PERCENT:
        direction = "increasing"
    elif change < -TREND_THRESHOLD_PERCENT:
        direction = "decreasing"
    else:
        direction = "stable"

    velocity = (current - previous) / days if days > 0 else 0.0
    return RiskTrend(direction=direction, change_percent=round(change, 1), risk_velocity=round(velocity, 2))
