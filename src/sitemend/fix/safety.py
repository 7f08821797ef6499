"""Safety assessment shared by all fix strategies.

A strategy describes what it is about to do as a :class:`FixPlan` and adds
its own additive risk estimate. The assessor scores the plan across five
weighted categories and keeps whichever of the two risks is higher.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sitemend.core.models import SafetyAssessment
from sitemend.core.site import Site

logger = logging.getLogger(__name__)

CATEGORY_WEIGHTS = {
    "file_modification": 0.25,
    "database_changes": 0.25,
    "system_impact": 0.20,
    "environment": 0.15,
    "fix_complexity": 0.15,
}

FILE_RISKS = {
    "core": 0.9,
    "configuration": 0.8,
    "active_theme": 0.7,
    "active_plugin": 0.6,
    "inactive": 0.3,
    "upload": 0.2,
    "other": 0.3,
}

ACTION_RISKS = {
    "file_replace": 0.6,
    "file_patch": 0.4,
    "file_delete": 0.8,
    "permission_change": 0.5,
    "configuration_update": 0.7,
}
DEFAULT_ACTION_RISK = 0.5

DATABASE_CHANGE_RISKS = {
    "structure_change": 0.9,
    "data_update": 0.4,
    "data_delete": 0.7,
    "data_insert": 0.2,
}
TABLE_RISKS = (("users", 0.8), ("usermeta", 0.8), ("options", 0.6), ("meta", 0.4))

SYSTEM_IMPACT_RISKS = {
    "requires_restart": 0.7,
    "affects_authentication": 0.9,
    "changes_permissions": 0.8,
    "modifies_htaccess": 0.7,
    "updates_wp_config": 0.8,
}

ENVIRONMENT_RISKS = {
    "production_site": 0.3,
    "high_traffic": 0.4,
    "ecommerce_site": 0.5,
    "membership_site": 0.4,
    "business_hours": 0.2,
}

COMPLEXITY_RISKS = {
    "multi_step_fix": 0.4,
    "third_party_dependencies": 0.6,
    "custom_code_changes": 0.8,
    "requires_manual_verification": 0.3,
    "irreversible_changes": 0.9,
}
DEFAULT_FACTOR_RISK = 0.3

SAFE_THRESHOLD = 0.3
MODERATE_THRESHOLD = 0.6
HIGH_THRESHOLD = 0.8

ECOMMERCE_PLUGINS = ("woocommerce", "easy-digital-downloads", "wp-e-commerce")
MEMBERSHIP_PLUGINS = ("memberpress", "paid-memberships-pro", "restrict-content")
HIGH_TRAFFIC_USERS = 1000

RECOMMENDATIONS = {
    "safe": ["This fix has low risk and can be applied automatically."],
    "moderate": [
        "Create a comprehensive backup before applying this fix.",
        "Monitor the site closely for 24 hours after applying the fix.",
    ],
    "high": [
        "Test this fix in a staging environment before applying to production.",
        "Schedule this fix during a maintenance window or low-traffic period.",
    ],
    "critical": [
        "This fix requires manual review and should not be automated.",
        "Consult a security specialist before proceeding.",
    ],
}


@dataclass
class PlannedAction:
    target: str
    action: str


@dataclass
class DatabaseChange:
    change_type: str
    table: str = ""


@dataclass
class FixPlan:
    """What a strategy intends to touch, for risk scoring."""

    actions: list[PlannedAction] = field(default_factory=list)
    database_changes: list[DatabaseChange] = field(default_factory=list)
    system_impacts: list[str] = field(default_factory=list)
    complexity: list[str] = field(default_factory=list)
    estimated_time: int = 60


def categorize_risk(risk: float) -> str:
    if risk <= SAFE_THRESHOLD:
        return "safe"
    if risk <= MODERATE_THRESHOLD:
        return "moderate"
    if risk <= HIGH_THRESHOLD:
        return "high"
    return "critical"


class SafetyAssessor:
    """Scores fix plans against the site they will run on."""

    def __init__(self, site: Site):
        self.site = site

    def assess(
        self,
        plan: FixPlan,
        strategy_risk: float = 0.0,
        risk_factors: list[str] | None = None,
        requirements: dict[str, bool] | None = None,
        severity_score: float | None = None,
    ) -> SafetyAssessment:
        """Combine a strategy's own risk estimate with the weighted plan score.

        Any failure while scoring yields the maximum risk of 1.0 so the
        engine declines the automatic fix.
        """
        factors = list(risk_factors or [])
        try:
            category_scores = {
                "file_modification": self.file_modification_risk(plan),
                "database_changes": self.database_risk(plan),
                "system_impact": max(
                    (SYSTEM_IMPACT_RISKS.get(i, DEFAULT_FACTOR_RISK) for i in plan.system_impacts),
                    default=0.0,
                ),
                "environment": self.environment_risk(factors),
                "fix_complexity": max(
                    (COMPLEXITY_RISKS.get(c, DEFAULT_FACTOR_RISK) for c in plan.complexity),
                    default=0.0,
                ),
            }
        except Exception as e:
            logger.error("Safety assessment failed: %s", e)
            return SafetyAssessment(
                risk_level=1.0,
                risk_factors=factors + [f"assessment error: {e}"],
                requirements=dict(requirements or {}),
                recommendations=list(RECOMMENDATIONS["critical"]),
                risk_category="critical",
                manual_review_required=True,
                rollback_confidence=0.0,
                severity_score=severity_score,
            )

        weighted = sum(score * CATEGORY_WEIGHTS[name] for name, score in category_scores.items())
        risk = round(min(1.0, max(0.0, strategy_risk, weighted)), 3)
        category = categorize_risk(risk)

        recommendations = list(RECOMMENDATIONS[category])
        if category_scores["file_modification"] >= FILE_RISKS["core"]:
            recommendations.append("Verify core file integrity after the fix.")
        if category_scores["database_changes"] > 0.5:
            recommendations.append("Verify database backup integrity before proceeding.")
        if category_scores["system_impact"] > 0.6:
            recommendations.append("Prepare a detailed rollback plan in case of issues.")

        rollback_confidence = 1.0
        if "irreversible_changes" in plan.complexity:
            rollback_confidence *= 0.2
        for change in plan.database_changes:
            if change.change_type == "structure_change":
                rollback_confidence *= 0.7

        downtime = float(plan.estimated_time)
        if category_scores["fix_complexity"] > 0.5:
            downtime *= 1.5
        if category in ("high", "critical"):
            downtime *= 2.0

        return SafetyAssessment(
            risk_level=risk,
            risk_factors=factors,
            requirements=dict(requirements or {}),
            recommendations=recommendations,
            risk_category=category,
            manual_review_required=(
                category == "critical" or rollback_confidence < 0.5 or risk > HIGH_THRESHOLD
            ),
            rollback_confidence=round(rollback_confidence, 3),
            estimated_downtime=int(downtime),
            severity_score=severity_score,
        )

    # ------------------------------------------------------------------
    # Category scores
    # ------------------------------------------------------------------

    def file_modification_risk(self, plan: FixPlan) -> float:
        score = 0.0
        for action in plan.actions:
            score = max(score, FILE_RISKS[self.classify_file(action.target)])
            score = max(score, ACTION_RISKS.get(action.action, DEFAULT_ACTION_RISK))
        return score

    def database_risk(self, plan: FixPlan) -> float:
        score = 0.0
        for change in plan.database_changes:
            risk = DATABASE_CHANGE_RISKS.get(change.change_type, DEFAULT_ACTION_RISK)
            for marker, table_risk in TABLE_RISKS:
                if marker in change.table:
                    risk = max(risk, table_risk)
                    break
            score = max(score, risk)
        return score

    def environment_risk(self, factors: list[str]) -> float:
        """Score the live site; appends a reason per triggered factor."""
        triggered: list[str] = []
        if self.site.is_live:
            triggered.append("production_site")

        options = self.site.options
        active_plugins = [str(p).lower() for p in options.get("active_plugins", []) or []]
        if any(p.startswith(ECOMMERCE_PLUGINS) for p in active_plugins):
            triggered.append("ecommerce_site")
        if any(p.startswith(MEMBERSHIP_PLUGINS) for p in active_plugins):
            triggered.append("membership_site")
        if int(options.get("user_count", 0) or 0) > HIGH_TRAFFIC_USERS:
            triggered.append("high_traffic")

        now = self.site.clock()
        if now.weekday() < 5 and 9 <= now.hour < 17:
            triggered.append("business_hours")

        for name in triggered:
            factors.append(f"environment: {name.replace('_', ' ')}")
        return max((ENVIRONMENT_RISKS[name] for name in triggered), default=0.0)

    def classify_file(self, path: str) -> str:
        """Risk class of a site-relative path."""
        lowered = path.replace("\\", "/").lstrip("/").lower()
        name = lowered.rsplit("/", 1)[-1]

        if name.startswith("wp-config") or name == ".htaccess":
            return "configuration"
        if lowered.startswith(("wp-admin/", "wp-includes/")) or (
            "/" not in lowered and name.startswith("wp-") and name.endswith(".php")
        ):
            return "core"
        if "/uploads/" in f"/{lowered}":
            return "upload"

        parts = lowered.split("/")
        if "themes" in parts:
            idx = parts.index("themes")
            theme = parts[idx + 1] if idx + 1 < len(parts) else ""
            active = str(self.site.options.get("template", "")).lower()
            return "active_theme" if theme and theme == active else "inactive"
        if "plugins" in parts:
            idx = parts.index("plugins")
            plugin = parts[idx + 1] if idx + 1 < len(parts) else ""
            active = [str(p).lower() for p in self.site.options.get("active_plugins", []) or []]
            return "active_plugin" if any(p.split("/")[0] == plugin for p in active) else "inactive"
        return "other"
