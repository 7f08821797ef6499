"""Shared data models used across sitemend modules."""

from __future__ import annotations

import base64
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar

from sitemend.core.errors import ValidationError


class Severity(enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @classmethod
    def from_score(cls, score: float) -> Severity:
        """Bucket a 0-10 score into a severity level."""
        if score >= 9.0:
            return cls.CRITICAL
        if score >= 7.0:
            return cls.HIGH
        if score >= 4.0:
            return cls.MEDIUM
        if score >= 0.1:
            return cls.LOW
        return cls.INFO

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFO: 0,
}


class VulnStatus(enum.Enum):
    OPEN = "open"
    FIXED = "fixed"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class FixStatus(enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    VALIDATED = "validated"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    DECLINED = "declined"

    @property
    def is_terminal(self) -> bool:
        return self not in (FixStatus.PENDING, FixStatus.APPLIED)


class Outcome(enum.Enum):
    """Final pipeline outcome of one vulnerability."""

    AUTO_FIXED = "auto_fixed"
    MANUAL_REQUIRED = "manual_required"
    SKIPPED = "skipped"
    FAILED = "failed"
    ROLLBACK_FAILED = "rollback_failed"

    @property
    def rank(self) -> int:
        """Operator urgency; ROLLBACK_FAILED is the most severe."""
        return _OUTCOME_RANK[self]


_OUTCOME_RANK = {
    Outcome.AUTO_FIXED: 0,
    Outcome.SKIPPED: 1,
    Outcome.MANUAL_REQUIRED: 2,
    Outcome.FAILED: 3,
    Outcome.ROLLBACK_FAILED: 4,
}


class StrategyKind(enum.Enum):
    CONFIGURATION = "configuration"
    CORE_UPDATE = "core_update"
    FILE_PERMISSIONS = "file_permissions"
    CODE_REMEDIATION = "code_remediation"


def normalize_type(value: str) -> str:
    """Canonical vulnerability type key: lowercase, underscores."""
    return value.strip().lower().replace("-", "_").replace(" ", "_")


# ---------------------------------------------------------------------------
# Vulnerability input
# ---------------------------------------------------------------------------


@dataclass
class Vulnerability:
    """A vulnerability record produced by the external detector.

    Everything except ``status`` is treated as read-only once detected.
    ``metadata`` carries detector-specific hints (patterns found, current
    mode bits, setting names) that strategies may consult.
    """

    id: str
    type: str
    category: str = ""
    severity: Severity = Severity.MEDIUM
    confidence: float = 0.8
    affected_resources: list[str] = field(default_factory=list)
    status: VulnStatus = VulnStatus.OPEN
    detected_at: datetime = field(default_factory=datetime.now)
    title: str = ""
    description: str = ""
    component: str = ""
    fix_available: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def type_key(self) -> str:
        return normalize_type(self.type)

    @property
    def category_key(self) -> str:
        return normalize_type(self.category) if self.category else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "category": self.category,
            "severity": self.severity.value,
            "confidence": self.confidence,
            "affected_resources": list(self.affected_resources),
            "status": self.status.value,
            "detected_at": self.detected_at.isoformat(),
            "title": self.title,
            "description": self.description,
            "component": self.component,
            "fix_available": self.fix_available,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Vulnerability:
        """Build a record from detector output, rejecting malformed input."""
        if not isinstance(data, dict):
            raise ValidationError(f"vulnerability record must be an object, got {type(data).__name__}")

        vuln_id = data.get("id")
        vuln_type = data.get("type")
        if vuln_id in (None, ""):
            raise ValidationError("vulnerability record has no id")
        if not vuln_type or not isinstance(vuln_type, str):
            raise ValidationError(f"vulnerability {vuln_id} has no type")

        try:
            severity = Severity(str(data.get("severity", "medium")).lower())
        except ValueError:
            raise ValidationError(
                f"vulnerability {vuln_id} has unknown severity {data.get('severity')!r}"
            ) from None

        try:
            status = VulnStatus(str(data.get("status", "open")).lower())
        except ValueError:
            raise ValidationError(
                f"vulnerability {vuln_id} has unknown status {data.get('status')!r}"
            ) from None

        raw_confidence = data.get("confidence", 0.8)
        try:
            confidence = float(raw_confidence if raw_confidence is not None else 0.8)
        except (TypeError, ValueError):
            raise ValidationError(f"vulnerability {vuln_id} has non-numeric confidence") from None
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError(f"vulnerability {vuln_id} confidence {confidence} outside 0..1")

        resources = data.get("affected_resources") or []
        if isinstance(resources, str):
            resources = [resources]
        if not isinstance(resources, list):
            raise ValidationError(f"vulnerability {vuln_id} affected_resources must be a list")

        detected_at = data.get("detected_at")
        if isinstance(detected_at, str):
            try:
                detected = datetime.fromisoformat(detected_at)
            except ValueError:
                raise ValidationError(
                    f"vulnerability {vuln_id} has invalid detected_at {detected_at!r}"
                ) from None
        else:
            detected = datetime.now()

        return cls(
            id=str(vuln_id),
            type=vuln_type,
            category=data.get("category") or "",
            severity=severity,
            confidence=confidence,
            affected_resources=[str(r) for r in resources],
            status=status,
            detected_at=detected,
            title=data.get("title", ""),
            description=data.get("description", ""),
            component=data.get("component", ""),
            fix_available=data.get("fix_available"),
            metadata=dict(data.get("metadata") or {}),
        )


# ---------------------------------------------------------------------------
# Stage results
# ---------------------------------------------------------------------------


@dataclass
class SafetyAssessment:
    """Risk picture of one fix attempt.

    Attributes:
        risk_level:             0..1, compared against the engine's safety threshold.
        risk_factors:           Human readable reasons contributing to the risk.
        requirements:           Preconditions the fix depends on, and whether each holds.
        recommendations:        Operator advice for this risk level.
        risk_category:          safe / moderate / high / critical.
        manual_review_required: True when a human should look before applying.
        rollback_confidence:    0..1 likelihood a rollback restores the prior state.
        estimated_downtime:     Expected site downtime in seconds.
        severity_score:         Calculator final score, when one was computed.
    """

    risk_level: float
    risk_factors: list[str] = field(default_factory=list)
    requirements: dict[str, bool] = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)
    risk_category: str = "safe"
    manual_review_required: bool = False
    rollback_confidence: float = 1.0
    estimated_downtime: int = 0
    severity_score: float | None = None

    @property
    def requirements_met(self) -> bool:
        return all(self.requirements.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "risk_level": self.risk_level,
            "risk_factors": list(self.risk_factors),
            "requirements": dict(self.requirements),
            "recommendations": list(self.recommendations),
            "risk_category": self.risk_category,
            "manual_review_required": self.manual_review_required,
            "rollback_confidence": self.rollback_confidence,
            "estimated_downtime": self.estimated_downtime,
            "severity_score": self.severity_score,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SafetyAssessment:
        return cls(
            risk_level=data["risk_level"],
            risk_factors=data.get("risk_factors", []),
            requirements=data.get("requirements", {}),
            recommendations=data.get("recommendations", []),
            risk_category=data.get("risk_category", "safe"),
            manual_review_required=data.get("manual_review_required", False),
            rollback_confidence=data.get("rollback_confidence", 1.0),
            estimated_downtime=data.get("estimated_downtime", 0),
            severity_score=data.get("severity_score"),
        )


@dataclass
class TestOutcome:
    """Result of one named validation test."""

    __test__ = False

    passed: bool
    message: str = ""


@dataclass
class ValidationResult:
    """Post-fix verification. ``confidence`` is on a 0..100 scale."""

    is_valid: bool
    confidence: int = 0
    validation_tests: dict[str, TestOutcome] = field(default_factory=dict)
    issues_found: list[str] = field(default_factory=list)

    def record(self, name: str, passed: bool, message: str = "") -> None:
        self.validation_tests[name] = TestOutcome(passed=passed, message=message)
        if not passed:
            self.issues_found.append(message or f"{name} failed")

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "confidence": self.confidence,
            "validation_tests": {
                name: {"passed": t.passed, "message": t.message}
                for name, t in self.validation_tests.items()
            },
            "issues_found": list(self.issues_found),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationResult:
        return cls(
            is_valid=data["is_valid"],
            confidence=data.get("confidence", 0),
            validation_tests={
                name: TestOutcome(passed=t["passed"], message=t.get("message", ""))
                for name, t in data.get("validation_tests", {}).items()
            },
            issues_found=data.get("issues_found", []),
        )


@dataclass
class Change:
    """One concrete mutation made by a strategy."""

    resource: str
    action: str
    detail: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"resource": self.resource, "action": self.action, "detail": self.detail}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Change:
        return cls(resource=data["resource"], action=data["action"], detail=data.get("detail", ""))


# ---------------------------------------------------------------------------
# Rollback data: one variant per strategy kind
# ---------------------------------------------------------------------------


def _encode_files(files: dict[str, bytes | None]) -> dict[str, str | None]:
    return {
        path: base64.b64encode(content).decode("ascii") if content is not None else None
        for path, content in files.items()
    }


def _decode_files(files: dict[str, str | None]) -> dict[str, bytes | None]:
    return {
        path: base64.b64decode(content) if content is not None else None
        for path, content in files.items()
    }


@dataclass
class ConfigRollback:
    """Prior file contents (None = file did not exist) and option values."""

    kind: ClassVar[StrategyKind] = StrategyKind.CONFIGURATION

    files: dict[str, bytes | None] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)
    absent_options: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.files or self.options or self.absent_options)

    def to_dict(self) -> dict[str, Any]:
        return {
            "files": _encode_files(self.files),
            "options": dict(self.options),
            "absent_options": list(self.absent_options),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConfigRollback:
        return cls(
            files=_decode_files(data.get("files", {})),
            options=data.get("options", {}),
            absent_options=data.get("absent_options", []),
        )


@dataclass
class CoreRollback:
    """Prior core file contents plus the version that was installed."""

    kind: ClassVar[StrategyKind] = StrategyKind.CORE_UPDATE

    files: dict[str, bytes | None] = field(default_factory=dict)
    previous_version: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.files

    def to_dict(self) -> dict[str, Any]:
        return {"files": _encode_files(self.files), "previous_version": self.previous_version}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CoreRollback:
        return cls(
            files=_decode_files(data.get("files", {})),
            previous_version=data.get("previous_version"),
        )


@dataclass
class PermissionsRollback:
    """Prior mode bits per path, plus files the fix created."""

    kind: ClassVar[StrategyKind] = StrategyKind.FILE_PERMISSIONS

    modes: dict[str, int] = field(default_factory=dict)
    created: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.modes or self.created)

    def to_dict(self) -> dict[str, Any]:
        return {"modes": dict(self.modes), "created": list(self.created)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PermissionsRollback:
        return cls(
            modes={path: int(mode) for path, mode in data.get("modes", {}).items()},
            created=data.get("created", []),
        )


@dataclass
class CodeRollback:
    """Prior source contents and the quarantine copies made."""

    kind: ClassVar[StrategyKind] = StrategyKind.CODE_REMEDIATION

    files: dict[str, bytes | None] = field(default_factory=dict)
    quarantined: dict[str, str] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.files or self.quarantined)

    def to_dict(self) -> dict[str, Any]:
        return {"files": _encode_files(self.files), "quarantined": dict(self.quarantined)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CodeRollback:
        return cls(
            files=_decode_files(data.get("files", {})),
            quarantined=data.get("quarantined", {}),
        )


RollbackData = ConfigRollback | CoreRollback | PermissionsRollback | CodeRollback

_ROLLBACK_TYPES: dict[StrategyKind, type] = {
    cls.kind: cls for cls in (ConfigRollback, CoreRollback, PermissionsRollback, CodeRollback)
}


def rollback_to_dict(data: RollbackData) -> dict[str, Any]:
    """Serialize rollback data with its kind tag."""
    return {"kind": data.kind.value, **data.to_dict()}


def rollback_from_dict(data: dict[str, Any]) -> RollbackData:
    """Rebuild tagged rollback data; unknown tags are a validation error."""
    try:
        kind = StrategyKind(data["kind"])
    except (KeyError, ValueError):
        raise ValidationError(f"unknown rollback data kind {data.get('kind')!r}") from None
    return _ROLLBACK_TYPES[kind].from_dict(data)


# ---------------------------------------------------------------------------
# Strategy results
# ---------------------------------------------------------------------------


@dataclass
class FixResult:
    """What a strategy reports back from apply_fix."""

    success: bool
    message: str = ""
    actions_taken: list[str] = field(default_factory=list)
    changes_made: list[Change] = field(default_factory=list)
    rollback_data: RollbackData | None = None
    error: str | None = None
    error_kind: str | None = None
    fix_type: str = ""
    dry_run: bool = False

    @property
    def changed_anything(self) -> bool:
        return bool(self.changes_made)


@dataclass
class RollbackResult:
    """Outcome of restoring resources."""

    success: bool
    restored: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    message: str = ""


@dataclass
class ManualInstructions:
    """Human-actionable remediation steps."""

    title: str
    summary: str = ""
    steps: list[str] = field(default_factory=list)
    resources: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    difficulty: str = "medium"
    estimated_minutes: int = 30

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "summary": self.summary,
            "steps": list(self.steps),
            "resources": list(self.resources),
            "warnings": list(self.warnings),
            "difficulty": self.difficulty,
            "estimated_minutes": self.estimated_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManualInstructions:
        return cls(
            title=data["title"],
            summary=data.get("summary", ""),
            steps=data.get("steps", []),
            resources=data.get("resources", []),
            warnings=data.get("warnings", []),
            difficulty=data.get("difficulty", "medium"),
            estimated_minutes=data.get("estimated_minutes", 30),
        )


# ---------------------------------------------------------------------------
# Engine records
# ---------------------------------------------------------------------------


@dataclass
class FixRecord:
    """Audit record of one fix attempt, mutated as the pipeline advances."""

    vulnerability_id: str
    fix_id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    strategy_type: str | None = None
    fix_type: str = ""
    status: FixStatus = FixStatus.PENDING
    outcome: Outcome | None = None
    actions_taken: list[str] = field(default_factory=list)
    changes_made: list[Change] = field(default_factory=list)
    rollback_data: RollbackData | None = None
    backup_id: str | None = None
    safety: SafetyAssessment | None = None
    validation: ValidationResult | None = None
    instructions: ManualInstructions | None = None
    error: str | None = None
    error_kind: str | None = None
    start_time: datetime = field(default_factory=datetime.now)
    end_time: datetime | None = None
    rolled_back_at: datetime | None = None

    @property
    def duration(self) -> float | None:
        """Seconds between start and end, once finished."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "fix_id": self.fix_id,
            "vulnerability_id": self.vulnerability_id,
            "strategy_type": self.strategy_type,
            "fix_type": self.fix_type,
            "status": self.status.value,
            "outcome": self.outcome.value if self.outcome else None,
            "actions_taken": list(self.actions_taken),
            "changes_made": [c.to_dict() for c in self.changes_made],
            "backup_id": self.backup_id,
            "safety_assessment": self.safety.to_dict() if self.safety else None,
            "validation": self.validation.to_dict() if self.validation else None,
            "instructions": self.instructions.to_dict() if self.instructions else None,
            "error": self.error,
            "error_kind": self.error_kind,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "rolled_back_at": self.rolled_back_at.isoformat() if self.rolled_back_at else None,
            "duration": self.duration,
        }


@dataclass
class BatchReport:
    """Aggregate of a batch run; the contract downstream consumers read.

    ``failed`` includes rollback failures; ``rollback_failed`` counts that
    subset separately so it can be escalated.
    """

    total_processed: int = 0
    auto_fixed: int = 0
    manual_required: int = 0
    failed: int = 0
    skipped: int = 0
    rollback_failed: int = 0
    chunks: int = 0
    fixes: list[FixRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: datetime | None = None

    def add(self, record: FixRecord) -> None:
        self.total_processed += 1
        self.fixes.append(record)
        if record.outcome == Outcome.AUTO_FIXED:
            self.auto_fixed += 1
        elif record.outcome == Outcome.MANUAL_REQUIRED:
            self.manual_required += 1
        elif record.outcome == Outcome.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            if record.outcome == Outcome.ROLLBACK_FAILED:
                self.rollback_failed += 1
        if record.error:
            self.errors.append(f"{record.vulnerability_id}: {record.error}")

    @property
    def worst_outcome(self) -> Outcome | None:
        outcomes = [r.outcome for r in self.fixes if r.outcome is not None]
        if not outcomes:
            return None
        return max(outcomes, key=lambda o: o.rank)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "auto_fixed": self.auto_fixed,
            "manual_required": self.manual_required,
            "failed": self.failed,
            "skipped": self.skipped,
            "rollback_failed": self.rollback_failed,
            "chunks": self.chunks,
            "fixes": [f.to_dict() for f in self.fixes],
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
