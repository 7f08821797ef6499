"""Fix strategy contract and shared plumbing."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from sitemend.core.config import StrategyConfig
from sitemend.core.errors import ApplyError
from sitemend.core.models import (
    FixResult,
    ManualInstructions,
    RollbackData,
    RollbackResult,
    SafetyAssessment,
    StrategyKind,
    ValidationResult,
    Vulnerability,
)
from sitemend.core.site import Site
from sitemend.fix.deadline import Deadline
from sitemend.fix.guidance import manual_instructions
from sitemend.fix.safety import SafetyAssessor
from sitemend.fix.validator import FixValidator

logger = logging.getLogger(__name__)


@dataclass
class FixOptions:
    """Per-attempt options passed from the engine to ``apply_fix``."""

    dry_run: bool = False
    deadline: Deadline | None = None
    override_safety: bool = False
    owner: str = ""

    def checkpoint(self, step: str = "") -> None:
        if self.deadline is not None:
            self.deadline.check(step)


@dataclass
class BackupScope:
    """Resources the engine snapshots before calling ``apply_fix``."""

    paths: list[str] = field(default_factory=list)
    option_keys: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.paths or self.option_keys)


class FixStrategy(ABC):
    """Knows how to safety-check, apply, validate and undo one class of fix.

    Subclasses implement the six contract methods. ``apply_fix`` must
    capture whatever it needs to undo itself in ``FixResult.rollback_data``
    before mutating anything, and must be a no-op when the fix is already
    present. Internal failures are returned as ``success=False`` results;
    only bugs escape as exceptions, and the engine treats those as apply
    errors.
    """

    kind: StrategyKind
    name: str = ""
    supported_types: tuple[str, ...] = ()
    supports_rollback: bool = True

    def __init__(
        self,
        site: Site,
        config: StrategyConfig | None = None,
        assessor: SafetyAssessor | None = None,
        validator: FixValidator | None = None,
    ):
        self.site = site
        self.config = config or StrategyConfig()
        self.assessor = assessor or SafetyAssessor(site)
        self.validator = validator or FixValidator(site)

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def supports(self, vulnerability: Vulnerability) -> bool:
        return (
            vulnerability.type_key in self.supported_types
            or (bool(vulnerability.category_key) and vulnerability.category_key in self.supported_types)
        )

    @abstractmethod
    def can_auto_fix(self, vulnerability: Vulnerability) -> bool:
        """Cheap gate: supported type, access available, confidence high enough."""

    @abstractmethod
    def assess_fix_safety(self, vulnerability: Vulnerability) -> SafetyAssessment:
        """Risk of applying this fix to this site."""

    @abstractmethod
    def apply_fix(self, vulnerability: Vulnerability, options: FixOptions | None = None) -> FixResult:
        """Perform the remediation."""

    @abstractmethod
    def validate_fix(self, vulnerability: Vulnerability, fix_result: FixResult) -> ValidationResult:
        """Confirm the condition is gone and the site still works."""

    @abstractmethod
    def rollback_fix(self, vulnerability: Vulnerability | str, rollback_data: RollbackData) -> RollbackResult:
        """Restore the resources recorded in ``rollback_data`` exactly."""

    def generate_manual_instructions(self, vulnerability: Vulnerability) -> ManualInstructions:
        return manual_instructions(vulnerability)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def backup_scope(self, vulnerability: Vulnerability) -> BackupScope:
        return BackupScope(paths=list(vulnerability.affected_resources))

    def estimated_time(self, vulnerability: Vulnerability) -> int:
        return 60

    def strategy_info(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "name": self.name or type(self).__name__,
            "supported_types": list(self.supported_types),
            "supports_rollback": self.supports_rollback,
        }

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _read_text(self, path: str) -> str | None:
        """File contents, or ``None`` if the file is missing."""
        if not self.site.fs.exists(path):
            return None
        return self.site.fs.read(path).decode("utf-8", errors="surrogateescape")

    def _write_text(self, path: str, text: str) -> None:
        if not self.site.fs.write(path, text.encode("utf-8", errors="surrogateescape")):
            raise ApplyError(f"could not write {path}")

    def _remember_file(self, files: dict[str, bytes | None], path: str) -> None:
        """Record a file's prior bytes once, before the first write to it."""
        if path in files:
            return
        files[path] = self.site.fs.read(path) if self.site.fs.exists(path) else None

    def _restore_files(self, files: dict[str, bytes | None], result: RollbackResult) -> None:
        fs = self.site.fs
        for path, content in files.items():
            if content is None:
                if fs.exists(path) and not fs.delete(path):
                    result.errors.append(f"could not remove {path}")
                    continue
            elif not fs.write(path, content):
                result.errors.append(f"could not restore {path}")
                continue
            result.restored.append(path)

    def _failure(self, message: str, error: Exception | None = None, **kwargs: Any) -> FixResult:
        logger.error("%s: %s", self.name or type(self).__name__, message)
        return FixResult(
            success=False,
            message=message,
            error=message,
            error_kind=getattr(error, "kind", ApplyError.kind),
            **kwargs,
        )

    def _wrong_data(self, rollback_data: RollbackData) -> RollbackResult:
        message = f"{self.kind.value} cannot roll back {rollback_data.kind.value} data"
        return RollbackResult(success=False, errors=[message], message=message)
