"""Fix Engine: runs each vulnerability through the remediation pipeline.

Per vulnerability the stages are strategy lookup, the can-fix check, the
safety gate, resource locking, snapshot, an optional dry run, apply,
validation and, when apply or validation fails, rollback. Every stage
reports its result as a value on the :class:`FixRecord`; nothing a
strategy raises escapes the engine, and one bad vulnerability never stops
the rest of a batch.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterable

from sitemend.core.config import EngineConfig, SitemendConfig, get_sitemend_dir
from sitemend.core.errors import (
    ApplyError,
    BackupError,
    FixTimeoutError,
    RollbackError,
    SafetyGateError,
    StoreError,
    ValidationError,
    ValidationFailure,
)
from sitemend.core.models import (
    BatchReport,
    FixRecord,
    FixResult,
    FixStatus,
    ManualInstructions,
    Outcome,
    StrategyKind,
    ValidationResult,
    VulnStatus,
    Vulnerability,
)
from sitemend.core.site import Site
from sitemend.fix.backup import BackupManager
from sitemend.fix.deadline import CancelToken, Deadline
from sitemend.fix.guidance import manual_instructions
from sitemend.fix.locks import ResourceLocks
from sitemend.fix.registry import StrategyRegistry, build_default_registry
from sitemend.fix.store import FixRecordStore
from sitemend.fix.strategy import FixOptions, FixStrategy
from sitemend.fix.validator import FixValidator
from sitemend.scoring.severity import ResourceContext, calculate_severity

logger = logging.getLogger(__name__)


class FixEngine:
    """Orchestrates safety assessment, backup, apply, validate and rollback."""

    def __init__(
        self,
        site: Site,
        registry: StrategyRegistry | None = None,
        config: EngineConfig | None = None,
        backups: BackupManager | None = None,
        store: FixRecordStore | None = None,
        validator: FixValidator | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.site = site
        self.config = config or EngineConfig()
        self.validator = validator or FixValidator(site, self.config.min_validation_confidence)
        self.registry = registry if registry is not None else build_default_registry(site, validator=self.validator)
        self.backups = backups or BackupManager(site)
        self.store = store
        self.locks = ResourceLocks()
        self.history: list[FixRecord] = []
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: SitemendConfig, project_path: Path) -> FixEngine:
        """Engine wired to the local site, backups and record store."""
        site = Site.from_config(config, project_path)
        validator = FixValidator(site, config.engine.min_validation_confidence)
        return cls(
            site,
            registry=build_default_registry(site, config.strategies, validator),
            config=config.engine,
            backups=BackupManager(site, config.backup),
            store=FixRecordStore(get_sitemend_dir(project_path), encrypt=config.backup.encrypt),
            validator=validator,
        )

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def process_vulnerabilities(
        self,
        vulnerabilities: Iterable[Vulnerability | dict[str, Any]],
        batch_size: int | None = None,
        *,
        override_safety: bool = False,
        dry_run: bool | None = None,
        token: CancelToken | None = None,
    ) -> BatchReport:
        """Process vulnerabilities in ordered chunks of ``batch_size``.

        Raw dicts are parsed here; malformed ones are counted as skipped.
        """
        items = list(vulnerabilities)
        size = self.config.batch_size if batch_size is None else batch_size
        if size < 1:
            raise ValidationError(f"batch size must be at least 1, got {size}")

        report = BatchReport(started_at=self.site.clock())
        chunks = [items[i:i + size] for i in range(0, len(items), size)]
        for index, chunk in enumerate(chunks):
            if index and self.config.batch_pause > 0:
                self._sleep(self.config.batch_pause)
            report.chunks += 1
            logger.debug("Processing chunk %d/%d (%d items)", index + 1, len(chunks), len(chunk))
            for item in chunk:
                report.add(self._process_item(item, override_safety, dry_run, token))

        report.finished_at = self.site.clock()
        logger.info(
            "Batch done: %d processed, %d auto-fixed, %d manual, %d failed, %d skipped",
            report.total_processed,
            report.auto_fixed,
            report.manual_required,
            report.failed,
            report.skipped,
        )
        if report.rollback_failed:
            logger.critical("%d fix(es) could not be rolled back; the site needs attention", report.rollback_failed)
        return report

    def _process_item(
        self,
        item: Vulnerability | dict[str, Any],
        override_safety: bool,
        dry_run: bool | None,
        token: CancelToken | None,
    ) -> FixRecord:
        if isinstance(item, Vulnerability):
            vulnerability = item
        else:
            try:
                vulnerability = Vulnerability.from_dict(item)
            except ValidationError as e:
                raw_id = item.get("id") if isinstance(item, dict) else None
                record = FixRecord(vulnerability_id=str(raw_id or "<unknown>"), start_time=self.site.clock())
                logger.warning("Skipping malformed vulnerability: %s", e)
                return self._finish(record, FixStatus.DECLINED, Outcome.SKIPPED, error=str(e), error_kind=e.kind)

        if token is not None and token.cancelled:
            record = FixRecord(vulnerability_id=vulnerability.id, start_time=self.site.clock())
            return self._finish(record, FixStatus.DECLINED, Outcome.SKIPPED, error="batch cancelled", error_kind="cancelled")

        try:
            return self.process_vulnerability(
                vulnerability, override_safety=override_safety, dry_run=dry_run, token=token
            )
        except Exception as e:
            logger.exception("Unexpected error processing %s", vulnerability.id)
            record = FixRecord(vulnerability_id=vulnerability.id, start_time=self.site.clock())
            record.instructions = manual_instructions(vulnerability, "automatic fix failed unexpectedly")
            return self._finish(record, FixStatus.FAILED, Outcome.FAILED, error=str(e), error_kind=ApplyError.kind)

    # ------------------------------------------------------------------
    # Single vulnerability
    # ------------------------------------------------------------------

    def process_vulnerability(
        self,
        vulnerability: Vulnerability,
        *,
        override_safety: bool = False,
        dry_run: bool | None = None,
        token: CancelToken | None = None,
    ) -> FixRecord:
        """Run one vulnerability through the pipeline and return its record."""
        record = FixRecord(vulnerability_id=vulnerability.id, start_time=self.site.clock())
        logger.debug("%s: strategy lookup", vulnerability.id)

        strategy = self.registry.find_for(vulnerability)
        if strategy is None:
            return self._manual(record, vulnerability, None, "no fix strategy handles this vulnerability type")
        record.strategy_type = strategy.kind.value

        if not self.config.auto_fix_enabled or self.config.manual_fixes_only:
            return self._manual(record, vulnerability, strategy, "automatic fixing is disabled")

        try:
            can_fix = strategy.can_auto_fix(vulnerability)
        except Exception as e:
            return self._strategy_error(record, vulnerability, strategy, "can_auto_fix", e)
        if not can_fix:
            return self._manual(record, vulnerability, strategy, "strategy cannot fix this automatically")

        logger.debug("%s: safety assessment", vulnerability.id)
        try:
            assessment = strategy.assess_fix_safety(vulnerability)
        except Exception as e:
            return self._strategy_error(record, vulnerability, strategy, "assess_fix_safety", e)
        if assessment.severity_score is None:
            assessment.severity_score = self._severity_score(vulnerability)
        record.safety = assessment

        if not override_safety:
            if assessment.risk_level > self.config.safety_threshold:
                reason = (
                    f"risk {assessment.risk_level:.2f} exceeds safety threshold "
                    f"{self.config.safety_threshold:.2f}"
                )
                return self._manual(record, vulnerability, strategy, reason, error_kind=SafetyGateError.kind)
            if not assessment.requirements_met:
                unmet = ", ".join(k for k, ok in assessment.requirements.items() if not ok)
                return self._manual(
                    record, vulnerability, strategy, f"requirements not met: {unmet}", error_kind=SafetyGateError.kind
                )
        elif assessment.risk_level > self.config.safety_threshold:
            logger.warning("%s: safety gate overridden at risk %.2f", vulnerability.id, assessment.risk_level)

        scope = strategy.backup_scope(vulnerability)
        with self.locks.holding(vulnerability.id, scope.paths) as busy:
            if busy is not None:
                logger.warning("%s: skipped, %s", vulnerability.id, busy)
                return self._finish(record, FixStatus.DECLINED, Outcome.SKIPPED, error=busy, error_kind="busy")
            return self._mutate(record, vulnerability, strategy, override_safety, dry_run, token)

    def _mutate(
        self,
        record: FixRecord,
        vulnerability: Vulnerability,
        strategy: FixStrategy,
        override_safety: bool,
        dry_run: bool | None,
        token: CancelToken | None,
    ) -> FixRecord:
        """Backup, apply, validate; roll back on failure. Caller holds the locks."""
        deadline = Deadline(self.config.fix_timeout, token)
        preview_options = FixOptions(True, deadline, override_safety, record.fix_id)
        only_dry_run = self.config.dry_run_mode if dry_run is None else dry_run

        if only_dry_run:
            logger.debug("%s: dry run only", vulnerability.id)
            preview = self._apply(strategy, vulnerability, preview_options)
            if not preview.success:
                return self._dry_run_failed(record, vulnerability, strategy, preview)
            record.fix_type = preview.fix_type
            record.actions_taken = [f"Dry run: {a}" for a in preview.actions_taken]
            record.changes_made = list(preview.changes_made)
            record.instructions = self._instructions(vulnerability, strategy, "dry run; nothing was changed")
            return self._finish(record, FixStatus.DECLINED, Outcome.SKIPPED)

        if self.config.backup_required:
            scope = strategy.backup_scope(vulnerability)
            logger.debug("%s: snapshot of %d paths", vulnerability.id, len(scope.paths))
            try:
                snapshot = self.backups.snapshot(
                    scope.paths, scope.option_keys, label=f"{vulnerability.id} {strategy.kind.value}"
                )
            except BackupError as e:
                logger.error("%s: backup failed, nothing changed: %s", vulnerability.id, e)
                record.instructions = self._instructions(vulnerability, strategy, str(e))
                return self._finish(record, FixStatus.FAILED, Outcome.FAILED, error=str(e), error_kind=e.kind)
            record.backup_id = snapshot.id

        if self.config.dry_run_first:
            logger.debug("%s: dry run", vulnerability.id)
            preview = self._apply(strategy, vulnerability, preview_options)
            if not preview.success:
                self._release(record)
                return self._dry_run_failed(record, vulnerability, strategy, preview)

        options = FixOptions(deadline=deadline, override_safety=override_safety, owner=record.fix_id)

        logger.debug("%s: apply", vulnerability.id)
        self._persist(record)
        result = self._apply(strategy, vulnerability, options)
        record.fix_type = result.fix_type
        record.actions_taken = list(result.actions_taken)
        record.changes_made = list(result.changes_made)
        record.rollback_data = result.rollback_data

        if result.success and deadline.expired:
            result.success = False
            result.error = f"fix exceeded {self.config.fix_timeout:g}s budget"
            result.error_kind = FixTimeoutError.kind
        if not result.success:
            logger.error("%s: apply failed: %s", vulnerability.id, result.error or result.message)
            record.status = FixStatus.APPLIED if result.changed_anything else FixStatus.PENDING
            record.error = result.error or result.message
            record.error_kind = result.error_kind or ApplyError.kind
            return self._rollback_and_finish(record, vulnerability, strategy)
        record.status = FixStatus.APPLIED

        if self.config.validation_required:
            logger.debug("%s: validate", vulnerability.id)
            validation = self._validate(strategy, vulnerability, result)
        else:
            validation = ValidationResult(is_valid=True, confidence=100)
            validation.record("validation", True, "skipped by configuration")
        record.validation = validation

        if not validation.is_valid or deadline.expired:
            if deadline.expired:
                record.error = f"fix exceeded {self.config.fix_timeout:g}s budget"
                record.error_kind = FixTimeoutError.kind
            else:
                record.error = "; ".join(validation.issues_found) or "validation failed"
                record.error_kind = ValidationFailure.kind
            logger.error("%s: validation failed: %s", vulnerability.id, record.error)
            return self._rollback_and_finish(record, vulnerability, strategy)

        self._release(record)
        vulnerability.status = VulnStatus.FIXED
        logger.info("%s: fixed by %s (%s)", vulnerability.id, strategy.kind.value, result.message)
        return self._finish(record, FixStatus.VALIDATED, Outcome.AUTO_FIXED)

    def _apply(self, strategy: FixStrategy, vulnerability: Vulnerability, options: FixOptions) -> FixResult:
        try:
            return strategy.apply_fix(vulnerability, options)
        except Exception as e:
            logger.error("%s.apply_fix raised for %s: %s", type(strategy).__name__, vulnerability.id, e)
            return FixResult(
                success=False,
                message=f"apply raised {type(e).__name__}",
                error=str(e),
                error_kind=getattr(e, "kind", ApplyError.kind),
                dry_run=options.dry_run,
            )

    def _validate(self, strategy: FixStrategy, vulnerability: Vulnerability, result: FixResult) -> ValidationResult:
        try:
            validation = strategy.validate_fix(vulnerability, result)
        except Exception as e:
            logger.error("%s.validate_fix raised for %s: %s", type(strategy).__name__, vulnerability.id, e)
            validation = ValidationResult(is_valid=False, confidence=0)
            validation.record("validate_fix", False, f"validation raised {type(e).__name__}: {e}")
            return validation
        return self.validator.final_gate(validation)

    def _severity_score(self, vulnerability: Vulnerability) -> float | None:
        context = None
        if vulnerability.affected_resources:
            context = ResourceContext.from_path(vulnerability.affected_resources[0])
        try:
            return calculate_severity(vulnerability, context).final_score
        except (ValueError, TypeError) as e:
            logger.warning("%s: severity scoring failed: %s", vulnerability.id, e)
            return None

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def _dry_run_failed(
        self,
        record: FixRecord,
        vulnerability: Vulnerability,
        strategy: FixStrategy,
        preview: FixResult,
    ) -> FixRecord:
        record.actions_taken = list(preview.actions_taken)
        error = f"dry run failed: {preview.error or preview.message}"
        record.instructions = self._instructions(vulnerability, strategy, error)
        return self._finish(
            record, FixStatus.FAILED, Outcome.FAILED, error=error, error_kind=preview.error_kind or ApplyError.kind
        )

    def _rollback_and_finish(self, record: FixRecord, vulnerability: Vulnerability, strategy: FixStrategy) -> FixRecord:
        record.instructions = self._instructions(vulnerability, strategy, record.error or "automatic fix failed")
        if not self.config.rollback_on_failure:
            logger.error(
                "%s: rollback disabled; changes left in place, snapshot %s retained",
                vulnerability.id,
                record.backup_id,
            )
            return self._finish(record, FixStatus.FAILED, Outcome.FAILED)
        try:
            from_snapshot = self._restore(record, strategy, vulnerability)
        except RollbackError as e:
            return self._rollback_failed(record, e)
        if not from_snapshot:
            return self._finish(record, FixStatus.FAILED, Outcome.FAILED)
        self._release(record)
        return self._finish(record, FixStatus.ROLLED_BACK, Outcome.FAILED)

    def _restore(self, record: FixRecord, strategy: FixStrategy | None, target: Vulnerability | str) -> bool:
        """Undo a fix; the snapshot, when present, is authoritative.

        Returns True when a snapshot was restored. Without one, the strategy's
        own rollback data (or an empty change list) can still put things back,
        but the record cannot be called rolled back.

        Raises:
            RollbackError: if the resources could not be put back.
        """
        errors: list[str] = []
        strategy_ok: bool | None = None
        snapshot_ok: bool | None = None

        if record.rollback_data is not None and strategy is not None:
            try:
                outcome = strategy.rollback_fix(target, record.rollback_data)
                strategy_ok = outcome.success
                errors.extend(outcome.errors)
            except Exception as e:
                strategy_ok = False
                errors.append(f"strategy rollback raised {type(e).__name__}: {e}")

        if record.backup_id and self.backups.exists(record.backup_id):
            restored = self.backups.restore(record.backup_id)
            snapshot_ok = restored.success
            errors.extend(restored.errors)

        if snapshot_ok is not None:
            ok = snapshot_ok
        elif strategy_ok is not None:
            ok = strategy_ok
        else:
            ok = not record.changes_made
            if not ok:
                errors.append("no rollback data or snapshot available")

        if not ok:
            raise RollbackError("; ".join(errors) or "rollback failed")
        if snapshot_ok is None:
            logger.warning("%s: no snapshot to roll back from; recorded as failed", record.vulnerability_id)
            return False
        record.rolled_back_at = self.site.clock()
        logger.warning("%s: changes rolled back", record.vulnerability_id)
        return True

    def _rollback_failed(self, record: FixRecord, error: RollbackError) -> FixRecord:
        logger.critical(
            "%s: ROLLBACK FAILED, site may be inconsistent (snapshot %s kept): %s",
            record.vulnerability_id,
            record.backup_id,
            error,
        )
        message = f"rollback failed: {error}"
        record.error = f"{record.error}; {message}" if record.error else message
        return self._finish(record, FixStatus.ROLLBACK_FAILED, Outcome.ROLLBACK_FAILED, error_kind=error.kind)

    def rollback(self, fix_id: str) -> FixRecord:
        """Operator-initiated rollback of a previously applied fix.

        Raises:
            ValidationError: if the fix is unknown, already rolled back, or has no
                snapshot.
        """
        record = self._lookup(fix_id)
        if record is None:
            raise ValidationError(f"no fix record {fix_id}")
        if record.status == FixStatus.ROLLED_BACK:
            raise ValidationError(f"fix {fix_id} was already rolled back")
        if record.status not in (FixStatus.VALIDATED, FixStatus.APPLIED, FixStatus.FAILED, FixStatus.ROLLBACK_FAILED):
            raise ValidationError(f"fix {fix_id} made no changes ({record.status.value})")
        if not record.backup_id or not self.backups.exists(record.backup_id):
            raise ValidationError(f"fix {fix_id} has no snapshot to roll back from")

        strategy = self.registry.get(StrategyKind(record.strategy_type)) if record.strategy_type else None
        with self.locks.holding(record.vulnerability_id, [c.resource for c in record.changes_made]) as busy:
            if busy is not None:
                raise ValidationError(busy)
            try:
                self._restore(record, strategy, fix_id)
            except RollbackError as e:
                record.status = FixStatus.ROLLBACK_FAILED
                record.outcome = Outcome.ROLLBACK_FAILED
                record.error = f"rollback failed: {e}"
                record.error_kind = e.kind
                logger.critical("Operator rollback of %s failed: %s", fix_id, e)
            else:
                record.status = FixStatus.ROLLED_BACK
                self._release(record)
        self._persist(record)
        return record

    def _lookup(self, fix_id: str) -> FixRecord | None:
        for record in reversed(self.history):
            if record.fix_id == fix_id:
                return record
        if self.store is not None:
            return self.store.get(fix_id)
        return None

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _manual(
        self,
        record: FixRecord,
        vulnerability: Vulnerability,
        strategy: FixStrategy | None,
        reason: str,
        error_kind: str | None = None,
    ) -> FixRecord:
        logger.warning("%s: manual fix required, %s", vulnerability.id, reason)
        record.instructions = self._instructions(vulnerability, strategy, reason)
        return self._finish(record, FixStatus.DECLINED, Outcome.MANUAL_REQUIRED, error=reason, error_kind=error_kind)

    def _strategy_error(
        self,
        record: FixRecord,
        vulnerability: Vulnerability,
        strategy: FixStrategy,
        stage: str,
        error: Exception,
    ) -> FixRecord:
        logger.error("%s.%s raised for %s: %s", type(strategy).__name__, stage, vulnerability.id, error)
        record.instructions = self._instructions(vulnerability, None, f"{stage} failed")
        return self._finish(record, FixStatus.FAILED, Outcome.FAILED, error=f"{stage}: {error}", error_kind=ApplyError.kind)

    def _instructions(
        self, vulnerability: Vulnerability, strategy: FixStrategy | None, reason: str
    ) -> ManualInstructions:
        if strategy is not None:
            try:
                instructions = strategy.generate_manual_instructions(vulnerability)
                if reason and not instructions.summary:
                    instructions.summary = reason
                return instructions
            except Exception as e:
                logger.warning("%s: strategy instructions failed, using generic guidance: %s", vulnerability.id, e)
        return manual_instructions(vulnerability, reason)

    def _finish(
        self,
        record: FixRecord,
        status: FixStatus,
        outcome: Outcome,
        error: str | None = None,
        error_kind: str | None = None,
    ) -> FixRecord:
        record.status = status
        record.outcome = outcome
        if error is not None:
            record.error = error
        if error_kind is not None:
            record.error_kind = error_kind
        record.end_time = self.site.clock()
        self.history.append(record)
        self._persist(record)
        return record

    def _release(self, record: FixRecord) -> None:
        if record.backup_id:
            self.backups.release(record.backup_id)

    def _persist(self, record: FixRecord) -> None:
        if self.store is None:
            return
        try:
            self.store.save(record)
        except StoreError as e:
            logger.error("Could not persist fix record %s: %s", record.fix_id, e)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def statistics(self) -> dict[str, Any]:
        """Counts of fix records by status and outcome."""
        if self.store is not None:
            counts = self.store.counts()
        else:
            counts = {"status": {}, "outcome": {}}
            for record in self.history:
                counts["status"][record.status.value] = counts["status"].get(record.status.value, 0) + 1
                if record.outcome is not None:
                    counts["outcome"][record.outcome.value] = counts["outcome"].get(record.outcome.value, 0) + 1
        total = sum(counts["status"].values())
        fixed = counts["outcome"].get(Outcome.AUTO_FIXED.value, 0)
        return {
            "total": total,
            "by_status": counts["status"],
            "by_outcome": counts["outcome"],
            "success_rate": round(fixed / total * 100, 1) if total else 0.0,
            "strategies": sorted(s.kind.value for s in self.registry.strategies()),
        }

