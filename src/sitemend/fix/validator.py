"""Post-fix verification helpers and the engine's final validation gate."""

from __future__ import annotations

import logging

from sitemend.core.models import ValidationResult
from sitemend.core.site import Site

logger = logging.getLogger(__name__)

DEFAULT_MIN_CONFIDENCE = 70


class FixValidator:
    """Independent checks a strategy runs after applying a fix.

    Every check re-reads the live resource instead of trusting what the
    apply step believes it wrote. Failed checks subtract their penalty from
    ``result.confidence``.
    """

    def __init__(self, site: Site, min_confidence: int = DEFAULT_MIN_CONFIDENCE):
        self.site = site
        self.min_confidence = min_confidence

    def start(self, confidence: int) -> ValidationResult:
        return ValidationResult(is_valid=False, confidence=confidence)

    def check(self, result: ValidationResult, name: str, passed: bool, message: str, penalty: int) -> bool:
        result.record(name, passed, message if not passed else "")
        if not passed:
            result.confidence = max(0, result.confidence - penalty)
        return passed

    def check_site(self, result: ValidationResult, penalty: int) -> bool:
        """Is the site still answering?"""
        probe = self.site.probe.check()
        if probe.skipped:
            result.record("site_responding", True, probe.message)
            return True
        message = f"Site is not responding after fix ({probe.message})" if not probe.ok else ""
        return self.check(result, "site_responding", probe.ok, message, penalty)

    def check_syntax(self, result: ValidationResult, paths: list[str], penalty: int) -> bool:
        """Lint every modified source file that still exists."""
        all_ok = True
        for path in paths:
            if not path.endswith((".php", ".phtml", ".inc")) or not self.site.fs.exists(path):
                continue
            outcome = self.site.syntax.check(self.site.root / path)
            if outcome.skipped:
                result.record(f"syntax:{path}", True, outcome.output)
                continue
            message = f"Syntax error in {path}: {outcome.output}" if not outcome.ok else ""
            all_ok = self.check(result, f"syntax:{path}", outcome.ok, message, penalty) and all_ok
        return all_ok

    def read_text(self, path: str) -> str | None:
        try:
            return self.site.fs.read(path).decode("utf-8", errors="replace")
        except OSError:
            return None

    def finish(self, result: ValidationResult, valid_at: int) -> ValidationResult:
        """Mark valid only when nothing failed and confidence reached ``valid_at``."""
        result.is_valid = not result.issues_found and result.confidence >= valid_at
        return result

    def final_gate(self, result: ValidationResult) -> ValidationResult:
        """Engine-level gate: low confidence invalidates regardless of is_valid."""
        if result.is_valid and result.confidence < self.min_confidence:
            logger.warning(
                "Validation confidence %d below floor %d; treating fix as invalid",
                result.confidence,
                self.min_confidence,
            )
            result.is_valid = False
            result.issues_found.append(
                f"confidence {result.confidence} below required {self.min_confidence}"
            )
        return result
