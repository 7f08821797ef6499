"""Malware cleanup and injection sanitizing for site source files.

Highly suspicious files are quarantined: the original bytes are copied out
of the document root and the file is replaced by an inert stub. Files with
fewer indicators have the offending lines neutralized in place. Injection
findings get targeted rewrites (output escaping, shell argument escaping,
prepared SQL).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from sitemend.core.errors import ApplyError, SitemendError
from sitemend.core.models import (
    Change,
    CodeRollback,
    FixResult,
    RollbackData,
    RollbackResult,
    SafetyAssessment,
    StrategyKind,
    ValidationResult,
    Vulnerability,
)
from sitemend.fix.safety import FixPlan, PlannedAction
from sitemend.fix.strategy import BackupScope, FixOptions, FixStrategy

logger = logging.getLogger(__name__)

_SUPERGLOBAL = r"\$_(?:GET|POST|REQUEST|COOKIE|SERVER)"

MALWARE_PATTERNS: dict[str, re.Pattern[str]] = {
    "base64_decode": re.compile(r"\bbase64_decode\s*\(", re.I),
    "eval": re.compile(r"\beval\s*\(", re.I),
    "exec": re.compile(r"(?<![\w>])exec\s*\(", re.I),
    "system": re.compile(r"\bsystem\s*\(", re.I),
    "shell_exec": re.compile(r"\bshell_exec\s*\(", re.I),
    "passthru": re.compile(r"\bpassthru\s*\(", re.I),
    "remote_file_get_contents": re.compile(r"\bfile_get_contents\s*\(\s*[\"']https?://", re.I),
    "curl_exec": re.compile(r"\bcurl_exec\s*\(", re.I),
    "preg_replace_eval": re.compile(r"\bpreg_replace\s*\(\s*([\"']).*/[a-z]*e[a-z]*\1", re.I),
    "create_function": re.compile(r"\bcreate_function\s*\(", re.I),
    "superglobal_call": re.compile(_SUPERGLOBAL + r"\[[^\]]*\]\s*\(", re.I),
    "assert": re.compile(r"\bassert\s*\(", re.I),
    "mb_ereg_replace_eval": re.compile(r"\bmb_ereg_replace\s*\(.*[\"'][a-z]*e[a-z]*[\"']\s*\)", re.I),
    "gzhandler_buffer": re.compile(r"\bob_start\s*\(\s*[\"']ob_gzhandler[\"']", re.I),
    "globals_assignment": re.compile(r"\$GLOBALS\[[\"'][^\"']*[\"']\]\s*=.*\$_(?:GET|POST|REQUEST)", re.I),
}

# Lines matching these are commented out when a file is cleaned in place.
NEUTRALIZABLE = (
    "eval",
    "exec",
    "system",
    "shell_exec",
    "passthru",
    "assert",
    "create_function",
    "preg_replace_eval",
    "superglobal_call",
    "globals_assignment",
)

BASE64_BLOB = re.compile(r"[A-Za-z0-9+/]{100,}={0,2}")
NEUTRALIZED_PREFIX = "// sitemend-neutralized"
HIGH_PATTERN_COUNT = 3
MEDIUM_PATTERN_COUNT = 2

XSS_RE = re.compile(r"\b(echo|print)\s+(" + _SUPERGLOBAL + r"\[[^\]]+\])")
SHELL_RE = re.compile(
    r"\b(system|exec|shell_exec|passthru)\s*\(\s*(" + _SUPERGLOBAL + r"\[[^\]]+\])\s*\)"
)
EVAL_INPUT_RE = re.compile(r"\beval\s*\(\s*" + _SUPERGLOBAL, re.I)
SQL_CONCAT_RE = re.compile(
    r"\$wpdb->(query|get_results|get_row|get_var|get_col)\(\s*([\"'])([^\"']*?)\2\s*\.\s*"
    r"(\$_(?:GET|POST|REQUEST)\[[^\]]+\])\s*\)"
)

MALWARE_TYPES = ("malware", "backdoor", "suspicious_code")
GATED_TYPES = ("malware", "backdoor")
CODE_EXTENSIONS = (".php", ".phtml", ".inc", ".js")
CORE_MARKERS = ("wp-admin/", "wp-includes/", "wp-config.php")


@dataclass
class MalwareAnalysis:
    severity: str = "none"
    patterns_found: list[str] = field(default_factory=list)
    has_encoded_blob: bool = False

    @property
    def suspicious(self) -> bool:
        return bool(self.patterns_found) or self.has_encoded_blob


def _live_lines(content: str) -> str:
    """Source with already-neutralized lines dropped."""
    return "\n".join(
        line for line in content.splitlines() if not line.lstrip().startswith(NEUTRALIZED_PREFIX)
    )


def analyze_malware(content: str) -> MalwareAnalysis:
    """Count known-dangerous patterns and grade the file."""
    live = _live_lines(content)
    analysis = MalwareAnalysis()
    analysis.patterns_found = [name for name, pattern in MALWARE_PATTERNS.items() if pattern.search(live)]

    count = len(analysis.patterns_found)
    if count >= HIGH_PATTERN_COUNT:
        analysis.severity = "high"
    elif count >= MEDIUM_PATTERN_COUNT:
        analysis.severity = "medium"
    elif count:
        analysis.severity = "low"

    if BASE64_BLOB.search(live):
        analysis.has_encoded_blob = True
        if analysis.severity != "high":
            analysis.severity = "medium"
    return analysis


def neutralize_lines(content: str, names: tuple[str, ...] = NEUTRALIZABLE) -> tuple[str, int]:
    """Comment out every live line matching one of ``names``.

    Returns the new content and how many lines were neutralized.
    """
    out: list[str] = []
    count = 0
    for line in content.splitlines(keepends=True):
        body = line.rstrip("\r\n")
        ending = line[len(body):]
        if body.lstrip().startswith(NEUTRALIZED_PREFIX):
            out.append(line)
            continue
        hits = [n for n in names if MALWARE_PATTERNS[n].search(body)]
        if not hits:
            out.append(line)
            continue
        indent = body[: len(body) - len(body.lstrip())]
        # "?>" would end a PHP single-line comment early.
        inert = body.strip().replace("?>", "? >")
        out.append(f"{indent}{NEUTRALIZED_PREFIX} [{', '.join(hits)}]: {inert}{ending}")
        count += 1
    return "".join(out), count


def sanitize_xss(content: str) -> tuple[str, int]:
    return XSS_RE.subn(r"\1 esc_html(\2)", content)


def sanitize_shell(content: str) -> tuple[str, int]:
    return SHELL_RE.subn(r"\1(escapeshellcmd(\2))", content)


def sanitize_sql(content: str) -> tuple[str, int]:
    return SQL_CONCAT_RE.subn(r"$wpdb->\1($wpdb->prepare(\2\3%s\2, \4))", content)


def sanitize_eval_input(content: str) -> tuple[str, int]:
    lines = content.splitlines(keepends=True)
    out: list[str] = []
    count = 0
    for line in lines:
        if EVAL_INPUT_RE.search(line) and not line.lstrip().startswith(NEUTRALIZED_PREFIX):
            fixed, n = neutralize_lines(line, ("eval",))
            out.append(fixed)
            count += n
        else:
            out.append(line)
    return "".join(out), count


SANITIZERS = {
    "xss": (sanitize_xss,),
    "sql_injection": (sanitize_sql,),
    "shell_injection": (sanitize_shell,),
    "code_injection": (sanitize_shell, sanitize_eval_input),
    "php_injection": (sanitize_eval_input, sanitize_shell),
}

RESIDUAL_CHECKS = {
    "xss": (XSS_RE,),
    "sql_injection": (SQL_CONCAT_RE,),
    "shell_injection": (SHELL_RE,),
    "code_injection": (SHELL_RE, EVAL_INPUT_RE),
    "php_injection": (SHELL_RE, EVAL_INPUT_RE),
}


class CodeRemediationFixStrategy(FixStrategy):
    """Quarantines or cleans malicious code and patches injection sinks."""

    kind = StrategyKind.CODE_REMEDIATION
    name = "Code Remediation Fix Strategy"
    supported_types = (
        "code_injection",
        "sql_injection",
        "xss",
        "malware",
        "suspicious_code",
        "backdoor",
        "shell_injection",
        "php_injection",
    )

    @property
    def quarantine_dir(self) -> Path:
        if self.config.quarantine_dir:
            path = Path(self.config.quarantine_dir)
            return path if path.is_absolute() else self.site.state_dir.parent / path
        return self.site.state_dir / "quarantine"

    def _mode(self, vulnerability: Vulnerability) -> str:
        key = vulnerability.type_key
        if key in SANITIZERS:
            return key
        if vulnerability.category_key in SANITIZERS:
            return vulnerability.category_key
        return "malware"

    def _files(self, vulnerability: Vulnerability) -> list[str]:
        return [r.replace("\\", "/").strip("/") for r in vulnerability.affected_resources]

    def can_auto_fix(self, vulnerability: Vulnerability) -> bool:
        if not self.supports(vulnerability):
            return False
        if not self.site.capabilities.actor_can("edit_files"):
            return False
        files = self._files(vulnerability)
        if not files:
            return False
        if not all(self.site.fs.exists(f) and not self.site.fs.is_dir(f) for f in files):
            return False
        if vulnerability.type_key in GATED_TYPES:
            return vulnerability.confidence > self.config.malware_min_confidence
        return True

    def backup_scope(self, vulnerability: Vulnerability) -> BackupScope:
        return BackupScope(paths=self._files(vulnerability))

    def estimated_time(self, vulnerability: Vulnerability) -> int:
        return 30 * max(1, len(vulnerability.affected_resources))

    # ------------------------------------------------------------------
    # Safety
    # ------------------------------------------------------------------

    def _affects_core(self, files: list[str]) -> bool:
        return any(f.startswith(CORE_MARKERS[:2]) or f.endswith(CORE_MARKERS[2]) for f in files)

    def _affects_active_components(self, files: list[str]) -> bool:
        return any(self.assessor.classify_file(f) in ("active_theme", "active_plugin") for f in files)

    def assess_fix_safety(self, vulnerability: Vulnerability) -> SafetyAssessment:
        mode = self._mode(vulnerability)
        files = self._files(vulnerability)
        risk = 0.4
        factors: list[str] = []
        recommendations: list[str] = []

        if vulnerability.type_key in GATED_TYPES:
            risk += 0.2
            factors.append("Malware removal can break site functionality")
            recommendations.append("Manual review recommended before automated fix")
        elif mode in ("code_injection", "php_injection"):
            risk += 0.1
            factors.append("Code modification can cause syntax errors")
        elif mode == "sql_injection":
            risk += 0.1
            factors.append("Database query changes can affect functionality")

        if self._affects_core(files):
            risk += 0.2
            factors.append("Core platform files affected")
            recommendations.append("Run a core integrity check after the fix")
        if self._affects_active_components(files):
            risk += 0.1
            factors.append("Active theme or plugin files affected")
            recommendations.append("Test site functionality after fix")
        if self.site.is_live:
            risk += 0.1
            factors.append("Code changes on live site")

        action = "file_replace" if mode == "malware" else "file_patch"
        plan = FixPlan(
            actions=[PlannedAction(f, action) for f in files],
            complexity=["custom_code_changes"],
            estimated_time=self.estimated_time(vulnerability),
        )
        assessment = self.assessor.assess(
            plan,
            strategy_risk=risk,
            risk_factors=factors,
            requirements={
                "filesystem_access": self.site.fs.exists("."),
                "edit_files_capability": self.site.capabilities.actor_can("edit_files"),
                "affected_files_accessible": all(self.site.fs.exists(f) for f in files),
            },
        )
        assessment.recommendations.extend(recommendations)
        return assessment

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply_fix(self, vulnerability: Vulnerability, options: FixOptions | None = None) -> FixResult:
        options = options or FixOptions()
        mode = self._mode(vulnerability)
        rollback = CodeRollback()
        changes: list[Change] = []
        unresolved: list[str] = []

        try:
            for path in self._files(vulnerability):
                options.checkpoint(f"remediating {path}")
                if not path.endswith(CODE_EXTENSIONS):
                    logger.debug("Skipping non-code file %s", path)
                    continue
                content = self._read_text(path)
                if content is None:
                    raise ApplyError(f"{path} not found")
                if mode == "malware":
                    change = self._remediate_malware(path, content, rollback, options.dry_run)
                    if change is None and analyze_malware(content).suspicious:
                        unresolved.append(path)
                else:
                    change = self._sanitize(path, content, mode, rollback, options.dry_run)
                if change is not None:
                    changes.append(change)
        except (SitemendError, OSError) as e:
            return self._failure(
                f"code remediation failed: {e}",
                e,
                changes_made=changes,
                rollback_data=rollback if not rollback.is_empty else None,
                fix_type=mode,
            )

        if unresolved:
            return self._failure(
                f"suspicious code in {', '.join(unresolved)} could not be removed automatically",
                changes_made=changes,
                rollback_data=rollback if not rollback.is_empty else None,
                fix_type=mode,
            )

        quarantined = sum(1 for c in changes if c.action == "quarantine")
        if changes:
            actions = [f"Processed {len(changes)} files"]
            if quarantined:
                actions.append(f"Quarantined {quarantined} high-risk files")
        else:
            actions = ["No remediation needed; code already clean"]
        return FixResult(
            success=True,
            message=actions[0],
            actions_taken=actions,
            changes_made=changes,
            rollback_data=rollback if not rollback.is_empty else None,
            fix_type=mode,
            dry_run=options.dry_run,
        )

    def _remediate_malware(self, path: str, content: str, rollback: CodeRollback, dry_run: bool) -> Change | None:
        analysis = analyze_malware(content)
        if not analysis.suspicious:
            return None

        if analysis.severity == "high":
            if dry_run:
                return Change(path, "quarantine", f"Would quarantine {path} ({', '.join(analysis.patterns_found)})")
            quarantine_path = self._quarantine(path, rollback)
            return Change(path, "quarantine", f"Quarantined malicious file {path} to {quarantine_path.name}")

        cleaned, count = neutralize_lines(content)
        if not count:
            return None
        if not dry_run:
            self._remember_file(rollback.files, path)
            self._write_text(path, cleaned)
        return Change(path, "neutralize", f"Neutralized {count} dangerous lines in {path}")

    def _quarantine(self, path: str, rollback: CodeRollback) -> Path:
        fs = self.site.fs
        self._remember_file(rollback.files, path)
        original = rollback.files[path] or b""

        qdir = self.quarantine_dir
        qdir.mkdir(parents=True, exist_ok=True)
        stamp = self.site.clock()
        target = qdir / f"{stamp:%Y-%m-%d_%H-%M-%S}_{path.replace('/', '__')}"
        target.write_bytes(original)
        target.chmod(0o600)
        rollback.quarantined[path] = str(target)

        stub = (
            "<?php\n"
            f"// File quarantined by sitemend on {stamp:%Y-%m-%d %H:%M:%S}\n"
            f"// Original saved as {target.name}\n"
        )
        if not fs.write(path, stub.encode("utf-8")):
            raise ApplyError(f"could not replace {path} with quarantine stub")
        return target

    def _sanitize(self, path: str, content: str, mode: str, rollback: CodeRollback, dry_run: bool) -> Change | None:
        updated = content
        total = 0
        for sanitizer in SANITIZERS[mode]:
            updated, count = sanitizer(updated)
            total += count
        if not total:
            return None
        if not dry_run:
            self._remember_file(rollback.files, path)
            self._write_text(path, updated)
        return Change(path, "sanitize", f"Sanitized {total} {mode.replace('_', ' ')} sinks in {path}")

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_fix(self, vulnerability: Vulnerability, fix_result: FixResult) -> ValidationResult:
        v = self.validator
        mode = self._mode(vulnerability)
        files = [f for f in self._files(vulnerability) if f.endswith(CODE_EXTENSIONS)]

        if mode == "malware":
            result = v.start(75)
            remaining = []
            for path in files:
                text = v.read_text(path)
                if text is None:
                    continue
                analysis = analyze_malware(text)
                live = [p for p in analysis.patterns_found if p in NEUTRALIZABLE]
                if live or analysis.severity == "high":
                    remaining.append(f"{path} ({', '.join(analysis.patterns_found)})")
            v.check(result, "malware_removed", not remaining, f"Malicious code remains: {'; '.join(remaining)}", 30)
        else:
            result = v.start(70)
            remaining = []
            for path in files:
                text = v.read_text(path)
                if text is None:
                    continue
                live = _live_lines(text)
                if any(check.search(live) for check in RESIDUAL_CHECKS[mode]):
                    remaining.append(path)
            v.check(result, "sinks_sanitized", not remaining, f"Unsanitized sinks remain in {', '.join(remaining)}", 30)

        changed = sorted({c.resource for c in fix_result.changes_made})
        v.check_syntax(result, changed, 50)
        v.check_site(result, 40)
        return v.finish(result, 60)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback_fix(self, vulnerability: Vulnerability | str, rollback_data: RollbackData) -> RollbackResult:
        if not isinstance(rollback_data, CodeRollback):
            return self._wrong_data(rollback_data)

        result = RollbackResult(success=True)
        self._restore_files(rollback_data.files, result)
        if not result.errors:
            for copy in rollback_data.quarantined.values():
                Path(copy).unlink(missing_ok=True)

        result.success = not result.errors
        result.message = "source files restored" if result.success else "; ".join(result.errors)
        return result
