"""Tests for the configuration hardening strategy."""

from __future__ import annotations

from pathlib import Path

import pytest

from sitemend.core.models import ConfigRollback, PermissionsRollback, Vulnerability
from sitemend.fix.strategies.configuration import (
    HEADERS_BEGIN,
    PROTECTION_BEGIN,
    ConfigurationFixStrategy,
    has_constant,
    insert_before_marker,
)
from sitemend.fix.strategy import FixOptions


def _make_vuln(vuln_type: str, resources: list[str] | None = None) -> Vulnerability:
    return Vulnerability(id=f"cfg-{vuln_type}", type=vuln_type, affected_resources=resources or [])


class TestRouting:
    def test_targets(self, site):
        """Types and affected files pick the configuration surface."""
        strategy = ConfigurationFixStrategy(site)
        assert strategy.target(_make_vuln("wp_config_issue")) == "wp_config"
        assert strategy.target(_make_vuln("security_headers")) == "htaccess"
        assert strategy.target(_make_vuln("settings_vulnerability")) == "settings"
        assert strategy.target(_make_vuln("misconfiguration", ["wp-config.php"])) == "wp_config"
        assert strategy.target(_make_vuln("misconfiguration", ["public/.htaccess"])) == "htaccess"

    def test_can_auto_fix_requires_capability(self, make_site):
        """Without manage_options nothing is auto-fixable."""
        strategy = ConfigurationFixStrategy(make_site(capabilities=[]))
        assert not strategy.can_auto_fix(_make_vuln("wp_config_issue"))

    def test_can_auto_fix_requires_wp_config(self, site, site_root: Path):
        """A missing wp-config.php cannot be hardened."""
        strategy = ConfigurationFixStrategy(site)
        assert strategy.can_auto_fix(_make_vuln("wp_config_issue"))
        (site_root / "wp-config.php").unlink()
        assert not strategy.can_auto_fix(_make_vuln("wp_config_issue"))

    def test_unsupported_type(self, site):
        """Types outside the strategy are refused."""
        assert not ConfigurationFixStrategy(site).can_auto_fix(_make_vuln("xss"))


class TestSafety:
    def test_wp_config_on_staging(self, site):
        """wp-config changes on staging are moderate."""
        assessment = ConfigurationFixStrategy(site).assess_fix_safety(_make_vuln("wp_config_issue"))
        assert assessment.risk_level == pytest.approx(0.36)
        assert assessment.requirements_met
        assert assessment.risk_level < 0.7

    def test_live_site_adds_risk(self, make_site):
        """Production adds a live-site factor and a staging recommendation."""
        strategy = ConfigurationFixStrategy(make_site(environment="production"))
        assessment = strategy.assess_fix_safety(_make_vuln("wp_config_issue"))
        assert "Configuration changes on live site" in assessment.risk_factors
        assert "Test changes in a staging environment first" in assessment.recommendations
        assert assessment.risk_level == pytest.approx(0.405)


class TestWpConfig:
    def test_adds_keys_and_constants(self, site, site_root: Path):
        """Keys and hardening constants land above the stop-editing marker."""
        strategy = ConfigurationFixStrategy(site)
        vuln = _make_vuln("wp_config_issue")
        result = strategy.apply_fix(vuln)

        assert result.success
        text = (site_root / "wp-config.php").read_text()
        assert has_constant(text, "AUTH_KEY")
        assert has_constant(text, "NONCE_SALT")
        assert "define('DISALLOW_FILE_EDIT', true);" in text
        assert "define('FORCE_SSL_ADMIN', true);" in text
        assert text.index("DISALLOW_FILE_EDIT") < text.index("stop editing")
        # Staging keeps debugging on.
        assert "define('WP_DEBUG', true)" in text

        validation = strategy.validate_fix(vuln, result)
        assert validation.is_valid, validation.issues_found

    def test_production_disables_debug(self, make_site, site_root: Path):
        """On a live site WP_DEBUG is switched off."""
        strategy = ConfigurationFixStrategy(make_site(environment="production"))
        vuln = _make_vuln("wp_config_issue")
        result = strategy.apply_fix(vuln)
        text = (site_root / "wp-config.php").read_text()
        assert "define('WP_DEBUG', false)" in text
        assert any(c.action == "set_constant" for c in result.changes_made)
        assert strategy.validate_fix(vuln, result).validation_tests["debug_disabled"].passed

    def test_idempotent(self, site, site_root: Path):
        """A second apply changes nothing."""
        strategy = ConfigurationFixStrategy(site)
        vuln = _make_vuln("wp_config_issue")
        strategy.apply_fix(vuln)
        after_first = (site_root / "wp-config.php").read_bytes()

        second = strategy.apply_fix(vuln)
        assert second.success
        assert second.changes_made == []
        assert second.rollback_data is None
        assert (site_root / "wp-config.php").read_bytes() == after_first

    def test_rollback_restores_bytes(self, site, site_root: Path):
        """Rollback puts back the exact original file."""
        original = (site_root / "wp-config.php").read_bytes()
        strategy = ConfigurationFixStrategy(site)
        vuln = _make_vuln("wp_config_issue")
        result = strategy.apply_fix(vuln)

        restored = strategy.rollback_fix(vuln, result.rollback_data)
        assert restored.success
        assert (site_root / "wp-config.php").read_bytes() == original

    def test_dry_run_writes_nothing(self, site, site_root: Path):
        """Dry runs report changes without touching the file."""
        original = (site_root / "wp-config.php").read_bytes()
        result = ConfigurationFixStrategy(site).apply_fix(_make_vuln("wp_config_issue"), FixOptions(dry_run=True))
        assert result.dry_run
        assert result.changes_made
        assert result.rollback_data is None
        assert (site_root / "wp-config.php").read_bytes() == original

    def test_missing_file_fails(self, site, site_root: Path):
        """Applying without wp-config.php reports a failure."""
        (site_root / "wp-config.php").unlink()
        result = ConfigurationFixStrategy(site).apply_fix(_make_vuln("wp_config_issue"))
        assert not result.success
        assert "not found" in result.error


class TestHtaccess:
    def test_blocks_added_once(self, site, site_root: Path):
        """Headers and protection blocks are added and not duplicated."""
        strategy = ConfigurationFixStrategy(site)
        vuln = _make_vuln("security_headers")
        result = strategy.apply_fix(vuln)
        text = (site_root / ".htaccess").read_text()
        assert text.startswith(HEADERS_BEGIN)
        assert PROTECTION_BEGIN in text
        assert "# BEGIN WordPress" in text
        assert strategy.validate_fix(vuln, result).is_valid

        strategy.apply_fix(vuln)
        assert (site_root / ".htaccess").read_text().count(HEADERS_BEGIN) == 1

    def test_created_file_removed_on_rollback(self, site, site_root: Path):
        """A .htaccess created by the fix is deleted on rollback."""
        (site_root / ".htaccess").unlink()
        strategy = ConfigurationFixStrategy(site)
        vuln = _make_vuln("htaccess_issue")
        result = strategy.apply_fix(vuln)
        assert (site_root / ".htaccess").exists()
        assert strategy.rollback_fix(vuln, result.rollback_data).success
        assert not (site_root / ".htaccess").exists()

    def test_manual_instructions_include_block(self, site):
        """Manual guidance for headers carries the block to paste."""
        instructions = ConfigurationFixStrategy(site).generate_manual_instructions(_make_vuln("security_headers"))
        assert any(HEADERS_BEGIN in step for step in instructions.steps)


class TestSettings:
    def test_dangerous_settings_corrected(self, make_site):
        """Open registration and admin default role are corrected."""
        site = make_site(options={"users_can_register": 1, "default_role": "administrator"})
        strategy = ConfigurationFixStrategy(site)
        vuln = _make_vuln("settings_vulnerability")
        result = strategy.apply_fix(vuln)

        assert result.success
        assert site.options.get("users_can_register") == 0
        assert site.options.get("default_role") == "subscriber"
        assert site.options.get("comment_moderation") == 1
        assert strategy.validate_fix(vuln, result).is_valid

        restored = strategy.rollback_fix(vuln, result.rollback_data)
        assert restored.success
        assert site.options.get("users_can_register") == 1
        assert site.options.get("default_role") == "administrator"
        assert not site.options.has("comment_moderation")

    def test_registration_allowed_explicitly(self, make_site):
        """An explicit allow flag keeps registration open."""
        site = make_site(options={"users_can_register": 1, "sitemend_allow_registration": True})
        ConfigurationFixStrategy(site).apply_fix(_make_vuln("settings_vulnerability"))
        assert site.options.get("users_can_register") == 1


class TestHelpers:
    def test_insert_before_settings_require(self):
        """Without the marker, blocks go above the wp-settings require."""
        text = "<?php\nrequire_once ABSPATH . 'wp-settings.php';\n"
        out = insert_before_marker(text, "define('X', 1);\n")
        assert out.index("define('X'") < out.index("require_once")

    def test_insert_at_end(self):
        """Without any anchor, blocks are appended."""
        assert insert_before_marker("<?php", "define('X', 1);\n") == "<?php\ndefine('X', 1);\n"

    def test_wrong_rollback_kind(self, site):
        """Rollback data from another strategy is refused."""
        result = ConfigurationFixStrategy(site).rollback_fix("v", PermissionsRollback(modes={"a": 0o644}))
        assert not result.success
        assert result.errors == ["configuration cannot roll back file_permissions data"]

    def test_empty_rollback(self, site):
        """Empty rollback data restores nothing and succeeds."""
        assert ConfigurationFixStrategy(site).rollback_fix("v", ConfigRollback()).success
