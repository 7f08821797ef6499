"""Site configuration hardening: wp-config.php, .htaccess and settings."""

from __future__ import annotations

import os
import re
import secrets
import string

from sitemend.core.errors import ApplyError, SitemendError
from sitemend.core.models import (
    Change,
    ConfigRollback,
    FixResult,
    ManualInstructions,
    RollbackData,
    RollbackResult,
    SafetyAssessment,
    StrategyKind,
    ValidationResult,
    Vulnerability,
)
from sitemend.fix.guidance import manual_instructions
from sitemend.fix.safety import DatabaseChange, FixPlan, PlannedAction
from sitemend.fix.strategy import BackupScope, FixOptions, FixStrategy

WP_CONFIG = "wp-config.php"
HTACCESS = ".htaccess"

STOP_EDITING_MARKER = "/* That's all, stop editing!"
WP_SETTINGS_RE = re.compile(r"^[ \t]*require_once\s*\(?\s*ABSPATH\s*\.\s*['\"]wp-settings\.php['\"]", re.M)
DEBUG_ON_RE = re.compile(r"define\(\s*(['\"])WP_DEBUG\1\s*,\s*true\s*\)", re.I)

AUTH_KEYS = (
    "AUTH_KEY",
    "SECURE_AUTH_KEY",
    "LOGGED_IN_KEY",
    "NONCE_KEY",
    "AUTH_SALT",
    "SECURE_AUTH_SALT",
    "LOGGED_IN_SALT",
    "NONCE_SALT",
)
_SALT_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*()-_[]{}<>~+=,.;:/?|"

HEADERS_BEGIN = "# BEGIN sitemend Security Headers"
HEADERS_END = "# END sitemend Security Headers"
HEADERS_BLOCK = f"""{HEADERS_BEGIN}
<IfModule mod_headers.c>
    Header always set X-Content-Type-Options nosniff
    Header always set X-Frame-Options DENY
    Header always set X-XSS-Protection "1; mode=block"
    Header always set Referrer-Policy "strict-origin-when-cross-origin"
    Header always set Permissions-Policy "geolocation=(), microphone=(), camera=()"
</IfModule>
{HEADERS_END}
"""

PROTECTION_BEGIN = "# BEGIN sitemend File Protection"
PROTECTION_END = "# END sitemend File Protection"
PROTECTION_BLOCK = f"""{PROTECTION_BEGIN}
<FilesMatch "^(wp-config\\.php|\\.htaccess|readme\\.html|license\\.txt)$">
    <IfModule mod_authz_core.c>
        Require all denied
    </IfModule>
    <IfModule !mod_authz_core.c>
        Order allow,deny
        Deny from all
    </IfModule>
</FilesMatch>
Options -Indexes
{PROTECTION_END}
"""

SETTINGS_KEYS = ("users_can_register", "default_role", "comment_moderation")
DEVELOPMENT_ENVIRONMENTS = ("development", "local", "staging")


def has_constant(text: str, name: str) -> bool:
    return re.search(rf"define\(\s*(['\"]){name}\1", text) is not None


def insert_before_marker(text: str, block: str) -> str:
    """Insert ``block`` above the "stop editing" marker, the settings require, or at the end."""
    idx = text.find(STOP_EDITING_MARKER)
    if idx < 0:
        match = WP_SETTINGS_RE.search(text)
        idx = match.start() if match else -1
    if idx < 0:
        return text.rstrip("\n") + "\n" + block
    return text[:idx] + block + text[idx:]


class ConfigurationFixStrategy(FixStrategy):
    """Hardens configuration files and corrects dangerous settings."""

    kind = StrategyKind.CONFIGURATION
    name = "Configuration Fix Strategy"
    supported_types = (
        "configuration",
        "misconfiguration",
        "wp_config_issue",
        "htaccess_issue",
        "settings_vulnerability",
        "security_headers",
    )

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def target(self, vulnerability: Vulnerability) -> str:
        """Which configuration surface a vulnerability refers to."""
        key = vulnerability.type_key
        if key == "wp_config_issue":
            return "wp_config"
        if key in ("htaccess_issue", "security_headers"):
            return "htaccess"
        if key == "settings_vulnerability":
            return "settings"
        names = [r.replace("\\", "/").rsplit("/", 1)[-1].lower() for r in vulnerability.affected_resources]
        if WP_CONFIG in names:
            return "wp_config"
        if HTACCESS in names:
            return "htaccess"
        return "settings"

    def can_auto_fix(self, vulnerability: Vulnerability) -> bool:
        if not self.supports(vulnerability):
            return False
        if not self.site.capabilities.actor_can("manage_options"):
            return False
        if self.target(vulnerability) == "wp_config":
            return self.site.fs.exists(WP_CONFIG)
        return True

    def backup_scope(self, vulnerability: Vulnerability) -> BackupScope:
        target = self.target(vulnerability)
        if target == "wp_config":
            return BackupScope(paths=[WP_CONFIG])
        if target == "htaccess":
            return BackupScope(paths=[HTACCESS])
        return BackupScope(option_keys=list(SETTINGS_KEYS))

    def estimated_time(self, vulnerability: Vulnerability) -> int:
        return 30

    # ------------------------------------------------------------------
    # Safety
    # ------------------------------------------------------------------

    def _can_backup(self) -> bool:
        return os.access(self.site.state_dir, os.W_OK)

    @property
    def _is_development(self) -> bool:
        return self.site.environment in DEVELOPMENT_ENVIRONMENTS

    def assess_fix_safety(self, vulnerability: Vulnerability) -> SafetyAssessment:
        target = self.target(vulnerability)
        risk = 0.2
        factors: list[str] = []
        plan = FixPlan(estimated_time=self.estimated_time(vulnerability))

        if target == "wp_config":
            risk += 0.1
            factors.append("wp-config.php modification can break the site if incorrect")
            plan.actions.append(PlannedAction(WP_CONFIG, "configuration_update"))
            plan.system_impacts.append("updates_wp_config")
        elif target == "htaccess":
            risk += 0.1
            factors.append(".htaccess changes can cause server errors")
            plan.actions.append(PlannedAction(HTACCESS, "configuration_update"))
            plan.system_impacts.append("modifies_htaccess")
        else:
            plan.database_changes.append(DatabaseChange("data_update", "options"))
            plan.system_impacts.append("affects_authentication")

        if not self._is_development:
            risk += 0.1
            factors.append("Configuration changes on live site")

        can_backup = self._can_backup()
        if not can_backup:
            risk += 0.2
            factors.append("Cannot create configuration backup")

        assessment = self.assessor.assess(
            plan,
            strategy_risk=risk,
            risk_factors=factors,
            requirements={
                "filesystem_access": self.site.fs.exists("."),
                "manage_options_capability": self.site.capabilities.actor_can("manage_options"),
                "backup_capability": can_backup,
            },
        )
        if not self._is_development:
            assessment.recommendations.append("Test changes in a staging environment first")
        return assessment

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply_fix(self, vulnerability: Vulnerability, options: FixOptions | None = None) -> FixResult:
        options = options or FixOptions()
        target = self.target(vulnerability)
        rollback = ConfigRollback()
        try:
            options.checkpoint("configuration fix")
            if target == "wp_config":
                changes = self._fix_wp_config(rollback, options.dry_run)
            elif target == "htaccess":
                changes = self._fix_htaccess(rollback, options.dry_run)
            else:
                changes = self._fix_settings(rollback, options.dry_run)
        except (SitemendError, OSError) as e:
            return self._failure(
                f"{target} fix failed: {e}",
                e,
                rollback_data=rollback if not rollback.is_empty else None,
                fix_type=target,
            )

        if changes:
            actions = [f"{'Would update' if options.dry_run else 'Updated'} {target.replace('_', ' ')}"]
        else:
            actions = [f"No changes needed for {target.replace('_', ' ')}"]
        return FixResult(
            success=True,
            message="; ".join(c.detail for c in changes) or actions[0],
            actions_taken=actions,
            changes_made=changes,
            rollback_data=rollback if not rollback.is_empty else None,
            fix_type=target,
            dry_run=options.dry_run,
        )

    def _fix_wp_config(self, rollback: ConfigRollback, dry_run: bool) -> list[Change]:
        text = self._read_text(WP_CONFIG)
        if text is None:
            raise ApplyError(f"{WP_CONFIG} not found")

        changes: list[Change] = []
        updated = text

        if not self._is_development and DEBUG_ON_RE.search(updated):
            updated = DEBUG_ON_RE.sub("define('WP_DEBUG', false)", updated)
            changes.append(Change(WP_CONFIG, "set_constant", "Disabled WP_DEBUG in production"))

        if not has_constant(updated, "AUTH_KEY"):
            updated = insert_before_marker(updated, self._security_keys() + "\n")
            changes.append(Change(WP_CONFIG, "add_constants", "Added authentication keys and salts"))

        for name, value in self._hardening_constants().items():
            if not has_constant(updated, name):
                updated = insert_before_marker(updated, f"define('{name}', {value});\n")
                changes.append(Change(WP_CONFIG, "add_constant", f"Added security constant {name}"))

        if changes and not dry_run:
            self._remember_file(rollback.files, WP_CONFIG)
            self._write_text(WP_CONFIG, updated)
        return changes

    def _security_keys(self) -> str:
        lines = ["// Authentication keys generated by sitemend"]
        for key in AUTH_KEYS:
            salt = "".join(secrets.choice(_SALT_ALPHABET) for _ in range(64))
            lines.append(f"define('{key}', '{salt}');")
        return "\n".join(lines) + "\n"

    def _hardening_constants(self) -> dict[str, str]:
        https = str(self.site.options.get("siteurl", "")).startswith("https://")
        return {
            "DISALLOW_FILE_EDIT": "true",
            "DISALLOW_FILE_MODS": "false",
            "FORCE_SSL_ADMIN": "true" if https else "false",
            "WP_POST_REVISIONS": "3",
            "EMPTY_TRASH_DAYS": "30",
            "WP_AUTO_UPDATE_CORE": "true",
        }

    def _fix_htaccess(self, rollback: ConfigRollback, dry_run: bool) -> list[Change]:
        text = self._read_text(HTACCESS) or ""
        changes: list[Change] = []
        updated = text

        if HEADERS_BEGIN not in updated:
            updated = HEADERS_BLOCK + ("\n" + updated if updated else "")
            changes.append(Change(HTACCESS, "prepend_block", "Added security headers"))

        if PROTECTION_BEGIN not in updated:
            updated = updated.rstrip("\n") + "\n\n" + PROTECTION_BLOCK
            changes.append(Change(HTACCESS, "append_block", "Added file protection rules"))

        if changes and not dry_run:
            self._remember_file(rollback.files, HTACCESS)
            self._write_text(HTACCESS, updated)
        return changes

    def _fix_settings(self, rollback: ConfigRollback, dry_run: bool) -> list[Change]:
        opts = self.site.options
        planned: list[tuple[str, object, str]] = []

        if opts.get("users_can_register") and not opts.get("sitemend_allow_registration"):
            planned.append(("users_can_register", 0, "Disabled open user registration"))
        if opts.get("default_role") == "administrator":
            planned.append(("default_role", "subscriber", "Changed default role from administrator to subscriber"))
        if not opts.get("comment_moderation"):
            planned.append(("comment_moderation", 1, "Enabled comment moderation"))

        changes = [Change(f"option:{key}", "set_option", detail) for key, _, detail in planned]
        if dry_run:
            return changes

        for key, value, _ in planned:
            if opts.has(key):
                rollback.options.setdefault(key, opts.get(key))
            elif key not in rollback.absent_options:
                rollback.absent_options.append(key)
            if not opts.set(key, value):
                raise ApplyError(f"could not update option {key}")
        return changes

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_fix(self, vulnerability: Vulnerability, fix_result: FixResult) -> ValidationResult:
        target = self.target(vulnerability)
        v = self.validator

        if target == "wp_config":
            result = v.start(80)
            text = v.read_text(WP_CONFIG) or ""
            if not self._is_development:
                v.check(result, "debug_disabled", not DEBUG_ON_RE.search(text), "WP_DEBUG is still enabled", 30)
            v.check(result, "auth_keys_present", has_constant(text, "AUTH_KEY"), "Authentication keys missing", 20)
            v.check(
                result,
                "file_edit_disabled",
                has_constant(text, "DISALLOW_FILE_EDIT"),
                "DISALLOW_FILE_EDIT not defined",
                10,
            )
            v.check_syntax(result, [WP_CONFIG], 50)
        elif target == "htaccess":
            result = v.start(75)
            text = v.read_text(HTACCESS) or ""
            v.check(result, "security_headers", "X-Content-Type-Options" in text, "Security headers not present", 30)
            v.check(result, "file_protection", PROTECTION_BEGIN in text, "File protection rules not present", 20)
        else:
            result = v.start(85)
            opts = self.site.options
            if not opts.get("sitemend_allow_registration"):
                v.check(result, "registration_closed", not opts.get("users_can_register"), "User registration still open", 30)
            v.check(
                result,
                "default_role",
                opts.get("default_role") != "administrator",
                "Default role is still administrator",
                40,
            )
            v.check(result, "comment_moderation", bool(opts.get("comment_moderation")), "Comment moderation off", 10)

        v.check_site(result, 30)
        return v.finish(result, 70)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback_fix(self, vulnerability: Vulnerability | str, rollback_data: RollbackData) -> RollbackResult:
        if not isinstance(rollback_data, ConfigRollback):
            return self._wrong_data(rollback_data)

        result = RollbackResult(success=True)
        self._restore_files(rollback_data.files, result)

        opts = self.site.options
        for key, value in rollback_data.options.items():
            if opts.set(key, value):
                result.restored.append(f"option:{key}")
            else:
                result.errors.append(f"could not restore option {key}")
        for key in rollback_data.absent_options:
            if opts.delete(key):
                result.restored.append(f"option:{key}")
            else:
                result.errors.append(f"could not remove option {key}")

        result.success = not result.errors
        result.message = "configuration restored" if result.success else "; ".join(result.errors)
        return result

    def generate_manual_instructions(self, vulnerability: Vulnerability) -> ManualInstructions:
        instructions = manual_instructions(vulnerability)
        if self.target(vulnerability) == "htaccess":
            instructions.steps.append("Add the following block to the top of .htaccess:")
            instructions.steps.append(HEADERS_BLOCK.strip())
        return instructions
