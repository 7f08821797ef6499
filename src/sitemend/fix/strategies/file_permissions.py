"""Normalizes file and directory mode bits to a recommended policy."""

from __future__ import annotations

import uuid

from sitemend.core.errors import ApplyError, SitemendError
from sitemend.core.models import (
    Change,
    FixResult,
    ManualInstructions,
    PermissionsRollback,
    RollbackData,
    RollbackResult,
    SafetyAssessment,
    StrategyKind,
    ValidationResult,
    Vulnerability,
)
from sitemend.fix.guidance import manual_instructions
from sitemend.fix.safety import FixPlan, PlannedAction
from sitemend.fix.strategy import BackupScope, FixOptions, FixStrategy

FILE_MODE = 0o644
DIR_MODE = 0o755
WP_CONFIG_MODE = 0o600
HTACCESS_MODE = 0o644
UPLOADS_MODE = 0o755
DANGEROUS_MODES = (0o777, 0o666)

UPLOADS_DIR = "wp-content/uploads"
CRITICAL_FILES = ("wp-config.php", ".htaccess", "wp-admin/index.php", "wp-includes/functions.php")
CRITICAL_DIRS = ("wp-admin", "wp-includes", "wp-content", "wp-content/themes", "wp-content/plugins")
SENSITIVE_MARKERS = ("wp-config.php", ".htaccess", "wp-admin", "wp-includes")
MAX_ITEMS = 1000

UPLOAD_HTACCESS = """# BEGIN sitemend Upload Protection
# Disable PHP execution
<FilesMatch "\\.(php|phtml|php3|php4|php5|php7|phar)$">
    <IfModule mod_authz_core.c>
        Require all denied
    </IfModule>
    <IfModule !mod_authz_core.c>
        Order allow,deny
        Deny from all
    </IfModule>
</FilesMatch>
Options -ExecCGI -Indexes

# Block access to sensitive files
<FilesMatch "\\.(htaccess|htpasswd|ini|log|sh|sql|conf)$">
    <IfModule mod_authz_core.c>
        Require all denied
    </IfModule>
</FilesMatch>
# END sitemend Upload Protection
"""


def recommended_file_mode(path: str) -> int:
    name = path.replace("\\", "/").rsplit("/", 1)[-1]
    if name == "wp-config.php":
        return WP_CONFIG_MODE
    if name == ".htaccess":
        return HTACCESS_MODE
    return FILE_MODE


def recommended_dir_mode(path: str) -> int:
    if path.replace("\\", "/").strip("/").startswith(UPLOADS_DIR):
        return UPLOADS_MODE
    return DIR_MODE


class FilePermissionsFixStrategy(FixStrategy):
    """Applies the recommended mode policy, special-casing sensitive files."""

    kind = StrategyKind.FILE_PERMISSIONS
    name = "File Permissions Fix Strategy"
    supported_types = (
        "file_permissions",
        "directory_permissions",
        "permission_vulnerability",
        "access_control",
        "file_security",
        "upload_permissions",
    )

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------

    def _is_upload_fix(self, vulnerability: Vulnerability) -> bool:
        if vulnerability.type_key == "upload_permissions":
            return True
        return any(r.replace("\\", "/").strip("/").startswith(UPLOADS_DIR) for r in vulnerability.affected_resources)

    def targets(self, vulnerability: Vulnerability) -> list[str]:
        """Paths whose modes the fix will consider, in processing order."""
        fs = self.site.fs
        if vulnerability.type_key == "upload_permissions":
            roots = vulnerability.affected_resources or [UPLOADS_DIR]
        elif vulnerability.affected_resources:
            roots = vulnerability.affected_resources
        elif vulnerability.type_key == "directory_permissions":
            roots = [d for d in CRITICAL_DIRS if fs.is_dir(d)]
        else:
            roots = [f for f in CRITICAL_FILES if fs.exists(f)]

        paths: list[str] = []
        for root in roots:
            clean = root.replace("\\", "/").strip("/")
            if not fs.exists(clean):
                continue
            paths.append(clean)
            if fs.is_dir(clean) and self._is_upload_fix(vulnerability):
                paths.extend(fs.list_files(clean))
        return paths[:MAX_ITEMS]

    def _recommended(self, path: str) -> int:
        return recommended_dir_mode(path) if self.site.fs.is_dir(path) else recommended_file_mode(path)

    def can_auto_fix(self, vulnerability: Vulnerability) -> bool:
        if not self.supports(vulnerability):
            return False
        if not self.site.capabilities.actor_can("edit_files"):
            return False
        fs = self.site.fs
        return all(fs.exists(r) for r in vulnerability.affected_resources)

    def backup_scope(self, vulnerability: Vulnerability) -> BackupScope:
        paths = list(vulnerability.affected_resources)
        if self._is_upload_fix(vulnerability):
            upload_root = paths[0] if paths else UPLOADS_DIR
            paths.append(f"{upload_root.strip('/')}/.htaccess")
        return BackupScope(paths=paths or list(CRITICAL_FILES))

    def estimated_time(self, vulnerability: Vulnerability) -> int:
        return 60 if self._is_upload_fix(vulnerability) else 15

    # ------------------------------------------------------------------
    # Safety
    # ------------------------------------------------------------------

    def assess_fix_safety(self, vulnerability: Vulnerability) -> SafetyAssessment:
        risk = 0.1
        factors: list[str] = []
        targets = self.targets(vulnerability)

        sensitive = [p for p in targets if any(m in p for m in SENSITIVE_MARKERS)]
        if sensitive:
            risk += 0.1
            factors.append(f"Modifying permissions of sensitive files: {', '.join(sensitive[:5])}")
        if self.site.managed_host:
            risk += 0.05
            factors.append("Managed hosting may enforce its own permission policy")
        if self.site.is_live:
            risk += 0.05
            factors.append("Permission changes on live site")

        plan = FixPlan(
            actions=[PlannedAction(p, "permission_change") for p in targets[:50]],
            system_impacts=["changes_permissions"],
            estimated_time=self.estimated_time(vulnerability),
        )
        return self.assessor.assess(
            plan,
            strategy_risk=risk,
            risk_factors=factors,
            requirements={
                "filesystem_access": self.site.fs.exists("."),
                "edit_files_capability": self.site.capabilities.actor_can("edit_files"),
                "affected_files_accessible": all(self.site.fs.exists(r) for r in vulnerability.affected_resources),
            },
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply_fix(self, vulnerability: Vulnerability, options: FixOptions | None = None) -> FixResult:
        options = options or FixOptions()
        fs = self.site.fs
        rollback = PermissionsRollback()
        changes: list[Change] = []

        try:
            for path in self.targets(vulnerability):
                options.checkpoint(f"permissions of {path}")
                current = fs.mode(path)
                wanted = self._recommended(path)
                if current is None or current == wanted:
                    continue
                changes.append(Change(path, "chmod", f"Changed {path} permissions from {current:o} to {wanted:o}"))
                if options.dry_run:
                    continue
                rollback.modes.setdefault(path, current)
                if not fs.chmod(path, wanted):
                    raise ApplyError(f"could not chmod {path}")

            if self._is_upload_fix(vulnerability):
                options.checkpoint("upload protection")
                created = self._ensure_upload_htaccess(vulnerability, rollback, options.dry_run)
                if created:
                    changes.append(Change(created, "create", "Created security .htaccess in upload directory"))
        except (SitemendError, OSError) as e:
            return self._failure(
                f"permission fix failed: {e}",
                e,
                changes_made=changes,
                rollback_data=rollback if not rollback.is_empty else None,
                fix_type="permissions",
            )

        files = sum(1 for c in changes if c.action == "chmod")
        actions = [f"Fixed permissions for {files} items"] if changes else ["No permission changes needed"]
        return FixResult(
            success=True,
            message=actions[0],
            actions_taken=actions,
            changes_made=changes,
            rollback_data=rollback if not rollback.is_empty else None,
            fix_type="permissions",
            dry_run=options.dry_run,
        )

    def _ensure_upload_htaccess(
        self,
        vulnerability: Vulnerability,
        rollback: PermissionsRollback,
        dry_run: bool,
    ) -> str | None:
        """Install the script-blocking .htaccess; never overwrites an existing one."""
        fs = self.site.fs
        upload_root = (vulnerability.affected_resources or [UPLOADS_DIR])[0].strip("/")
        if not fs.is_dir(upload_root):
            return None
        path = f"{upload_root}/.htaccess"
        if fs.exists(path):
            return None
        if not dry_run:
            rollback.created.append(path)
            if not fs.write(path, UPLOAD_HTACCESS.encode("utf-8")):
                raise ApplyError(f"could not create {path}")
            fs.chmod(path, HTACCESS_MODE)
        return path

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_fix(self, vulnerability: Vulnerability, fix_result: FixResult) -> ValidationResult:
        v = self.validator
        fs = self.site.fs
        result = v.start(85)

        wrong = []
        for change in fix_result.changes_made:
            if change.action != "chmod":
                continue
            mode = fs.mode(change.resource)
            if mode != self._recommended(change.resource):
                wrong.append(f"{change.resource} is {mode:o}" if mode is not None else f"{change.resource} missing")
        v.check(result, "permissions_applied", not wrong, f"Permissions not applied: {', '.join(wrong[:5])}", 30)

        dangerous = [
            p for p in self.targets(vulnerability)
            if fs.mode(p) in DANGEROUS_MODES
        ]
        v.check(result, "no_world_writable", not dangerous, f"World-writable paths remain: {', '.join(dangerous[:5])}", 30)

        if self._is_upload_fix(vulnerability):
            v.check(result, "uploads_writable", self._upload_write_test(vulnerability), "Cannot create files in upload directory", 20)

        v.check_site(result, 30)
        return v.finish(result, 70)

    def _upload_write_test(self, vulnerability: Vulnerability) -> bool:
        fs = self.site.fs
        upload_root = (vulnerability.affected_resources or [UPLOADS_DIR])[0].strip("/")
        if not fs.is_dir(upload_root):
            return True
        probe = f"{upload_root}/.sitemend-write-test-{uuid.uuid4().hex[:8]}"
        if not fs.write(probe, b"test"):
            return False
        fs.delete(probe)
        return True

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback_fix(self, vulnerability: Vulnerability | str, rollback_data: RollbackData) -> RollbackResult:
        if not isinstance(rollback_data, PermissionsRollback):
            return self._wrong_data(rollback_data)

        fs = self.site.fs
        result = RollbackResult(success=True)
        for path in rollback_data.created:
            if fs.delete(path):
                result.restored.append(path)
            else:
                result.errors.append(f"could not remove {path}")
        for path, mode in rollback_data.modes.items():
            if fs.chmod(path, mode):
                result.restored.append(path)
            else:
                result.errors.append(f"could not restore mode of {path}")

        result.success = not result.errors
        result.message = "permissions restored" if result.success else "; ".join(result.errors)
        return result

    def generate_manual_instructions(self, vulnerability: Vulnerability) -> ManualInstructions:
        instructions = manual_instructions(vulnerability)
        for path in self.targets(vulnerability)[:10]:
            instructions.steps.append(f"chmod {self._recommended(path):o} {path}")
        return instructions
