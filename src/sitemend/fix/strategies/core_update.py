"""Platform core upgrades, security patches and core configuration changes.

Release packages come from a local release directory laid out as::

    <release_dir>/<version>/manifest.json
    <release_dir>/<version>/files/<site-relative path>

The manifest lists a sha256 checksum for every file in the package and,
optionally, search/replace patches for in-place security fixes. Every
mutation of core files happens while the maintenance lease is held.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from sitemend.core.errors import ApplyError, LeaseHeldError, SitemendError
from sitemend.core.models import (
    Change,
    CoreRollback,
    FixResult,
    ManualInstructions,
    RollbackData,
    RollbackResult,
    SafetyAssessment,
    Severity,
    StrategyKind,
    ValidationResult,
    Vulnerability,
)
from sitemend.fix.guidance import manual_instructions
from sitemend.fix.locks import MAINTENANCE_MARKER, MaintenanceLease
from sitemend.fix.safety import FixPlan, PlannedAction
from sitemend.fix.strategies.configuration import WP_CONFIG, has_constant, insert_before_marker
from sitemend.fix.strategy import BackupScope, FixOptions, FixStrategy

logger = logging.getLogger(__name__)

VERSION_FILE = "wp-includes/version.php"
VERSION_RE = re.compile(r"\$wp_version\s*=\s*['\"]([^'\"]+)['\"]")

VERSION_UPDATE = "version_update"
PATCH_APPLICATION = "patch_application"
CONFIGURATION_CHANGE = "configuration_change"
FIX_TYPES = (VERSION_UPDATE, PATCH_APPLICATION, CONFIGURATION_CHANGE)
ESTIMATED_TIMES = {VERSION_UPDATE: 300, PATCH_APPLICATION: 120, CONFIGURATION_CHANGE: 60}

CORE_HARDENING = {
    "DISALLOW_FILE_EDIT": "true",
    "WP_AUTO_UPDATE_CORE": "'minor'",
}
COMPLEX_SITE_PLUGINS = 20


def parse_version(version: str) -> tuple[int, ...]:
    """``"6.4.2"`` -> ``(6, 4, 2)``; non-numeric parts are ignored."""
    parts = []
    for piece in version.strip().split("."):
        digits = re.match(r"\d+", piece)
        if digits is None:
            break
        parts.append(int(digits.group()))
    return tuple(parts)


def major_jump(current: str, target: str) -> int:
    cur, tgt = parse_version(current), parse_version(target)
    return abs((tgt[0] if tgt else 0) - (cur[0] if cur else 0))


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ---------------------------------------------------------------------------
# Release packages
# ---------------------------------------------------------------------------


@dataclass
class ReleasePatch:
    file: str
    search: str
    replace: str


@dataclass
class ReleasePackage:
    version: str
    path: Path
    checksums: dict[str, str] = field(default_factory=dict)
    patches: list[ReleasePatch] = field(default_factory=list)

    @property
    def files(self) -> list[str]:
        return sorted(self.checksums)

    def read(self, relpath: str) -> bytes:
        data = (self.path / "files" / relpath).read_bytes()
        if _sha256(data) != self.checksums.get(relpath):
            raise ApplyError(f"release {self.version}: {relpath} does not match its manifest checksum")
        return data


class ReleaseRepository:
    """Directory of unpacked release packages keyed by version."""

    def __init__(self, root: Path):
        self.root = root

    def get(self, version: str) -> ReleasePackage | None:
        pkg_dir = self.root / version
        manifest = pkg_dir / "manifest.json"
        if not manifest.exists():
            return None
        try:
            data = json.loads(manifest.read_text())
        except (OSError, ValueError) as e:
            logger.warning("Release manifest %s unreadable: %s", manifest, e)
            return None
        return ReleasePackage(
            version=data.get("version", version),
            path=pkg_dir,
            checksums=dict(data.get("checksums", {})),
            patches=[
                ReleasePatch(file=p["file"], search=p["search"], replace=p["replace"])
                for p in data.get("patches", [])
            ],
        )

    def versions(self) -> list[str]:
        if not self.root.is_dir():
            return []
        found = [p.name for p in self.root.iterdir() if (p / "manifest.json").exists()]
        return sorted(found, key=parse_version)


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------


class CoreUpdateFixStrategy(FixStrategy):
    """Upgrades or patches platform core inside a maintenance window."""

    kind = StrategyKind.CORE_UPDATE
    name = "Core Update Fix Strategy"
    supported_types = ("wordpress_core", "core_vulnerability", "outdated_core")

    def __init__(self, *args, releases: ReleaseRepository | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.releases = releases or ReleaseRepository(self._release_dir())

    def _release_dir(self) -> Path:
        if self.config.release_dir:
            path = Path(self.config.release_dir)
            return path if path.is_absolute() else self.site.state_dir.parent / path
        return self.site.state_dir / "releases"

    def supports(self, vulnerability: Vulnerability) -> bool:
        return super().supports(vulnerability) or vulnerability.component.lower() == "core"

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def current_version(self) -> str | None:
        text = self._read_text(VERSION_FILE)
        if text is None:
            return None
        match = VERSION_RE.search(text)
        return match.group(1) if match else None

    def update_type(self, vulnerability: Vulnerability) -> str:
        return "security" if vulnerability.severity in (Severity.CRITICAL, Severity.HIGH) else "minor"

    def package(self, vulnerability: Vulnerability) -> ReleasePackage | None:
        if not vulnerability.fix_available:
            return None
        return self.releases.get(vulnerability.fix_available)

    def fix_type(self, vulnerability: Vulnerability) -> str:
        requested = vulnerability.metadata.get("fix_type")
        if requested in FIX_TYPES:
            return requested
        package = self.package(vulnerability)
        if package is not None and package.checksums:
            return VERSION_UPDATE
        if package is not None and package.patches:
            return PATCH_APPLICATION
        if vulnerability.fix_available and not vulnerability.metadata.get("constants"):
            return VERSION_UPDATE
        return CONFIGURATION_CHANGE

    def _constants(self, vulnerability: Vulnerability) -> dict[str, str]:
        constants = vulnerability.metadata.get("constants") or CORE_HARDENING
        return {str(k): _php_literal(v) for k, v in constants.items()}

    def can_auto_fix(self, vulnerability: Vulnerability) -> bool:
        if not self.supports(vulnerability):
            return False
        if not self.site.capabilities.actor_can("update_core"):
            return False
        if vulnerability.severity not in (Severity.CRITICAL, Severity.HIGH):
            return False
        if self.update_type(vulnerability) not in self.config.allowed_update_types:
            return False

        fix_type = self.fix_type(vulnerability)
        if fix_type == CONFIGURATION_CHANGE:
            return self.site.fs.exists(WP_CONFIG)

        current = self.current_version()
        if not vulnerability.fix_available or current is None:
            return False
        if major_jump(current, vulnerability.fix_available) > self.config.max_version_jump:
            return False
        package = self.package(vulnerability)
        if package is None:
            return False
        return bool(package.checksums) if fix_type == VERSION_UPDATE else bool(package.patches)

    def _touched_files(self, vulnerability: Vulnerability) -> list[str]:
        fix_type = self.fix_type(vulnerability)
        if fix_type == CONFIGURATION_CHANGE:
            return [WP_CONFIG]
        package = self.package(vulnerability)
        if package is None:
            return [VERSION_FILE]
        if fix_type == PATCH_APPLICATION:
            return sorted({p.file for p in package.patches})
        return package.files

    def backup_scope(self, vulnerability: Vulnerability) -> BackupScope:
        return BackupScope(paths=self._touched_files(vulnerability))

    def estimated_time(self, vulnerability: Vulnerability) -> int:
        return ESTIMATED_TIMES[self.fix_type(vulnerability)]

    # ------------------------------------------------------------------
    # Safety
    # ------------------------------------------------------------------

    def assess_fix_safety(self, vulnerability: Vulnerability) -> SafetyAssessment:
        fix_type = self.fix_type(vulnerability)
        factors: list[str] = []
        complexity: list[str] = []

        if fix_type == VERSION_UPDATE:
            risk = 0.3
            current = self.current_version() or "0"
            target = vulnerability.fix_available or current
            if major_jump(current, target):
                risk += 0.3
                factors.append(f"Major version update {current} -> {target}")
            elif parse_version(current)[:2] != parse_version(target)[:2]:
                risk += 0.1
                factors.append(f"Minor version update {current} -> {target}")
            active = self.site.options.get("active_plugins", []) or []
            if len(active) > COMPLEX_SITE_PLUGINS:
                risk += 0.1
                factors.append(f"{len(active)} active plugins may conflict with the new core")
                complexity.append("third_party_dependencies")
            complexity.append("multi_step_fix")
            action = "file_replace"
        elif fix_type == PATCH_APPLICATION:
            risk = 0.2
            factors.append("Core source patched in place")
            action = "file_patch"
        else:
            risk = 0.1
            factors.append("Core configuration constants added")
            action = "configuration_update"

        if self.site.is_live:
            risk += 0.1
            factors.append("Core changes on live site")

        files = self._touched_files(vulnerability)
        plan = FixPlan(
            actions=[PlannedAction(f, action) for f in files[:50]],
            system_impacts=["updates_wp_config"] if fix_type == CONFIGURATION_CHANGE else [],
            complexity=complexity,
            estimated_time=self.estimated_time(vulnerability),
        )
        requirements = {
            "update_core_capability": self.site.capabilities.actor_can("update_core"),
            "filesystem_access": self.site.fs.exists("."),
        }
        if fix_type != CONFIGURATION_CHANGE:
            requirements["release_package_available"] = self.package(vulnerability) is not None
        assessment = self.assessor.assess(plan, strategy_risk=risk, risk_factors=factors, requirements=requirements)
        assessment.recommendations.append("Site is placed in maintenance mode while core files change")
        return assessment

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply_fix(self, vulnerability: Vulnerability, options: FixOptions | None = None) -> FixResult:
        options = options or FixOptions()
        fix_type = self.fix_type(vulnerability)
        rollback = CoreRollback(previous_version=self.current_version())
        owner = options.owner or f"sitemend-{uuid.uuid4().hex[:8]}"
        changes: list[Change] = []

        try:
            if fix_type == VERSION_UPDATE:
                planned = self._plan_version_update(vulnerability)
            elif fix_type == PATCH_APPLICATION:
                planned = self._plan_patches(vulnerability)
            else:
                planned = self._plan_configuration(vulnerability)

            if planned and not options.dry_run:
                lease = MaintenanceLease(self.site.fs, clock=self.site.clock)
                with lease.held(owner, reason=f"{fix_type} for {vulnerability.id}"):
                    for path, content, change in planned:
                        options.checkpoint(f"writing {path}")
                        self._remember_file(rollback.files, path)
                        if not self.site.fs.write(path, content):
                            raise ApplyError(f"could not write {path}")
                        changes.append(change)
                    if fix_type == VERSION_UPDATE:
                        self._verify_written(vulnerability)
            else:
                changes = [change for _, _, change in planned]
        except (SitemendError, OSError) as e:
            return self._failure(
                f"core {fix_type.replace('_', ' ')} failed: {e}",
                e,
                changes_made=changes,
                rollback_data=rollback if not rollback.is_empty else None,
                fix_type=fix_type,
            )

        if changes:
            actions = [f"Applied {fix_type.replace('_', ' ')} to {len(changes)} core files"]
            if fix_type == VERSION_UPDATE:
                actions.append(f"Updated core from {rollback.previous_version} to {vulnerability.fix_available}")
        else:
            actions = ["Core already up to date"]
        return FixResult(
            success=True,
            message=actions[0],
            actions_taken=actions,
            changes_made=changes,
            rollback_data=rollback if not rollback.is_empty else None,
            fix_type=fix_type,
            dry_run=options.dry_run,
        )

    def _plan_version_update(self, vulnerability: Vulnerability) -> list[tuple[str, bytes, Change]]:
        package = self.package(vulnerability)
        if package is None:
            raise ApplyError(f"no release package for version {vulnerability.fix_available}")
        current = self.current_version()
        if current is not None and parse_version(current) >= parse_version(package.version):
            return []

        planned = []
        for relpath in package.files:
            content = package.read(relpath)
            fs = self.site.fs
            if fs.exists(relpath) and fs.read(relpath) == content:
                continue
            planned.append((relpath, content, Change(relpath, "replace", f"Installed {relpath} from {package.version}")))
        return planned

    def _verify_written(self, vulnerability: Vulnerability) -> None:
        package = self.package(vulnerability)
        if package is None:
            raise ApplyError(f"release package {vulnerability.fix_available} is no longer available")
        for relpath, checksum in package.checksums.items():
            if _sha256(self.site.fs.read(relpath)) != checksum:
                raise ApplyError(f"{relpath} checksum mismatch after update")

    def _plan_patches(self, vulnerability: Vulnerability) -> list[tuple[str, bytes, Change]]:
        package = self.package(vulnerability)
        if package is None:
            raise ApplyError(f"no patches for version {vulnerability.fix_available}")

        texts: dict[str, str] = {}
        applied: dict[str, int] = {}
        for patch in package.patches:
            if patch.file not in texts:
                text = self._read_text(patch.file)
                if text is None:
                    raise ApplyError(f"{patch.file} not found")
                texts[patch.file] = text
            text = texts[patch.file]
            if patch.search in text:
                texts[patch.file] = text.replace(patch.search, patch.replace, 1)
                applied[patch.file] = applied.get(patch.file, 0) + 1
            elif patch.replace not in text:
                raise ApplyError(f"patch for {patch.file} does not apply")

        return [
            (
                path,
                texts[path].encode("utf-8", errors="surrogateescape"),
                Change(path, "patch", f"Applied {count} security patch(es) to {path}"),
            )
            for path, count in sorted(applied.items())
        ]

    def _plan_configuration(self, vulnerability: Vulnerability) -> list[tuple[str, bytes, Change]]:
        text = self._read_text(WP_CONFIG)
        if text is None:
            raise ApplyError(f"{WP_CONFIG} not found")
        updated = text
        added = []
        for name, value in self._constants(vulnerability).items():
            if not has_constant(updated, name):
                updated = insert_before_marker(updated, f"define('{name}', {value});\n")
                added.append(name)
        if not added:
            return []
        change = Change(WP_CONFIG, "add_constants", f"Added core constants {', '.join(added)}")
        return [(WP_CONFIG, updated.encode("utf-8", errors="surrogateescape"), change)]

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_fix(self, vulnerability: Vulnerability, fix_result: FixResult) -> ValidationResult:
        v = self.validator
        fs = self.site.fs
        fix_type = fix_result.fix_type or self.fix_type(vulnerability)

        if fix_type == VERSION_UPDATE:
            result = v.start(80)
            installed = self.current_version()
            target = vulnerability.fix_available or ""
            v.check(
                result,
                "version_updated",
                installed is not None and parse_version(installed) >= parse_version(target),
                f"Core reports version {installed}, expected {target}",
                40,
            )
            package = self.package(vulnerability)
            mismatched = []
            if package is not None:
                mismatched = [
                    p for p, sha in package.checksums.items()
                    if not fs.exists(p) or _sha256(fs.read(p)) != sha
                ]
            v.check(result, "core_integrity", not mismatched, f"Core files differ from release: {', '.join(mismatched[:5])}", 40)
        elif fix_type == PATCH_APPLICATION:
            result = v.start(80)
            package = self.package(vulnerability)
            unapplied = []
            for patch in package.patches if package is not None else []:
                text = v.read_text(patch.file) or ""
                if patch.search in text or patch.replace not in text:
                    unapplied.append(patch.file)
            v.check(result, "patches_applied", not unapplied, f"Patches missing from {', '.join(unapplied)}", 40)
        else:
            result = v.start(85)
            text = v.read_text(WP_CONFIG) or ""
            missing = [n for n in self._constants(vulnerability) if not has_constant(text, n)]
            v.check(result, "constants_defined", not missing, f"Constants not defined: {', '.join(missing)}", 30)

        v.check(result, "maintenance_cleared", not fs.exists(MAINTENANCE_MARKER), "Site still in maintenance mode", 20)
        v.check_syntax(result, sorted({c.resource for c in fix_result.changes_made}), 50)
        v.check_site(result, 30)
        return v.finish(result, 70)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback_fix(self, vulnerability: Vulnerability | str, rollback_data: RollbackData) -> RollbackResult:
        if not isinstance(rollback_data, CoreRollback):
            return self._wrong_data(rollback_data)

        result = RollbackResult(success=True)
        lease = MaintenanceLease(self.site.fs, clock=self.site.clock)
        owner = f"sitemend-rollback-{uuid.uuid4().hex[:8]}"
        try:
            with lease.held(owner, reason="core rollback"):
                self._restore_files(rollback_data.files, result)
        except LeaseHeldError as e:
            result.errors.append(str(e))

        result.success = not result.errors
        if result.success:
            result.message = f"core restored to {rollback_data.previous_version or 'previous state'}"
        else:
            result.message = "; ".join(result.errors)
        return result

    def generate_manual_instructions(self, vulnerability: Vulnerability) -> ManualInstructions:
        instructions = manual_instructions(vulnerability)
        fix_type = self.fix_type(vulnerability)
        if fix_type == VERSION_UPDATE and vulnerability.fix_available:
            instructions.steps.insert(0, f"Update core to version {vulnerability.fix_available} from the dashboard or via WP-CLI: wp core update --version={vulnerability.fix_available}")
        elif fix_type == CONFIGURATION_CHANGE:
            for name, value in self._constants(vulnerability).items():
                instructions.steps.append(f"Add define('{name}', {value}); to {WP_CONFIG}")
        return instructions


def _php_literal(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    text = str(value)
    if text in ("true", "false") or re.fullmatch(r"-?\d+(\.\d+)?", text) or text.startswith(("'", '"')):
        return text
    return "'" + text.replace("\\", "\\\\").replace("'", "\\'") + "'"
