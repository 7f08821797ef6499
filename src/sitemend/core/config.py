"""Configuration management for sitemend (sitemend.toml parsing + defaults)."""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from sitemend.core.errors import ConfigError


@dataclass
class EngineConfig:
    safety_threshold: float = 0.7
    backup_required: bool = True
    validation_required: bool = True
    rollback_on_failure: bool = True
    fix_timeout: float = 300.0
    dry_run_mode: bool = False
    dry_run_first: bool = False
    batch_size: int = 10
    batch_pause: float = 1.0
    min_validation_confidence: int = 70
    auto_fix_enabled: bool = True
    manual_fixes_only: bool = False


@dataclass
class BackupConfig:
    max_backups: int = 50
    retention_days: int = 30
    encrypt: bool = True


@dataclass
class SiteConfig:
    root: str = "."
    url: str = ""
    environment: str = "production"
    managed_host: bool = False
    probe_timeout: float = 10.0
    syntax_command: list[str] = field(default_factory=lambda: ["php", "-l"])
    syntax_timeout: float = 30.0
    capabilities: list[str] = field(
        default_factory=lambda: ["manage_options", "update_core", "edit_files"]
    )
    options_file: str = ".sitemend/options.json"


@dataclass
class StrategyConfig:
    malware_min_confidence: float = 0.8
    allowed_update_types: list[str] = field(default_factory=lambda: ["security", "minor"])
    max_version_jump: int = 2
    release_dir: str = ""
    quarantine_dir: str = ""


@dataclass
class LoggingConfig:
    level: str = "WARNING"


@dataclass
class SitemendConfig:
    """Complete sitemend configuration."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    site: SiteConfig = field(default_factory=SiteConfig)
    strategies: StrategyConfig = field(default_factory=StrategyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTIONS = ("engine", "backup", "site", "strategies", "logging")


def load_config(project_path: Path | None = None) -> SitemendConfig:
    """Load configuration from sitemend.toml if present, otherwise return defaults."""
    config = SitemendConfig()

    if project_path is None:
        project_path = Path.cwd()

    config_file = project_path / "sitemend.toml"
    if not config_file.exists():
        return config

    try:
        with open(config_file, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{config_file}: {e}") from e

    for section in _SECTIONS:
        if section in data:
            _apply_section(getattr(config, section), data[section], section)

    _check_ranges(config)
    return config


def _apply_section(target: Any, values: dict[str, Any], section: str) -> None:
    """Copy known keys onto a section dataclass, type-checking each value."""
    if not isinstance(values, dict):
        raise ConfigError(f"[{section}] must be a table")

    known = {f.name: f for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ConfigError(f"unknown setting {section}.{key}")
        current = getattr(target, key)
        if isinstance(current, bool):
            ok = isinstance(value, bool)
        elif isinstance(current, float):
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
            value = float(value) if ok else value
        elif isinstance(current, int):
            ok = isinstance(value, int) and not isinstance(value, bool)
        elif isinstance(current, list):
            ok = isinstance(value, list) and all(isinstance(v, str) for v in value)
        else:
            ok = isinstance(value, str)
        if not ok:
            raise ConfigError(
                f"{section}.{key} expects {type(current).__name__}, got {type(value).__name__}"
            )
        setattr(target, key, value)


def _check_ranges(config: SitemendConfig) -> None:
    engine = config.engine
    if not 0.0 <= engine.safety_threshold <= 1.0:
        raise ConfigError("engine.safety_threshold must be within 0..1")
    if engine.batch_size < 1:
        raise ConfigError("engine.batch_size must be at least 1")
    if engine.fix_timeout <= 0:
        raise ConfigError("engine.fix_timeout must be positive")
    if not 0 <= engine.min_validation_confidence <= 100:
        raise ConfigError("engine.min_validation_confidence must be within 0..100")
    if config.backup.max_backups < 1:
        raise ConfigError("backup.max_backups must be at least 1")


def get_sitemend_dir(project_path: Path | None = None) -> Path:
    """Get or create the .sitemend directory."""
    if project_path is None:
        project_path = Path.cwd()
    sitemend_dir = project_path / ".sitemend"
    sitemend_dir.mkdir(parents=True, exist_ok=True)
    return sitemend_dir
