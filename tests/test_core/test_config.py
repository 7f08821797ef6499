"""Tests for config loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from sitemend.core.config import SitemendConfig, get_sitemend_dir, load_config
from sitemend.core.errors import ConfigError


class TestLoadConfig:
    def test_defaults_when_no_config_file(self, tmp_path: Path):
        """Without a sitemend.toml, load_config should return defaults."""
        config = load_config(tmp_path)

        assert isinstance(config, SitemendConfig)
        assert config.engine.safety_threshold == 0.7
        assert config.engine.backup_required is True
        assert config.engine.validation_required is True
        assert config.engine.rollback_on_failure is True
        assert config.engine.fix_timeout == 300.0
        assert config.engine.batch_size == 10
        assert config.engine.dry_run_mode is False
        assert config.strategies.malware_min_confidence == 0.8
        assert config.strategies.allowed_update_types == ["security", "minor"]

    def test_loads_toml_sections(self, tmp_path: Path):
        """Known settings in sitemend.toml override defaults."""
        (tmp_path / "sitemend.toml").write_text("""\
[engine]
safety_threshold = 0.5
batch_size = 25
fix_timeout = 60

[site]
environment = "staging"
url = "https://example.test"

[strategies]
max_version_jump = 1

[logging]
level = "DEBUG"
""")
        config = load_config(tmp_path)

        assert config.engine.safety_threshold == 0.5
        assert config.engine.batch_size == 25
        assert config.engine.fix_timeout == 60.0
        assert isinstance(config.engine.fix_timeout, float)
        assert config.site.environment == "staging"
        assert config.strategies.max_version_jump == 1
        assert config.logging.level == "DEBUG"
        assert config.backup.max_backups == 50

    def test_unknown_key_rejected(self, tmp_path: Path):
        """Typos in setting names are reported."""
        (tmp_path / "sitemend.toml").write_text("[engine]\nsafety_treshold = 0.5\n")
        with pytest.raises(ConfigError, match="unknown setting engine.safety_treshold"):
            load_config(tmp_path)

    def test_wrong_type_rejected(self, tmp_path: Path):
        """A string where a bool is expected is an error."""
        (tmp_path / "sitemend.toml").write_text('[engine]\nbackup_required = "yes"\n')
        with pytest.raises(ConfigError, match="expects bool"):
            load_config(tmp_path)

    def test_bool_is_not_an_int(self, tmp_path: Path):
        """true is not accepted as a batch size."""
        (tmp_path / "sitemend.toml").write_text("[engine]\nbatch_size = true\n")
        with pytest.raises(ConfigError):
            load_config(tmp_path)

    @pytest.mark.parametrize(
        "body",
        [
            "[engine]\nsafety_threshold = 1.5\n",
            "[engine]\nbatch_size = 0\n",
            "[engine]\nfix_timeout = 0\n",
            "[engine]\nmin_validation_confidence = 120\n",
            "[backup]\nmax_backups = 0\n",
        ],
    )
    def test_out_of_range_rejected(self, tmp_path: Path, body: str):
        """Range checks run after parsing."""
        (tmp_path / "sitemend.toml").write_text(body)
        with pytest.raises(ConfigError):
            load_config(tmp_path)

    def test_invalid_toml(self, tmp_path: Path):
        """Unparseable TOML is a ConfigError, not a crash."""
        (tmp_path / "sitemend.toml").write_text("[engine\nbatch_size = 3\n")
        with pytest.raises(ConfigError):
            load_config(tmp_path)

    def test_section_must_be_table(self, tmp_path: Path):
        """A scalar where a section belongs is rejected."""
        (tmp_path / "sitemend.toml").write_text('engine = "fast"\n')
        with pytest.raises(ConfigError, match="must be a table"):
            load_config(tmp_path)


class TestSitemendDir:
    def test_created_on_demand(self, tmp_path: Path):
        """get_sitemend_dir creates .sitemend under the project."""
        path = get_sitemend_dir(tmp_path)
        assert path == tmp_path / ".sitemend"
        assert path.is_dir()
