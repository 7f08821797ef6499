"""Shared fixtures: a small site tree wired to in-memory collaborators."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable

import pytest

from sitemend.core.site import (
    LocalFilesystem,
    MemoryOptionStore,
    ProbeResult,
    Site,
    StaticCapabilities,
    SyntaxCheck,
)

# Saturday evening: outside business hours.
FIXED_NOW = datetime(2026, 3, 7, 22, 0)

WP_CONFIG_TEXT = """\
<?php
define('DB_NAME', 'wordpress');
define('DB_USER', 'wp');
define('DB_PASSWORD', 'secret');
define('WP_DEBUG', true);

$table_prefix = 'wp_';

/* That's all, stop editing! Happy publishing. */
if ( ! defined( 'ABSPATH' ) ) {
    define( 'ABSPATH', __DIR__ . '/' );
}
require_once ABSPATH . 'wp-settings.php';
"""


class FakeSyntax:
    """Syntax checker that returns a fixed verdict and records what it saw."""

    def __init__(self, ok: bool = True, skipped: bool = False):
        self.ok = ok
        self.skipped = skipped
        self.checked: list[Path] = []

    def check(self, path: Path) -> SyntaxCheck:
        self.checked.append(path)
        return SyntaxCheck(ok=self.ok, skipped=self.skipped, output="" if self.ok else "PHP Parse error")


class FakeProbe:
    """Liveness probe with a settable answer."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.calls = 0

    def check(self) -> ProbeResult:
        self.calls += 1
        if self.ok:
            return ProbeResult(ok=True, status_code=200, message="HTTP 200")
        return ProbeResult(ok=False, status_code=503, message="HTTP 503")


def _build_tree(root: Path) -> None:
    (root / "wp-admin").mkdir(parents=True)
    (root / "wp-includes").mkdir()
    (root / "wp-content" / "plugins" / "contact").mkdir(parents=True)
    (root / "wp-content" / "plugins" / "old-gallery").mkdir(parents=True)
    (root / "wp-content" / "themes" / "twentytwentyfour").mkdir(parents=True)
    (root / "wp-content" / "uploads" / "2026").mkdir(parents=True)

    (root / "wp-config.php").write_text(WP_CONFIG_TEXT)
    (root / "wp-config.php").chmod(0o644)
    (root / "wp-admin" / "index.php").write_text("<?php\nrequire_once 'admin.php';\n")
    (root / "wp-includes" / "version.php").write_text("<?php\n$wp_version = '6.4.1';\n")
    (root / "wp-includes" / "functions.php").write_text("<?php\nfunction wp_die() {}\n")
    (root / "wp-content" / "plugins" / "contact" / "contact.php").write_text("<?php\n// contact form\n")
    (root / "wp-content" / "themes" / "twentytwentyfour" / "index.php").write_text("<?php\nget_header();\n")
    (root / "wp-content" / "uploads" / "2026" / "photo.jpg").write_bytes(b"\xff\xd8\xff\xe0 jpeg")
    (root / ".htaccess").write_text("# BEGIN WordPress\nRewriteEngine On\n# END WordPress\n")


@pytest.fixture
def site_root(tmp_path: Path) -> Path:
    root = tmp_path / "site"
    _build_tree(root)
    return root


@pytest.fixture
def make_site(site_root: Path, tmp_path: Path) -> Callable[..., Site]:
    """Factory for a Site over ``site_root`` with overridable collaborators."""

    def factory(
        *,
        environment: str = "staging",
        capabilities: list[str] | None = None,
        options: dict[str, Any] | None = None,
        probe: FakeProbe | None = None,
        syntax: FakeSyntax | None = None,
        clock: Callable[[], datetime] | None = None,
        managed_host: bool = False,
    ) -> Site:
        state_dir = tmp_path / ".sitemend"
        state_dir.mkdir(exist_ok=True)
        base_options = {
            "siteurl": "https://example.test",
            "template": "twentytwentyfour",
            "active_plugins": ["contact/contact.php"],
        }
        base_options.update(options or {})
        return Site(
            fs=LocalFilesystem(site_root),
            options=MemoryOptionStore(base_options),
            capabilities=StaticCapabilities(
                capabilities if capabilities is not None else ["manage_options", "update_core", "edit_files"]
            ),
            syntax=syntax or FakeSyntax(),
            probe=probe or FakeProbe(),
            state_dir=state_dir,
            environment=environment,
            managed_host=managed_host,
            clock=clock or (lambda: FIXED_NOW),
        )

    return factory


@pytest.fixture
def site(make_site: Callable[..., Site]) -> Site:
    return make_site()
