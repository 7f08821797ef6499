"""Site collaborators: filesystem, option store, capabilities, syntax checker
and liveness probe.

Strategies and the engine never reach the live site through globals; they
receive a :class:`Site` bundle at construction time. The default
implementations here work against a local document root; tests swap in the
in-memory variants.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol

import requests

from sitemend.core.config import SitemendConfig, get_sitemend_dir

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


class Filesystem(Protocol):
    root: Path

    def exists(self, path: str) -> bool: ...
    def is_dir(self, path: str) -> bool: ...
    def read(self, path: str) -> bytes: ...
    def write(self, path: str, data: bytes) -> bool: ...
    def chmod(self, path: str, mode: int) -> bool: ...
    def mode(self, path: str) -> int | None: ...
    def copy(self, src: str, dst: str) -> bool: ...
    def delete(self, path: str) -> bool: ...
    def mkdir(self, path: str) -> bool: ...
    def list_files(self, path: str) -> Iterator[str]: ...


class LocalFilesystem:
    """Byte-exact filesystem access confined to a site root.

    Paths are given relative to the root (absolute paths inside the root are
    accepted too). Mutators return ``False`` on failure and log why;
    ``read`` raises.
    """

    def __init__(self, root: Path):
        self.root = root.resolve()

    def resolve(self, path: str) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise PermissionError(f"{path} is outside the site root")
        return resolved

    def relative(self, path: str) -> str:
        return self.resolve(path).relative_to(self.root).as_posix()

    def exists(self, path: str) -> bool:
        try:
            return self.resolve(path).exists()
        except PermissionError:
            return False

    def is_dir(self, path: str) -> bool:
        try:
            return self.resolve(path).is_dir()
        except PermissionError:
            return False

    def read(self, path: str) -> bytes:
        return self.resolve(path).read_bytes()

    def write(self, path: str, data: bytes) -> bool:
        try:
            target = self.resolve(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.sitemend-tmp")
            with open(tmp, "wb") as f:
                f.write(data)
            if target.exists():
                shutil.copymode(target, tmp)
            os.replace(tmp, target)
            return True
        except OSError as e:
            logger.warning("write %s failed: %s", path, e)
            return False

    def chmod(self, path: str, mode: int) -> bool:
        try:
            self.resolve(path).chmod(mode)
            return True
        except OSError as e:
            logger.warning("chmod %s failed: %s", path, e)
            return False

    def mode(self, path: str) -> int | None:
        try:
            return self.resolve(path).stat().st_mode & 0o7777
        except OSError:
            return None

    def copy(self, src: str, dst: str) -> bool:
        try:
            target = self.resolve(dst)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.resolve(src), target)
            return True
        except OSError as e:
            logger.warning("copy %s -> %s failed: %s", src, dst, e)
            return False

    def delete(self, path: str) -> bool:
        try:
            target = self.resolve(path)
            if target.is_dir():
                shutil.rmtree(target)
            else:
                target.unlink()
            return True
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.warning("delete %s failed: %s", path, e)
            return False

    def mkdir(self, path: str) -> bool:
        try:
            self.resolve(path).mkdir(parents=True, exist_ok=True)
            return True
        except OSError as e:
            logger.warning("mkdir %s failed: %s", path, e)
            return False

    def list_files(self, path: str) -> Iterator[str]:
        """Yield root-relative paths of every file and directory below ``path``."""
        base = self.resolve(path)
        if not base.is_dir():
            return
        for entry in sorted(base.rglob("*")):
            yield entry.relative_to(self.root).as_posix()


# ---------------------------------------------------------------------------
# Option store
# ---------------------------------------------------------------------------


class OptionStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...
    def set(self, key: str, value: Any) -> bool: ...
    def has(self, key: str) -> bool: ...
    def delete(self, key: str) -> bool: ...


class MemoryOptionStore:
    """Option store backed by a dict."""

    def __init__(self, values: dict[str, Any] | None = None):
        self.values: dict[str, Any] = dict(values or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def set(self, key: str, value: Any) -> bool:
        self.values[key] = value
        return True

    def has(self, key: str) -> bool:
        return key in self.values

    def delete(self, key: str) -> bool:
        self.values.pop(key, None)
        return True


class JsonOptionStore(MemoryOptionStore):
    """Option store persisted to a JSON file after every change."""

    def __init__(self, path: Path):
        self.path = path
        values = {}
        if path.exists():
            values = json.loads(path.read_text())
        super().__init__(values)

    def set(self, key: str, value: Any) -> bool:
        super().set(key, value)
        return self._flush()

    def delete(self, key: str) -> bool:
        super().delete(key)
        return self._flush()

    def _flush(self) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self.values, indent=2, sort_keys=True))
            return True
        except OSError as e:
            logger.warning("could not persist options to %s: %s", self.path, e)
            return False


# ---------------------------------------------------------------------------
# Capability check
# ---------------------------------------------------------------------------


class CapabilityChecker(Protocol):
    def actor_can(self, capability: str) -> bool: ...


class StaticCapabilities:
    """Fixed capability set for the acting operator."""

    def __init__(self, capabilities: set[str] | list[str] | None = None):
        self.capabilities = set(capabilities or ())

    def actor_can(self, capability: str) -> bool:
        return capability in self.capabilities


# ---------------------------------------------------------------------------
# Syntax checker
# ---------------------------------------------------------------------------


@dataclass
class SyntaxCheck:
    ok: bool
    skipped: bool = False
    output: str = ""


class SyntaxChecker(Protocol):
    def check(self, path: Path) -> SyntaxCheck: ...


class CommandSyntaxChecker:
    """Runs an external linter (``php -l`` by default) with a timeout."""

    def __init__(self, command: list[str], timeout: float = 30.0):
        self.command = list(command)
        self.timeout = timeout

    def check(self, path: Path) -> SyntaxCheck:
        if not self.command or shutil.which(self.command[0]) is None:
            return SyntaxCheck(ok=True, skipped=True, output="syntax checker not installed")
        try:
            proc = subprocess.run(
                [*self.command, str(path)],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            return SyntaxCheck(ok=False, output=f"syntax check timed out after {self.timeout}s")
        except OSError as e:
            return SyntaxCheck(ok=True, skipped=True, output=str(e))
        output = (proc.stdout + proc.stderr).strip()
        return SyntaxCheck(ok=proc.returncode == 0, output=output)


# ---------------------------------------------------------------------------
# Site liveness probe
# ---------------------------------------------------------------------------


@dataclass
class ProbeResult:
    ok: bool
    status_code: int | None = None
    message: str = ""
    skipped: bool = False


class SiteProbe(Protocol):
    def check(self) -> ProbeResult: ...


class HttpSiteProbe:
    """Checks that the site still answers over HTTP.

    Anything below 500 counts as responding; connection errors and 5xx do not.
    """

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout
        self._session = requests.Session()
        self._session.max_redirects = 3

    def check(self) -> ProbeResult:
        if not self.url:
            return ProbeResult(ok=True, skipped=True, message="no site url configured")
        try:
            resp = self._session.get(self.url, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("site probe %s failed: %s", self.url, e)
            return ProbeResult(ok=False, message=str(e))
        if resp.status_code >= 500:
            return ProbeResult(ok=False, status_code=resp.status_code, message=f"HTTP {resp.status_code}")
        return ProbeResult(ok=True, status_code=resp.status_code, message=f"HTTP {resp.status_code}")


# ---------------------------------------------------------------------------
# Bundle
# ---------------------------------------------------------------------------


@dataclass
class Site:
    """Everything a strategy may touch, injected explicitly."""

    fs: Filesystem
    options: OptionStore
    capabilities: CapabilityChecker
    syntax: SyntaxChecker
    probe: SiteProbe
    state_dir: Path
    environment: str = "production"
    managed_host: bool = False
    clock: Callable[[], datetime] = field(default=datetime.now)

    @property
    def root(self) -> Path:
        return self.fs.root

    @property
    def is_live(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_config(cls, config: SitemendConfig, project_path: Path) -> Site:
        """Build the default local bundle described by sitemend.toml."""
        root = (project_path / config.site.root).resolve()
        options_file = Path(config.site.options_file)
        if not options_file.is_absolute():
            options_file = project_path / options_file
        return cls(
            fs=LocalFilesystem(root),
            options=JsonOptionStore(options_file),
            capabilities=StaticCapabilities(config.site.capabilities),
            syntax=CommandSyntaxChecker(config.site.syntax_command, config.site.syntax_timeout),
            probe=HttpSiteProbe(config.site.url, config.site.probe_timeout),
            state_dir=get_sitemend_dir(project_path),
            environment=config.site.environment,
            managed_host=config.site.managed_host,
        )
