"""Click CLI entry point for sitemend."""

from __future__ import annotations

import logging
from pathlib import Path

import click
from rich.logging import RichHandler

from sitemend._version import __version__
from sitemend.core.config import load_config
from sitemend.core.errors import ConfigError
from sitemend.core.output import error_console

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _setup_logging(level: str) -> None:
    logger = logging.getLogger("sitemend")
    logger.handlers.clear()
    handler = RichHandler(console=error_console, show_path=False, show_time=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.getLevelName(level.upper()) if level.upper() in _LEVELS else logging.WARNING)


@click.group()
@click.version_option(version=__version__, prog_name="sitemend")
@click.option(
    "--log-level",
    type=click.Choice(_LEVELS, case_sensitive=False),
    default=None,
    help="Override logging.level from sitemend.toml",
)
def cli(log_level: str | None):
    """sitemend - automated web site vulnerability remediation.

    Score detector findings, apply safe fixes with backup and validation,
    and roll back anything that does not hold.
    """
    level = log_level
    if level is None:
        try:
            level = load_config(Path.cwd()).logging.level
        except ConfigError:
            level = "WARNING"
    _setup_logging(level)


# Import and register subcommands
from sitemend.cli.fix_cmd import fix  # noqa: E402
from sitemend.cli.score_cmd import score  # noqa: E402
from sitemend.cli.rollback_cmd import rollback  # noqa: E402
from sitemend.cli.history_cmd import history  # noqa: E402
from sitemend.cli.backups_cmd import backups  # noqa: E402

cli.add_command(fix)
cli.add_command(score)
cli.add_command(rollback)
cli.add_command(history)
cli.add_command(backups)


if __name__ == "__main__":
    cli()
