"""sitemend rollback command."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.prompt import Confirm

from sitemend.core.config import load_config
from sitemend.core.errors import ConfigError, StoreError, ValidationError
from sitemend.core.models import FixStatus
from sitemend.core.output import console, print_fix_record
from sitemend.fix.engine import FixEngine


@click.command()
@click.argument("fix_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def rollback(fix_id: str, yes: bool):
    """Undo a previously applied fix.

    Restores the files and options the fix touched from its rollback
    data and snapshot. Run `sitemend history` to find FIX_ID.
    """
    project_path = Path.cwd()
    try:
        config = load_config(project_path)
        engine = FixEngine.from_config(config, project_path)
    except (ConfigError, StoreError) as e:
        raise click.ClickException(str(e)) from e

    if not yes and not Confirm.ask(f"  Roll back fix {fix_id}?", default=False):
        console.print("  [dim]Skipped.[/dim]\n")
        return

    try:
        record = engine.rollback(fix_id)
    except (ValidationError, StoreError) as e:
        console.print(f"\n  [red]{e}[/red]\n")
        sys.exit(1)

    console.print()
    print_fix_record(record)
    console.print()
    if record.status == FixStatus.ROLLBACK_FAILED:
        console.print("  [red bold]Rollback failed; restore the site manually from the snapshot.[/red bold]\n")
        sys.exit(2)
