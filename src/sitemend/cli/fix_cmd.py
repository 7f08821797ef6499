"""sitemend fix command."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click
from rich.prompt import Confirm

from sitemend.core.config import load_config
from sitemend.core.errors import ConfigError, StoreError
from sitemend.core.models import Outcome
from sitemend.core.output import (
    console,
    print_batch_summary,
    print_fix_record,
    print_instructions,
)
from sitemend.fix.engine import FixEngine


def read_vulnerability_file(path: Path) -> list[Any]:
    """Detector output: a JSON list, or an object with a ``vulnerabilities`` list."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise click.ClickException(f"cannot read {path}: {e}") from e
    if isinstance(data, dict):
        data = data.get("vulnerabilities")
    if not isinstance(data, list):
        raise click.ClickException(f"{path} must hold a list of vulnerabilities")
    return data


@click.command()
@click.argument("vulns_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Vulnerabilities per chunk")
@click.option("--dry-run", is_flag=True, help="Plan fixes without changing anything")
@click.option("--override-safety", is_flag=True, help="Apply fixes above the safety threshold")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompts")
@click.option("--json", "as_json", is_flag=True, help="Print the batch report as JSON")
@click.option("--instructions", "show_instructions", is_flag=True, help="Show manual steps for unresolved items")
def fix(
    vulns_file: Path,
    batch_size: int | None,
    dry_run: bool,
    override_safety: bool,
    yes: bool,
    as_json: bool,
    show_instructions: bool,
):
    """Remediate the vulnerabilities listed in VULNS_FILE.

    Each fix is backed up, applied, validated and rolled back if it does
    not hold. Anything too risky is reported with manual instructions.
    """
    project_path = Path.cwd()
    try:
        config = load_config(project_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e

    items = read_vulnerability_file(vulns_file)
    if not items:
        if as_json:
            click.echo(json.dumps({"total_processed": 0}, indent=2))
        else:
            console.print("\n  No vulnerabilities to process.\n")
        return

    if as_json and not (yes or dry_run):
        raise click.ClickException("--json needs --yes or --dry-run")

    if not as_json:
        console.print("\n  [bold]sitemend Fix Engine[/bold]")
        mode = "dry run" if dry_run or config.engine.dry_run_mode else "apply"
        console.print(f"  {len(items)} vulnerabilities loaded from {vulns_file.name} ({mode})\n")

    if override_safety and not yes:
        console.print("  [yellow]The safety gate will not stop high-risk fixes in this run.[/yellow]")
        if not Confirm.ask("  Override the safety gate?", default=False):
            console.print("  [dim]Cancelled.[/dim]\n")
            return

    if not dry_run and not yes:
        if not Confirm.ask(f"  Apply fixes to {len(items)} vulnerabilities?", default=False):
            console.print("  [dim]Skipped.[/dim]\n")
            return

    try:
        engine = FixEngine.from_config(config, project_path)
    except StoreError as e:
        raise click.ClickException(str(e)) from e

    report = engine.process_vulnerabilities(
        items,
        batch_size,
        override_safety=override_safety,
        dry_run=True if dry_run else None,
    )

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        for record in report.fixes:
            print_fix_record(record)
        console.print()
        print_batch_summary(report)

        if show_instructions:
            for record in report.fixes:
                if record.instructions is not None and record.outcome != Outcome.AUTO_FIXED:
                    print_instructions(record.vulnerability_id, record.instructions)

    if report.rollback_failed:
        sys.exit(2)
