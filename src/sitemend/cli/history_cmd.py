"""sitemend history command."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.table import Table

from sitemend.core.config import get_sitemend_dir, load_config
from sitemend.core.errors import ConfigError, StoreError
from sitemend.core.output import OUTCOME_ICONS, console
from sitemend.fix.store import FixRecordStore


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Export as JSON")
@click.option("--limit", type=click.IntRange(min=1), default=20, help="Number of records to show")
@click.option("--vuln", "vulnerability_id", default=None, help="Only show attempts for one vulnerability")
@click.option("--stats", is_flag=True, help="Show counts by status and outcome")
def history(as_json: bool, limit: int, vulnerability_id: str | None, stats: bool):
    """Show recorded fix attempts, newest first."""
    project_path = Path.cwd()
    try:
        config = load_config(project_path)
        store = FixRecordStore(get_sitemend_dir(project_path), encrypt=config.backup.encrypt)
        if stats:
            counts = store.counts()
        elif vulnerability_id:
            records = store.for_vulnerability(vulnerability_id)[:limit]
        else:
            records = store.list_recent(limit)
    except (ConfigError, StoreError) as e:
        raise click.ClickException(str(e)) from e

    if stats:
        if as_json:
            click.echo(json.dumps(counts, indent=2))
            return
        console.print("\n  [bold]Fix Statistics[/bold]\n")
        for label, group in (("Status", counts["status"]), ("Outcome", counts["outcome"])):
            console.print(f"  {label}:")
            for key, count in sorted(group.items()):
                console.print(f"    {key:<18} {count}")
        console.print()
        return

    if as_json:
        click.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return

    if not records:
        console.print("\n  No fix history yet. Run `sitemend fix` to start.\n")
        return

    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("")
    table.add_column("Fix ID")
    table.add_column("Vulnerability")
    table.add_column("Strategy")
    table.add_column("Status")
    table.add_column("Started")
    for record in records:
        table.add_row(
            OUTCOME_ICONS.get(record.outcome, "") if record.outcome else "",
            record.fix_id,
            record.vulnerability_id,
            record.strategy_type or "-",
            record.status.value,
            record.start_time.strftime("%Y-%m-%d %H:%M"),
        )

    console.print()
    console.print(table)
    console.print("\n  Undo a fix with: [bold]sitemend rollback <FIX_ID>[/bold]\n")
