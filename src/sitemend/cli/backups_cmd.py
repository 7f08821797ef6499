"""sitemend backups command."""

from __future__ import annotations

from pathlib import Path

import click

from sitemend.core.config import load_config
from sitemend.core.errors import ConfigError
from sitemend.core.output import console
from sitemend.core.site import Site
from sitemend.fix.backup import BackupManager


@click.command()
@click.option("--cleanup", is_flag=True, help="Delete released snapshots past retention")
@click.option("--verify", "verify_id", default=None, help="Check one snapshot's blobs against its checksums")
def backups(cleanup: bool, verify_id: str | None):
    """List pre-fix snapshots, verify one, or prune old ones."""
    project_path = Path.cwd()
    try:
        config = load_config(project_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    manager = BackupManager(Site.from_config(config, project_path), config.backup)

    if cleanup:
        removed = manager.cleanup()
        console.print(f"\n  Removed {removed} snapshot(s).\n")
        return

    if verify_id:
        if not manager.exists(verify_id):
            raise click.ClickException(f"no snapshot {verify_id}")
        if manager.verify(verify_id):
            console.print(f"\n  [green]✅ Snapshot {verify_id} is intact.[/green]\n")
        else:
            console.print(f"\n  [red]❌ Snapshot {verify_id} is damaged.[/red]\n")
            raise SystemExit(1)
        return

    snapshots = manager.list_snapshots()
    if not snapshots:
        console.print("\n  No snapshots.\n")
        return

    console.print("\n  [bold]Snapshots[/bold]\n")
    for snapshot in snapshots:
        state = "[dim]released[/dim]" if snapshot.released else "[yellow]in use[/yellow]"
        label = f"  {snapshot.label}" if snapshot.label else ""
        console.print(
            f"  {snapshot.id}  {snapshot.created_at:%Y-%m-%d %H:%M}  "
            f"{snapshot.file_count} file(s)  {state}{label}"
        )
    console.print()
