"""sitemend score command."""

from __future__ import annotations

import json
from pathlib import Path

import click

from sitemend.cli.fix_cmd import read_vulnerability_file
from sitemend.core.errors import ValidationError
from sitemend.core.models import Vulnerability
from sitemend.core.output import console, error_console, print_severity_report
from sitemend.scoring.severity import (
    ResourceContext,
    SeverityResult,
    calculate_composite_risk,
    calculate_risk_trend,
    calculate_severity,
)


@click.command()
@click.argument("vulns_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--previous", type=float, default=None, help="Earlier composite score, to report a trend")
@click.option("--days", type=float, default=1.0, help="Days between the earlier score and now")
def score(vulns_file: Path, as_json: bool, previous: float | None, days: float):
    """Score the vulnerabilities in VULNS_FILE without fixing anything."""
    results: dict[str, SeverityResult] = {}
    for item in read_vulnerability_file(vulns_file):
        try:
            vulnerability = Vulnerability.from_dict(item)
        except ValidationError as e:
            error_console.print(f"  [yellow]Skipping: {e}[/yellow]")
            continue
        context = None
        if vulnerability.affected_resources:
            context = ResourceContext.from_path(vulnerability.affected_resources[0])
        results[vulnerability.id] = calculate_severity(vulnerability, context)

    composite = calculate_composite_risk(list(results.values()))
    trend = calculate_risk_trend(previous, composite.composite_score, days) if previous is not None else None

    if as_json:
        output = {
            "vulnerabilities": {vuln_id: r.to_dict() for vuln_id, r in results.items()},
            "composite": composite.to_dict(),
        }
        if trend is not None:
            output["trend"] = {
                "direction": trend.direction,
                "change_percent": trend.change_percent,
                "risk_velocity": trend.risk_velocity,
            }
        click.echo(json.dumps(output, indent=2))
        return

    if not results:
        console.print("\n  No valid vulnerabilities to score.\n")
        return

    print_severity_report(results, composite)
    if trend is not None:
        console.print(
            f"  Trend: {trend.direction} ({trend.change_percent:+.1f}%, {trend.risk_velocity:+.2f}/day)\n"
        )
