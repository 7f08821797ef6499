"""Rich terminal formatting for sitemend output."""

from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sitemend.core.models import (
    BatchReport,
    FixRecord,
    ManualInstructions,
    Outcome,
    Severity,
)
from sitemend.scoring.severity import CompositeRisk, SeverityResult

console = Console()
error_console = Console(stderr=True)


SEVERITY_COLORS = {
    Severity.CRITICAL: "red",
    Severity.HIGH: "bright_red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "blue",
    Severity.INFO: "dim",
}

OUTCOME_ICONS = {
    Outcome.AUTO_FIXED: "[green]✅[/green]",
    Outcome.MANUAL_REQUIRED: "[cyan]✋[/cyan]",
    Outcome.SKIPPED: "[dim]⏭[/dim]",
    Outcome.FAILED: "[red]❌[/red]",
    Outcome.ROLLBACK_FAILED: "[red bold]☠[/red bold]",
}


def severity_label(severity: Severity) -> str:
    color = SEVERITY_COLORS[severity]
    return f"[{color}]{severity.value.upper()}[/{color}]"


def print_fix_record(record: FixRecord) -> None:
    """Print a single fix outcome line."""
    icon = OUTCOME_ICONS.get(record.outcome, "●") if record.outcome else "●"
    strategy = f" [dim]({record.strategy_type})[/dim]" if record.strategy_type else ""
    console.print(f"  {icon} {record.vulnerability_id}{strategy}  {record.status.value}  [dim]{record.fix_id}[/dim]")

    for action in record.actions_taken:
        console.print(f"     [green]-> {action}[/green]")
    if record.error:
        color = "red bold" if record.outcome == Outcome.ROLLBACK_FAILED else "yellow"
        console.print(f"     [{color}]{record.error}[/{color}]")


def print_batch_summary(report: BatchReport) -> None:
    """Print the batch summary panel."""
    worst = report.worst_outcome
    if report.rollback_failed:
        border = "red"
    elif report.failed:
        border = "yellow"
    else:
        border = "green"

    lines = [
        "",
        f"  Processed:        {report.total_processed} in {report.chunks} chunk(s)",
        f"  [green]Auto-fixed:       {report.auto_fixed}[/green]",
        f"  [cyan]Manual required:  {report.manual_required}[/cyan]",
        f"  [red]Failed:           {report.failed}[/red]",
        f"  [dim]Skipped:          {report.skipped}[/dim]",
    ]
    if report.rollback_failed:
        lines.append(f"  [red bold]Rollback failed:  {report.rollback_failed}  <- site needs attention[/red bold]")
    if report.errors:
        lines.append("")
        lines.append("  [yellow]Errors:[/yellow]")
        for error in report.errors[:10]:
            lines.append(f"    - {error}")
        if len(report.errors) > 10:
            lines.append(f"    ... and {len(report.errors) - 10} more")
    lines.append("")
    if worst is not None and worst != Outcome.AUTO_FIXED:
        lines.append("  Review with: [bold]sitemend history[/bold]")
        lines.append("")

    console.print(Panel(
        "\n".join(lines),
        title="[bold]sitemend Fix Summary[/bold]",
        border_style=border,
        padding=(0, 1),
    ))


def print_instructions(vulnerability_id: str, instructions: ManualInstructions) -> None:
    """Print manual remediation steps."""
    lines = [""]
    if instructions.summary:
        lines.append(f"  {instructions.summary}")
        lines.append("")
    for i, step in enumerate(instructions.steps, 1):
        lines.append(f"  {i}. {step}")
    if instructions.warnings:
        lines.append("")
        for warning in instructions.warnings:
            lines.append(f"  [yellow]! {warning}[/yellow]")
    if instructions.resources:
        lines.append("")
        for url in instructions.resources:
            lines.append(f"  [dim]{url}[/dim]")
    lines.append("")
    lines.append(
        f"  Difficulty: {instructions.difficulty}  |  Estimated time: {instructions.estimated_minutes} min"
    )

    console.print(Panel(
        "\n".join(lines),
        title=f"[bold]{instructions.title} - {vulnerability_id}[/bold]",
        border_style="cyan",
        padding=(0, 1),
    ))


def print_severity_report(results: dict[str, SeverityResult], composite: CompositeRisk) -> None:
    """Print per-vulnerability scores and the composite risk."""
    table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
    table.add_column("Vulnerability")
    table.add_column("Severity")
    table.add_column("CVSS", justify="right")
    table.add_column("Adjusted", justify="right")
    table.add_column("Final", justify="right")
    table.add_column("Risk", justify="right")

    ordered = sorted(results.items(), key=lambda kv: kv[1].final_score, reverse=True)
    for vuln_id, result in ordered:
        table.add_row(
            vuln_id,
            severity_label(result.severity),
            f"{result.cvss_score:.1f}",
            f"{result.adjusted_score:.1f}",
            f"{result.final_score:.1f}",
            f"{result.risk_score:.0f}",
        )

    console.print()
    console.print(table)
    console.print()
    breakdown = ", ".join(f"{k}: {v}" for k, v in composite.severity_breakdown.items() if v)
    console.print(
        f"  Composite risk: [bold]{composite.composite_score:.1f}[/bold] "
        f"{severity_label(composite.severity)}  ({composite.count} vulnerabilities"
        + (f"; {breakdown}" if breakdown else "")
        + ")"
    )
    console.print()
