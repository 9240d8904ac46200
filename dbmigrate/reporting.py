"""
Migration report output: a rich console table and a JSON file.
"""

import json
from pathlib import Path

from rich.table import Table
from rich import box

from dbmigrate import console
from dbmigrate.transfer import UnitState

STATE_STYLES = {
    UnitState.COMPLETED: ("✓ Completed", "green"),
    UnitState.FAILED: ("✗ Failed", "red"),
    UnitState.CANCELLED: ("■ Cancelled", "yellow"),
    UnitState.SKIPPED: ("↷ Skipped", "yellow"),
    UnitState.PENDING: ("· Pending", "dim"),
    UnitState.RUNNING: ("… Running", "cyan"),
}


def write_json_report(report, path) -> Path:
    """Write ``report.to_dict()`` as indented JSON and return the path."""
    path = Path(path)
    path.write_text(json.dumps(report.to_dict(), indent=2) + "\n")
    return path


def print_report(report, verbose: bool = False):
    """Render per-table results, warnings and totals on the console."""
    table = Table(box=box.ROUNDED, show_lines=False, pad_edge=True)
    table.add_column("Table", style="cyan", min_width=20)
    table.add_column("Target", style="dim")
    table.add_column("Rows", justify="right", style="green")
    table.add_column("Batches", justify="right")
    if verbose:
        table.add_column("Read", justify="right", style="yellow")
        table.add_column("Skipped", justify="right")
        table.add_column("Retries", justify="right")
        table.add_column("Time", justify="right", style="dim")
    table.add_column("Status", justify="center")

    for result in report.tables:
        label, color = STATE_STYLES[result.state]
        row = [result.table, result.target_table, f"{result.rows_written:,}", str(result.batches_committed)]
        if verbose:
            row += [
                f"{result.rows_read:,}",
                f"{result.rows_skipped:,}",
                str(result.retries),
                f"{result.elapsed:.1f}s",
            ]
        row.append(f"[{color}]{label}[/{color}]")
        table.add_row(*row)

    totals = report.totals
    table.add_section()
    footer = [
        f"[bold]{totals['tables']} tables[/bold]",
        "",
        f"[bold]{totals['rows_written']:,}[/bold]",
        f"[bold]{totals['batches_committed']}[/bold]",
    ]
    if verbose:
        footer += [f"[bold]{totals['rows_read']:,}[/bold]", f"[bold]{totals['rows_skipped']:,}[/bold]", "", ""]
    footer.append("")
    table.add_row(*footer)
    console.print(table)

    for result in report.in_state(UnitState.FAILED):
        where = ""
        if result.failed_range:
            where = f" (rows {result.failed_range[0]}-{result.failed_range[1]})"
        console.print(f"  [red]✗ {result.table}{where}:[/red] {result.error}")
    for result in report.in_state(UnitState.SKIPPED):
        reason = f"depends on {result.blocked_by}" if result.blocked_by else "dependency did not complete"
        console.print(f"  [yellow]↷ {result.table}:[/yellow] skipped, {reason}")

    if report.warnings:
        if verbose:
            console.print("\n  [bold]Lossy type mappings[/bold]")
            for warning in report.warnings:
                console.print(f"    [yellow]⚠[/yellow] {warning}")
        else:
            console.print(
                f"  [yellow]⚠ {len(report.warnings)} lossy type mapping(s)[/yellow] "
                "[dim](--verbose to list them)[/dim]"
            )
