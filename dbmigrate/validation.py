"""
Validation: compare source and target row counts after a migration.
"""

import logging

from rich.table import Table
from rich import box

from dbmigrate import console
from dbmigrate.dialects import get_dialect
from dbmigrate.errors import ConnectError

logger = logging.getLogger(__name__)


def count_rows(pools, endpoint, tables) -> dict[str, int]:
    """Exact row counts for ``tables`` on ``endpoint``; -1 marks a table that could not be counted."""
    dialect = get_dialect(endpoint.engine)
    counts = {}
    with pools.lease(endpoint) as handle:
        cursor = handle.cursor()
        try:
            for table in tables:
                try:
                    cursor.execute(dialect.build_count(table))
                    counts[table] = cursor.fetchone()[0]
                except dialect.driver_errors as e:
                    console.print(f"  [yellow]⚠ Could not count rows in {endpoint.engine} table {table}:[/yellow] {e}")
                    counts[table] = -1
                    # PostgreSQL aborts the transaction on any error
                    handle.rollback()
        finally:
            cursor.close()
    return counts


def validate_migration(pools, plan, source, target, verbose: bool = False) -> dict:
    """Compare row counts of every planned table and collect the results."""
    report = {"tables": [], "passed": 0, "failed": 0, "total": 0, "all_passed": True, "validation_errors": []}

    if verbose:
        console.print("\n  [bold]Row Count Comparison[/bold]")

    try:
        source_counts = count_rows(pools, source, [u.source_table for u in plan])
        target_counts = count_rows(pools, target, [u.target_table for u in plan])
    except ConnectError as e:
        report["validation_errors"].append(str(e))
        report["all_passed"] = False
        console.print("  [red]✗ Row counts skipped — database connection issues[/red]")
        console.print(f"    [red]✗[/red] {e}")
        return report

    table = Table(box=box.ROUNDED, show_lines=False, pad_edge=True)
    table.add_column("Table", style="cyan", min_width=20)
    table.add_column(source.engine, justify="right", style="yellow")
    table.add_column(target.engine, justify="right", style="green")
    table.add_column("Status", justify="center")

    for unit in plan:
        s_count = source_counts.get(unit.source_table, -1)
        t_count = target_counts.get(unit.target_table, -1)

        if s_count < 0 or t_count < 0:
            status = "✗ ERROR"
        elif s_count == t_count:
            status = "✓ OK"
        else:
            status = "✗ MISMATCH"
        passed = status == "✓ OK"

        if passed:
            report["passed"] += 1
        else:
            report["failed"] += 1
            report["all_passed"] = False

        report["tables"].append({
            "table": unit.source_table,
            "target_table": unit.target_table,
            "source": s_count,
            "target": t_count,
            "status": status,
            "passed": passed,
        })
        rich_status = f"[green]{status}[/green]" if passed else f"[red]{status}[/red]"
        table.add_row(
            unit.source_table,
            f"{s_count:,}" if s_count >= 0 else "-",
            f"{t_count:,}" if t_count >= 0 else "-",
            rich_status,
        )

    report["total"] = len(report["tables"])
    logger.info("Row count validation: %d/%d table(s) match", report["passed"], report["total"])

    if verbose or not report["all_passed"]:
        console.print(table)
    color = "green" if report["all_passed"] else "red"
    console.print(f"  [{color}]Row counts:[/] {report['passed']}/{report['total']} tables match")

    return report
