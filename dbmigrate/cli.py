"""
CLI: argument parsing, dry-run mode, and main migration pipeline.
"""

import argparse
import logging
import threading
from pathlib import Path

from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table
from rich import box

from dbmigrate import console, CONFIG_FILE
from dbmigrate.config import init_config, load_config, test_connection
from dbmigrate.errors import ConfigError, MigrationAborted, MigrationError
from dbmigrate.orchestrator import RunOutcome, build_plan, migrate
from dbmigrate.pool import PoolManager
from dbmigrate.reporting import print_report, write_json_report
from dbmigrate.validation import validate_migration

logger = logging.getLogger("dbmigrate")

EXIT_INTERRUPTED = 130


def parse_args(argv=None):
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(
        description="Firebird / PostgreSQL / MySQL Migration Tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  python migrate.py --init                 Create config file template\n"
            "  python migrate.py --dry-run              Validate and show the plan without migrating\n"
            "  python migrate.py --report run.json      Run full migration and save a JSON report\n"
        ),
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Create migration_config.json template and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=CONFIG_FILE,
        metavar="PATH",
        help=f"Config file to use (default: {CONFIG_FILE.name})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate config, test connections, preview the plan — no data is moved",
    )
    parser.add_argument("--verbose", action="store_true", help="Show full detailed tables and INFO logs")
    parser.add_argument("--report", type=Path, metavar="PATH", help="Write the migration report as JSON")
    parser.add_argument("--no-validate", action="store_true", help="Skip the post-migration row count check")
    return parser.parse_args(argv)


def setup_logging(verbose: bool = False):
    """Route library logging through rich on the shared console."""
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=True, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.handlers[:] = [handler]
    logger.setLevel(logging.INFO if verbose else logging.WARNING)


def print_config_error(e: ConfigError):
    console.print(f"\n[red]✗ {e}[/red]")
    for problem in e.problems:
        console.print(f"  [red]•[/red] {problem}")
    console.print("")


def endpoint_panel(config, title=None):
    return Panel(
        f"[bold]Source:[/bold]  {config.source.label}\n"
        f"[bold]Target:[/bold]  {config.target.label}",
        title=title,
        border_style="dim" if title is None else "yellow",
    )


def plan_table(plan) -> Table:
    table = Table(box=box.ROUNDED, show_lines=False, pad_edge=True)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Source table", style="cyan", min_width=20)
    table.add_column("Target table", style="green")
    table.add_column("Columns", justify="right")
    table.add_column("Depends on", style="dim")
    table.add_column("Create", justify="center")
    for index, unit in enumerate(plan, start=1):
        table.add_row(
            str(index),
            unit.source_table,
            unit.target_table,
            str(len(unit.columns)),
            ", ".join(sorted(unit.dependencies)) or "-",
            "[yellow]yes[/yellow]" if unit.create_step else "",
        )
    return table


def dry_run(config, verbose: bool = False):
    """Validate config and preview what would be migrated, without actually migrating."""
    console.print(
        Panel(
            "[bold white]Firebird / PostgreSQL / MySQL Migration Tool[/bold white]\n"
            "[dim]🔍 DRY RUN — No data will be migrated[/dim]",
            border_style="bright_magenta",
            padding=(1, 4),
        )
    )

    all_ok = True
    pools = PoolManager(config.pool)
    try:
        # ── 1. Config ─────────────────────────────────────────────
        console.print("[bold yellow][1/3][/bold yellow] Configuration")
        console.print(endpoint_panel(config))
        console.print("  [green]✓[/green] Config is valid\n")

        # ── 2. Connections ────────────────────────────────────────
        console.print("[bold yellow][2/3][/bold yellow] Connections")
        connected = True
        for role, endpoint in (("Source", config.source), ("Target", config.target)):
            if test_connection(endpoint, pools):
                console.print(f"  [green]✓[/green] {role} {endpoint.engine} is reachable")
            else:
                console.print(f"  [red]✗ {role} {endpoint.engine} is not reachable.[/red]")
                connected = False
        console.print("")
        all_ok = connected

        # ── 3. Plan preview ───────────────────────────────────────
        console.print("[bold yellow][3/3][/bold yellow] Migration plan")
        if connected:
            try:
                plan = build_plan(config, pools)
            except MigrationError as e:
                console.print(f"  [red]✗ Could not plan the migration:[/red] {e}\n")
                all_ok = False
            else:
                if not len(plan):
                    console.print("  [yellow]⚠ No tables selected for migration.[/yellow]\n")
                else:
                    console.print(plan_table(plan))
                    for step in plan.ddl_steps:
                        console.print(f"  [yellow]+[/yellow] will create [cyan]{step.table}[/cyan]")
                        if verbose:
                            console.print(f"    [dim]{step.statement}[/dim]")
                    for warning in plan.warnings:
                        console.print(f"  [yellow]⚠[/yellow] {warning}")
                    console.print(
                        f"\n  [green]✓[/green] {len(plan)} tables ready to migrate "
                        f"in dependency order\n"
                    )
        else:
            console.print("  [dim]Skipped — connection failed.[/dim]\n")
    finally:
        pools.shutdown_all()

    # ── Summary ───────────────────────────────────────────────
    if all_ok:
        console.print(
            Panel(
                "[bold green]✓ Dry run passed — everything looks good![/bold green]\n\n"
                "[bold]Ready to migrate. Run:[/bold]\n"
                "  [cyan]python migrate.py[/cyan]",
                border_style="green",
                padding=(1, 2),
            )
        )
        return RunOutcome.SUCCESS
    console.print(
        Panel(
            "[bold red]✗ Dry run found issues.[/bold red]\n"
            "[yellow]Fix the errors above before running the actual migration.[/yellow]",
            border_style="red",
            padding=(1, 2),
        )
    )
    return RunOutcome.FATAL


def run_migration(config, pools, cancel_event, progress):
    """Run migrate() on a worker thread so Ctrl-C only sets the cancel event."""
    tasks = {}

    def on_progress(unit_progress):
        table = unit_progress.table
        if table not in tasks:
            tasks[table] = progress.add_task(f"[cyan]{table}", total=None, rows="0")
        progress.update(
            tasks[table],
            rows=f"{unit_progress.rows_written:,}",
            description=f"[cyan]{table}[/cyan] [dim]{unit_progress.state.value}[/dim]",
        )

    outcome = {}

    def work():
        try:
            outcome["report"] = migrate(config, cancel_event, on_progress, pools=pools)
        except BaseException as e:
            outcome["error"] = e

    worker = threading.Thread(target=work, name="dbmigrate-run", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.2)
        except KeyboardInterrupt:
            if cancel_event.is_set():
                raise
            cancel_event.set()
            console.print("\n[yellow]Cancelling — waiting for in-flight batches to commit (Ctrl-C again to abort)[/yellow]")

    if "error" in outcome:
        raise outcome["error"]
    return outcome["report"]


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.verbose)

    # ── Handle --init flag ────────────────────────────────────
    if args.init:
        console.print(
            Panel(
                "[bold white]Firebird / PostgreSQL / MySQL Migration Tool[/bold white]\n"
                "[dim]Configuration Setup[/dim]",
                border_style="bright_cyan",
                padding=(1, 4),
            )
        )
        try:
            init_config(args.config)
        except ConfigError as e:
            print_config_error(e)
            return RunOutcome.FATAL
        return RunOutcome.SUCCESS

    # ── Load config (needed for both dry-run and full migration) ──
    try:
        config = load_config(args.config)
    except ConfigError as e:
        print_config_error(e)
        return RunOutcome.FATAL

    # ── Handle --dry-run flag ─────────────────────────────────
    if args.dry_run:
        return dry_run(config, verbose=args.verbose)

    # ── Banner ────────────────────────────────────────────────
    console.print(
        Panel(
            "[bold white]Firebird / PostgreSQL / MySQL Migration Tool[/bold white]\n"
            f"[dim]{config.source.engine} → {config.target.engine} • "
            f"batches of {config.transfer.batch_size:,}, up to "
            f"{min(config.transfer.max_parallel_units, config.pool.max_size)} tables in parallel[/dim]",
            border_style="bright_cyan",
            padding=(1, 4),
        )
    )
    console.print(f"  [green]✓[/green] Config loaded from [cyan]{args.config.name}[/cyan]\n")
    console.print(endpoint_panel(config, title="Migration Summary"))

    # ── Step 1: Transfer ──────────────────────────────────────
    console.print("\n[bold yellow][1/3][/bold yellow] Migrating tables...")
    cancel_event = threading.Event()
    pools = PoolManager(config.pool)
    validation = None
    try:
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                TextColumn("[green]{task.fields[rows]}[/green] rows"),
                TimeElapsedColumn(),
                console=console,
            ) as progress:
                report = run_migration(config, pools, cancel_event, progress)
        except MigrationAborted as e:
            report = e.report
            console.print(f"\n  [red]✗ {e}[/red]")
        except MigrationError as e:
            console.print(f"\n[red]✗ Migration could not start:[/red] {e}\n")
            logger.debug("Setup failure", exc_info=True)
            return RunOutcome.FATAL

        # ── Step 2: Results ───────────────────────────────────────
        console.print("\n[bold yellow][2/3][/bold yellow] Results")
        print_report(report, verbose=args.verbose)

        # ── Step 3: Validate ──────────────────────────────────────
        console.print("\n[bold yellow][3/3][/bold yellow] Validating migration...")
        if args.no_validate or report.cancelled or report.plan is None:
            console.print("  [dim]Skipped.[/dim]")
        else:
            validation = validate_migration(pools, report.plan, config.source, config.target, verbose=args.verbose)
    finally:
        pools.shutdown_all()

    if args.report:
        try:
            path = write_json_report(report, args.report)
            console.print(f"  [green]✓[/green] Report written to [cyan]{path}[/cyan]")
        except OSError as e:
            console.print(f"  [red]✗ Could not write report:[/red] {e}")

    # ── Summary ───────────────────────────────────────────────
    console.print("")
    totals = report.totals
    if report.cancelled:
        console.print(
            Panel(
                "[bold yellow]■ Migration cancelled[/bold yellow]\n"
                f"{totals['rows_written']:,} rows were committed before stopping.",
                border_style="yellow",
                padding=(1, 2),
            )
        )
        return EXIT_INTERRUPTED

    outcome = report.outcome
    if outcome is RunOutcome.SUCCESS and validation is not None and not validation["all_passed"]:
        outcome = RunOutcome.PARTIAL

    if outcome is RunOutcome.SUCCESS:
        console.print(
            Panel(
                "[bold green]✓ Migration completed successfully![/bold green]\n"
                f"[green]{totals['tables']} tables, {totals['rows_written']:,} rows in "
                f"{totals['batches_committed']:,} batches.[/green]",
                border_style="green",
                padding=(1, 2),
            )
        )
    else:
        console.print(
            Panel(
                "[bold red]✗ Migration finished with issues[/bold red]\n"
                "Some tables failed, were skipped, or did not validate. Check the summary above.",
                border_style="red",
                padding=(1, 2),
            )
        )
    return outcome
