#!/usr/bin/env python3
"""
═══════════════════════════════════════════════════════════════
  Firebird / PostgreSQL / MySQL Migration Tool
═══════════════════════════════════════════════════════════════

  CLI that copies tables and rows between any two supported engines:
    1. Read connection details from migration_config.json
    2. Open a bounded connection pool per database
    3. Introspect both schemas and plan tables in foreign key order
    4. Stream rows in committed batches, several tables in parallel
    5. Validate data integrity (row counts)

  Usage:
    pip install -e .
    python migrate.py --init     # Create config file (first time)
    # Edit migration_config.json with your credentials
    python migrate.py --dry-run  # Check connections and preview the plan
    python migrate.py            # Run migration

═══════════════════════════════════════════════════════════════
"""

import sys
import traceback

from dbmigrate import console
from dbmigrate.cli import EXIT_INTERRUPTED, main


def run():
    try:
        exit_code = main()
        sys.exit(int(exit_code))
    except KeyboardInterrupt:
        console.print("\n[dim]Migration cancelled by user.[/dim]")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print(f"\n[red]Unexpected error: {e}[/red]")
        console.print("[dim]Please report this issue with the full traceback.[/dim]")
        traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    run()
