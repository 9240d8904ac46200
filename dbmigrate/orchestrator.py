"""
Migration orchestration: schedule units by dependency, run them in parallel, aggregate results.

Usage:
    report = migrate(load_config())
    print(report.outcome, report.totals)
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum

from dbmigrate.config import MigrationConfig
from dbmigrate.dialects import get_dialect
from dbmigrate.errors import MigrationAborted
from dbmigrate.planner import MigrationPlan, MigrationPlanner
from dbmigrate.pool import PoolManager
from dbmigrate.schema import SchemaIntrospector
from dbmigrate.transfer import BatchTransferEngine, TransferProgress, UnitState

logger = logging.getLogger(__name__)


class RunOutcome(IntEnum):
    """Process exit codes."""
    SUCCESS = 0
    FATAL = 1
    PARTIAL = 2


# ═════════════════════════════════════════════════════════════
# Report
# ═════════════════════════════════════════════════════════════

@dataclass
class TableResult:
    table: str
    target_table: str
    state: UnitState
    rows_read: int = 0
    rows_written: int = 0
    rows_failed: int = 0
    rows_skipped: int = 0
    batches_committed: int = 0
    retries: int = 0
    elapsed: float = 0.0
    error: str | None = None
    error_type: str | None = None
    failed_range: tuple | None = None
    blocked_by: str | None = None

    @classmethod
    def from_progress(cls, progress: TransferProgress, blocked_by: str | None = None):
        return cls(
            table=progress.unit.source_table,
            target_table=progress.unit.target_table,
            state=progress.state,
            rows_read=progress.rows_read,
            rows_written=progress.rows_written,
            rows_failed=progress.rows_failed,
            rows_skipped=progress.rows_skipped,
            batches_committed=progress.batches_committed,
            retries=progress.retries,
            elapsed=progress.elapsed,
            error=progress.error,
            error_type=progress.error_type,
            failed_range=progress.failed_range,
            blocked_by=blocked_by,
        )

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "target_table": self.target_table,
            "state": self.state.value,
            "rows_read": self.rows_read,
            "rows_written": self.rows_written,
            "rows_failed": self.rows_failed,
            "rows_skipped": self.rows_skipped,
            "batches_committed": self.batches_committed,
            "retries": self.retries,
            "elapsed_seconds": round(self.elapsed, 3),
            "error": self.error,
            "error_type": self.error_type,
            "failed_range": list(self.failed_range) if self.failed_range else None,
            "blocked_by": self.blocked_by,
        }


@dataclass
class MigrationReport:
    source: str
    target: str
    tables: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancelled: bool = False
    plan: MigrationPlan | None = field(default=None, repr=False)

    def result(self, table: str) -> TableResult | None:
        for result in self.tables:
            if result.table == table:
                return result
        return None

    def in_state(self, state: UnitState) -> list[TableResult]:
        return [r for r in self.tables if r.state is state]

    @property
    def totals(self) -> dict:
        totals = {
            "tables": len(self.tables),
            "rows_read": 0,
            "rows_written": 0,
            "rows_failed": 0,
            "rows_skipped": 0,
            "batches_committed": 0,
        }
        for result in self.tables:
            for key in ("rows_read", "rows_written", "rows_failed", "rows_skipped", "batches_committed"):
                totals[key] += getattr(result, key)
        for state in UnitState:
            if state in (UnitState.PENDING, UnitState.RUNNING):
                continue
            totals[state.value] = len(self.in_state(state))
        return totals

    @property
    def outcome(self) -> RunOutcome:
        if all(r.state is UnitState.COMPLETED for r in self.tables):
            return RunOutcome.SUCCESS
        return RunOutcome.PARTIAL

    @property
    def elapsed(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "target": self.target,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "elapsed_seconds": round(self.elapsed, 3),
            "outcome": self.outcome.name,
            "cancelled": self.cancelled,
            "totals": self.totals,
            "tables": [r.to_dict() for r in self.tables],
            "warnings": [
                {
                    "table": w.table,
                    "column": w.column,
                    "source_type": w.source_type,
                    "target_type": w.target_type,
                    "note": w.note,
                }
                for w in self.warnings
            ],
        }


# ═════════════════════════════════════════════════════════════
# Scheduling
# ═════════════════════════════════════════════════════════════

class MigrationOrchestrator:
    """Runs a MigrationPlan on a bounded worker pool.

    A unit starts only once every unit it depends on has Completed. When a
    unit fails, everything downstream of it is skipped while independent
    branches carry on.
    """

    def __init__(self, engine: BatchTransferEngine, max_parallel_units: int = 1, progress_callback=None):
        self.engine = engine
        self.max_parallel_units = max(1, max_parallel_units)
        self.progress_callback = progress_callback
        self._lock = threading.Lock()
        self._rows_written = 0
        self._batches = 0
        self._seen = {}
        engine.progress_callback = self._on_progress

    def snapshot(self) -> dict:
        with self._lock:
            return {"rows_written": self._rows_written, "batches_committed": self._batches}

    def _on_progress(self, progress: TransferProgress):
        with self._lock:
            rows, batches = self._seen.get(progress.table, (0, 0))
            self._rows_written += progress.rows_written - rows
            self._batches += progress.batches_committed - batches
            self._seen[progress.table] = (progress.rows_written, progress.batches_committed)
            if self.progress_callback is not None:
                self.progress_callback(progress)

    def run(self, plan: MigrationPlan, cancel_event: threading.Event | None = None,
            source: str = "", target: str = "") -> MigrationReport:
        """Run every unit of ``plan``.

        Raises MigrationAborted (carrying the finished report) when a failed
        unit left dependents unmigrated.
        """
        cancel_event = cancel_event or self.engine.cancel_event
        self.engine.cancel_event = cancel_event

        report = MigrationReport(
            source=source or self.engine.source.label,
            target=target or self.engine.target.label,
            warnings=list(plan.warnings),
            started_at=datetime.now(),
            plan=plan,
        )
        units = {unit.source_table: unit for unit in plan}
        progress = {table: TransferProgress(unit) for table, unit in units.items()}
        blocked_by = {}
        waiting = list(plan.order)
        running = {}

        logger.info(
            "Starting %d unit(s) with up to %d in parallel", len(units), self.max_parallel_units
        )
        with ThreadPoolExecutor(max_workers=self.max_parallel_units, thread_name_prefix="dbmigrate") as pool:
            while waiting or running:
                if cancel_event.is_set():
                    if waiting:
                        logger.warning("Cancelled: %d unit(s) will not start", len(waiting))
                    for table in waiting:
                        progress[table].state = UnitState.CANCELLED
                    waiting = []
                else:
                    for table in list(waiting):
                        if len(running) >= self.max_parallel_units:
                            break
                        if all(progress[dep].state is UnitState.COMPLETED
                               for dep in units[table].dependencies):
                            waiting.remove(table)
                            future = pool.submit(self.engine.run, units[table], progress[table])
                            running[future] = table

                if not running:
                    # Nothing can start: what remains waits on units that did not complete
                    for table in waiting:
                        progress[table].state = UnitState.SKIPPED
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    table = running.pop(future)
                    try:
                        future.result()
                    except Exception as e:
                        logger.exception("Unexpected error while transferring %s", table)
                        progress[table].fail(e)
                    if progress[table].state is UnitState.FAILED:
                        for dependent in sorted(plan.dependents_of(table)):
                            if dependent in waiting:
                                waiting.remove(dependent)
                                progress[dependent].state = UnitState.SKIPPED
                                blocked_by[dependent] = table
                                logger.warning("Skipping %s: depends on failed table %s", dependent, table)

        report.finished_at = datetime.now()
        report.cancelled = cancel_event.is_set()
        report.tables = [
            TableResult.from_progress(progress[table], blocked_by.get(table)) for table in plan.order
        ]

        totals = report.totals
        logger.info(
            "Migration finished: %d row(s) written, %d completed, %d failed, %d skipped, %d cancelled",
            totals["rows_written"], totals[UnitState.COMPLETED.value], totals[UnitState.FAILED.value],
            totals[UnitState.SKIPPED.value], totals[UnitState.CANCELLED.value],
        )

        blocking = sorted({
            r.table for r in report.in_state(UnitState.FAILED) if plan.dependents_of(r.table)
        })
        if blocking:
            raise MigrationAborted(report, blocking)
        return report


# ═════════════════════════════════════════════════════════════
# End-to-end pipeline
# ═════════════════════════════════════════════════════════════

def check_connectivity(pools: PoolManager, *endpoints):
    """Lease and ping one connection per endpoint; raises ConnectError on the first failure."""
    for endpoint in endpoints:
        with pools.lease(endpoint) as handle:
            handle.ping()
        logger.info("Connected to %s", endpoint.label)


def build_plan(config: MigrationConfig, pools: PoolManager) -> MigrationPlan:
    """Introspect both sides and plan the migration."""
    source_dialect = get_dialect(config.source.engine)
    target_dialect = get_dialect(config.target.engine)

    with pools.lease(config.source) as handle:
        source_schemas = SchemaIntrospector(source_dialect).describe(handle)
    with pools.lease(config.target) as handle:
        target_schemas = SchemaIntrospector(target_dialect).describe(
            handle, allow_empty=config.mapping.auto_create
        )

    planner = MigrationPlanner(source_dialect, target_dialect)
    return planner.plan(source_schemas, target_schemas, config.mapping)


def migrate(config: MigrationConfig, cancel_event: threading.Event | None = None,
            progress_callback=None, pools: PoolManager | None = None) -> MigrationReport:
    """Validate, connect, introspect, plan and transfer.

    Setup failures (config, connectivity, introspection, planning) raise
    before any row moves. Pools created here are shut down on return.
    """
    config.validate()
    cancel_event = cancel_event or threading.Event()
    owns_pools = pools is None
    if owns_pools:
        pools = PoolManager(config.pool)
    try:
        check_connectivity(pools, config.source, config.target)
        plan = build_plan(config, pools)

        engine = BatchTransferEngine(
            pools, config.source, config.target,
            settings=config.transfer, cancel_event=cancel_event,
        )
        parallel = min(config.transfer.max_parallel_units, pools.settings.max_size)
        orchestrator = MigrationOrchestrator(engine, parallel, progress_callback=progress_callback)
        return orchestrator.run(plan, cancel_event)
    finally:
        if owns_pools:
            pools.shutdown_all()
