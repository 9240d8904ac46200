"""
Batch transfer: stream one table from source to target in bounded, committed batches.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum

from dbmigrate.config import TransferSettings
from dbmigrate.dialects import get_dialect
from dbmigrate.errors import (
    ConnectError, PoolError, TransferError, TransientTransferError, TypeCoercionError,
)
from dbmigrate.planner import MigrationUnit
from dbmigrate.typemap import coerce_value

logger = logging.getLogger(__name__)


class UnitState(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    SKIPPED = "SkippedDueToDependencyFailure"

    @property
    def finished(self) -> bool:
        return self not in (UnitState.PENDING, UnitState.RUNNING)


@dataclass
class TransferProgress:
    unit: MigrationUnit
    state: UnitState = UnitState.PENDING
    rows_read: int = 0
    rows_written: int = 0
    rows_failed: int = 0
    rows_skipped: int = 0
    batches_committed: int = 0
    retries: int = 0
    error: str | None = None
    error_type: str | None = None
    failed_range: tuple | None = None
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def table(self) -> str:
        return self.unit.source_table

    @property
    def elapsed(self) -> float:
        if self.started_at is None:
            return 0.0
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at

    def fail(self, error: BaseException):
        self.state = UnitState.FAILED
        self.error = str(error)
        self.error_type = type(error).__name__
        self.failed_range = getattr(error, "row_range", None)


class _TargetLease:
    """The target handle of a running unit; swapped for a fresh one after a transient failure."""

    def __init__(self, pools, endpoint):
        self.pools = pools
        self.endpoint = endpoint
        self.handle = pools.acquire(endpoint)

    def replace(self):
        self.discard()
        self.handle = self.pools.acquire(self.endpoint)

    def discard(self):
        handle, self.handle = self.handle, None
        if handle is not None:
            self.pools.release(handle, broken=True)

    def release(self):
        handle, self.handle = self.handle, None
        if handle is not None:
            self.pools.release(handle)


class BatchTransferEngine:
    """Moves the rows of one MigrationUnit.

    Each unit holds one source and one target connection for its whole run.
    Rows are fetched ``fetch_size`` at a time and written in groups of
    ``batch_size``, one transaction per group. Committed groups stay
    committed if a later group fails.
    """

    def __init__(self, pools, source, target, settings: TransferSettings | None = None,
                 cancel_event: threading.Event | None = None, progress_callback=None,
                 sleep=time.sleep, clock=time.monotonic):
        self.pools = pools
        self.source = source
        self.target = target
        self.settings = settings or TransferSettings()
        self.cancel_event = cancel_event or threading.Event()
        self.progress_callback = progress_callback
        self.source_dialect = get_dialect(source.engine)
        self.target_dialect = get_dialect(target.engine)
        self._sleep = sleep
        self._clock = clock

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def run(self, unit: MigrationUnit, progress: TransferProgress | None = None) -> TransferProgress:
        progress = progress or TransferProgress(unit)
        progress.state = UnitState.RUNNING
        progress.started_at = self._clock()
        logger.info("Transferring %s → %s", unit.source_table, unit.target_table)
        try:
            finished = self._transfer(unit, progress)
        except (TransferError, ConnectError, PoolError) as e:
            progress.fail(e)
            logger.error("%s failed: %s", unit.source_table, e)
        else:
            progress.state = UnitState.COMPLETED if finished else UnitState.CANCELLED
            logger.info(
                "%s %s: %d row(s) in %d batch(es)",
                unit.source_table, progress.state.value.lower(),
                progress.rows_written, progress.batches_committed,
            )
        finally:
            progress.finished_at = self._clock()
        self._notify(progress)
        return progress

    # ── Pipeline ──────────────────────────────────────────────

    def _transfer(self, unit, progress) -> bool:
        """Run the unit; returns False when stopped by cancellation."""
        batch_size = self.settings.batch_size
        fetch_size = self.settings.fetch_size

        with self.pools.lease(self.source) as source:
            lease = _TargetLease(self.pools, self.target)
            try:
                if unit.create_step is not None:
                    self._run_ddl(unit, lease)

                cursor = self.source_dialect.open_stream_cursor(source.connection, fetch_size)
                try:
                    self._read(
                        unit, progress, cursor.execute,
                        self.source_dialect.build_select(
                            unit.source_table, unit.source_columns, unit.key_columns
                        ),
                    )
                    pending = []
                    next_row = 1
                    while True:
                        if self.cancelled:
                            return False
                        rows = self._read(unit, progress, cursor.fetchmany, fetch_size)
                        if not rows:
                            break
                        progress.rows_read += len(rows)
                        pending.extend(rows)
                        while len(pending) >= batch_size:
                            group, pending = pending[:batch_size], pending[batch_size:]
                            self._write_group(unit, lease, group, next_row, progress)
                            next_row += len(group)
                            if self.cancelled:
                                return False
                    if pending:
                        self._write_group(unit, lease, pending, next_row, progress)
                    return True
                finally:
                    try:
                        cursor.close()
                    except self.source_dialect.driver_errors as e:
                        logger.debug("Closing source cursor for %s failed: %s", unit.source_table, e)
            finally:
                lease.release()

    def _read(self, unit, progress, operation, *args):
        try:
            return operation(*args)
        except self.source_dialect.driver_errors as e:
            first = progress.rows_read + 1
            raise TransferError(
                f"Reading {unit.source_table} from {self.source.label} failed after "
                f"{progress.rows_read} row(s): {e}",
                table=unit.source_table,
                row_range=(first, first + self.settings.fetch_size - 1),
            ) from e

    def _run_ddl(self, unit, lease):
        step = unit.create_step
        handle = lease.handle
        cursor = handle.cursor()
        try:
            cursor.execute(step.statement)
            handle.commit()
        except self.target_dialect.driver_errors as e:
            raise TransferError(
                f"Creating table {step.table} on {self.target.label} failed: {e}",
                table=unit.source_table,
            ) from e
        finally:
            cursor.close()
        logger.info("Created target table %s", step.table)

    def _coerce(self, unit, group, first_row) -> list[tuple]:
        columns = unit.columns
        coerced = []
        for offset, row in enumerate(group):
            values = []
            for column, value in zip(columns, row):
                try:
                    values.append(coerce_value(column.kind, value))
                except (ValueError, TypeError) as e:
                    raise TypeCoercionError(
                        f"{unit.source_table}.{column.source_column}: row {first_row + offset} "
                        f"cannot be stored as {column.target_type}: {e}",
                        table=unit.source_table,
                        row_range=(first_row, first_row + len(group) - 1),
                    ) from e
            coerced.append(tuple(values))
        return coerced

    def _write_group(self, unit, lease, group, first_row, progress):
        """Write one group in its own transaction, retrying transient failures."""
        row_range = (first_row, first_row + len(group) - 1)
        try:
            rows = self._coerce(unit, group, first_row)
        except TypeCoercionError:
            progress.rows_failed += len(group)
            raise

        dialect = self.target_dialect
        key_columns = unit.target_key_columns
        sql = dialect.build_batch_insert(
            unit.target_table, unit.target_columns, len(rows), unit.skip_existing, key_columns
        )
        params = dialect.batch_parameters(rows, unit.target_columns, unit.skip_existing, key_columns)

        attempt = 0
        while True:
            handle = lease.handle
            try:
                cursor = handle.cursor()
                try:
                    rowcount = dialect.execute_batch(cursor, sql, params)
                finally:
                    cursor.close()
                handle.commit()
                break
            except dialect.driver_errors as e:
                error_cls = dialect.classify_error(e) or TransferError
                transient = error_cls.transient
                if not transient:
                    try:
                        handle.rollback()
                    except dialect.driver_errors:
                        transient = True
                if error_cls.transient and attempt < self.settings.max_retries:
                    attempt += 1
                    progress.retries += 1
                    delay = self.settings.retry_backoff * 2 ** (attempt - 1)
                    logger.warning(
                        "%s rows %d-%d: transient failure (%s), retry %d/%d in %.1fs",
                        unit.source_table, row_range[0], row_range[1], e,
                        attempt, self.settings.max_retries, delay,
                    )
                    try:
                        lease.replace()
                    except (ConnectError, PoolError) as exc:
                        progress.rows_failed += len(rows)
                        raise TransientTransferError(
                            f"{unit.source_table}: rows {row_range[0]}-{row_range[1]} not written, "
                            f"could not reconnect to {self.target.label}: {exc}",
                            table=unit.source_table,
                            row_range=row_range,
                        ) from exc
                    self._sleep(delay)
                    continue
                if transient:
                    lease.discard()
                progress.rows_failed += len(rows)
                suffix = f" after {attempt} retries" if attempt else ""
                raise error_cls(
                    f"{unit.source_table}: rows {row_range[0]}-{row_range[1]} rejected by "
                    f"{self.target.label}{suffix}: {e}",
                    table=unit.source_table,
                    row_range=row_range,
                ) from e

        written = len(rows)
        if unit.skip_existing and rowcount is not None and rowcount >= 0:
            written = rowcount
        progress.rows_written += written
        progress.rows_skipped += len(rows) - written
        progress.batches_committed += 1
        self._notify(progress)

    def _notify(self, progress):
        if self.progress_callback is not None:
            self.progress_callback(progress)
