"""
Exception hierarchy shared by every layer of the migration engine.
"""


class MigrationError(Exception):
    """Base class for all dbmigrate errors."""


# ═════════════════════════════════════════════════════════════
# Configuration & connectivity
# ═════════════════════════════════════════════════════════════

class ConfigError(MigrationError):
    """Malformed or incomplete configuration. Raised before any connection attempt."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = list(problems or [])


class ConnectError(MigrationError):
    """A physical connection to an endpoint could not be opened."""

    def __init__(self, message: str, endpoint=None):
        super().__init__(message)
        self.endpoint = endpoint


class PoolExhausted(ConnectError):
    """Every connection of a pool stayed leased for the whole connect timeout."""


class ConnectTimeout(ConnectError):
    """The driver did not finish connecting within the connect timeout."""


class PoolError(MigrationError):
    """Misuse of the pool (double release, release after shutdown of a foreign handle)."""


# ═════════════════════════════════════════════════════════════
# Schema & planning
# ═════════════════════════════════════════════════════════════

class IntrospectionError(MigrationError):
    """Catalog metadata could not be read or is empty."""


class PlanningError(MigrationError):
    """Base class for errors raised while building the migration plan."""


class CyclicDependency(PlanningError):
    def __init__(self, tables):
        self.tables = sorted(tables)
        super().__init__(
            "Foreign keys form a cycle between tables: " + ", ".join(self.tables)
            + ". Break the cycle manually (e.g. exclude or pre-load one table)."
        )


class MissingTargetTable(PlanningError):
    def __init__(self, table: str):
        self.table = table
        super().__init__(
            f"Source table '{table}' has no counterpart in the target schema "
            "(enable mapping.auto_create or add a mapping.tables entry)"
        )


class MissingTargetColumn(PlanningError):
    def __init__(self, table: str, column: str, target_table: str):
        self.table = table
        self.column = column
        self.target_table = target_table
        super().__init__(
            f"Column '{table}.{column}' has no counterpart in target table '{target_table}'"
        )


class MissingKey(PlanningError):
    def __init__(self, table: str):
        self.table = table
        super().__init__(
            f"Table '{table}' has no complete primary key, so existing rows cannot be skipped "
            "(disable mapping.skip_existing or exclude the table)"
        )


class UnsupportedType(MigrationError):
    def __init__(self, source_type: str, column: str | None = None, engine: str | None = None):
        self.source_type = source_type
        self.column = column
        self.engine = engine
        where = f" (column '{column}')" if column else ""
        origin = f"{engine} " if engine else ""
        super().__init__(f"Unsupported {origin}type '{source_type}'{where}")


# ═════════════════════════════════════════════════════════════
# Transfer
# ═════════════════════════════════════════════════════════════

class TransferError(MigrationError):
    """A failure while moving rows of one unit. Scoped to that unit."""

    transient = False

    def __init__(self, message: str, table: str | None = None, row_range: tuple[int, int] | None = None):
        super().__init__(message)
        self.table = table
        self.row_range = row_range


class TransientTransferError(TransferError):
    """Connection reset, deadlock or lock timeout. Retried automatically."""

    transient = True


class ConstraintViolation(TransferError):
    """Unique, foreign key, not-null or check constraint rejected a batch."""


class TypeCoercionError(TransferError):
    """A value could not be converted to the target column type."""


class MigrationAborted(MigrationError):
    """A failed unit had dependents that could not run. Carries the final report."""

    def __init__(self, report, failed_tables):
        self.report = report
        self.failed_tables = sorted(failed_tables)
        super().__init__(
            "Migration aborted: failed table(s) "
            + ", ".join(self.failed_tables)
            + " blocked their dependents"
        )
