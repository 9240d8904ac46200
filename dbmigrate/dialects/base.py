"""
Dialect base class: connection descriptors, SQL quirks, catalog reads and type mapping.
"""

import socket

from dbmigrate import typemap
from dbmigrate.errors import UnsupportedType
from dbmigrate.typemap import LogicalType, MappedType


class Dialect:
    """Engine-specific behaviour behind one uniform interface.

    Subclasses fill in the catalog SQL, the native type reader/renderer and
    the driver error classification. Everything else is shared.
    """

    name = None
    display_name = None
    placeholder = "%s"
    quote_char = '"'
    supports_multirow_insert = True
    driver_errors: tuple = ()

    TABLES_SQL = None
    COLUMNS_SQL = None
    PRIMARY_KEYS_SQL = None
    FOREIGN_KEYS_SQL = None

    def __repr__(self):
        return f"<{type(self).__name__}>"

    # ── Connections ───────────────────────────────────────────

    def build_connection_descriptor(self, endpoint) -> dict:
        raise NotImplementedError

    def connect(self, endpoint, timeout: float):
        """Open a physical connection through the engine's native client library."""
        raise NotImplementedError

    def is_timeout(self, exc: BaseException) -> bool:
        if isinstance(exc, (TimeoutError, socket.timeout)):
            return True
        message = str(exc).lower()
        return "timed out" in message or "timeout expired" in message

    def ping(self, connection):
        cursor = connection.cursor()
        try:
            cursor.execute(self.ping_sql())
            cursor.fetchall()
        finally:
            cursor.close()

    def ping_sql(self) -> str:
        return "SELECT 1"

    # ── Identifiers & statements ──────────────────────────────

    def quote_identifier(self, name: str) -> str:
        q = self.quote_char
        return f"{q}{name.replace(q, q + q)}{q}"

    def normalize_identifier(self, name: str) -> str:
        """Spelling used for tables and columns this tool creates."""
        return name

    def column_list(self, columns) -> str:
        return ", ".join(self.quote_identifier(c) for c in columns)

    def build_select(self, table: str, columns, order_by=()) -> str:
        sql = f"SELECT {self.column_list(columns)} FROM {self.quote_identifier(table)}"
        if order_by:
            sql += f" ORDER BY {self.column_list(order_by)}"
        return sql

    def build_count(self, table: str) -> str:
        return f"SELECT COUNT(*) FROM {self.quote_identifier(table)}"

    def build_batch_insert(self, table: str, columns, row_count: int,
                           skip_existing: bool = False, key_columns=()) -> str:
        """INSERT statement for ``row_count`` rows.

        Multi-row engines render one VALUES tuple per row; see
        ``batch_parameters`` for the matching parameter layout.
        """
        row = "(" + ", ".join([self.placeholder] * len(columns)) + ")"
        values = ", ".join([row] * row_count)
        return (
            f"INSERT INTO {self.quote_identifier(table)} ({self.column_list(columns)}) "
            f"VALUES {values}"
        )

    def batch_parameters(self, rows, columns, skip_existing: bool = False, key_columns=()):
        if self.supports_multirow_insert:
            return [value for row in rows for value in row]
        return [tuple(row) for row in rows]

    def execute_batch(self, cursor, sql: str, params):
        """Send one batch; returns the affected row count, or None when the driver cannot tell."""
        if self.supports_multirow_insert:
            cursor.execute(sql, params)
            return cursor.rowcount
        cursor.executemany(sql, params)
        return None

    def build_create_table(self, table: str, columns, primary_key=()) -> str:
        """CREATE TABLE from (name, type, nullable) triples."""
        lines = []
        for name, type_name, nullable in columns:
            line = f"    {self.quote_identifier(name)} {type_name}"
            if not nullable:
                line += " NOT NULL"
            lines.append(line)
        if primary_key:
            lines.append(f"    PRIMARY KEY ({self.column_list(primary_key)})")
        return f"CREATE TABLE {self.quote_identifier(table)} (\n" + ",\n".join(lines) + "\n)"

    def open_stream_cursor(self, connection, fetch_size: int):
        cursor = connection.cursor()
        cursor.arraysize = fetch_size
        return cursor

    def classify_error(self, exc: BaseException):
        """Return the TransferError subclass matching a driver error, or None."""
        return None

    # ── Catalog ───────────────────────────────────────────────

    def catalog_params(self, endpoint) -> tuple:
        return ()

    def _query(self, cursor, sql, endpoint):
        params = self.catalog_params(endpoint)
        if params:
            cursor.execute(sql, params)
        else:
            cursor.execute(sql)
        return cursor.fetchall()

    def fetch_tables(self, cursor, endpoint) -> list[str]:
        return [row[0] for row in self._query(cursor, self.TABLES_SQL, endpoint)]

    def fetch_columns(self, cursor, endpoint) -> list[tuple]:
        """(table, column, source_type, nullable) in ordinal order."""
        return [
            (row[0], row[1], self._column_type(row), self._is_nullable(row))
            for row in self._query(cursor, self.COLUMNS_SQL, endpoint)
        ]

    def fetch_primary_keys(self, cursor, endpoint) -> list[tuple]:
        """(table, column) in key order."""
        return [(row[0], row[1]) for row in self._query(cursor, self.PRIMARY_KEYS_SQL, endpoint)]

    def fetch_foreign_keys(self, cursor, endpoint) -> list[tuple]:
        """(constraint, table, column, referenced_table, referenced_column)."""
        return [tuple(row[:5]) for row in self._query(cursor, self.FOREIGN_KEYS_SQL, endpoint)]

    def _column_type(self, row) -> str:
        return row[2]

    def _is_nullable(self, row) -> bool:
        value = row[3]
        if isinstance(value, str):
            return value.upper() in ("YES", "Y", "TRUE")
        return bool(value)

    # ── Types ─────────────────────────────────────────────────

    def read_type(self, source_type: str, column: str | None = None) -> LogicalType:
        raise NotImplementedError

    def render_type(self, logical: LogicalType) -> tuple[str, str | None]:
        """Native spelling for a logical type plus a note when information is lost."""
        raise NotImplementedError

    def map_type(self, source_type: str, target: "Dialect", column: str | None = None) -> MappedType:
        logical = self.read_type(source_type, column)
        target_type, note = target.render_type(logical)
        notes = [n for n in (logical.note, note) if n]
        return MappedType(
            target_type=target_type,
            kind=logical.kind,
            lossy=bool(notes),
            note="; ".join(notes) if notes else None,
        )

    def unsupported(self, source_type: str, column: str | None):
        return UnsupportedType(source_type, column=column, engine=self.display_name)


def sized_tier(tiers, max_bytes):
    """Pick the smallest (name, capacity) tier holding ``max_bytes``.

    Returns (name, overflow) where overflow is True when even the largest
    tier is smaller than the source limit (or the source is unbounded).
    """
    for name, capacity in tiers:
        if max_bytes is not None and max_bytes <= capacity:
            return name, False
    return tiers[-1][0], True


def human_size(n: int) -> str:
    for unit, size in (("GB", typemap.GB), ("MB", typemap.MB), ("KB", typemap.KB)):
        if n >= size:
            return f"{n // size} {unit}"
    return f"{n} bytes"
