"""
PostgreSQL dialect (psycopg2).
"""

import uuid

import psycopg2

from dbmigrate import POSTGRESQL, typemap
from dbmigrate.dialects.base import Dialect, human_size
from dbmigrate.errors import ConstraintViolation, TransientTransferError, TypeCoercionError
from dbmigrate.typemap import LogicalType, parse_type

PG_MAX_VARCHAR = 10_485_760
PG_MAX_NUMERIC = 1000
PG_MAX_FIELD = typemap.GB

_TRANSIENT_CODES = {
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available
    "57014",  # query_canceled (statement/lock timeout)
    "57P01",  # admin_shutdown
}


class PostgreSQLDialect(Dialect):
    name = POSTGRESQL
    display_name = "PostgreSQL"
    placeholder = "%s"
    quote_char = '"'
    driver_errors = (psycopg2.Error,)

    TABLES_SQL = """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = %s AND table_type = 'BASE TABLE'
        ORDER BY table_name
    """

    COLUMNS_SQL = """
        SELECT c.relname, a.attname, format_type(a.atttypid, a.atttypmod), NOT a.attnotnull
        FROM pg_attribute a
        JOIN pg_class c ON c.oid = a.attrelid
        JOIN pg_namespace n ON n.oid = c.relnamespace
        WHERE n.nspname = %s
          AND c.relkind IN ('r', 'p')
          AND a.attnum > 0
          AND NOT a.attisdropped
        ORDER BY c.relname, a.attnum
    """

    PRIMARY_KEYS_SQL = """
        SELECT tc.table_name, kcu.column_name
        FROM information_schema.table_constraints tc
        JOIN information_schema.key_column_usage kcu
          ON tc.constraint_name = kcu.constraint_name
          AND tc.table_schema = kcu.table_schema
        WHERE tc.constraint_type = 'PRIMARY KEY'
          AND tc.table_schema = %s
        ORDER BY tc.table_name, kcu.ordinal_position
    """

    FOREIGN_KEYS_SQL = """
        SELECT con.conname, cl.relname, att.attname, rcl.relname, ratt.attname
        FROM pg_constraint con
        JOIN pg_class cl ON cl.oid = con.conrelid
        JOIN pg_namespace n ON n.oid = cl.relnamespace
        JOIN pg_class rcl ON rcl.oid = con.confrelid
        CROSS JOIN LATERAL unnest(con.conkey, con.confkey)
            WITH ORDINALITY AS k(attnum, refattnum, ord)
        JOIN pg_attribute att ON att.attrelid = con.conrelid AND att.attnum = k.attnum
        JOIN pg_attribute ratt ON ratt.attrelid = con.confrelid AND ratt.attnum = k.refattnum
        WHERE con.contype = 'f' AND n.nspname = %s
        ORDER BY cl.relname, con.conname, k.ord
    """

    # ── Connections ───────────────────────────────────────────

    def build_connection_descriptor(self, endpoint) -> dict:
        descriptor = {
            "host": endpoint.host,
            "port": endpoint.port,
            "user": endpoint.user,
            "password": endpoint.password,
            "dbname": endpoint.database,
        }
        if endpoint.charset:
            descriptor["client_encoding"] = endpoint.charset
        schema = endpoint.schema or "public"
        if schema != "public":
            descriptor["options"] = f"-c search_path={schema}"
        return descriptor

    def connect(self, endpoint, timeout: float):
        return psycopg2.connect(
            connect_timeout=max(1, int(timeout)),
            **self.build_connection_descriptor(endpoint),
        )

    def catalog_params(self, endpoint) -> tuple:
        return (endpoint.schema or "public",)

    def normalize_identifier(self, name: str) -> str:
        return name.lower()

    # ── Statements ────────────────────────────────────────────

    def build_batch_insert(self, table, columns, row_count, skip_existing=False, key_columns=()):
        sql = super().build_batch_insert(table, columns, row_count)
        if skip_existing:
            sql += " ON CONFLICT DO NOTHING"
        return sql

    def open_stream_cursor(self, connection, fetch_size: int):
        # Named cursors stay server side, so only itersize rows are held in memory
        cursor = connection.cursor(name=f"dbmigrate_{uuid.uuid4().hex[:12]}")
        cursor.itersize = fetch_size
        cursor.arraysize = fetch_size
        return cursor

    def classify_error(self, exc):
        code = getattr(exc, "pgcode", None)
        if code:
            if code in _TRANSIENT_CODES or code.startswith("08"):
                return TransientTransferError
            if code.startswith("23"):
                return ConstraintViolation
            if code.startswith("22"):
                return TypeCoercionError
            return None
        if isinstance(exc, (psycopg2.OperationalError, psycopg2.InterfaceError)):
            return TransientTransferError
        return None

    # ── Types ─────────────────────────────────────────────────

    def read_type(self, source_type, column=None) -> LogicalType:
        parsed = parse_type(source_type)
        base = parsed.base
        if base.endswith("[]") or "[]" in parsed.raw:
            raise self.unsupported(source_type, column)

        simple = {
            "SMALLINT": typemap.SMALLINT,
            "INTEGER": typemap.INTEGER,
            "INT": typemap.INTEGER,
            "BIGINT": typemap.BIGINT,
            "REAL": typemap.REAL,
            "DOUBLE PRECISION": typemap.DOUBLE,
            "BOOLEAN": typemap.BOOLEAN,
            "DATE": typemap.DATE,
            "TIME": typemap.TIME,
            "TIME WITHOUT TIME ZONE": typemap.TIME,
            "TIME WITH TIME ZONE": typemap.TIMETZ,
            "TIMESTAMP": typemap.TIMESTAMP,
            "TIMESTAMP WITHOUT TIME ZONE": typemap.TIMESTAMP,
            "TIMESTAMP WITH TIME ZONE": typemap.TIMESTAMPTZ,
            "JSON": typemap.JSON,
            "JSONB": typemap.JSON,
            "UUID": typemap.UUID,
        }
        if base in simple:
            return LogicalType(simple[base])
        if base in ("NUMERIC", "DECIMAL"):
            return LogicalType(typemap.DECIMAL, precision=parsed.arg(0), scale=parsed.arg(1, 0))
        if base in ("CHARACTER", "CHAR", "BPCHAR"):
            return LogicalType(typemap.CHAR, length=parsed.arg(0, 1))
        if base in ("CHARACTER VARYING", "VARCHAR"):
            length = parsed.arg(0)
            if length is None:
                return LogicalType(typemap.TEXT, max_bytes=PG_MAX_FIELD)
            return LogicalType(typemap.VARCHAR, length=length)
        if base == "TEXT":
            return LogicalType(typemap.TEXT, max_bytes=PG_MAX_FIELD)
        if base == "BYTEA":
            return LogicalType(typemap.BINARY, max_bytes=PG_MAX_FIELD)
        raise self.unsupported(source_type, column)

    def render_type(self, logical):
        kind = logical.kind
        fixed = {
            typemap.BOOLEAN: "boolean",
            typemap.SMALLINT: "smallint",
            typemap.INTEGER: "integer",
            typemap.BIGINT: "bigint",
            typemap.UBIGINT: "numeric(20,0)",
            typemap.REAL: "real",
            typemap.DOUBLE: "double precision",
            typemap.DATE: "date",
            typemap.TIME: "time",
            typemap.TIMETZ: "time with time zone",
            typemap.TIMESTAMP: "timestamp",
            typemap.TIMESTAMPTZ: "timestamp with time zone",
            typemap.JSON: "jsonb",
            typemap.UUID: "uuid",
        }
        if kind in fixed:
            return fixed[kind], None
        if kind == typemap.DECIMAL:
            if logical.precision is None:
                return "numeric", None
            precision = min(logical.precision, PG_MAX_NUMERIC)
            return f"numeric({precision},{logical.scale or 0})", None
        if kind == typemap.CHAR:
            if logical.length > PG_MAX_VARCHAR:
                return "text", None
            return f"char({logical.length})", None
        if kind == typemap.VARCHAR:
            if logical.length > PG_MAX_VARCHAR:
                return "text", None
            return f"varchar({logical.length})", None
        if kind == typemap.ENUM:
            length = max((len(v) for v in logical.values), default=1)
            return f"varchar({length})", "enum value list is not enforced"
        if kind in (typemap.TEXT, typemap.BINARY):
            name = "text" if kind == typemap.TEXT else "bytea"
            if logical.max_bytes is None or logical.max_bytes > PG_MAX_FIELD:
                return name, f"{name} holds at most {human_size(PG_MAX_FIELD)} per value"
            return name, None
        raise self.unsupported(kind, None)
