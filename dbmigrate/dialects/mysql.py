"""
MySQL dialect (mysql-connector-python).
"""

import mysql.connector
from mysql.connector import Error as MySQLError

from dbmigrate import MYSQL, typemap
from dbmigrate.dialects.base import Dialect, human_size, sized_tier
from dbmigrate.errors import ConstraintViolation, TransientTransferError, TypeCoercionError
from dbmigrate.typemap import LogicalType, parse_type

MYSQL_MAX_VARCHAR = 16_383     # utf8mb4 inside the 65,535 byte row limit
MYSQL_MAX_CHAR = 255
MYSQL_MAX_DECIMAL = 65
MYSQL_MAX_SCALE = 30

TEXT_TIERS = (("TEXT", 65_535), ("MEDIUMTEXT", 16_777_215), ("LONGTEXT", 4_294_967_295))
BLOB_TIERS = (("BLOB", 65_535), ("MEDIUMBLOB", 16_777_215), ("LONGBLOB", 4_294_967_295))

_TRANSIENT_ERRNOS = {
    1205,  # lock wait timeout
    1213,  # deadlock
    2006,  # server has gone away
    2013,  # lost connection during query
    2055,  # lost connection (SSL / system error)
}
_CONSTRAINT_ERRNOS = {1048, 1062, 1216, 1217, 1451, 1452, 1586, 3819}
_COERCION_ERRNOS = {1264, 1265, 1292, 1366, 1367, 1406, 1411, 3140}

# Maps charset names as written in configs to MySQL's spelling
_CHARSETS = {"UTF8": "utf8mb4", "UTF-8": "utf8mb4", "WIN1252": "latin1", "ISO8859_1": "latin1"}


class MySQLDialect(Dialect):
    name = MYSQL
    display_name = "MySQL"
    placeholder = "%s"
    quote_char = "`"
    driver_errors = (MySQLError,)

    TABLES_SQL = """
        SELECT table_name
        FROM information_schema.tables
        WHERE table_schema = %s AND table_type = 'BASE TABLE'
        ORDER BY table_name
    """

    COLUMNS_SQL = """
        SELECT table_name, column_name, column_type, is_nullable
        FROM information_schema.columns
        WHERE table_schema = %s
        ORDER BY table_name, ordinal_position
    """

    PRIMARY_KEYS_SQL = """
        SELECT table_name, column_name
        FROM information_schema.key_column_usage
        WHERE table_schema = %s AND constraint_name = 'PRIMARY'
        ORDER BY table_name, ordinal_position
    """

    FOREIGN_KEYS_SQL = """
        SELECT constraint_name, table_name, column_name,
               referenced_table_name, referenced_column_name
        FROM information_schema.key_column_usage
        WHERE table_schema = %s AND referenced_table_name IS NOT NULL
        ORDER BY table_name, constraint_name, ordinal_position
    """

    # ── Connections ───────────────────────────────────────────

    def build_connection_descriptor(self, endpoint) -> dict:
        descriptor = {
            "host": endpoint.host,
            "port": endpoint.port,
            "user": endpoint.user,
            "password": endpoint.password,
            "database": endpoint.database,
            "autocommit": False,
        }
        if endpoint.charset:
            descriptor["charset"] = _CHARSETS.get(endpoint.charset.upper(), endpoint.charset.lower())
        return descriptor

    def connect(self, endpoint, timeout: float):
        return mysql.connector.connect(
            connect_timeout=max(1, int(timeout)),
            **self.build_connection_descriptor(endpoint),
        )

    def catalog_params(self, endpoint) -> tuple:
        return (endpoint.database,)

    # ── Statements ────────────────────────────────────────────

    def build_batch_insert(self, table, columns, row_count, skip_existing=False, key_columns=()):
        sql = super().build_batch_insert(table, columns, row_count)
        if skip_existing:
            sql = "INSERT IGNORE" + sql[len("INSERT"):]
        return sql

    def classify_error(self, exc):
        errno = getattr(exc, "errno", None)
        if errno in _TRANSIENT_ERRNOS:
            return TransientTransferError
        if errno in _CONSTRAINT_ERRNOS:
            return ConstraintViolation
        if errno in _COERCION_ERRNOS:
            return TypeCoercionError
        if isinstance(exc, (mysql.connector.OperationalError, mysql.connector.InterfaceError)):
            return TransientTransferError
        return None

    # ── Types ─────────────────────────────────────────────────

    def read_type(self, source_type, column=None) -> LogicalType:
        parsed = parse_type(source_type)
        base = parsed.base
        unsigned = "UNSIGNED" in parsed.modifiers

        if base == "TINYINT":
            if parsed.arg(0) == 1 and not unsigned:
                return LogicalType(typemap.BOOLEAN)
            return LogicalType(typemap.SMALLINT)
        if base in ("BOOL", "BOOLEAN"):
            return LogicalType(typemap.BOOLEAN)
        if base == "SMALLINT":
            return LogicalType(typemap.INTEGER if unsigned else typemap.SMALLINT)
        if base in ("MEDIUMINT",):
            return LogicalType(typemap.INTEGER)
        if base in ("INT", "INTEGER"):
            return LogicalType(typemap.BIGINT if unsigned else typemap.INTEGER)
        if base == "BIGINT":
            return LogicalType(typemap.UBIGINT if unsigned else typemap.BIGINT)
        if base in ("DECIMAL", "NUMERIC", "DEC", "FIXED"):
            return LogicalType(typemap.DECIMAL, precision=parsed.arg(0, 10), scale=parsed.arg(1, 0))
        if base == "FLOAT":
            return LogicalType(typemap.REAL)
        if base in ("DOUBLE", "DOUBLE PRECISION", "REAL"):
            return LogicalType(typemap.DOUBLE)
        if base == "BIT":
            if parsed.arg(0, 1) == 1:
                return LogicalType(typemap.BOOLEAN)
            return LogicalType(typemap.UBIGINT)
        if base == "YEAR":
            return LogicalType(typemap.SMALLINT)
        if base == "CHAR":
            return LogicalType(typemap.CHAR, length=parsed.arg(0, 1))
        if base == "VARCHAR":
            return LogicalType(typemap.VARCHAR, length=parsed.arg(0, 255))
        for name, capacity in TEXT_TIERS + (("TINYTEXT", 255),):
            if base == name:
                return LogicalType(typemap.TEXT, max_bytes=capacity)
        for name, capacity in BLOB_TIERS + (("TINYBLOB", 255),):
            if base == name:
                return LogicalType(typemap.BINARY, max_bytes=capacity)
        if base in ("BINARY", "VARBINARY"):
            length = parsed.arg(0, 1)
            return LogicalType(typemap.BINARY, length=length, max_bytes=length)
        if base == "DATE":
            return LogicalType(typemap.DATE)
        if base == "TIME":
            return LogicalType(typemap.TIME)
        if base in ("DATETIME", "TIMESTAMP"):
            return LogicalType(typemap.TIMESTAMP)
        if base == "JSON":
            return LogicalType(typemap.JSON)
        if base == "ENUM":
            return LogicalType(typemap.ENUM, values=tuple(parsed.args))
        if base == "SET":
            members = tuple(parsed.args)
            length = max(1, sum(len(m) for m in members) + len(members) - 1)
            return LogicalType(
                typemap.VARCHAR, length=length,
                note="SET membership is stored as comma-separated text",
            )
        raise self.unsupported(source_type, column)

    def render_type(self, logical):
        kind = logical.kind
        fixed = {
            typemap.BOOLEAN: "TINYINT(1)",
            typemap.SMALLINT: "SMALLINT",
            typemap.INTEGER: "INT",
            typemap.BIGINT: "BIGINT",
            typemap.UBIGINT: "BIGINT UNSIGNED",
            typemap.REAL: "FLOAT",
            typemap.DOUBLE: "DOUBLE",
            typemap.DATE: "DATE",
            typemap.TIME: "TIME(6)",
            typemap.TIMESTAMP: "DATETIME(6)",
            typemap.JSON: "JSON",
        }
        if kind in fixed:
            return fixed[kind], None
        if kind == typemap.TIMETZ:
            return "TIME(6)", "time zone offset is dropped"
        if kind == typemap.TIMESTAMPTZ:
            return "DATETIME(6)", "time zone offset is dropped"
        if kind == typemap.UUID:
            return "CHAR(36)", "no native UUID type, stored as CHAR(36)"
        if kind == typemap.DECIMAL:
            if logical.precision is None:
                return (
                    f"DECIMAL({MYSQL_MAX_DECIMAL},{MYSQL_MAX_SCALE})",
                    f"unbounded numeric narrowed to DECIMAL({MYSQL_MAX_DECIMAL},{MYSQL_MAX_SCALE})",
                )
            if logical.precision > MYSQL_MAX_DECIMAL:
                scale = min(logical.scale or 0, MYSQL_MAX_SCALE)
                return (
                    f"DECIMAL({MYSQL_MAX_DECIMAL},{scale})",
                    f"precision {logical.precision} narrowed to {MYSQL_MAX_DECIMAL}",
                )
            return f"DECIMAL({logical.precision},{logical.scale or 0})", None
        if kind == typemap.CHAR and logical.length <= MYSQL_MAX_CHAR:
            return f"CHAR({logical.length})", None
        if kind in (typemap.CHAR, typemap.VARCHAR):
            if logical.length <= MYSQL_MAX_VARCHAR:
                return f"VARCHAR({logical.length})", None
            name, _ = sized_tier(TEXT_TIERS, logical.length * 4)
            return name, None
        if kind == typemap.ENUM:
            if logical.values:
                members = ",".join("'" + v.replace("'", "''") + "'" for v in logical.values)
                return f"ENUM({members})", None
            return "VARCHAR(255)", "enum value list is not enforced"
        if kind == typemap.TEXT:
            name, overflow = sized_tier(TEXT_TIERS, logical.max_bytes)
            if overflow:
                return name, f"{name} holds at most {human_size(TEXT_TIERS[-1][1] + 1)} per value"
            return name, None
        if kind == typemap.BINARY:
            if logical.length is not None and logical.length <= MYSQL_MAX_VARCHAR:
                return f"VARBINARY({logical.length})", None
            name, overflow = sized_tier(BLOB_TIERS, logical.max_bytes)
            if overflow:
                return name, f"{name} holds at most {human_size(BLOB_TIERS[-1][1] + 1)} per value"
            return name, None
        raise self.unsupported(kind, None)
