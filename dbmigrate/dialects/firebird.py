"""
Firebird dialect (firebird-driver).

Firebird has no multi-row VALUES clause, so batches are sent with
executemany inside a single transaction. Catalog rows come from the RDB$
system tables and carry raw type codes, which are turned back into DDL
spellings before type mapping.
"""

from firebird import driver as fbdriver

from dbmigrate import FIREBIRD, typemap
from dbmigrate.dialects.base import Dialect
from dbmigrate.errors import ConstraintViolation, TransientTransferError, TypeCoercionError
from dbmigrate.typemap import LogicalType, parse_type

FB_MAX_PRECISION = 18
FB_MAX_VARCHAR_CHARS = 8_191   # 32,765 bytes with a 4-byte charset

# RDB$FIELDS.RDB$FIELD_TYPE codes
_FIELD_TYPES = {
    7: "SMALLINT",
    8: "INTEGER",
    10: "FLOAT",
    12: "DATE",
    13: "TIME",
    14: "CHAR",
    16: "BIGINT",
    23: "BOOLEAN",
    24: "DECFLOAT(16)",
    25: "DECFLOAT(34)",
    26: "INT128",
    27: "DOUBLE PRECISION",
    28: "TIME WITH TIME ZONE",
    29: "TIMESTAMP WITH TIME ZONE",
    35: "TIMESTAMP",
    37: "VARCHAR",
    261: "BLOB",
}

_TRANSIENT_GDS = {
    335544336,  # deadlock
    335544345,  # lock_conflict
    335544510,  # lock_timeout
    335544721,  # network_error
    335544726,  # net_read_err
    335544727,  # net_write_err
    335544741,  # connection lost
    335544856,  # att_shutdown
}
_CONSTRAINT_GDS = {335544347, 335544349, 335544466, 335544558, 335544665}
_COERCION_GDS = {335544321, 335544334, 335544914}
_CONSTRAINT_SQLCODES = {-530, -625, -803}
_COERCION_SQLCODES = {-303, -413, -802}


class FirebirdDialect(Dialect):
    name = FIREBIRD
    display_name = "Firebird"
    placeholder = "?"
    quote_char = '"'
    supports_multirow_insert = False
    driver_errors = (fbdriver.Error,)

    TABLES_SQL = """
        SELECT TRIM(r.RDB$RELATION_NAME)
        FROM RDB$RELATIONS r
        WHERE COALESCE(r.RDB$SYSTEM_FLAG, 0) = 0
          AND r.RDB$VIEW_BLR IS NULL
        ORDER BY 1
    """

    COLUMNS_SQL = """
        SELECT TRIM(rf.RDB$RELATION_NAME), TRIM(rf.RDB$FIELD_NAME),
               f.RDB$FIELD_TYPE, f.RDB$FIELD_SUB_TYPE, f.RDB$FIELD_LENGTH,
               f.RDB$CHARACTER_LENGTH, f.RDB$FIELD_PRECISION, f.RDB$FIELD_SCALE,
               TRIM(cs.RDB$CHARACTER_SET_NAME),
               COALESCE(rf.RDB$NULL_FLAG, f.RDB$NULL_FLAG, 0)
        FROM RDB$RELATION_FIELDS rf
        JOIN RDB$RELATIONS r ON r.RDB$RELATION_NAME = rf.RDB$RELATION_NAME
        JOIN RDB$FIELDS f ON f.RDB$FIELD_NAME = rf.RDB$FIELD_SOURCE
        LEFT JOIN RDB$CHARACTER_SETS cs ON cs.RDB$CHARACTER_SET_ID = f.RDB$CHARACTER_SET_ID
        WHERE COALESCE(r.RDB$SYSTEM_FLAG, 0) = 0
          AND r.RDB$VIEW_BLR IS NULL
        ORDER BY rf.RDB$RELATION_NAME, rf.RDB$FIELD_POSITION
    """

    PRIMARY_KEYS_SQL = """
        SELECT TRIM(rc.RDB$RELATION_NAME), TRIM(s.RDB$FIELD_NAME)
        FROM RDB$RELATION_CONSTRAINTS rc
        JOIN RDB$INDEX_SEGMENTS s ON s.RDB$INDEX_NAME = rc.RDB$INDEX_NAME
        WHERE rc.RDB$CONSTRAINT_TYPE = 'PRIMARY KEY'
        ORDER BY rc.RDB$RELATION_NAME, s.RDB$FIELD_POSITION
    """

    FOREIGN_KEYS_SQL = """
        SELECT TRIM(rc.RDB$CONSTRAINT_NAME), TRIM(rc.RDB$RELATION_NAME),
               TRIM(s.RDB$FIELD_NAME), TRIM(pk.RDB$RELATION_NAME), TRIM(ps.RDB$FIELD_NAME)
        FROM RDB$RELATION_CONSTRAINTS rc
        JOIN RDB$REF_CONSTRAINTS ref ON ref.RDB$CONSTRAINT_NAME = rc.RDB$CONSTRAINT_NAME
        JOIN RDB$RELATION_CONSTRAINTS pk ON pk.RDB$CONSTRAINT_NAME = ref.RDB$CONST_NAME_UQ
        JOIN RDB$INDEX_SEGMENTS s ON s.RDB$INDEX_NAME = rc.RDB$INDEX_NAME
        JOIN RDB$INDEX_SEGMENTS ps ON ps.RDB$INDEX_NAME = pk.RDB$INDEX_NAME
          AND ps.RDB$FIELD_POSITION = s.RDB$FIELD_POSITION
        WHERE rc.RDB$CONSTRAINT_TYPE = 'FOREIGN KEY'
        ORDER BY rc.RDB$RELATION_NAME, rc.RDB$CONSTRAINT_NAME, s.RDB$FIELD_POSITION
    """

    # ── Connections ───────────────────────────────────────────

    def build_connection_descriptor(self, endpoint) -> dict:
        return {
            "database": f"{endpoint.host}/{endpoint.port}:{endpoint.database}",
            "user": endpoint.user,
            "password": endpoint.password,
            "charset": endpoint.charset or "UTF8",
        }

    def connect(self, endpoint, timeout: float):
        # firebird-driver has no per-call connect timeout; the pool's acquire wait still applies
        descriptor = self.build_connection_descriptor(endpoint)
        return fbdriver.connect(descriptor.pop("database"), **descriptor)

    def ping_sql(self) -> str:
        return "SELECT 1 FROM RDB$DATABASE"

    def normalize_identifier(self, name: str) -> str:
        return name.upper()

    # ── Statements ────────────────────────────────────────────

    def build_batch_insert(self, table, columns, row_count, skip_existing=False, key_columns=()):
        placeholders = ", ".join([self.placeholder] * len(columns))
        if skip_existing and key_columns:
            match = " AND ".join(f"t.{self.quote_identifier(k)} = ?" for k in key_columns)
            return (
                f"MERGE INTO {self.quote_identifier(table)} t USING RDB$DATABASE ON ({match}) "
                f"WHEN NOT MATCHED THEN INSERT ({self.column_list(columns)}) VALUES ({placeholders})"
            )
        return (
            f"INSERT INTO {self.quote_identifier(table)} ({self.column_list(columns)}) "
            f"VALUES ({placeholders})"
        )

    def batch_parameters(self, rows, columns, skip_existing=False, key_columns=()):
        if skip_existing and key_columns:
            positions = [list(columns).index(k) for k in key_columns]
            return [tuple(row[p] for p in positions) + tuple(row) for row in rows]
        return [tuple(row) for row in rows]

    def execute_batch(self, cursor, sql, params):
        if not sql.startswith("MERGE"):
            return super().execute_batch(cursor, sql, params)
        # executemany only reports the last statement's count
        inserted = 0
        for row in params:
            cursor.execute(sql, row)
            if cursor.rowcount is None or cursor.rowcount < 0:
                return None
            inserted += cursor.rowcount
        return inserted

    def classify_error(self, exc):
        gds_codes = set(getattr(exc, "gds_codes", None) or ())
        sqlcode = getattr(exc, "sqlcode", None)
        if gds_codes & _TRANSIENT_GDS or sqlcode == -913:
            return TransientTransferError
        if gds_codes & _CONSTRAINT_GDS or sqlcode in _CONSTRAINT_SQLCODES:
            return ConstraintViolation
        if gds_codes & _COERCION_GDS or sqlcode in _COERCION_SQLCODES:
            return TypeCoercionError
        return None

    # ── Catalog ───────────────────────────────────────────────

    def fetch_columns(self, cursor, endpoint) -> list[tuple]:
        return [
            (row[0], row[1], self.format_field_type(*row[2:9]), not row[9])
            for row in self._query(cursor, self.COLUMNS_SQL, endpoint)
        ]

    def format_field_type(self, field_type, sub_type, length, char_length,
                          precision, scale, charset) -> str:
        """Rebuild the DDL spelling of an RDB$FIELDS row."""
        name = _FIELD_TYPES.get(field_type)
        if name is None:
            return f"UNKNOWN({field_type})"
        scale = scale or 0
        if field_type in (7, 8, 16, 26) and (sub_type in (1, 2) or scale < 0):
            keyword = "DECIMAL" if sub_type == 2 else "NUMERIC"
            return f"{keyword}({precision or FB_MAX_PRECISION},{-scale})"
        if field_type in (14, 37):
            size = char_length if char_length is not None else length
            spelled = f"{name}({size})"
            if charset:
                spelled += f" CHARACTER SET {charset}"
            return spelled
        if field_type == 261:
            spelled = f"BLOB SUB_TYPE {sub_type or 0}"
            if sub_type == 1 and charset:
                spelled += f" CHARACTER SET {charset}"
            return spelled
        return name

    # ── Types ─────────────────────────────────────────────────

    def read_type(self, source_type, column=None) -> LogicalType:
        parsed = parse_type(source_type)
        base = parsed.base
        octets = parsed.charset == "OCTETS"

        simple = {
            "SMALLINT": typemap.SMALLINT,
            "INTEGER": typemap.INTEGER,
            "INT": typemap.INTEGER,
            "BIGINT": typemap.BIGINT,
            "FLOAT": typemap.REAL,
            "DOUBLE PRECISION": typemap.DOUBLE,
            "BOOLEAN": typemap.BOOLEAN,
            "DATE": typemap.DATE,
            "TIME": typemap.TIME,
            "TIMESTAMP": typemap.TIMESTAMP,
            "TIME WITH TIME ZONE": typemap.TIMETZ,
            "TIMESTAMP WITH TIME ZONE": typemap.TIMESTAMPTZ,
        }
        if base in simple:
            return LogicalType(simple[base])
        if base == "INT128":
            return LogicalType(typemap.DECIMAL, precision=38, scale=0)
        if base in ("NUMERIC", "DECIMAL"):
            return LogicalType(typemap.DECIMAL, precision=parsed.arg(0, FB_MAX_PRECISION), scale=parsed.arg(1, 0))
        if base in ("CHAR", "CHARACTER", "VARCHAR", "CHARACTER VARYING"):
            length = parsed.arg(0, 1)
            if octets:
                return LogicalType(typemap.BINARY, length=length, max_bytes=length)
            kind = typemap.CHAR if base in ("CHAR", "CHARACTER") else typemap.VARCHAR
            return LogicalType(kind, length=length)
        if base.startswith("BLOB"):
            sub_type = base.split("SUB_TYPE", 1)[1].strip() if "SUB_TYPE" in base else "0"
            if sub_type in ("0", "BINARY"):
                return LogicalType(typemap.BINARY)
            if sub_type in ("1", "TEXT"):
                return LogicalType(typemap.TEXT)
        raise self.unsupported(source_type, column)

    def render_type(self, logical):
        kind = logical.kind
        fixed = {
            typemap.BOOLEAN: "BOOLEAN",
            typemap.SMALLINT: "SMALLINT",
            typemap.INTEGER: "INTEGER",
            typemap.BIGINT: "BIGINT",
            typemap.REAL: "FLOAT",
            typemap.DOUBLE: "DOUBLE PRECISION",
            typemap.DATE: "DATE",
            typemap.TIME: "TIME",
            typemap.TIMETZ: "TIME WITH TIME ZONE",
            typemap.TIMESTAMP: "TIMESTAMP",
            typemap.TIMESTAMPTZ: "TIMESTAMP WITH TIME ZONE",
            typemap.TEXT: "BLOB SUB_TYPE TEXT",
        }
        if kind in fixed:
            return fixed[kind], None
        if kind == typemap.UBIGINT:
            return f"NUMERIC({FB_MAX_PRECISION},0)", f"values above 10^{FB_MAX_PRECISION} overflow"
        if kind == typemap.DECIMAL:
            if logical.precision is None:
                return (
                    f"NUMERIC({FB_MAX_PRECISION},4)",
                    f"unbounded numeric narrowed to NUMERIC({FB_MAX_PRECISION},4)",
                )
            if logical.precision > FB_MAX_PRECISION:
                scale = min(logical.scale or 0, FB_MAX_PRECISION)
                return (
                    f"NUMERIC({FB_MAX_PRECISION},{scale})",
                    f"precision {logical.precision} narrowed to {FB_MAX_PRECISION}",
                )
            return f"NUMERIC({logical.precision},{logical.scale or 0})", None
        if kind in (typemap.CHAR, typemap.VARCHAR):
            if logical.length > FB_MAX_VARCHAR_CHARS:
                return "BLOB SUB_TYPE TEXT", None
            name = "CHAR" if kind == typemap.CHAR else "VARCHAR"
            return f"{name}({logical.length})", None
        if kind == typemap.BINARY:
            if logical.length is not None and logical.length <= FB_MAX_VARCHAR_CHARS * 4:
                return f"VARCHAR({logical.length}) CHARACTER SET OCTETS", None
            return "BLOB SUB_TYPE BINARY", None
        if kind == typemap.JSON:
            return "BLOB SUB_TYPE TEXT", "no native JSON type, stored as text"
        if kind == typemap.UUID:
            return "CHAR(36)", "no native UUID type, stored as CHAR(36)"
        if kind == typemap.ENUM:
            length = max((len(v) for v in logical.values), default=1)
            return f"VARCHAR({length})", "enum value list is not enforced"
        raise self.unsupported(kind, None)
