"""
Shared fixtures: an in-memory stand-in for the native database drivers.

FakeDatabase understands exactly the SQL dbmigrate emits (catalog queries,
ordered SELECT, COUNT, multi-row INSERT with the skip-existing variants,
Firebird's MERGE and CREATE TABLE) and keeps per-transaction state so
commits and rollbacks can be asserted on. Duplicate keys raise the engine's
own integrity error.
"""

import re
import threading
from collections import Counter

import psycopg2
import pytest
from firebird import driver as fbdriver
from mysql.connector import errors as mysql_errors

from dbmigrate import FIREBIRD, MYSQL, POSTGRESQL
from dbmigrate.config import DatabaseEndpoint, MappingPolicy, PoolSettings, TransferSettings
from dbmigrate.dialects import get_dialect
from dbmigrate.planner import MigrationPlanner
from dbmigrate.pool import PoolManager
from dbmigrate.schema import SchemaIntrospector

_QUOTED = r'[`"]((?:[^`"])+)[`"]'
_INSERT_RE = re.compile(
    r"^INSERT(?P<ignore> IGNORE)? INTO " + _QUOTED + r" \((?P<cols>.*?)\) VALUES (?P<values>.*?)"
    r"(?P<conflict> ON CONFLICT DO NOTHING)?$",
    re.S,
)
_MERGE_RE = re.compile(
    r"^MERGE INTO " + _QUOTED + r" t USING RDB\$DATABASE ON \((?P<on>.*?)\) "
    r"WHEN NOT MATCHED THEN INSERT \((?P<cols>.*?)\) VALUES \((?P<values>.*?)\)$",
    re.S,
)
_COUNT_RE = re.compile(r"^SELECT COUNT\(\*\) FROM " + _QUOTED + "$")
_SELECT_RE = re.compile(r"^SELECT (?P<cols>.+?) FROM " + _QUOTED + r"(?: ORDER BY (?P<order>.+))?$", re.S)
_CREATE_RE = re.compile(r"^CREATE TABLE " + _QUOTED + r" \(\n(?P<body>.*)\n\)$", re.S)


def _names(text):
    return re.findall(_QUOTED, text)


# RDB$FIELDS.RDB$FIELD_TYPE codes for the plain Firebird types
_RDB_TYPES = {
    "SMALLINT": 7, "INTEGER": 8, "FLOAT": 10, "DATE": 12, "TIME": 13, "BIGINT": 16,
    "BOOLEAN": 23, "DOUBLE PRECISION": 27, "TIMESTAMP": 35,
}
_RDB_SIZED_RE = re.compile(
    r"^(?P<base>VARCHAR|CHAR|NUMERIC|DECIMAL)\((?P<a>\d+)(?:,(?P<b>\d+))?\)"
    r"(?: CHARACTER SET (?P<cs>\w+))?$"
)
_RDB_BLOB_RE = re.compile(r"^BLOB SUB_TYPE (?P<sub>\d+)(?: CHARACTER SET (?P<cs>\w+))?$")


def rdb_field(type_name):
    """(type, sub_type, length, char_length, precision, scale, charset) as RDB$FIELDS stores them."""
    if type_name in _RDB_TYPES:
        return (_RDB_TYPES[type_name], 0, None, None, None, 0, None)
    match = _RDB_BLOB_RE.match(type_name)
    if match:
        return (261, int(match.group("sub")), 8, None, None, 0, match.group("cs"))
    match = _RDB_SIZED_RE.match(type_name)
    if match is None:
        raise AssertionError(f"No RDB$FIELDS spelling for {type_name}")
    base, size = match.group("base"), int(match.group("a"))
    if base in ("VARCHAR", "CHAR"):
        return (37 if base == "VARCHAR" else 14, 0, size * 4, size, None, 0, match.group("cs"))
    scale = int(match.group("b") or 0)
    return (16 if size > 9 else 8, 1 if base == "NUMERIC" else 2, 8, None, size, -scale, None)


class PgUniqueViolation(psycopg2.IntegrityError):
    pgcode = "23505"


def duplicate_key_error(engine, message):
    """The error each driver raises when a primary key is violated."""
    if engine == POSTGRESQL:
        return PgUniqueViolation(message)
    if engine == MYSQL:
        return mysql_errors.IntegrityError(msg=message, errno=1062)
    return fbdriver.IntegrityError(message, sqlcode=-803, gds_codes=(335544665,))


class FakeTable:
    def __init__(self, name, columns, primary_key=(), foreign_keys=()):
        self.name = name
        self.columns = list(columns)            # (name, type, nullable)
        self.primary_key = tuple(primary_key)
        self.foreign_keys = list(foreign_keys)  # (constraint, columns, ref_table, ref_columns)
        self.rows = []

    @property
    def column_names(self):
        return [c[0] for c in self.columns]

    def key_of(self, row):
        names = self.column_names
        return tuple(row[names.index(k)] for k in self.primary_key)


class FakeDatabase:
    """One in-memory database reachable through FakeConnection objects."""

    def __init__(self, engine):
        self.engine = engine
        self.dialect = get_dialect(engine)
        self.tables = {}
        self.lock = threading.Lock()
        self.commits = Counter()
        self.insert_calls = Counter()
        self.statements = []
        self.opened = 0
        self.closed = 0
        self.max_open = 0
        self._insert_failures = []
        self._select_failures = {}

    # ── Setup helpers ─────────────────────────────────────────

    def create_table(self, name, columns, primary_key=(), foreign_keys=(), rows=()):
        table = FakeTable(name, columns, primary_key, foreign_keys)
        table.rows.extend(tuple(r) for r in rows)
        self.tables[name] = table
        return table

    def fail_insert(self, table, on_call, error, times=1):
        """Raise ``error`` on the ``on_call``-th INSERT into ``table`` (1-based).

        ``times=None`` keeps failing on every later call as well.
        """
        self._insert_failures.append({"table": table, "call": on_call, "error": error, "times": times})

    def fail_select(self, table, error):
        self._select_failures[table] = error

    def rows(self, table):
        return list(self.tables[table].rows)

    def count(self, table):
        return len(self.tables[table].rows)

    @property
    def open_connections(self):
        return self.opened - self.closed

    def connect(self, endpoint=None, timeout=None):
        with self.lock:
            self.opened += 1
            self.max_open = max(self.max_open, self.open_connections)
        return FakeConnection(self)

    # ── Catalog answers ───────────────────────────────────────

    def catalog(self, sql):
        d = self.dialect
        tables = sorted(self.tables.values(), key=lambda t: t.name)
        if sql == d.TABLES_SQL:
            return [(t.name,) for t in tables]
        if sql == d.COLUMNS_SQL:
            if self.engine == FIREBIRD:
                return [
                    (t.name, c[0]) + rdb_field(c[1]) + (0 if c[2] else 1,)
                    for t in tables for c in t.columns
                ]
            return [(t.name, c[0], c[1], c[2]) for t in tables for c in t.columns]
        if sql == d.PRIMARY_KEYS_SQL:
            return [(t.name, k) for t in tables for k in t.primary_key]
        if sql == d.FOREIGN_KEYS_SQL:
            return [
                (constraint, t.name, col, ref_table, ref_col)
                for t in tables
                for constraint, cols, ref_table, ref_cols in t.foreign_keys
                for col, ref_col in zip(cols, ref_cols)
            ]
        return None


class FakeConnection:
    def __init__(self, db):
        self.db = db
        self.pending = []   # (table, row)
        self.closed = False
        self.commits = 0
        self.rollbacks = 0

    def cursor(self, name=None):
        if self.closed:
            raise self.db.dialect.driver_errors[0]("connection already closed")
        return FakeCursor(self, name)

    def commit(self):
        with self.db.lock:
            touched = set()
            for table, row in self.pending:
                self.db.tables[table].rows.append(row)
                touched.add(table)
            for table in touched:
                self.db.commits[table] += 1
        self.pending = []
        self.commits += 1

    def rollback(self):
        self.pending = []
        self.rollbacks += 1

    def close(self):
        if not self.closed:
            self.closed = True
            with self.db.lock:
                self.db.closed += 1


class FakeCursor:
    def __init__(self, connection, name=None):
        self.connection = connection
        self.db = connection.db
        self.name = name
        self.arraysize = 1
        self.itersize = 2000
        self.rowcount = -1
        self._result = []
        self.closed = False

    def close(self):
        self.closed = True

    def fetchone(self):
        return self._result.pop(0) if self._result else None

    def fetchall(self):
        rows, self._result = self._result, []
        return rows

    def fetchmany(self, size=None):
        size = size or self.arraysize
        rows, self._result = self._result[:size], self._result[size:]
        return rows

    def executemany(self, sql, seq_of_params):
        total = 0
        for params in seq_of_params:
            self.execute(sql, list(params))
            total += self.rowcount
        self.rowcount = total

    def execute(self, sql, params=None):
        db = self.db
        db.statements.append(sql)
        self.rowcount = -1

        catalog = db.catalog(sql)
        if catalog is not None:
            self._result = catalog
            return
        if sql.startswith("SELECT 1"):
            self._result = [(1,)]
            return

        match = _COUNT_RE.match(sql)
        if match:
            self._result = [(db.count(match.group(1)),)]
            return

        match = _SELECT_RE.match(sql)
        if match:
            self._select(match)
            return

        match = _INSERT_RE.match(sql)
        if match:
            skip = bool(match.group("ignore") or match.group("conflict"))
            self._insert(match.group(2), match.group("cols"), params or [], skip)
            return

        match = _MERGE_RE.match(sql)
        if match:
            # parameters are the key values followed by the row
            keys = len(_names(match.group("on")))
            self._insert(match.group(1), match.group("cols"), list(params)[keys:], skip=True)
            return

        match = _CREATE_RE.match(sql)
        if match:
            self._create(match)
            return

        raise AssertionError(f"FakeDatabase cannot run: {sql}")

    def _select(self, match):
        table_name = match.group(2)
        if table_name in self.db._select_failures:
            raise self.db._select_failures[table_name]
        table = self.db.tables[table_name]
        names = table.column_names
        wanted = [names.index(c) for c in _names(match.group("cols"))]
        rows = list(table.rows)
        if match.group("order"):
            order = [names.index(c) for c in _names(match.group("order"))]
            rows.sort(key=lambda r: tuple(r[i] for i in order))
        self._result = [tuple(r[i] for i in wanted) for r in rows]

    def _insert(self, table_name, cols, params, skip):
        db = self.db
        with db.lock:
            db.insert_calls[table_name] += 1
            call = db.insert_calls[table_name]
            for failure in db._insert_failures:
                if failure["table"] != table_name or call < failure["call"]:
                    continue
                if failure["times"] is None or failure["times"] > 0:
                    if failure["times"] is not None:
                        failure["times"] -= 1
                    raise failure["error"]

        table = db.tables[table_name]
        columns = _names(cols)
        width = len(columns)
        names = table.column_names

        existing = {table.key_of(r) for r in table.rows}
        existing |= {table.key_of(r) for t, r in self.connection.pending if t == table_name}
        inserted = 0
        for start in range(0, len(params), width):
            values = dict(zip(columns, params[start:start + width]))
            row = tuple(values.get(n) for n in names)
            if table.primary_key:
                key = table.key_of(row)
                if key in existing:
                    if skip:
                        continue
                    raise duplicate_key_error(db.engine, f"duplicate key {key} in {table_name}")
                existing.add(key)
            self.connection.pending.append((table_name, row))
            inserted += 1
        self.rowcount = inserted

    def _create(self, match):
        columns = []
        primary_key = ()
        for line in match.group("body").split(",\n"):
            line = line.strip()
            if line.startswith("PRIMARY KEY"):
                primary_key = tuple(_names(line))
                continue
            name = _names(line)[0]
            rest = line.split(None, 1)[1]
            nullable = not rest.endswith("NOT NULL")
            type_name = rest[:-len(" NOT NULL")] if not nullable else rest
            columns.append((name, type_name, nullable))
        self.db.create_table(match.group(1), columns, primary_key)


# ═════════════════════════════════════════════════════════════
# Fixtures
# ═════════════════════════════════════════════════════════════

class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source_endpoint():
    return DatabaseEndpoint("mysql", "legacy-db", 3306, "legacy", "root", "secret")


@pytest.fixture
def target_endpoint():
    return DatabaseEndpoint("postgresql", "new-db", 5432, "app", "postgres", "secret")


@pytest.fixture
def source_db():
    return FakeDatabase("mysql")


@pytest.fixture
def target_db():
    return FakeDatabase("postgresql")


@pytest.fixture
def databases(source_endpoint, target_endpoint, source_db, target_db):
    return {source_endpoint: source_db, target_endpoint: target_db}


@pytest.fixture
def add_target(databases):
    """Register a fake target of another engine; returns (endpoint, database)."""
    endpoints = {
        FIREBIRD: DatabaseEndpoint("firebird", "fb-host", 3050, "/data/app.fdb", "SYSDBA", "masterkey"),
        MYSQL: DatabaseEndpoint("mysql", "new-mysql", 3306, "app", "root", "secret"),
    }

    def add(engine):
        db = FakeDatabase(engine)
        databases[endpoints[engine]] = db
        return endpoints[engine], db
    return add


@pytest.fixture
def fake_connect(databases):
    def connect(endpoint, timeout):
        return databases[endpoint].connect(endpoint, timeout)
    return connect


@pytest.fixture
def pools(fake_connect):
    manager = PoolManager(PoolSettings(min_idle=0, max_size=4, connect_timeout=2), connect=fake_connect)
    yield manager
    manager.shutdown_all(drain_timeout=0.1)


@pytest.fixture
def settings():
    return TransferSettings(fetch_size=500, batch_size=1000, max_retries=3, retry_backoff=1.0)


@pytest.fixture
def make_plan(pools, source_endpoint, target_endpoint):
    """Introspect both fake databases and plan the migration between them."""
    def make(policy=None, target=None):
        policy = policy or MappingPolicy()
        target = target or target_endpoint
        source_dialect = get_dialect(source_endpoint.engine)
        target_dialect = get_dialect(target.engine)
        with pools.lease(source_endpoint) as handle:
            source = SchemaIntrospector(source_dialect).describe(handle)
        with pools.lease(target) as handle:
            targets = SchemaIntrospector(target_dialect).describe(handle, allow_empty=True)
        return MigrationPlanner(source_dialect, target_dialect).plan(source, targets, policy)
    return make


def add_customers_and_orders(source_db, target_db, customers=2500, orders=10000, create_target=True):
    """The customers/orders pair used by the transfer and orchestration tests."""
    source_db.create_table(
        "customers",
        [("id", "int(11)", False), ("name", "varchar(100)", True)],
        primary_key=("id",),
        rows=[(i, f"customer {i}") for i in range(1, customers + 1)],
    )
    source_db.create_table(
        "orders",
        [("id", "int(11)", False), ("customer_id", "int(11)", False), ("amount", "decimal(10,2)", True)],
        primary_key=("id",),
        foreign_keys=[("fk_orders_customer", ("customer_id",), "customers", ("id",))],
        rows=[(i, (i % customers) + 1, i * 10) for i in range(1, orders + 1)],
    )
    if create_target:
        target_db.create_table(
            "customers",
            [("id", "integer", False), ("name", "character varying(100)", True)],
            primary_key=("id",),
        )
        target_db.create_table(
            "orders",
            [("id", "integer", False), ("customer_id", "integer", False), ("amount", "numeric(10,2)", True)],
            primary_key=("id",),
            foreign_keys=[("fk_orders_customer", ("customer_id",), "customers", ("id",))],
        )


@pytest.fixture
def customers_and_orders(source_db, target_db):
    def populate(customers=2500, orders=10000, create_target=True):
        add_customers_and_orders(source_db, target_db, customers, orders, create_target)
    return populate
