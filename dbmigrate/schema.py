"""
Schema introspection: read catalog metadata into portable table descriptions.
"""

import logging
from dataclasses import dataclass

from dbmigrate.errors import IntrospectionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnDescriptor:
    name: str
    source_type: str
    nullable: bool = True
    is_primary_key: bool = False


@dataclass(frozen=True)
class ForeignKeyDescriptor:
    referenced_table: str
    columns: tuple = ()
    referenced_columns: tuple = ()
    name: str | None = None


@dataclass(frozen=True)
class TableSchema:
    name: str
    columns: tuple = ()
    foreign_keys: tuple = ()

    @property
    def primary_key(self) -> tuple:
        return tuple(c.name for c in self.columns if c.is_primary_key)

    @property
    def column_names(self) -> tuple:
        return tuple(c.name for c in self.columns)

    def column(self, name: str) -> ColumnDescriptor | None:
        """Case-insensitive column lookup."""
        for col in self.columns:
            if col.name.lower() == name.lower():
                return col
        return None

    @property
    def referenced_tables(self) -> set:
        return {fk.referenced_table for fk in self.foreign_keys}


class SchemaIntrospector:
    """Builds TableSchema objects through a dialect's catalog queries."""

    def __init__(self, dialect):
        self.dialect = dialect

    def describe(self, handle, allow_empty: bool = False) -> list[TableSchema]:
        """Read every base table of the handle's endpoint, ordered by table name."""
        endpoint = handle.endpoint
        cursor = handle.cursor()
        try:
            tables = self.dialect.fetch_tables(cursor, endpoint)
            columns = self.dialect.fetch_columns(cursor, endpoint)
            primary_keys = self.dialect.fetch_primary_keys(cursor, endpoint)
            foreign_keys = self.dialect.fetch_foreign_keys(cursor, endpoint)
        except self.dialect.driver_errors as e:
            raise IntrospectionError(f"Cannot read catalog of {endpoint.label}: {e}") from e
        finally:
            try:
                cursor.close()
            except self.dialect.driver_errors:
                pass

        if not tables and not allow_empty:
            raise IntrospectionError(
                f"No tables found in {endpoint.label} "
                "(empty database, wrong schema, or missing catalog privileges)"
            )

        schemas = build_schemas(tables, columns, primary_keys, foreign_keys)
        logger.info("Introspected %d table(s) from %s", len(schemas), endpoint.label)
        return schemas


def build_schemas(tables, columns, primary_keys, foreign_keys) -> list[TableSchema]:
    """Assemble catalog rows into TableSchema objects sorted by table name."""
    pk_columns = {(table, column) for table, column in primary_keys}

    table_columns = {name: [] for name in tables}
    for table, column, source_type, nullable in columns:
        if table not in table_columns:
            continue
        table_columns[table].append(ColumnDescriptor(
            name=column,
            source_type=source_type,
            nullable=bool(nullable),
            is_primary_key=(table, column) in pk_columns,
        ))

    # (table, constraint) -> [referenced_table, columns, referenced_columns]
    grouped = {}
    for constraint, table, column, referenced_table, referenced_column in foreign_keys:
        entry = grouped.setdefault((table, constraint), [referenced_table, [], []])
        entry[1].append(column)
        entry[2].append(referenced_column)

    table_fks = {name: [] for name in tables}
    for (table, constraint), (referenced_table, cols, ref_cols) in sorted(grouped.items()):
        if table in table_fks:
            table_fks[table].append(ForeignKeyDescriptor(
                referenced_table=referenced_table,
                columns=tuple(cols),
                referenced_columns=tuple(ref_cols),
                name=constraint,
            ))

    return [
        TableSchema(name=name, columns=tuple(table_columns[name]), foreign_keys=tuple(table_fks[name]))
        for name in sorted(tables)
    ]
