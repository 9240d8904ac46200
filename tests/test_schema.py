"""
Tests for catalog introspection.
"""

import psycopg2
import pytest

from dbmigrate.config import DatabaseEndpoint
from dbmigrate.dialects import get_dialect
from dbmigrate.errors import IntrospectionError
from dbmigrate.schema import SchemaIntrospector, TableSchema, build_schemas


class TestBuildSchemas:
    def test_groups_columns_keys_and_foreign_keys(self):
        schemas = build_schemas(
            tables=["orders", "customers"],
            columns=[
                ("customers", "id", "int(11)", False),
                ("customers", "name", "varchar(100)", True),
                ("orders", "id", "int(11)", False),
                ("orders", "customer_id", "int(11)", False),
            ],
            primary_keys=[("customers", "id"), ("orders", "id")],
            foreign_keys=[("fk_c", "orders", "customer_id", "customers", "id")],
        )
        assert [s.name for s in schemas] == ["customers", "orders"]
        customers, orders = schemas
        assert customers.primary_key == ("id",)
        assert customers.column("NAME").source_type == "varchar(100)"
        assert orders.referenced_tables == {"customers"}
        assert orders.foreign_keys[0].columns == ("customer_id",)

    def test_composite_foreign_key(self):
        schemas = build_schemas(
            tables=["lines"],
            columns=[("lines", "order_id", "int", False), ("lines", "line_no", "int", False)],
            primary_keys=[],
            foreign_keys=[
                ("fk_l", "lines", "order_id", "orders", "id"),
                ("fk_l", "lines", "line_no", "orders", "line"),
            ],
        )
        fk = schemas[0].foreign_keys[0]
        assert fk.columns == ("order_id", "line_no")
        assert fk.referenced_columns == ("id", "line")
        assert fk.name == "fk_l"

    def test_columns_of_unknown_tables_are_ignored(self):
        schemas = build_schemas(["a"], [("b", "x", "int", True)], [], [])
        assert schemas == [TableSchema(name="a")]


class TestSchemaIntrospector:
    def test_describe_source(self, pools, source_endpoint, customers_and_orders):
        customers_and_orders(customers=3, orders=3)
        with pools.lease(source_endpoint) as handle:
            schemas = SchemaIntrospector(get_dialect("mysql")).describe(handle)
        names = [s.name for s in schemas]
        assert names == ["customers", "orders"]
        orders = schemas[1]
        assert orders.column_names == ("id", "customer_id", "amount")
        assert orders.column("amount").nullable
        assert not orders.column("id").nullable
        assert orders.primary_key == ("id",)
        assert orders.referenced_tables == {"customers"}

    def test_describe_firebird_catalog(self, pools, add_target):
        endpoint, fb = add_target("firebird")
        fb.create_table(
            "CUSTOMERS",
            [
                ("ID", "INTEGER", False),
                ("NAME", "VARCHAR(100) CHARACTER SET UTF8", True),
                ("BALANCE", "NUMERIC(12,2)", True),
                ("NOTES", "BLOB SUB_TYPE 1 CHARACTER SET UTF8", True),
            ],
            primary_key=("ID",),
        )
        fb.create_table(
            "ORDERS", [("ID", "BIGINT", False), ("CUSTOMER_ID", "INTEGER", False)], primary_key=("ID",),
            foreign_keys=[("FK_ORDERS_CUSTOMER", ("CUSTOMER_ID",), "CUSTOMERS", ("ID",))],
        )
        with pools.lease(endpoint) as handle:
            customers, orders = SchemaIntrospector(get_dialect("firebird")).describe(handle)

        assert [(c.name, c.source_type, c.nullable) for c in customers.columns] == [
            ("ID", "INTEGER", False),
            ("NAME", "VARCHAR(100) CHARACTER SET UTF8", True),
            ("BALANCE", "NUMERIC(12,2)", True),
            ("NOTES", "BLOB SUB_TYPE 1 CHARACTER SET UTF8", True),
        ]
        assert customers.primary_key == ("ID",)
        assert orders.column("customer_id").source_type == "INTEGER"
        assert orders.column("ID").source_type == "BIGINT"
        assert orders.referenced_tables == {"CUSTOMERS"}

    def test_empty_database(self, pools, target_endpoint):
        with pools.lease(target_endpoint) as handle:
            with pytest.raises(IntrospectionError) as exc_info:
                SchemaIntrospector(get_dialect("postgresql")).describe(handle)
        assert target_endpoint.label in str(exc_info.value)

    def test_empty_database_allowed(self, pools, target_endpoint):
        with pools.lease(target_endpoint) as handle:
            assert SchemaIntrospector(get_dialect("postgresql")).describe(handle, allow_empty=True) == []

    def test_driver_error_is_wrapped(self):
        class FailingCursor:
            def execute(self, *args):
                raise psycopg2.ProgrammingError("permission denied for pg_catalog")

            def close(self):
                pass

        class Handle:
            endpoint = DatabaseEndpoint("postgresql", "pg", 5432, "app", "reader", "pw")

            def cursor(self):
                return FailingCursor()

        with pytest.raises(IntrospectionError) as exc_info:
            SchemaIntrospector(get_dialect("postgresql")).describe(Handle())
        assert isinstance(exc_info.value.__cause__, psycopg2.ProgrammingError)
