"""
Tests for dependency-aware scheduling and the end-to-end migrate() pipeline.
"""

import threading

import psycopg2
import pytest

from dbmigrate.config import MigrationConfig, PoolSettings, TransferSettings
from dbmigrate.errors import ConnectError, CyclicDependency, MigrationAborted
from dbmigrate.orchestrator import MigrationOrchestrator, RunOutcome, migrate
from dbmigrate.pool import PoolManager
from dbmigrate.transfer import BatchTransferEngine, UnitState


class PgUniqueViolation(psycopg2.IntegrityError):
    pgcode = "23505"


def add_chain(source_db, target_db, rows=10):
    """a ← b (b references a) plus an unrelated c."""
    for name, refs in (("a", ()), ("b", ("a",)), ("c", ())):
        columns = [("id", "int(11)", False)] + [(f"{ref}_id", "int(11)", True) for ref in refs]
        source_db.create_table(
            name, columns, primary_key=("id",),
            foreign_keys=[(f"fk_{name}_{ref}", (f"{ref}_id",), ref, ("id",)) for ref in refs],
            rows=[(i,) + (i,) * len(refs) for i in range(1, rows + 1)],
        )
        target_db.create_table(
            name, [(c, "integer", n) for c, _, n in columns], primary_key=("id",),
        )


@pytest.fixture
def make_orchestrator(pools, source_endpoint, target_endpoint, settings):
    def make(max_parallel_units=1, **kwargs):
        engine = BatchTransferEngine(pools, source_endpoint, target_endpoint, settings, sleep=lambda s: None)
        return MigrationOrchestrator(engine, max_parallel_units, **kwargs)
    return make


@pytest.fixture
def config(source_endpoint, target_endpoint):
    return MigrationConfig(
        source=source_endpoint,
        target=target_endpoint,
        pool=PoolSettings(min_idle=0, max_size=4, connect_timeout=2),
        transfer=TransferSettings(fetch_size=500, batch_size=1000, max_parallel_units=2),
    )


class TestOrchestrator:
    def test_customers_and_orders(self, make_orchestrator, make_plan, customers_and_orders, target_db):
        customers_and_orders()
        plan = make_plan()
        assert plan.order == ["customers", "orders"]

        report = make_orchestrator(max_parallel_units=2).run(plan)

        assert report.outcome is RunOutcome.SUCCESS
        assert report.result("customers").batches_committed == 3
        assert report.result("orders").batches_committed == 10
        totals = report.totals
        assert totals["rows_written"] == 12500
        assert totals["rows_failed"] == 0
        assert totals["Completed"] == 2
        assert target_db.count("orders") == 10000

    def test_parent_finishes_before_child_starts(self, make_orchestrator, make_plan, customers_and_orders,
                                                 target_db):
        customers_and_orders(customers=3000, orders=3000)
        order = []
        orchestrator = make_orchestrator(
            max_parallel_units=2,
            progress_callback=lambda p: order.append((p.table, p.state)),
        )
        orchestrator.run(make_plan())
        first_orders = next(i for i, (table, _) in enumerate(order) if table == "orders")
        assert ("customers", UnitState.COMPLETED) in order[:first_orders]

    def test_failure_skips_dependents_only(self, make_orchestrator, make_plan, source_db, target_db):
        add_chain(source_db, target_db)
        target_db.fail_insert("a", 1, PgUniqueViolation("duplicate key"))
        plan = make_plan()

        with pytest.raises(MigrationAborted) as exc_info:
            make_orchestrator(max_parallel_units=2).run(plan)

        report = exc_info.value.report
        assert exc_info.value.failed_tables == ["a"]
        assert report.result("a").state is UnitState.FAILED
        assert report.result("b").state is UnitState.SKIPPED
        assert report.result("b").blocked_by == "a"
        assert report.result("c").state is UnitState.COMPLETED
        assert report.outcome is RunOutcome.PARTIAL
        assert target_db.count("b") == 0
        assert target_db.count("c") == 10

    def test_failed_leaf_does_not_abort(self, make_orchestrator, make_plan, source_db, target_db):
        add_chain(source_db, target_db)
        target_db.fail_insert("c", 1, PgUniqueViolation("duplicate key"))
        report = make_orchestrator().run(make_plan())
        assert report.result("c").state is UnitState.FAILED
        assert report.outcome is RunOutcome.PARTIAL
        assert report.totals["Failed"] == 1

    def test_cancelled_before_start(self, make_orchestrator, make_plan, customers_and_orders, target_db):
        customers_and_orders()
        cancel = threading.Event()
        cancel.set()
        report = make_orchestrator().run(make_plan(), cancel)
        assert report.cancelled
        assert {r.state for r in report.tables} == {UnitState.CANCELLED}
        assert target_db.count("customers") == 0

    def test_cancel_mid_run(self, make_orchestrator, make_plan, customers_and_orders, target_db):
        customers_and_orders()
        cancel = threading.Event()

        def on_progress(progress):
            if progress.batches_committed >= 1:
                cancel.set()

        report = make_orchestrator(progress_callback=on_progress).run(make_plan(), cancel)
        assert report.result("customers").state is UnitState.CANCELLED
        assert report.result("orders").state is UnitState.CANCELLED
        assert target_db.count("customers") == 1000

    def test_independent_tables_run_in_parallel(self, make_orchestrator, make_plan, source_db, target_db,
                                                pools, source_endpoint):
        for name in ("t1", "t2", "t3", "t4"):
            source_db.create_table(name, [("id", "int(11)", False)], ("id",), rows=[(i,) for i in range(1, 2001)])
            target_db.create_table(name, [("id", "integer", False)], ("id",))
        orchestrator = make_orchestrator(max_parallel_units=3)
        report = orchestrator.run(make_plan())

        assert report.outcome is RunOutcome.SUCCESS
        assert orchestrator.snapshot() == {"rows_written": 8000, "batches_committed": 8}
        assert source_db.max_open <= pools.settings.max_size
        assert pools.stats(source_endpoint)["leased"] == 0


class TestReport:
    def test_to_dict(self, make_orchestrator, make_plan, source_db, target_db):
        add_chain(source_db, target_db)
        target_db.fail_insert("c", 1, PgUniqueViolation("duplicate key"))
        report = make_orchestrator().run(make_plan())
        data = report.to_dict()

        assert data["outcome"] == "PARTIAL"
        assert data["totals"]["rows_written"] == 20
        assert [t["table"] for t in data["tables"]] == ["a", "b", "c"]
        failed = data["tables"][2]
        assert failed["state"] == "Failed"
        assert failed["failed_range"] == [1, 10]
        assert failed["error_type"] == "ConstraintViolation"


class TestMigrate:
    def test_end_to_end(self, config, pools, customers_and_orders, target_endpoint):
        customers_and_orders()
        seen = set()
        report = migrate(config, progress_callback=lambda p: seen.add(p.table), pools=pools)

        assert report.outcome is RunOutcome.SUCCESS
        assert report.totals["rows_written"] == 12500
        assert seen == {"customers", "orders"}
        assert report.plan.order == ["customers", "orders"]
        with pools.lease(target_endpoint) as handle:
            handle.ping()

    def test_cycle_moves_no_rows(self, config, pools, source_db, target_db):
        for name, ref in (("a", "b"), ("b", "a")):
            source_db.create_table(
                name, [("id", "int(11)", False), (f"{ref}_id", "int(11)", True)], ("id",),
                foreign_keys=[(f"fk_{name}", (f"{ref}_id",), ref, ("id",))], rows=[(1, 1)],
            )
            target_db.create_table(name, [("id", "integer", False), (f"{ref}_id", "integer", True)], ("id",))

        with pytest.raises(CyclicDependency) as exc_info:
            migrate(config, pools=pools)
        assert exc_info.value.tables == ["a", "b"]
        assert target_db.count("a") == 0 and target_db.count("b") == 0

    def test_unreachable_target(self, config, source_db, customers_and_orders):
        customers_and_orders(customers=1, orders=1)

        def connect(endpoint, timeout):
            if endpoint.engine == "postgresql":
                raise OSError("connection refused")
            return source_db.connect(endpoint, timeout)

        with PoolManager(config.pool, connect=connect) as pools:
            with pytest.raises(ConnectError):
                migrate(config, pools=pools)
