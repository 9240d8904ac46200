"""
Migration planning: map source tables onto target tables and order them by foreign keys.
"""

import heapq
import logging
from dataclasses import dataclass, field

from dbmigrate.config import MappingPolicy
from dbmigrate.errors import CyclicDependency, MissingKey, MissingTargetColumn, MissingTargetTable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ColumnMapping:
    source_column: str
    target_column: str
    source_type: str
    target_type: str
    kind: str
    nullable: bool = True


@dataclass(frozen=True)
class DDLStep:
    """Synthetic CREATE TABLE run right before the unit that needs it."""
    table: str
    statement: str


@dataclass(frozen=True)
class TypeWarning:
    table: str
    column: str
    source_type: str
    target_type: str
    note: str

    def __str__(self):
        return f"{self.table}.{self.column}: {self.source_type} → {self.target_type} ({self.note})"


@dataclass(frozen=True)
class MigrationUnit:
    source_table: str
    target_table: str
    columns: tuple
    dependencies: frozenset = frozenset()
    key_columns: tuple = ()
    create_step: DDLStep | None = None
    skip_existing: bool = False

    @property
    def source_columns(self) -> tuple:
        return tuple(c.source_column for c in self.columns)

    @property
    def target_columns(self) -> tuple:
        return tuple(c.target_column for c in self.columns)

    @property
    def target_key_columns(self) -> tuple:
        by_source = {c.source_column: c.target_column for c in self.columns}
        return tuple(by_source[k] for k in self.key_columns if k in by_source)


@dataclass
class MigrationPlan:
    """Ordered migration units plus the warnings collected while mapping types."""
    units: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    def __iter__(self):
        return iter(self.units)

    def __len__(self):
        return len(self.units)

    def __getitem__(self, index):
        return self.units[index]

    @property
    def order(self) -> list[str]:
        return [unit.source_table for unit in self.units]

    @property
    def ddl_steps(self) -> list[DDLStep]:
        return [unit.create_step for unit in self.units if unit.create_step]

    def dependents_of(self, table: str) -> set[str]:
        """Every unit that directly or transitively depends on ``table``."""
        found = set()
        frontier = [table]
        while frontier:
            current = frontier.pop()
            for unit in self.units:
                if current in unit.dependencies and unit.source_table not in found:
                    found.add(unit.source_table)
                    frontier.append(unit.source_table)
        return found


def topological_order(dependencies: dict) -> list[str]:
    """Kahn's algorithm with lexical tie-breaking.

    ``dependencies`` maps each table to the set of tables it needs first.
    Raises CyclicDependency naming every table left on a cycle.
    """
    remaining = {table: set(deps) for table, deps in dependencies.items()}
    dependents = {table: set() for table in remaining}
    for table, deps in remaining.items():
        for dep in deps:
            dependents[dep].add(table)

    ready = [table for table, deps in remaining.items() if not deps]
    heapq.heapify(ready)
    order = []
    while ready:
        table = heapq.heappop(ready)
        order.append(table)
        for dependent in sorted(dependents[table]):
            remaining[dependent].discard(table)
            if not remaining[dependent]:
                heapq.heappush(ready, dependent)

    if len(order) != len(remaining):
        raise CyclicDependency(_cycle_members(remaining, set(order)))
    return order


def _cycle_members(remaining: dict, done: set) -> set:
    """Tables that sit on a cycle (not merely downstream of one)."""
    blocked = {t: {d for d in deps if d not in done} for t, deps in remaining.items() if t not in done}
    members = set()
    for start in blocked:
        stack = list(blocked[start])
        seen = set()
        while stack:
            node = stack.pop()
            if node == start:
                members.add(start)
                break
            if node in seen:
                continue
            seen.add(node)
            stack.extend(blocked.get(node, ()))
    return members or set(blocked)


class MigrationPlanner:
    def __init__(self, source_dialect, target_dialect):
        self.source_dialect = source_dialect
        self.target_dialect = target_dialect

    def plan(self, source_schemas, target_schemas, policy: MappingPolicy | None = None) -> MigrationPlan:
        policy = policy or MappingPolicy()
        selected = [s for s in source_schemas if policy.selects(s.name)]
        names = {s.name for s in selected}

        dependencies = {
            schema.name: {
                fk.referenced_table for fk in schema.foreign_keys
                if fk.referenced_table in names and fk.referenced_table != schema.name
            }
            for schema in selected
        }
        order = topological_order(dependencies)

        targets = {t.name.lower(): t for t in target_schemas}
        by_name = {s.name: s for s in selected}
        plan = MigrationPlan()
        for table in order:
            unit = self._plan_unit(by_name[table], targets, policy, dependencies[table], plan.warnings)
            plan.units.append(unit)

        logger.info(
            "Planned %d unit(s): %s%s",
            len(plan), ", ".join(plan.order),
            f" ({len(plan.warnings)} type warning(s))" if plan.warnings else "",
        )
        return plan

    def _plan_unit(self, schema, targets, policy, dependencies, warnings) -> MigrationUnit:
        target_name = policy.target_name_for(schema.name)
        target = targets.get((target_name or schema.name).lower())
        if target is None and not policy.auto_create:
            raise MissingTargetTable(schema.name)

        if target is not None:
            target_name = target.name
        elif target_name is None:
            target_name = self.target_dialect.normalize_identifier(schema.name)

        mappings = []
        for column in schema.columns:
            mapping = self._map_column(schema, column, target, policy, warnings)
            if mapping is not None:
                mappings.append(mapping)

        key_columns = tuple(
            c for c in schema.primary_key
            if any(m.source_column == c for m in mappings)
        )
        # Skipping rows needs the whole key to detect them in the target.
        if policy.skip_existing and (not key_columns or len(key_columns) < len(schema.primary_key)):
            raise MissingKey(schema.name)

        create_step = None
        if target is None:
            target_pk = [m.target_column for m in mappings if m.source_column in key_columns]
            statement = self.target_dialect.build_create_table(
                target_name,
                [(m.target_column, m.target_type, m.nullable) for m in mappings],
                target_pk,
            )
            create_step = DDLStep(table=target_name, statement=statement)

        return MigrationUnit(
            source_table=schema.name,
            target_table=target_name,
            columns=tuple(mappings),
            dependencies=frozenset(dependencies),
            key_columns=key_columns,
            create_step=create_step,
            skip_existing=policy.skip_existing,
        )

    def _map_column(self, schema, column, target, policy, warnings):
        override = policy.column_override(schema.name, column.name)
        if override is not None and override.exclude:
            return None

        # Unsupported source types fail here, naming the column
        mapped = self.source_dialect.map_type(
            column.source_type, self.target_dialect, f"{schema.name}.{column.name}"
        )
        target_type = mapped.target_type
        note = mapped.note
        if override is not None and override.target_type:
            target_type = override.target_type
            note = None

        wanted = (override.target_column if override and override.target_column else None)
        if target is not None:
            existing = target.column(wanted or column.name)
            if existing is None:
                raise MissingTargetColumn(schema.name, column.name, target.name)
            target_column = existing.name
        else:
            target_column = wanted or self.target_dialect.normalize_identifier(column.name)

        if note:
            warning = TypeWarning(schema.name, column.name, column.source_type, target_type, note)
            warnings.append(warning)
            logger.warning("Lossy type mapping %s", warning)

        return ColumnMapping(
            source_column=column.name,
            target_column=target_column,
            source_type=column.source_type,
            target_type=target_type,
            kind=mapped.kind,
            nullable=column.nullable,
        )
