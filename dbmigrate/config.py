"""
Configuration loading, validation, and connection testing.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from rich.prompt import Confirm

from dbmigrate import (
    console, CONFIG_FILE, DEFAULT_CONFIG, PLACEHOLDER_VALUES,
    FIREBIRD, POSTGRESQL, MYSQL, ENGINES,
    DEFAULT_PORTS, DEFAULT_USERS, DEFAULT_CHARSET,
    DEFAULT_FETCH_SIZE, DEFAULT_BATCH_SIZE, DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BACKOFF, DEFAULT_MAX_PARALLEL_UNITS,
    DEFAULT_POOL_MIN_IDLE, DEFAULT_POOL_MAX_SIZE,
    CONNECTION_TIMEOUT, IDLE_TIMEOUT, MAX_LIFETIME,
)
from dbmigrate.errors import ConfigError, ConnectError

logger = logging.getLogger(__name__)

ENGINE_ALIASES = {
    "firebird": FIREBIRD,
    "fb": FIREBIRD,
    "postgresql": POSTGRESQL,
    "postgres": POSTGRESQL,
    "pg": POSTGRESQL,
    "mysql": MYSQL,
}


# ═════════════════════════════════════════════════════════════
# Data classes for connection details
# ═════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DatabaseEndpoint:
    engine: str
    host: str
    port: int
    database: str
    user: str
    password: str = field(default="", repr=False)
    charset: str | None = None
    schema: str | None = None

    @property
    def label(self) -> str:
        """Human readable endpoint reference used in messages (never includes the password)."""
        return f"{self.engine}://{self.user}@{self.host}:{self.port}/{self.database}"

    def problems(self, prefix: str = "") -> list[str]:
        errors = []
        if self.engine not in ENGINES:
            errors.append(f"{prefix}engine — '{self.engine}' is not one of {', '.join(ENGINES)}")
        for key in ("host", "database", "user"):
            value = getattr(self, key)
            if value is None or not str(value).strip():
                errors.append(f"{prefix}{key} — value is empty")
        if not isinstance(self.port, int) or isinstance(self.port, bool) or not (1 <= self.port <= 65535):
            errors.append(f"{prefix}port — must be between 1 and 65535, got: {self.port!r}")
        if self.password is None:
            errors.append(f"{prefix}password — field missing")
        if self.engine == FIREBIRD and not self.charset:
            errors.append(f"{prefix}charset — required for Firebird")
        return errors

    def validate(self):
        errors = self.problems()
        if errors:
            raise ConfigError(f"Invalid endpoint {self.label}: " + "; ".join(errors), errors)
        return self


@dataclass(frozen=True)
class PoolSettings:
    min_idle: int = DEFAULT_POOL_MIN_IDLE
    max_size: int = DEFAULT_POOL_MAX_SIZE
    connect_timeout: float = CONNECTION_TIMEOUT
    idle_timeout: float = IDLE_TIMEOUT
    max_lifetime: float = MAX_LIFETIME

    def problems(self, prefix: str = "pool.") -> list[str]:
        errors = []
        if self.max_size < 1:
            errors.append(f"{prefix}max_size — must be at least 1")
        if not (0 <= self.min_idle <= self.max_size):
            errors.append(f"{prefix}min_idle — must be between 0 and max_size ({self.max_size})")
        for key in ("connect_timeout", "idle_timeout", "max_lifetime"):
            if getattr(self, key) <= 0:
                errors.append(f"{prefix}{key} — must be greater than 0")
        return errors


@dataclass(frozen=True)
class TransferSettings:
    fetch_size: int = DEFAULT_FETCH_SIZE
    batch_size: int = DEFAULT_BATCH_SIZE
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_backoff: float = DEFAULT_RETRY_BACKOFF
    max_parallel_units: int = DEFAULT_MAX_PARALLEL_UNITS

    def problems(self, prefix: str = "transfer.") -> list[str]:
        errors = []
        for key in ("fetch_size", "batch_size", "max_parallel_units"):
            if getattr(self, key) < 1:
                errors.append(f"{prefix}{key} — must be at least 1")
        if self.max_retries < 0:
            errors.append(f"{prefix}max_retries — must not be negative")
        if self.retry_backoff < 0:
            errors.append(f"{prefix}retry_backoff — must not be negative")
        return errors


@dataclass(frozen=True)
class ColumnOverride:
    target_column: str | None = None
    target_type: str | None = None
    exclude: bool = False


@dataclass(frozen=True)
class MappingPolicy:
    """How source tables and columns land in the target.

    Table and column keys are matched case-insensitively.
    """
    auto_create: bool = False
    skip_existing: bool = False
    include_tables: tuple = ()
    exclude_tables: tuple = ()
    table_names: dict = field(default_factory=dict)
    column_overrides: dict = field(default_factory=dict)

    def selects(self, table: str) -> bool:
        name = table.lower()
        if self.include_tables and name not in {t.lower() for t in self.include_tables}:
            return False
        return name not in {t.lower() for t in self.exclude_tables}

    def target_name_for(self, table: str) -> str | None:
        for source, target in self.table_names.items():
            if source.lower() == table.lower():
                return target
        return None

    def column_override(self, table: str, column: str) -> ColumnOverride | None:
        for source_table, columns in self.column_overrides.items():
            if source_table.lower() != table.lower():
                continue
            for source_column, override in columns.items():
                if source_column.lower() == column.lower():
                    return override
        return None


@dataclass(frozen=True)
class MigrationConfig:
    source: DatabaseEndpoint
    target: DatabaseEndpoint
    pool: PoolSettings = field(default_factory=PoolSettings)
    transfer: TransferSettings = field(default_factory=TransferSettings)
    mapping: MappingPolicy = field(default_factory=MappingPolicy)

    def validate(self):
        errors = (
            self.source.problems("source.")
            + self.target.problems("target.")
            + self.pool.problems()
            + self.transfer.problems()
        )
        if self.source == self.target:
            errors.append("source and target point at the same database")
        if errors:
            raise ConfigError(
                f"Config validation failed ({len(errors)} issue{'s' if len(errors) > 1 else ''})",
                errors,
            )
        return self


# ═════════════════════════════════════════════════════════════
# Configuration functions
# ═════════════════════════════════════════════════════════════

def init_config(path: Path = CONFIG_FILE):
    """Create a fresh migration_config.json with defaults."""
    if path.exists():
        console.print(f"  [yellow]⚠ Config file already exists:[/yellow] {path}")
        if not Confirm.ask("  Overwrite?", default=False):
            console.print("  [dim]Skipped. Edit the existing file manually.[/dim]")
            return

    try:
        path.write_text(json.dumps(DEFAULT_CONFIG, indent=2) + "\n")
    except OSError as e:
        raise ConfigError(f"Cannot write config file {path}: {e}") from e

    console.print(f"  [green]✓[/green] Created [bold]{path}[/bold]")
    console.print("  [dim]Edit the file with your source/target credentials, then run:[/dim]")
    console.print("  [cyan]python migrate.py --dry-run[/cyan]\n")


def load_config(path: Path = CONFIG_FILE) -> MigrationConfig:
    """Load and validate migration_config.json."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(
            f"Config file not found: {path}",
            ["Run python migrate.py --init to create it."],
        )

    try:
        raw = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"Invalid JSON in {path.name}: {e}",
            ["Common issues: trailing commas, missing quotes, unescaped characters."],
        ) from e

    return parse_config(data, source_name=path.name)


def parse_config(data, source_name: str = "config") -> MigrationConfig:
    """Validate a decoded config document and build a MigrationConfig.

    Every problem is collected before raising, so the user can fix them in one pass.
    """
    if not isinstance(data, dict):
        raise ConfigError(
            f"{source_name} must contain a JSON object, got {type(data).__name__}",
            ['Expected format: {"source": {...}, "target": {...}}'],
        )

    errors = []
    endpoints = {}
    for section in ("source", "target"):
        if section not in data:
            errors.append(f'missing "{section}" section')
            continue
        if not isinstance(data[section], dict):
            errors.append(f'"{section}" must be a JSON object, got {type(data[section]).__name__}')
            continue
        endpoint, endpoint_errors = _parse_endpoint(data[section], section)
        errors.extend(endpoint_errors)
        endpoints[section] = endpoint

    pool, pool_errors = _parse_section(data.get("pool", {}), "pool", PoolSettings, {
        "min_idle": int, "max_size": int, "connect_timeout": float,
        "idle_timeout": float, "max_lifetime": float,
    })
    transfer, transfer_errors = _parse_section(data.get("transfer", {}), "transfer", TransferSettings, {
        "fetch_size": int, "batch_size": int, "max_retries": int,
        "retry_backoff": float, "max_parallel_units": int,
    })
    errors.extend(pool_errors + transfer_errors)

    mapping, mapping_errors = _parse_mapping(data.get("mapping", {}))
    errors.extend(mapping_errors)

    if errors:
        raise ConfigError(
            f"Config validation failed ({len(errors)} issue{'s' if len(errors) > 1 else ''})",
            errors,
        )

    config = MigrationConfig(
        source=endpoints["source"],
        target=endpoints["target"],
        pool=pool,
        transfer=transfer,
        mapping=mapping,
    )
    return config.validate()


def _parse_endpoint(section: dict, prefix: str):
    errors = []

    engine_raw = str(section.get("engine", "")).strip().lower()
    engine = ENGINE_ALIASES.get(engine_raw)
    if engine is None:
        errors.append(
            f"{prefix}.engine — '{engine_raw}' is not supported "
            f"(use {', '.join(ENGINES)})"
        )
        engine = engine_raw

    for key in ("host", "database", "password"):
        if key not in section:
            errors.append(f"{prefix}.{key} — field missing")
        elif key != "password" and (section[key] is None or not str(section[key]).strip()):
            errors.append(f"{prefix}.{key} — value is empty")

    for key, value in section.items():
        if value in PLACEHOLDER_VALUES:
            errors.append(f'{prefix}.{key} — still has placeholder value "{value}"')

    port = section.get("port", DEFAULT_PORTS.get(engine))
    try:
        port = int(port)
    except (ValueError, TypeError):
        errors.append(f'{prefix}.port — must be a number, got: "{port}"')
        port = 0
    else:
        if not (1 <= port <= 65535):
            errors.append(f"{prefix}.port — must be between 1 and 65535, got: {port}")

    charset = section.get("charset")
    if engine == FIREBIRD and not charset:
        charset = DEFAULT_CHARSET

    endpoint = DatabaseEndpoint(
        engine=engine,
        host=str(section.get("host") or "").strip(),
        port=port,
        database=str(section.get("database") or "").strip(),
        user=str(section.get("user") or DEFAULT_USERS.get(engine, "")).strip(),
        password="" if section.get("password") is None else str(section.get("password")),
        charset=str(charset).strip() if charset else None,
        schema=str(section["schema"]).strip() if section.get("schema") else None,
    )
    return endpoint, errors


def _parse_section(section, prefix: str, cls, fields: dict):
    if not isinstance(section, dict):
        return cls(), [f'"{prefix}" must be a JSON object, got {type(section).__name__}']

    errors = []
    values = {}
    for key, value in section.items():
        if key not in fields:
            errors.append(f"{prefix}.{key} — unknown setting")
            continue
        try:
            values[key] = fields[key](value)
        except (ValueError, TypeError):
            errors.append(f'{prefix}.{key} — must be a number, got: "{value}"')

    settings = cls(**values)
    return settings, errors + settings.problems(prefix + ".")


def _parse_mapping(section):
    if not isinstance(section, dict):
        return MappingPolicy(), [f'"mapping" must be a JSON object, got {type(section).__name__}']

    errors = []
    tables = section.get("tables", {}) or {}
    if not isinstance(tables, dict):
        errors.append("mapping.tables — must map source table names to target table names")
        tables = {}

    overrides = {}
    columns = section.get("columns", {}) or {}
    if not isinstance(columns, dict):
        errors.append("mapping.columns — must map table names to column overrides")
        columns = {}
    for table, table_columns in columns.items():
        if not isinstance(table_columns, dict):
            errors.append(f"mapping.columns.{table} — must be a JSON object")
            continue
        overrides[table] = {}
        for column, spec in table_columns.items():
            if spec is None:
                overrides[table][column] = ColumnOverride(exclude=True)
            elif isinstance(spec, str):
                overrides[table][column] = ColumnOverride(target_column=spec)
            elif isinstance(spec, dict):
                overrides[table][column] = ColumnOverride(
                    target_column=spec.get("name"),
                    target_type=spec.get("type"),
                    exclude=bool(spec.get("exclude", False)),
                )
            else:
                errors.append(f"mapping.columns.{table}.{column} — expected a name, object or null")

    policy = MappingPolicy(
        auto_create=bool(section.get("auto_create", False)),
        skip_existing=bool(section.get("skip_existing", False)),
        include_tables=tuple(section.get("include_tables", []) or ()),
        exclude_tables=tuple(section.get("exclude_tables", []) or ()),
        table_names=dict(tables),
        column_overrides=overrides,
    )
    return policy, errors


# ═════════════════════════════════════════════════════════════
# Connection testing
# ═════════════════════════════════════════════════════════════

_TROUBLESHOOTING = {
    FIREBIRD: (
        "    1. Is the Firebird server running on [cyan]{host}:{port}[/cyan]?\n"
        "    2. Check the database path is valid [bold]on the server[/bold]: {database}\n"
        "    3. Verify the user/password (default user: SYSDBA)\n"
        "    4. Check firebird.conf: RemoteBindAddress and WireCrypt settings"
    ),
    POSTGRESQL: (
        "    1. Is PostgreSQL running on [cyan]{host}:{port}[/cyan]?\n"
        "    2. Check pg_hba.conf allows connections for user [cyan]{user}[/cyan]\n"
        "    3. Verify database [cyan]{database}[/cyan] exists: [dim]psql -l[/dim]"
    ),
    MYSQL: (
        "    1. Is MySQL running on [cyan]{host}:{port}[/cyan]?\n"
        "    2. Access for user [cyan]{user}[/cyan]: [dim]SELECT user, host FROM mysql.user;[/dim]\n"
        "    3. MySQL bind-address: set [dim]bind-address = 0.0.0.0[/dim] in my.cnf"
    ),
}


def test_connection(endpoint: DatabaseEndpoint, pools) -> bool:
    """Lease and return one pooled connection to check an endpoint is reachable."""
    try:
        with pools.lease(endpoint) as handle:
            handle.ping()
        return True
    except ConnectError as e:
        console.print(f"\n  [red]✗ Connection to {endpoint.label} failed:[/red] {e}")
        console.print("\n  [yellow]Troubleshooting:[/yellow]")
        console.print(_TROUBLESHOOTING[endpoint.engine].format(
            host=endpoint.host, port=endpoint.port,
            user=endpoint.user, database=endpoint.database,
        ))
        console.print("")
        logger.debug("Connection test failed for %s", endpoint.label, exc_info=True)
        return False


# pytest would otherwise collect this helper as a test function
test_connection.__test__ = False
