"""
═══════════════════════════════════════════════════════════════
  Firebird / PostgreSQL / MySQL Migration Engine (dbmigrate)
═══════════════════════════════════════════════════════════════
"""

from pathlib import Path
from rich.console import Console

__version__ = "1.0.0"

# ═════════════════════════════════════════════════════════════
# Shared console instance
# ═════════════════════════════════════════════════════════════

console = Console()

# ═════════════════════════════════════════════════════════════
# Constants
# ═════════════════════════════════════════════════════════════

SCRIPT_DIR = Path(__file__).parent.parent.resolve()
CONFIG_FILE = SCRIPT_DIR / "migration_config.json"

FIREBIRD = "firebird"
POSTGRESQL = "postgresql"
MYSQL = "mysql"
ENGINES = (FIREBIRD, POSTGRESQL, MYSQL)

DEFAULT_PORTS = {FIREBIRD: 3050, POSTGRESQL: 5432, MYSQL: 3306}
DEFAULT_USERS = {FIREBIRD: "SYSDBA", POSTGRESQL: "postgres", MYSQL: "root"}
DEFAULT_CHARSET = "UTF8"

# Transfer
DEFAULT_FETCH_SIZE = 500
DEFAULT_BATCH_SIZE = 1000
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BACKOFF = 1.0
DEFAULT_MAX_PARALLEL_UNITS = 4

# Pool (seconds)
DEFAULT_POOL_MIN_IDLE = 1
DEFAULT_POOL_MAX_SIZE = 5
CONNECTION_TIMEOUT = 30
IDLE_TIMEOUT = 600
MAX_LIFETIME = 1800

DEFAULT_CONFIG = {
    "source": {
        "engine": FIREBIRD,
        "host": "localhost",
        "port": 3050,
        "database": "/path/to/YOUR_DATABASE.fdb",
        "user": "SYSDBA",
        "password": "YOUR_SOURCE_PASSWORD",
        "charset": DEFAULT_CHARSET,
    },
    "target": {
        "engine": POSTGRESQL,
        "host": "localhost",
        "port": 5432,
        "database": "myapp",
        "user": "postgres",
        "password": "YOUR_TARGET_PASSWORD",
    },
    "pool": {
        "min_idle": DEFAULT_POOL_MIN_IDLE,
        "max_size": DEFAULT_POOL_MAX_SIZE,
        "connect_timeout": CONNECTION_TIMEOUT,
        "idle_timeout": IDLE_TIMEOUT,
        "max_lifetime": MAX_LIFETIME,
    },
    "transfer": {
        "fetch_size": DEFAULT_FETCH_SIZE,
        "batch_size": DEFAULT_BATCH_SIZE,
        "max_retries": DEFAULT_MAX_RETRIES,
        "retry_backoff": DEFAULT_RETRY_BACKOFF,
        "max_parallel_units": DEFAULT_MAX_PARALLEL_UNITS,
    },
    "mapping": {
        "auto_create": False,
        "skip_existing": False,
        "include_tables": [],
        "exclude_tables": [],
        "tables": {},
        "columns": {},
    },
}

PLACEHOLDER_VALUES = (
    "YOUR_SOURCE_PASSWORD",
    "YOUR_TARGET_PASSWORD",
    "/path/to/YOUR_DATABASE.fdb",
)
