"""
Dialect registry: one adapter per supported engine.
"""

from dbmigrate import FIREBIRD, MYSQL, POSTGRESQL
from dbmigrate.dialects.base import Dialect
from dbmigrate.dialects.firebird import FirebirdDialect
from dbmigrate.dialects.mysql import MySQLDialect
from dbmigrate.dialects.postgresql import PostgreSQLDialect
from dbmigrate.errors import ConfigError

DIALECTS = {
    FIREBIRD: FirebirdDialect,
    POSTGRESQL: PostgreSQLDialect,
    MYSQL: MySQLDialect,
}

_instances: dict[str, Dialect] = {}


def get_dialect(engine: str) -> Dialect:
    """Return the shared, stateless dialect instance for an engine name."""
    try:
        cls = DIALECTS[engine]
    except KeyError:
        raise ConfigError(
            f"Unsupported engine '{engine}' (expected one of: {', '.join(DIALECTS)})"
        ) from None
    if engine not in _instances:
        _instances[engine] = cls()
    return _instances[engine]


__all__ = [
    "Dialect", "FirebirdDialect", "MySQLDialect", "PostgreSQLDialect",
    "DIALECTS", "get_dialect",
]
