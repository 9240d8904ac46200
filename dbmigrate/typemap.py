"""
Engine-neutral column types and row value coercion.

Every dialect reads its native type names into a LogicalType and renders a
LogicalType back into native DDL. Mapping a column between two engines is
the composition of the source dialect's reader and the target dialect's
renderer, so each (source, target) pair gets a deterministic table without
spelling out nine of them by hand.
"""

import json
import re
import uuid
from dataclasses import dataclass, field

# ═════════════════════════════════════════════════════════════
# Logical kinds
# ═════════════════════════════════════════════════════════════

BOOLEAN = "boolean"
SMALLINT = "smallint"
INTEGER = "integer"
BIGINT = "bigint"
UBIGINT = "ubigint"
DECIMAL = "decimal"
REAL = "real"
DOUBLE = "double"
CHAR = "char"
VARCHAR = "varchar"
TEXT = "text"
BINARY = "binary"
DATE = "date"
TIME = "time"
TIMETZ = "timetz"
TIMESTAMP = "timestamp"
TIMESTAMPTZ = "timestamptz"
JSON = "json"
UUID = "uuid"
ENUM = "enum"

KINDS = (
    BOOLEAN, SMALLINT, INTEGER, BIGINT, UBIGINT, DECIMAL, REAL, DOUBLE,
    CHAR, VARCHAR, TEXT, BINARY, DATE, TIME, TIMETZ, TIMESTAMP, TIMESTAMPTZ,
    JSON, UUID, ENUM,
)

KB = 1024
MB = 1024 * KB
GB = 1024 * MB


@dataclass(frozen=True)
class LogicalType:
    """A column type stripped of engine spelling.

    ``max_bytes`` bounds TEXT/BINARY values; None means the source engine
    imposes no practical limit (e.g. Firebird BLOB).
    """
    kind: str
    length: int | None = None
    precision: int | None = None
    scale: int | None = None
    max_bytes: int | None = None
    values: tuple = ()
    note: str | None = None


@dataclass(frozen=True)
class MappedType:
    target_type: str
    kind: str
    lossy: bool = False
    note: str | None = None


@dataclass(frozen=True)
class ParsedType:
    base: str
    args: tuple = ()
    charset: str | None = None
    raw: str = ""
    modifiers: tuple = field(default_factory=tuple)

    def arg(self, index: int, default=None):
        if index < len(self.args) and isinstance(self.args[index], int):
            return self.args[index]
        return default


_TYPE_RE = re.compile(r"^(?P<head>[^(]*)(?:\((?P<args>.*)\))?(?P<tail>[^)]*)$", re.S)
_CHARSET_RE = re.compile(r"\bCHARACTER\s+SET\s+(\w+)", re.I)
_COLLATE_RE = re.compile(r"\bCOLLATE\s+\w+", re.I)
_QUOTED_RE = re.compile(r"'((?:[^']|'')*)'")


def parse_type(type_name: str) -> ParsedType:
    """Split a native type spelling into base words, arguments and charset.

    ``VARCHAR(100) CHARACTER SET UTF8`` parses to base ``VARCHAR``, args
    ``(100,)`` and charset ``UTF8``; quoted ENUM/SET members become string args.
    """
    raw = " ".join(str(type_name).split())
    text = raw
    charset = None
    match = _CHARSET_RE.search(text)
    if match:
        charset = match.group(1).upper()
        text = text[:match.start()] + text[match.end():]
    text = _COLLATE_RE.sub("", text)

    match = _TYPE_RE.match(text.strip())
    head = match.group("head") if match else text
    arg_text = match.group("args") if match else None
    tail = match.group("tail") if match else ""

    args: tuple = ()
    if arg_text is not None:
        quoted = _QUOTED_RE.findall(arg_text)
        if quoted:
            args = tuple(v.replace("''", "'") for v in quoted)
        else:
            parsed = []
            for part in arg_text.split(","):
                part = part.strip()
                parsed.append(int(part) if part.lstrip("-").isdigit() else part)
            args = tuple(parsed)

    words = (head + " " + tail).upper().split()
    modifiers = tuple(w for w in words if w in ("UNSIGNED", "ZEROFILL", "SIGNED"))
    base = " ".join(w for w in words if w not in modifiers)
    return ParsedType(base=base, args=args, charset=charset, raw=raw, modifiers=modifiers)


# ═════════════════════════════════════════════════════════════
# Value coercion
# ═════════════════════════════════════════════════════════════

_TRUE = {"t", "true", "y", "yes", "1", "on"}
_FALSE = {"f", "false", "n", "no", "0", "off"}


def coerce_value(kind: str, value):
    """Convert a value read by one driver into something the other driver accepts.

    Raises ValueError/TypeError when the value cannot represent ``kind``.
    """
    if value is None:
        return None

    # Firebird streams large blobs as BlobReader objects
    if hasattr(value, "read") and callable(value.read):
        value = value.read()

    if kind == BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return value != 0
        if isinstance(value, (bytes, bytearray)):
            return int.from_bytes(value, "big") != 0
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE:
                return True
            if lowered in _FALSE:
                return False
        raise ValueError(f"cannot interpret {value!r} as boolean")

    if kind == JSON:
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        if isinstance(value, (bytes, bytearray)):
            return bytes(value).decode("utf-8")
        return value

    if kind == BINARY:
        if isinstance(value, (memoryview, bytearray)):
            return bytes(value)
        if isinstance(value, str):
            return value.encode("utf-8")
        return value

    if kind == UUID:
        if isinstance(value, uuid.UUID):
            return str(value)
        return value

    if kind in (CHAR, VARCHAR, TEXT, ENUM):
        if isinstance(value, (set, frozenset)):
            return ",".join(sorted(value))
        if isinstance(value, (bytes, bytearray, memoryview)):
            return bytes(value).decode("utf-8")
        return value

    if kind in (SMALLINT, INTEGER, BIGINT, UBIGINT) and isinstance(value, bool):
        return int(value)

    return value
