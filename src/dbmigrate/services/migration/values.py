"""Typed classification of row values and target column types."""

import math
import re
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .models import ColumnDefinition


class ValueKind(str, Enum):
    """Type family of a scalar row value."""
    NULL = "null"
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    TIME = "time"
    BINARY = "binary"
    OTHER = "other"


_TYPE_MODIFIER = re.compile(r"\s*\([^)]*\)")
_WHITESPACE = re.compile(r"\s+")

BOOLEAN_TYPES = {"boolean", "bool"}
TIMESTAMP_TYPES = {
    "timestamp",
    "timestamptz",
    "timestamp without time zone",
    "timestamp with time zone",
    "datetime",
    "smalldatetime",
    "date",
}
TIME_TYPES = {"time", "timetz", "time without time zone", "time with time zone"}
INTEGER_TYPES = {"smallint", "integer", "int", "int2", "int4", "int8", "bigint", "tinyint"}
NUMERIC_TYPES = INTEGER_TYPES | {
    "numeric", "decimal", "number", "money",
    "real", "float", "float4", "float8", "double precision",
}
BINARY_TYPES = {"bytea", "binary", "varbinary", "long varbinary", "raw"}
STRING_TYPES = {
    "character varying", "varchar", "character", "char", "text", "long varchar",
    "uuid", "name",
}


def normalize_type_name(type_name: Optional[str]) -> str:
    """Lower-case a declared type and strip length/precision modifiers."""
    if not type_name:
        return ""
    stripped = _TYPE_MODIFIER.sub("", type_name)
    return _WHITESPACE.sub(" ", stripped).strip().lower()


def kind_of(value: Any) -> ValueKind:
    """Classify a raw value. ``bool`` is checked before numbers on purpose."""
    if value is None:
        return ValueKind.NULL
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, (int, float, Decimal)):
        return ValueKind.NUMBER
    if isinstance(value, (datetime, date)):
        return ValueKind.TIMESTAMP
    if isinstance(value, time):
        return ValueKind.TIME
    if isinstance(value, (bytes, bytearray, memoryview)):
        return ValueKind.BINARY
    if isinstance(value, str):
        return ValueKind.STRING
    return ValueKind.OTHER


def kind_for_type(type_name: Optional[str]) -> Optional[ValueKind]:
    """Value family a declared column type expects, or None if unknown."""
    normalized = normalize_type_name(type_name)
    if normalized in BOOLEAN_TYPES:
        return ValueKind.BOOLEAN
    if normalized in TIMESTAMP_TYPES:
        return ValueKind.TIMESTAMP
    if normalized in TIME_TYPES:
        return ValueKind.TIME
    if normalized in NUMERIC_TYPES:
        return ValueKind.NUMBER
    if normalized in BINARY_TYPES:
        return ValueKind.BINARY
    if normalized in STRING_TYPES:
        return ValueKind.STRING
    return None


def kind_for_column(column: Optional[ColumnDefinition]) -> Optional[ValueKind]:
    if column is None:
        return None
    return kind_for_type(column.data_type)


def is_numeric_string(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        float(value.strip())
    except ValueError:
        return False
    return True


def is_integer_type(type_name: Optional[str]) -> bool:
    return normalize_type_name(type_name) in INTEGER_TYPES


def is_finite_number(value: Any) -> bool:
    """False for NaN and infinities, whether numbers or numeric strings."""
    try:
        return math.isfinite(float(value.strip() if isinstance(value, str) else value))
    except (TypeError, ValueError, OverflowError):
        return False
