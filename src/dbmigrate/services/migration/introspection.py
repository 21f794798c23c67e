"""Schema introspection helpers shared by the adapters.

Drivers disagree on row shape: psycopg hands back dicts, vertica-python
hands back lists unless asked otherwise. Everything catalog-related goes
through ``normalize_row`` first so the assembly code only sees dicts.
"""

import logging
from typing import Any, Iterable, Optional, Sequence

from .errors import AdapterConnectionError, IntrospectionError
from .models import (
    ConstraintType,
    ForeignKeyDefinition,
    IndexDefinition,
    IndexType,
    ReferentialAction,
    TableSchema,
)

logger = logging.getLogger(__name__)


def normalize_row(row: Any, column_names: Sequence[str]) -> dict[str, Any]:
    """Turn a positional or named row into a dict keyed by column name."""
    if isinstance(row, dict):
        return dict(row)
    if isinstance(row, (list, tuple)):
        return {name: row[index] for index, name in enumerate(column_names) if index < len(row)}
    # Mapping-like driver row objects (e.g. named tuples)
    if hasattr(row, "_asdict"):
        return dict(row._asdict())
    raise TypeError(f"Unsupported row shape: {type(row).__name__}")


def normalize_rows(rows: Iterable[Any], column_names: Sequence[str]) -> list[dict[str, Any]]:
    return [normalize_row(row, column_names) for row in rows]


def first_value(row: Any) -> Any:
    """First column of a row regardless of its shape."""
    if isinstance(row, dict):
        return next(iter(row.values()), None)
    if isinstance(row, (list, tuple)):
        return row[0] if row else None
    return None


def parse_count(value: Any) -> int:
    """Row counts come back as int, numeric string or Decimal."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(f"Unexpected row count value: {value!r}")
        return 0


def parse_bool(value: Any) -> bool:
    """Catalog flags come back as bool, 't'/'f', 'YES'/'NO' or 0/1."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in ("t", "true", "yes", "y", "1")


def parse_referential_action(value: Any) -> Optional[ReferentialAction]:
    if not value:
        return None
    try:
        return ReferentialAction(str(value).strip().upper())
    except ValueError:
        return None


def map_constraint_type(value: Any) -> ConstraintType:
    """Map single-letter catalog codes or full names to ConstraintType."""
    text = str(value or "").strip().upper()
    codes = {
        "C": ConstraintType.CHECK,
        "U": ConstraintType.UNIQUE,
        "P": ConstraintType.PRIMARY_KEY,
        "F": ConstraintType.FOREIGN_KEY,
    }
    if text in codes:
        return codes[text]
    try:
        return ConstraintType(text)
    except ValueError:
        return ConstraintType.CHECK


def group_foreign_keys(
    rows: Iterable[dict[str, Any]],
    default_action: Optional[ReferentialAction] = None,
) -> list[ForeignKeyDefinition]:
    """Fold one-row-per-column catalog output into foreign key definitions.

    Expects keys: constraint_name, column_name, referenced_table,
    referenced_column and optionally delete_rule / update_rule.
    """
    grouped: dict[str, dict[str, Any]] = {}

    for row in rows:
        name = row["constraint_name"]
        if name not in grouped:
            grouped[name] = {
                "name": name,
                "columns": [],
                "referenced_table": row["referenced_table"],
                "referenced_columns": [],
                "on_delete": parse_referential_action(row.get("delete_rule")) or default_action,
                "on_update": parse_referential_action(row.get("update_rule")) or default_action,
            }
        entry = grouped[name]
        if row["column_name"] not in entry["columns"]:
            entry["columns"].append(row["column_name"])
            entry["referenced_columns"].append(row["referenced_column"])

    return [ForeignKeyDefinition(**entry) for entry in grouped.values()]


def group_indexes(rows: Iterable[dict[str, Any]]) -> list[IndexDefinition]:
    """Fold one-row-per-column index output into index definitions.

    Expects keys: index_name, column_name, is_unique and optionally
    index_type.
    """
    grouped: dict[str, dict[str, Any]] = {}

    for row in rows:
        name = row["index_name"]
        if name not in grouped:
            index_type = str(row.get("index_type") or "").upper()
            grouped[name] = {
                "name": name,
                "columns": [],
                "is_unique": parse_bool(row.get("is_unique")),
                "type": IndexType(index_type) if index_type in IndexType.__members__ else None,
            }
        grouped[name]["columns"].append(row["column_name"])

    return [IndexDefinition(**entry) for entry in grouped.values()]


class SchemaIntrospector:
    """Reads table metadata through an adapter.

    Connection failures propagate unchanged; anything else is reported as an
    ``IntrospectionError`` so the pipeline knows it must not write. Results
    are not cached here.
    """

    def __init__(self, adapter: Any) -> None:
        self.adapter = adapter

    async def introspect(self, schema: Optional[str] = None) -> list[TableSchema]:
        try:
            return await self.adapter.introspect_database(schema)
        except (AdapterConnectionError, IntrospectionError):
            raise
        except Exception as e:
            if self.adapter.is_connection_error(e):
                raise
            raise IntrospectionError(f"Failed to introspect schema {schema}: {e}") from e

    async def get_table_schema(self, table_name: str, schema: Optional[str] = None) -> TableSchema:
        try:
            table = await self.adapter.get_table_schema(table_name, schema)
        except (AdapterConnectionError, IntrospectionError):
            raise
        except Exception as e:
            if self.adapter.is_connection_error(e):
                raise
            raise IntrospectionError(
                f"Failed to introspect table {table_name}: {e}",
                table=table_name,
            ) from e

        if not table.columns:
            raise IntrospectionError(
                f"Table {schema or self.adapter.default_schema}.{table_name} "
                f"not found or has no columns",
                table=table_name,
            )

        return table
