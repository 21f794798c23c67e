"""Column and type mapping resolver.

Maps source columns to target columns and source values to target values
for one table. The mapper is pure: it reads the table mapping, the target
schema snapshot and the type mapping registry, and performs no I/O.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Callable, Optional

from .errors import ConfigurationError, TransformationError
from .models import (
    ColumnDefinition,
    ColumnMapping,
    DataTypeMapping,
    Row,
    TableMappingConfig,
    TableSchema,
)
from .values import (
    ValueKind,
    is_finite_number,
    is_integer_type,
    is_numeric_string,
    kind_for_column,
    kind_of,
    normalize_type_name,
)

logger = logging.getLogger(__name__)

TIMESTAMP_SUFFIXES = ("_at", "_date", "_time", "_timestamp", "_ts")
LAST_MODIFIED_COLUMNS = {
    "updated_at",
    "updated_date",
    "modified_at",
    "modified_date",
    "last_modified",
    "last_modified_at",
}
CREATED_COLUMNS = ("created_at", "created_date", "creation_date")
CODE_COLUMN = "code"
DEFAULT_CODE_SENTINEL = "UNKNOWN"

# Epoch values above this are taken as milliseconds
EPOCH_MILLIS_THRESHOLD = 1e12

Transform = Callable[[Any], Any]


def _cast_bool(value: Any) -> Optional[bool]:
    """1, "1" and "true" are true; any other non-null value is false."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true")
    if kind_of(value) == ValueKind.NUMBER:
        return value == 1
    return False


def _json_stringify(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


def _truncate(length: int) -> Transform:
    def truncate(value: Any) -> Any:
        if isinstance(value, str):
            return value[:length]
        return value
    return truncate


TRANSFORMATIONS: dict[str, Transform] = {
    "none": lambda x: x,
    "trim": lambda x: x.strip() if isinstance(x, str) else x,
    "lowercase": lambda x: x.lower() if isinstance(x, str) else x,
    "uppercase": lambda x: x.upper() if isinstance(x, str) else x,
    "cast_int": lambda x: int(x) if x is not None else None,
    "cast_float": lambda x: float(x) if x is not None else None,
    "cast_string": lambda x: str(x) if x is not None else None,
    "integer_to_boolean": _cast_bool,
    "json_stringify": _json_stringify,
    "empty_to_null": lambda x: None if x == "" else x,
}


def build_transformation(name: str, column: Optional[ColumnDefinition] = None) -> Transform:
    """Resolve a configured transformation name to a callable.

    ``truncate`` uses the target column's declared length; ``truncate:<n>``
    uses an explicit one.

    Raises:
        ConfigurationError: Unknown name or unusable parameters
    """
    key = name.strip().lower()

    if key == "truncate" or key.startswith("truncate:"):
        _, _, raw_length = key.partition(":")
        if raw_length:
            try:
                length = int(raw_length)
            except ValueError:
                raise ConfigurationError(f"Invalid truncate length in '{name}'")
        elif column is not None and column.max_length:
            length = column.max_length
        else:
            raise ConfigurationError(
                f"Transformation '{name}' needs a length or a target column with max_length"
            )
        if length <= 0:
            raise ConfigurationError(f"Invalid truncate length in '{name}'")
        return _truncate(length)

    if key not in TRANSFORMATIONS:
        raise ConfigurationError(f"Unknown transformation: {name}")
    return TRANSFORMATIONS[key]


def parse_timestamp(value: Any, column: Optional[str] = None) -> Any:
    """Parse an epoch number or ISO-8601 string into a datetime.

    Raises:
        TransformationError: If the value cannot be read as a timestamp
    """
    if isinstance(value, (datetime, date)):
        return value

    if isinstance(value, bool):
        raise TransformationError(f"Cannot convert boolean to timestamp for {column}", column)

    try:
        if kind_of(value) == ValueKind.NUMBER:
            return _from_epoch(float(value))

        if isinstance(value, str):
            text = value.strip()
            if is_numeric_string(text):
                return _from_epoch(float(text))
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            return datetime.fromisoformat(text)
    except (ValueError, OverflowError, OSError) as e:
        raise TransformationError(f"Invalid timestamp {value!r} for {column}: {e}", column) from e

    raise TransformationError(f"Invalid timestamp {value!r} for {column}", column)


def parse_time(value: Any, column: Optional[str] = None) -> Any:
    """Parse an ISO-8601 time of day such as ``08:30:00`` or ``08:30:00+02:00``.

    Raises:
        TransformationError: If the value cannot be read as a time of day
    """
    if isinstance(value, time):
        return value
    if isinstance(value, datetime):
        return value.timetz()

    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return time.fromisoformat(text)
        except ValueError as e:
            raise TransformationError(f"Invalid time {value!r} for {column}: {e}", column) from e

    raise TransformationError(f"Invalid time {value!r} for {column}", column)


def _from_epoch(seconds: float) -> datetime:
    if abs(seconds) > EPOCH_MILLIS_THRESHOLD:
        seconds = seconds / 1000
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class TypeMappingRegistry:
    """Configured data type rules layered over the source adapter's defaults."""

    def __init__(
        self,
        mappings: Optional[list[DataTypeMapping]] = None,
        adapter: Optional[Any] = None,
    ) -> None:
        """Initialize registry.

        Args:
            mappings: Data type mappings from configuration (take precedence)
            adapter: Source adapter whose declared defaults and
                ``transform_value`` are the fallback
        """
        self._mappings: dict[str, DataTypeMapping] = {}
        self._transformers: dict[str, Transform] = {}
        self._adapter = adapter
        self._unmapped_logged: set[str] = set()

        for mapping in mappings or []:
            key = normalize_type_name(mapping.source_type)
            self._mappings[key] = mapping
            if mapping.transformer:
                self._transformers[key] = build_transformation(mapping.transformer)

    def find(self, source_type: Optional[str]) -> Optional[DataTypeMapping]:
        """Configured mapping first, then the adapter's default, else None."""
        key = normalize_type_name(source_type)
        if not key:
            return None
        if key in self._mappings:
            return self._mappings[key]
        if self._adapter is not None:
            mapping = self._adapter.find_data_type_mapping(source_type)
            if mapping is not None:
                return mapping
        if key not in self._unmapped_logged:
            self._unmapped_logged.add(key)
            logger.warning(
                "unmapped_source_type",
                extra={"source_type": source_type},
            )
        return None

    def target_type(self, source_type: str) -> str:
        mapping = self.find(source_type)
        return mapping.target_type if mapping else source_type

    def transform(self, value: Any, source_type: Optional[str]) -> Any:
        """Apply the type-level transformation for ``source_type``, if any."""
        key = normalize_type_name(source_type)
        if key in self._transformers:
            mapping = self._mappings[key]
            if mapping.requires_transformation:
                return self._transformers[key](value)
            return value

        mapping = self.find(source_type)
        if mapping is None or not mapping.requires_transformation:
            return value
        if key in self._mappings:
            # Configured as requiring transformation but no transformer named
            return value
        return self._adapter.transform_value(value, source_type, mapping.target_type)


@dataclass
class ResolvedValue:
    """A source value placed into its target column."""
    target_column: str
    value: Any


@dataclass
class MappedRow:
    """Result of transforming one source row."""
    values: Row
    skipped_columns: list[str] = field(default_factory=list)


class ColumnMapper:
    """Engine for mapping and transforming columns of one table."""

    def __init__(
        self,
        table_mapping: TableMappingConfig,
        target_schema: TableSchema,
        type_registry: Optional[TypeMappingRegistry] = None,
        null_code_sentinel: str = DEFAULT_CODE_SENTINEL,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize column mapper.

        Args:
            table_mapping: Table mapping configuration
            target_schema: Introspected target table
            type_registry: Data type rules (empty registry if omitted)
            null_code_sentinel: Literal used for NOT NULL ``code`` columns
            clock: Source of "now" for last-modified fallbacks

        Raises:
            ConfigurationError: If a mapping names an unknown transformation
        """
        self.table_mapping = table_mapping
        self.target_schema = target_schema
        self.type_registry = type_registry or TypeMappingRegistry()
        self.null_code_sentinel = null_code_sentinel
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._mappings: dict[str, ColumnMapping] = {
            mapping.source_column.lower(): mapping
            for mapping in table_mapping.column_mappings
        }
        self._excluded = {column.lower() for column in table_mapping.exclude_columns}
        self._transforms: dict[str, Transform] = {}

        for key, mapping in self._mappings.items():
            if not mapping.transformation:
                continue
            column = target_schema.get_column(mapping.target_column)
            if column is None:
                continue
            self._transforms[key] = build_transformation(mapping.transformation, column)

    def is_excluded(self, source_column: str) -> bool:
        return source_column.lower() in self._excluded

    def target_column_for(self, source_column: str) -> str:
        """Explicit mapping if present, else the lower-cased source name."""
        mapping = self._mappings.get(source_column.lower())
        if mapping:
            return mapping.target_column
        return source_column.lower()

    def skipped_columns(self, source_columns: list[str]) -> list[str]:
        """Source columns whose target column does not exist in the target schema."""
        return [
            column for column in source_columns
            if not self.is_excluded(column)
            and self.target_schema.get_column(self.target_column_for(column)) is None
        ]

    def resolve(
        self,
        source_column: str,
        value: Any,
        source_type: Optional[str] = None,
        row: Optional[Row] = None,
    ) -> Optional[ResolvedValue]:
        """Resolve one source column value.

        Args:
            source_column: Column name as read from the source
            value: Raw value
            source_type: Declared source data type, if known
            row: The whole source row (for null fallbacks)

        Returns:
            ResolvedValue, or None when the target column does not exist
            and the value must be skipped

        Raises:
            TransformationError: If the value cannot be converted
        """
        target_name = self.target_column_for(source_column)
        column = self.target_schema.get_column(target_name)
        if column is None:
            return None

        # Keep the schema's spelling of the column name
        target_name = column.name
        key = source_column.lower()
        mapping = self._mappings.get(key)
        target_kind = kind_for_column(column)

        # 1. Nulls
        if value is None:
            return ResolvedValue(target_name, self._null_fallback(column, mapping, row))

        # 2. Booleans
        if target_kind == ValueKind.BOOLEAN or (
            mapping is not None
            and (mapping.transformation or "").strip().lower() == "integer_to_boolean"
        ):
            return ResolvedValue(target_name, self._check_kind(column, target_kind, _cast_bool(value)))

        # 3. Times of day and timestamps
        if target_kind == ValueKind.TIME:
            return ResolvedValue(target_name, parse_time(value, target_name))
        if self._is_timestamp_column(column, target_kind):
            if kind_of(value) != ValueKind.TIMESTAMP:
                value = parse_timestamp(value, target_name)
            return ResolvedValue(target_name, value)

        # 4. Named transformations
        if key in self._transforms:
            if isinstance(value, str):
                value = value.strip()
            try:
                value = self._transforms[key](value)
            except (TypeError, ValueError) as e:
                raise TransformationError(
                    f"Transformation {mapping.transformation} failed for {target_name}: {e}",
                    target_name,
                ) from e
            return ResolvedValue(target_name, self._check_kind(column, target_kind, value))

        # 5. Type-level rules, else pass through
        if source_type:
            try:
                value = self.type_registry.transform(value, source_type)
            except (TypeError, ValueError) as e:
                raise TransformationError(
                    f"Type transformation from {source_type} failed for {target_name}: {e}",
                    target_name,
                ) from e

        return ResolvedValue(target_name, self._check_kind(column, target_kind, value))

    def transform_row(
        self,
        row: Row,
        source_types: Optional[dict[str, str]] = None,
    ) -> MappedRow:
        """Transform a source row to target format.

        Args:
            row: Row from the source database
            source_types: Declared source type per source column

        Returns:
            MappedRow with target values and the skipped source columns

        Raises:
            TransformationError: If any column fails to transform
        """
        source_types = source_types or {}
        lowered_types = {name.lower(): data_type for name, data_type in source_types.items()}
        mapped = MappedRow(values={})

        for source_column, value in row.items():
            if self.is_excluded(source_column):
                continue

            resolved = self.resolve(
                source_column,
                value,
                lowered_types.get(source_column.lower()),
                row,
            )
            if resolved is None:
                mapped.skipped_columns.append(source_column)
                continue

            mapped.values[resolved.target_column] = resolved.value

        return mapped

    def _is_timestamp_column(
        self,
        column: ColumnDefinition,
        target_kind: Optional[ValueKind],
    ) -> bool:
        if target_kind == ValueKind.TIMESTAMP:
            return True
        return target_kind is None and column.name.lower().endswith(TIMESTAMP_SUFFIXES)

    def _check_kind(
        self,
        column: ColumnDefinition,
        target_kind: Optional[ValueKind],
        value: Any,
    ) -> Any:
        """Validate a transformed value against the target column's family."""
        value_kind = kind_of(value)
        if value_kind == ValueKind.NULL or target_kind is None:
            return value

        if target_kind == ValueKind.NUMBER:
            if value_kind == ValueKind.BOOLEAN:
                return int(value)
            if value_kind == ValueKind.STRING and not is_numeric_string(value):
                raise TransformationError(
                    f"Value {value!r} is not numeric for {column.name} ({column.data_type})",
                    column.name,
                )
            if is_integer_type(column.data_type) and not is_finite_number(value):
                raise TransformationError(
                    f"Value {value!r} is not a finite integer for {column.name} ({column.data_type})",
                    column.name,
                )
        elif target_kind == ValueKind.BINARY and value_kind in (ValueKind.NUMBER, ValueKind.BOOLEAN):
            raise TransformationError(
                f"Value {value!r} is not binary for {column.name} ({column.data_type})",
                column.name,
            )

        return value

    def _null_fallback(
        self,
        column: ColumnDefinition,
        mapping: Optional[ColumnMapping],
        row: Optional[Row],
    ) -> Any:
        """Substitute a value for null in NOT NULL columns only."""
        not_null = not column.nullable or (mapping is not None and mapping.nullable is False)
        if not not_null:
            return None

        if mapping is not None and mapping.default_value is not None:
            return mapping.default_value

        name = column.name.lower()
        if name in LAST_MODIFIED_COLUMNS:
            created = self._creation_timestamp(row)
            return created if created is not None else self._clock()

        if name == CODE_COLUMN:
            return self.null_code_sentinel

        return None

    def _creation_timestamp(self, row: Optional[Row]) -> Any:
        if not row:
            return None
        for source_column, value in row.items():
            if value is None:
                continue
            if self.target_column_for(source_column).lower() in CREATED_COLUMNS:
                try:
                    return parse_timestamp(value, source_column)
                except TransformationError:
                    logger.warning(
                        "creation_timestamp_unparseable",
                        extra={"column": source_column, "value": repr(value)},
                    )
                    return None
        return None
