"""Data model shared by adapters, the mapping resolver and the pipeline.

Schema snapshots (``TableSchema`` and its parts) are frozen: introspection
produces them fresh and nothing mutates them for the duration of a table's
migration.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# A row is an ordered mapping of column name to scalar value.
Row = dict[str, Any]


class ReferentialAction(str, Enum):
    """Foreign key ON DELETE / ON UPDATE rule."""
    CASCADE = "CASCADE"
    SET_NULL = "SET NULL"
    RESTRICT = "RESTRICT"
    NO_ACTION = "NO ACTION"


class IndexType(str, Enum):
    BTREE = "BTREE"
    HASH = "HASH"
    GIN = "GIN"
    GIST = "GIST"


class ConstraintType(str, Enum):
    CHECK = "CHECK"
    UNIQUE = "UNIQUE"
    PRIMARY_KEY = "PRIMARY KEY"
    FOREIGN_KEY = "FOREIGN KEY"


class ConnectionConfig(BaseModel):
    """Configuration for a database connection. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    host: str
    port: int
    database: str
    username: str
    password: str = Field(default="", repr=False)
    ssl: bool = False
    connection_timeout: float = 30.0  # seconds
    query_timeout: float = 60.0  # seconds
    extra_params: dict[str, Any] = Field(default_factory=dict)


class ColumnDefinition(BaseModel):
    """Schema for a single column."""
    model_config = ConfigDict(frozen=True)

    name: str
    data_type: str
    nullable: bool = True
    default_value: Optional[Any] = None
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    is_auto_increment: bool = False
    is_unique: bool = False


class ForeignKeyDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    columns: list[str]
    referenced_table: str
    referenced_columns: list[str]
    on_delete: Optional[ReferentialAction] = None
    on_update: Optional[ReferentialAction] = None

    def is_self_reference(self, owner_table: str) -> bool:
        """True when the key points back at the table that owns it."""
        referenced = self.referenced_table.split(".")[-1]
        return referenced.lower() == owner_table.split(".")[-1].lower()


class IndexDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    columns: list[str]
    is_unique: bool = False
    type: Optional[IndexType] = None


class ConstraintDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: ConstraintType
    definition: str = ""


class TableSchema(BaseModel):
    """Normalized description of one table, produced by introspection."""
    model_config = ConfigDict(frozen=True)

    name: str
    schema_name: Optional[str] = None
    columns: list[ColumnDefinition] = Field(default_factory=list)
    primary_keys: list[str] = Field(default_factory=list)
    foreign_keys: list[ForeignKeyDefinition] = Field(default_factory=list)
    indexes: list[IndexDefinition] = Field(default_factory=list)
    constraints: list[ConstraintDefinition] = Field(default_factory=list)

    def column_names(self) -> list[str]:
        return [column.name for column in self.columns]

    def get_column(self, name: str) -> Optional[ColumnDefinition]:
        """Look up a column by name, ignoring case."""
        lowered = name.lower()
        for column in self.columns:
            if column.name.lower() == lowered:
                return column
        return None

    def self_referencing_keys(self) -> list[ForeignKeyDefinition]:
        return [fk for fk in self.foreign_keys if fk.is_self_reference(self.name)]


class QueryResult(BaseModel):
    """Rows returned by ``execute_query``, always as dicts."""
    rows: list[dict[str, Any]] = Field(default_factory=list)
    row_count: int = 0
    fields: list[str] = Field(default_factory=list)


class ColumnMapping(BaseModel):
    """Configuration for mapping a single source column."""
    source_column: str
    target_column: str
    transformation: Optional[str] = None
    default_value: Optional[Any] = None
    nullable: Optional[bool] = None  # Overrides target schema nullability when False


class DataTypeMapping(BaseModel):
    """Source type to target type rule, looked up case-insensitively."""
    source_type: str
    target_type: str
    requires_transformation: bool = False
    transformer: Optional[str] = None  # Name of a registered transformation

    @field_validator("source_type", "target_type")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class TableMappingConfig(BaseModel):
    """Complete mapping configuration for a table."""
    source_table: str
    target_table: str
    source_schema: Optional[str] = None
    target_schema: Optional[str] = None
    enabled: bool = True
    order_by: Optional[list[str]] = None  # Stable paging key; defaults to primary key
    exclude_columns: list[str] = Field(default_factory=list)
    column_mappings: list[ColumnMapping] = Field(default_factory=list)

    @field_validator("order_by", mode="before")
    @classmethod
    def _split_order_by(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @model_validator(mode="after")
    def _unique_source_columns(self) -> "TableMappingConfig":
        seen: set[str] = set()
        for mapping in self.column_mappings:
            key = mapping.source_column.lower()
            if key in seen:
                raise ValueError(
                    f"Duplicate column mapping for {self.source_table}.{mapping.source_column}"
                )
            seen.add(key)
        return self


class RowError(BaseModel):
    """A failure attributed to one row of a batch."""
    row_index: int
    message: str
    column: Optional[str] = None


class BatchResult(BaseModel):
    """Outcome of one batch write. Callers accumulate across batches."""
    success: bool
    processed_rows: int = 0
    errors: list[RowError] = Field(default_factory=list)
    duration: float = 0.0  # seconds


class TableMigrationResult(BaseModel):
    """Totals for one table's pipeline run."""
    source_table: str
    target_table: str
    total_rows: int = 0
    migrated_rows: int = 0
    failed_rows: int = 0
    batches: int = 0
    dry_run: bool = False
    cancelled: bool = False
    skipped_columns: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def duration_seconds(self) -> Optional[float]:
        if not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def error_summary(self, verbose: bool = False, sample_size: int = 3) -> list[str]:
        """Every error message when verbose, otherwise a bounded sample."""
        if verbose or len(self.errors) <= sample_size:
            return list(self.errors)
        remaining = len(self.errors) - sample_size
        return self.errors[:sample_size] + [f"... and {remaining} more"]
