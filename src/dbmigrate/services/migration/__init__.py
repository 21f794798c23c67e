"""Migration service package for Vertica to PostgreSQL data migrations.

Provides the adapter contract, the column mapping resolver, the batch
pipeline and the orchestrator that drives them.
"""

from .adapters import create_adapter
from .batch_writer import BatchWriter
from .column_mapper import ColumnMapper, TypeMappingRegistry
from .database_adapter import DatabaseAdapter
from .errors import (
    AdapterConnectionError,
    BatchFailedError,
    ConfigurationError,
    DriverNotInstalledError,
    IntrospectionError,
    MigrationError,
    TransformationError,
)
from .events import EventEmitter, EventKind, MigrationEvent
from .hierarchy import OrderingStrategy, order_rows
from .introspection import SchemaIntrospector
from .models import BatchResult, ConnectionConfig, TableMigrationResult, TableSchema
from .orchestrator import MigrationOrchestrator, MigrationProgress, MigrationStatus
from .pipeline import BatchPipeline

__all__ = [
    "AdapterConnectionError",
    "BatchFailedError",
    "BatchPipeline",
    "BatchResult",
    "BatchWriter",
    "ColumnMapper",
    "ConfigurationError",
    "ConnectionConfig",
    "DatabaseAdapter",
    "DriverNotInstalledError",
    "EventEmitter",
    "EventKind",
    "IntrospectionError",
    "MigrationError",
    "MigrationEvent",
    "MigrationOrchestrator",
    "MigrationProgress",
    "MigrationStatus",
    "OrderingStrategy",
    "SchemaIntrospector",
    "TableMigrationResult",
    "TableSchema",
    "TransformationError",
    "TypeMappingRegistry",
    "create_adapter",
    "order_rows",
]
