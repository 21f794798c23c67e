"""Abstract base class for database adapters.

Provides the interface that both the source (Vertica) and the target
(PostgreSQL) adapter implement, so the pipeline never talks to a driver
directly.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from .batch_writer import BatchWriter
from .events import EventEmitter
from .models import (
    BatchResult,
    ConnectionConfig,
    DataTypeMapping,
    QueryResult,
    Row,
    TableSchema,
)
from .values import normalize_type_name

logger = logging.getLogger(__name__)


class DatabaseAdapter(ABC):
    """Abstract base class for database adapters.

    Implementations must provide methods for:
    - Connecting to and disconnecting from the database
    - Introspecting schemas into ``TableSchema`` snapshots
    - Reading a table page by page in a stable order
    - Writing rows inside a transaction
    - Declaring default data type behavior and SQL quoting rules

    The adapter is a scoped resource: ``async with adapter:`` connects and
    always disconnects, including when the body raises.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        events: Optional[EventEmitter] = None,
        default_schema: str = "public",
    ) -> None:
        self.config = config
        self.events = events or EventEmitter()
        self.default_schema = default_schema
        self._connected = False

    @property
    @abstractmethod
    def adapter_type(self) -> str:
        """Return the adapter type identifier (e.g., 'vertica', 'postgresql')."""
        pass

    @property
    def is_connected(self) -> bool:
        return self._connected

    # Connection lifecycle

    @abstractmethod
    async def connect(self) -> None:
        """Establish the connection used for the adapter's whole lifetime.

        Raises:
            AdapterConnectionError: If the database cannot be reached
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Release connection resources. Safe to call when not connected."""
        pass

    @abstractmethod
    async def test_connection(self) -> bool:
        """Check the connection with a trivial query. Never raises.

        Returns:
            True if the database answered
        """
        pass

    # Schema operations

    @abstractmethod
    async def get_schemas(self) -> list[str]:
        """List user schemas, excluding system catalogs."""
        pass

    @abstractmethod
    async def get_tables(self, schema: Optional[str] = None) -> list[str]:
        """List base tables in a schema."""
        pass

    @abstractmethod
    async def get_table_schema(
        self,
        table_name: str,
        schema: Optional[str] = None,
    ) -> TableSchema:
        """Introspect one table.

        Args:
            table_name: Table to describe
            schema: Namespace (defaults to the adapter's default schema)

        Returns:
            Normalized table description
        """
        pass

    async def introspect_database(self, schema: Optional[str] = None) -> list[TableSchema]:
        """Introspect every table of a schema, emitting progress per table."""
        schema = schema or self.default_schema
        tables = await self.get_tables(schema)
        schemas: list[TableSchema] = []

        for table_name in tables:
            schemas.append(await self.get_table_schema(table_name, schema))
            self.events.progress(
                "introspection",
                table=table_name,
                completed=len(schemas),
                total=len(tables),
            )

        return schemas

    # Data operations

    @abstractmethod
    async def execute_query(
        self,
        query: str,
        params: Optional[list[Any] | tuple[Any, ...]] = None,
    ) -> QueryResult:
        """Run a parameterized statement on the adapter's connection.

        Returns:
            Rows as dicts plus the affected/returned row count
        """
        pass

    @abstractmethod
    async def get_batch_data(
        self,
        table_name: str,
        offset: int,
        limit: int,
        schema: Optional[str] = None,
        order_by: Optional[list[str]] = None,
    ) -> list[Row]:
        """Read one page of a table.

        Pages must come back in the same stable order on every call within a
        run: by ``order_by`` when given, else the primary key, else every
        column positionally.

        Args:
            table_name: Table to read
            offset: Rows to skip
            limit: Maximum rows to return
            schema: Namespace
            order_by: Explicit ordering columns

        Returns:
            Rows as column-name keyed dicts
        """
        pass

    @abstractmethod
    async def get_row_count(self, table_name: str, schema: Optional[str] = None) -> int:
        """Point-in-time row count for a table."""
        pass

    async def insert_batch(
        self,
        table_name: str,
        rows: list[Row],
        schema: Optional[str] = None,
        strict: bool = False,
    ) -> BatchResult:
        """Insert rows in one transaction, isolating per-row failures."""
        return await BatchWriter(self, strict=strict).write(table_name, rows, schema)

    async def insert_row(self, table_name: str, row: Row, schema: Optional[str] = None) -> None:
        """Insert a single row built from that row's own column set."""
        columns = list(row.keys())
        query = self.build_insert_query(table_name, columns, schema)
        await self.execute_query(query, [row[column] for column in columns])

    # Transaction primitives used by the batch writer

    async def begin(self) -> None:
        await self.execute_query("BEGIN")

    async def commit(self) -> None:
        await self.execute_query("COMMIT")

    async def rollback(self) -> None:
        await self.execute_query("ROLLBACK")

    async def savepoint(self, name: str) -> None:
        await self.execute_query(f"SAVEPOINT {self.escape_identifier(name)}")

    async def rollback_to_savepoint(self, name: str) -> None:
        await self.execute_query(f"ROLLBACK TO SAVEPOINT {self.escape_identifier(name)}")

    async def release_savepoint(self, name: str) -> None:
        await self.execute_query(f"RELEASE SAVEPOINT {self.escape_identifier(name)}")

    # Data type operations

    @abstractmethod
    def get_data_type_mapping(self) -> list[DataTypeMapping]:
        """Default type rules this dialect declares."""
        pass

    def find_data_type_mapping(self, source_type: str) -> Optional[DataTypeMapping]:
        normalized = normalize_type_name(source_type)
        for mapping in self.get_data_type_mapping():
            if normalize_type_name(mapping.source_type) == normalized:
                return mapping
        return None

    def map_data_type(self, source_type: str) -> str:
        """Target type for a source type; unmapped types pass through."""
        mapping = self.find_data_type_mapping(source_type)
        return mapping.target_type if mapping else source_type

    @abstractmethod
    def transform_value(self, value: Any, source_type: str, target_type: str) -> Any:
        """Dialect-specific value conversion used when no configured rule exists."""
        pass

    # SQL helpers

    @abstractmethod
    def escape_identifier(self, identifier: str) -> str:
        pass

    @abstractmethod
    def escape_literal(self, literal: str) -> str:
        pass

    def qualified_name(self, table_name: str, schema: Optional[str] = None) -> str:
        schema = schema or self.default_schema
        return f"{self.escape_identifier(schema)}.{self.escape_identifier(table_name)}"

    @abstractmethod
    def build_insert_query(
        self,
        table_name: str,
        columns: list[str],
        schema: Optional[str] = None,
    ) -> str:
        pass

    # Error classification

    def is_connection_error(self, error: BaseException) -> bool:
        """True for failures that invalidate the connection, not just one row."""
        return isinstance(error, (ConnectionError, TimeoutError, OSError))

    def is_timeout_error(self, error: BaseException) -> bool:
        return isinstance(error, TimeoutError)

    async def __aenter__(self) -> "DatabaseAdapter":
        """Async context manager entry: connect."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit: always disconnect."""
        await self.disconnect()
