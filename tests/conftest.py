"""
Shared fixtures for the migration test suite.

``FakeAdapter`` is an in-memory DatabaseAdapter: tables are lists of dicts,
transactions stage inserts until commit and savepoints truncate the stage.
Failures (unique violations, lost connections, read timeouts, unreachable
servers) are injected per test.
"""

from typing import Any, Optional

import pytest

from dbmigrate.services.migration.database_adapter import DatabaseAdapter
from dbmigrate.services.migration.errors import AdapterConnectionError
from dbmigrate.services.migration.events import EventEmitter, EventRecorder
from dbmigrate.services.migration.models import (
    ColumnDefinition,
    ConnectionConfig,
    DataTypeMapping,
    ForeignKeyDefinition,
    QueryResult,
    Row,
    TableSchema,
)


class FakeAdapter(DatabaseAdapter):
    """In-memory adapter with injectable failures."""

    def __init__(
        self,
        name: str = "fake",
        schemas: Optional[list[TableSchema]] = None,
        data: Optional[dict[str, list[Row]]] = None,
        events: Optional[EventEmitter] = None,
        type_mappings: Optional[list[DataTypeMapping]] = None,
    ) -> None:
        super().__init__(
            ConnectionConfig(host="localhost", port=1, database=name, username="test"),
            events,
        )
        self.name = name
        self.schemas: dict[str, TableSchema] = {schema.name.lower(): schema for schema in schemas or []}
        self.data: dict[str, list[Row]] = {key.lower(): rows for key, rows in (data or {}).items()}
        self.type_mappings = type_mappings or []

        # table -> column whose values must be unique
        self.unique_columns: dict[str, str] = {}
        # 1-based insert call that raises a connection error
        self.fail_connection_on_insert: Optional[int] = None
        self.timeout_offsets: set[int] = set()
        self.fail_connect = False

        self.insert_calls = 0
        self.batch_calls = 0
        self.read_calls: list[tuple[int, int]] = []
        self.order_by_seen: list[Optional[list[str]]] = []
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.queries: list[str] = []

        self._staged: Optional[list[tuple[str, Row]]] = None
        self._savepoints: dict[str, int] = {}

    @property
    def adapter_type(self) -> str:
        return "fake"

    async def connect(self) -> None:
        if self.fail_connect:
            raise AdapterConnectionError(f"{self.name} unreachable")
        self.connect_calls += 1
        self._connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    async def test_connection(self) -> bool:
        return self._connected

    async def get_schemas(self) -> list[str]:
        return ["public"]

    async def get_tables(self, schema: Optional[str] = None) -> list[str]:
        return sorted(self.schemas)

    async def get_table_schema(self, table_name: str, schema: Optional[str] = None) -> TableSchema:
        return self.schemas.get(table_name.lower()) or TableSchema(name=table_name)

    async def execute_query(self, query: str, params: Any = None) -> QueryResult:
        self.queries.append(query)
        return QueryResult()

    async def get_batch_data(
        self,
        table_name: str,
        offset: int,
        limit: int,
        schema: Optional[str] = None,
        order_by: Optional[list[str]] = None,
    ) -> list[Row]:
        self.read_calls.append((offset, limit))
        self.order_by_seen.append(order_by)
        if offset in self.timeout_offsets:
            raise TimeoutError(f"read at offset {offset} timed out")
        # Storage order is the stable order
        rows = self.data.get(table_name.lower(), [])
        return [dict(row) for row in rows[offset:offset + limit]]

    async def get_row_count(self, table_name: str, schema: Optional[str] = None) -> int:
        return len(self.data.get(table_name.lower(), []))

    async def insert_batch(self, table_name, rows, schema=None, strict=False):
        self.batch_calls += 1
        return await super().insert_batch(table_name, rows, schema, strict)

    async def insert_row(self, table_name: str, row: Row, schema: Optional[str] = None) -> None:
        self.insert_calls += 1
        if self.fail_connection_on_insert == self.insert_calls:
            raise ConnectionError("connection lost")

        key = table_name.lower()
        column = self.unique_columns.get(key)
        if column is not None:
            existing = [stored[column] for stored in self.data.get(key, [])]
            existing += [stored[column] for table, stored in self._staged or [] if table == key]
            if row.get(column) in existing:
                raise ValueError(f"duplicate key value violates unique constraint on {column}")

        if self._staged is None:
            self.data.setdefault(key, []).append(dict(row))
        else:
            self._staged.append((key, dict(row)))

    async def begin(self) -> None:
        self._staged = []
        self._savepoints = {}

    async def commit(self) -> None:
        for table, row in self._staged or []:
            self.data.setdefault(table, []).append(row)
        self._staged = None

    async def rollback(self) -> None:
        self._staged = None

    async def savepoint(self, name: str) -> None:
        self._savepoints[name] = len(self._staged)

    async def rollback_to_savepoint(self, name: str) -> None:
        del self._staged[self._savepoints.pop(name):]

    async def release_savepoint(self, name: str) -> None:
        self._savepoints.pop(name, None)

    def get_data_type_mapping(self) -> list[DataTypeMapping]:
        return self.type_mappings

    def transform_value(self, value: Any, source_type: str, target_type: str) -> Any:
        return value

    def escape_identifier(self, identifier: str) -> str:
        return f'"{identifier}"'

    def escape_literal(self, literal: str) -> str:
        return f"'{literal}'"

    def build_insert_query(self, table_name: str, columns: list[str], schema: Optional[str] = None) -> str:
        placeholders = ", ".join(["%s"] * len(columns))
        return f"INSERT INTO {self.qualified_name(table_name, schema)} ({', '.join(columns)}) VALUES ({placeholders})"


def column(name: str, data_type: str = "integer", nullable: bool = True, **kwargs: Any) -> ColumnDefinition:
    return ColumnDefinition(name=name, data_type=data_type, nullable=nullable, **kwargs)


def items_source_schema() -> TableSchema:
    return TableSchema(
        name="ITEMS",
        columns=[
            column("ID", "INTEGER", nullable=False),
            column("NAME", "VARCHAR(100)"),
            column("IS_VALID", "INTEGER"),
        ],
        primary_keys=["ID"],
    )


def items_target_schema() -> TableSchema:
    return TableSchema(
        name="items",
        schema_name="public",
        columns=[
            column("id", "integer", nullable=False),
            column("name", "character varying", max_length=100),
            column("is_valid", "boolean"),
        ],
        primary_keys=["id"],
    )


def category_source_schema() -> TableSchema:
    return TableSchema(
        name="CATEGORY",
        columns=[
            column("ID", "INTEGER", nullable=False),
            column("PARENT_ID", "INTEGER"),
            column("NAME", "VARCHAR(50)"),
        ],
        primary_keys=["ID"],
    )


def category_target_schema() -> TableSchema:
    return TableSchema(
        name="category",
        schema_name="public",
        columns=[
            column("id", "integer", nullable=False),
            column("parent_id", "integer"),
            column("name", "character varying", max_length=50),
        ],
        primary_keys=["id"],
        foreign_keys=[
            ForeignKeyDefinition(
                name="fk_category_parent",
                columns=["parent_id"],
                referenced_table="category",
                referenced_columns=["id"],
            )
        ],
    )


def item_rows(count: int) -> list[Row]:
    return [{"ID": i, "NAME": f"item {i}", "IS_VALID": i % 2} for i in range(1, count + 1)]


@pytest.fixture
def events():
    return EventEmitter()


@pytest.fixture
def recorder(events):
    recorder = EventRecorder()
    events.subscribe(recorder)
    return recorder


@pytest.fixture
def source(events):
    return FakeAdapter(
        "source",
        schemas=[items_source_schema(), category_source_schema()],
        data={"ITEMS": item_rows(25)},
        events=events,
    )


@pytest.fixture
def target(events):
    return FakeAdapter(
        "target",
        schemas=[items_target_schema(), category_target_schema()],
        events=events,
    )
