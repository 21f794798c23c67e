"""Vertica adapter, used as the migration source.

vertica-python is a synchronous DB-API driver, so every call on the
connection runs in a worker thread via ``asyncio.to_thread``. Calls on one
adapter are awaited one at a time and never overlap on the connection.
"""

import asyncio
import logging
from typing import Any, Optional

import vertica_python
from vertica_python import errors as vertica_errors

from ..database_adapter import DatabaseAdapter
from ..errors import AdapterConnectionError
from ..events import EventEmitter
from ..introspection import (
    first_value,
    group_foreign_keys,
    group_indexes,
    map_constraint_type,
    normalize_rows,
    parse_bool,
    parse_count,
)
from ..models import (
    ColumnDefinition,
    ConnectionConfig,
    ConstraintDefinition,
    DataTypeMapping,
    QueryResult,
    ReferentialAction,
    Row,
    TableSchema,
)
from ..values import normalize_type_name

logger = logging.getLogger(__name__)

SYSTEM_SCHEMAS = ("v_catalog", "v_monitor", "v_internal", "v_func", "v_txtindex")

# Sqlstate Vertica reports when RUNTIMECAP cancels a statement
QUERY_CANCELED_SQLSTATE = "57014"

VERTICA_TYPE_MAPPINGS: list[DataTypeMapping] = [
    DataTypeMapping(source_type="VARCHAR", target_type="VARCHAR"),
    DataTypeMapping(source_type="CHAR", target_type="CHAR"),
    DataTypeMapping(source_type="INTEGER", target_type="INTEGER"),
    DataTypeMapping(source_type="BIGINT", target_type="BIGINT"),
    DataTypeMapping(source_type="NUMERIC", target_type="DECIMAL"),
    DataTypeMapping(source_type="FLOAT", target_type="REAL"),
    DataTypeMapping(source_type="DOUBLE PRECISION", target_type="DOUBLE PRECISION"),
    DataTypeMapping(source_type="TIMESTAMP", target_type="TIMESTAMP"),
    DataTypeMapping(source_type="TIMESTAMPTZ", target_type="TIMESTAMP WITH TIME ZONE"),
    DataTypeMapping(source_type="DATE", target_type="DATE"),
    DataTypeMapping(source_type="TIME", target_type="TIME"),
    DataTypeMapping(source_type="BOOLEAN", target_type="BOOLEAN"),
    DataTypeMapping(source_type="BINARY", target_type="BYTEA", requires_transformation=True),
    DataTypeMapping(source_type="VARBINARY", target_type="BYTEA", requires_transformation=True),
    DataTypeMapping(source_type="LONG VARCHAR", target_type="TEXT"),
    DataTypeMapping(source_type="LONG VARBINARY", target_type="BYTEA", requires_transformation=True),
]

BINARY_SOURCE_TYPES = {"binary", "varbinary", "long varbinary"}

COLUMNS_QUERY = """
    SELECT
        column_name,
        data_type,
        is_nullable,
        column_default,
        character_maximum_length,
        numeric_precision,
        numeric_scale,
        is_identity AS is_auto_increment,
        false AS is_unique
    FROM v_catalog.columns
    WHERE table_name = %s AND table_schema = %s
    ORDER BY ordinal_position
"""

PRIMARY_KEYS_QUERY = """
    SELECT column_name
    FROM v_catalog.primary_keys
    WHERE table_name = %s AND table_schema = %s
    ORDER BY ordinal_position
"""

FOREIGN_KEYS_QUERY = """
    SELECT
        constraint_name,
        column_name,
        reference_table_name AS referenced_table,
        reference_column_name AS referenced_column
    FROM v_catalog.foreign_keys
    WHERE table_name = %s AND table_schema = %s
    ORDER BY constraint_name, ordinal_position
"""

# Vertica has no secondary indexes; unique constraints stand in for them
INDEXES_QUERY = """
    SELECT
        tc.constraint_name AS index_name,
        cc.column_name,
        true AS is_unique
    FROM v_catalog.table_constraints tc
    JOIN v_catalog.constraint_columns cc ON tc.constraint_id = cc.constraint_id
    JOIN v_catalog.tables t ON tc.table_id = t.table_id
    WHERE t.table_name = %s AND t.table_schema = %s AND tc.constraint_type = 'u'
    ORDER BY tc.constraint_name, cc.column_name
"""

CONSTRAINTS_QUERY = """
    SELECT
        tc.constraint_name,
        tc.constraint_type
    FROM v_catalog.table_constraints tc
    JOIN v_catalog.tables t ON tc.table_id = t.table_id
    WHERE t.table_name = %s AND t.table_schema = %s
"""


class VerticaAdapter(DatabaseAdapter):
    """Vertica adapter on vertica-python."""

    def __init__(
        self,
        config: ConnectionConfig,
        events: Optional[EventEmitter] = None,
        default_schema: str = "public",
    ) -> None:
        super().__init__(config, events, default_schema)
        self._conn: Optional[Any] = None
        self._order_cache: dict[tuple[str, str], list[str]] = {}

    @property
    def adapter_type(self) -> str:
        return "vertica"

    def build_connection_info(self) -> dict[str, Any]:
        config = self.config
        info: dict[str, Any] = {
            "host": config.host,
            "port": config.port,
            "database": config.database,
            "user": config.username,
            "password": config.password,
            "ssl": config.ssl,
            "connection_timeout": config.connection_timeout,
            "autocommit": False,
        }
        info.update(config.extra_params)
        return info

    async def connect(self) -> None:
        """Open the connection and cap statement run time for the session.

        Raises:
            AdapterConnectionError: If the server cannot be reached
        """
        if self._connected:
            return

        try:
            self._conn = await asyncio.to_thread(vertica_python.connect, **self.build_connection_info())
            await self.execute_query(
                f"SET SESSION RUNTIMECAP {self.escape_literal(f'{int(self.config.query_timeout)} seconds')}"
            )
        except Exception as e:
            logger.error(f"Failed to connect to Vertica: {e}")
            self.events.error("connection_failed", adapter=self.adapter_type, error=str(e))
            await self._close()
            raise AdapterConnectionError(f"Vertica connection failed: {e}") from e

        self._connected = True
        self.events.info("connected", adapter=self.adapter_type, database=self.config.database)
        logger.info(
            "vertica_connected",
            extra={
                "host": self.config.host,
                "database": self.config.database,
            },
        )

    async def disconnect(self) -> None:
        was_connected = self._connected
        self._connected = False
        await self._close()
        self._order_cache.clear()

        if was_connected:
            self.events.info("disconnected", adapter=self.adapter_type)
            logger.info("vertica_disconnected", extra={"database": self.config.database})

    async def _close(self) -> None:
        if self._conn is None:
            return
        try:
            await asyncio.to_thread(self._conn.close)
        except Exception as e:
            logger.warning(f"Error closing Vertica connection: {e}")
        finally:
            self._conn = None

    async def test_connection(self) -> bool:
        if not self._conn:
            return False

        try:
            result = await self.execute_query("SELECT 1 AS test")
            return bool(result.rows)
        except Exception as e:
            self.events.error("connection_test_failed", adapter=self.adapter_type, error=str(e))
            return False

    def _execute(self, query: str, params: Optional[list[Any] | tuple[Any, ...]]) -> QueryResult:
        cursor = self._conn.cursor()
        try:
            if params:
                cursor.execute(query, list(params))
            else:
                cursor.execute(query)

            if not cursor.description:
                return QueryResult(rows=[], row_count=max(cursor.rowcount, 0), fields=[])

            fields = [column[0] for column in cursor.description]
            rows = normalize_rows(cursor.fetchall(), fields)
            return QueryResult(rows=rows, row_count=len(rows), fields=fields)
        finally:
            cursor.close()

    async def execute_query(
        self,
        query: str,
        params: Optional[list[Any] | tuple[Any, ...]] = None,
    ) -> QueryResult:
        if not self._conn:
            raise AdapterConnectionError("Not connected to Vertica")
        return await asyncio.to_thread(self._execute, query, params)

    async def begin(self) -> None:
        # Vertica opens a transaction implicitly with the first statement
        return None

    async def commit(self) -> None:
        await asyncio.to_thread(self._conn.commit)

    async def rollback(self) -> None:
        await asyncio.to_thread(self._conn.rollback)

    async def get_schemas(self) -> list[str]:
        result = await self.execute_query(
            """
            SELECT schema_name
            FROM v_catalog.schemata
            ORDER BY schema_name
            """
        )
        return [row["schema_name"] for row in result.rows if row["schema_name"] not in SYSTEM_SCHEMAS]

    async def get_tables(self, schema: Optional[str] = None) -> list[str]:
        result = await self.execute_query(
            """
            SELECT table_name
            FROM v_catalog.tables
            WHERE table_schema = %s
            ORDER BY table_name
            """,
            [schema or self.default_schema],
        )
        return [row["table_name"] for row in result.rows]

    async def get_table_schema(
        self,
        table_name: str,
        schema: Optional[str] = None,
    ) -> TableSchema:
        schema = schema or self.default_schema
        params = [table_name, schema]

        columns = await self.execute_query(COLUMNS_QUERY, params)
        primary_keys = await self.execute_query(PRIMARY_KEYS_QUERY, params)
        foreign_keys = await self.execute_query(FOREIGN_KEYS_QUERY, params)
        indexes = await self.execute_query(INDEXES_QUERY, params)
        constraints = await self.execute_query(CONSTRAINTS_QUERY, params)

        return TableSchema(
            name=table_name,
            schema_name=schema,
            columns=[
                ColumnDefinition(
                    name=row["column_name"],
                    data_type=row["data_type"],
                    nullable=parse_bool(row["is_nullable"]),
                    default_value=row.get("column_default"),
                    max_length=row.get("character_maximum_length"),
                    precision=row.get("numeric_precision"),
                    scale=row.get("numeric_scale"),
                    is_auto_increment=parse_bool(row.get("is_auto_increment")),
                    is_unique=parse_bool(row.get("is_unique")),
                )
                for row in columns.rows
            ],
            primary_keys=[row["column_name"] for row in primary_keys.rows],
            # Vertica does not record referential actions
            foreign_keys=group_foreign_keys(foreign_keys.rows, default_action=ReferentialAction.RESTRICT),
            indexes=group_indexes(indexes.rows),
            constraints=[
                ConstraintDefinition(
                    name=row["constraint_name"],
                    type=map_constraint_type(row["constraint_type"]),
                )
                for row in constraints.rows
            ],
        )

    async def _stable_order(self, table_name: str, schema: str) -> list[str]:
        key = (schema, table_name)
        if key not in self._order_cache:
            params = [table_name, schema]
            result = await self.execute_query(PRIMARY_KEYS_QUERY, params)
            columns = [row["column_name"] for row in result.rows]
            if not columns:
                result = await self.execute_query(
                    """
                    SELECT column_name
                    FROM v_catalog.columns
                    WHERE table_name = %s AND table_schema = %s
                    ORDER BY ordinal_position
                    """,
                    params,
                )
                columns = [row["column_name"] for row in result.rows]
            self._order_cache[key] = columns
        return self._order_cache[key]

    async def get_batch_data(
        self,
        table_name: str,
        offset: int,
        limit: int,
        schema: Optional[str] = None,
        order_by: Optional[list[str]] = None,
    ) -> list[Row]:
        schema = schema or self.default_schema
        columns = order_by or await self._stable_order(table_name, schema)

        query = f"SELECT * FROM {self.qualified_name(table_name, schema)}"
        if columns:
            query += " ORDER BY " + ", ".join(self.escape_identifier(column) for column in columns)
        query += " LIMIT %s OFFSET %s"

        result = await self.execute_query(query, [int(limit), int(offset)])
        return result.rows

    async def get_row_count(self, table_name: str, schema: Optional[str] = None) -> int:
        result = await self.execute_query(
            f"SELECT COUNT(*) AS count FROM {self.qualified_name(table_name, schema)}"
        )
        if not result.rows:
            logger.warning("row_count_empty", extra={"table": table_name})
            return 0
        return parse_count(first_value(result.rows[0]))

    def get_data_type_mapping(self) -> list[DataTypeMapping]:
        return VERTICA_TYPE_MAPPINGS

    def transform_value(self, value: Any, source_type: str, target_type: str) -> Any:
        if value is None:
            return None

        source = normalize_type_name(source_type)
        if source in BINARY_SOURCE_TYPES:
            if isinstance(value, (bytes, bytearray, memoryview)):
                return bytes(value)
            if isinstance(value, str) and value.startswith("\\x"):
                return bytes.fromhex(value[2:])
            return value
        if source in ("boolean", "bool") and isinstance(value, str):
            return value.strip().lower() in ("true", "t", "1")
        return value

    def escape_identifier(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def escape_literal(self, literal: str) -> str:
        return "'" + str(literal).replace("'", "''") + "'"

    def build_insert_query(
        self,
        table_name: str,
        columns: list[str],
        schema: Optional[str] = None,
    ) -> str:
        column_list = ", ".join(self.escape_identifier(column) for column in columns)
        placeholders = ", ".join(["%s"] * len(columns))
        return f"INSERT INTO {self.qualified_name(table_name, schema)} ({column_list}) VALUES ({placeholders})"

    def is_connection_error(self, error: BaseException) -> bool:
        if isinstance(error, (vertica_errors.ConnectionError, vertica_errors.TimedOutError)):
            return True
        return super().is_connection_error(error)

    def is_timeout_error(self, error: BaseException) -> bool:
        if isinstance(error, vertica_errors.TimedOutError):
            return True
        if getattr(error, "sqlstate", None) == QUERY_CANCELED_SQLSTATE:
            return True
        return super().is_timeout_error(error)
