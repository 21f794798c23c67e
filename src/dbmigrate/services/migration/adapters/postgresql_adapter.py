"""PostgreSQL adapter, used as the migration target.

Uses the psycopg3 async driver. The adapter opens a small connection pool and
holds one connection from it for its whole lifetime: batch transactions and
savepoints must all run on the same session.
"""

import logging
from typing import Any, Optional

import psycopg
from psycopg.conninfo import make_conninfo
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from ..database_adapter import DatabaseAdapter
from ..errors import AdapterConnectionError
from ..events import EventEmitter
from ..introspection import (
    first_value,
    group_foreign_keys,
    group_indexes,
    map_constraint_type,
    parse_bool,
    parse_count,
)
from ..models import (
    ColumnDefinition,
    ConnectionConfig,
    ConstraintDefinition,
    DataTypeMapping,
    QueryResult,
    Row,
    TableSchema,
)
from ..values import normalize_type_name

logger = logging.getLogger(__name__)

SYSTEM_SCHEMAS = ("information_schema", "pg_catalog", "pg_toast")

# Declared default type rules (identity; PostgreSQL is the target dialect)
PG_TYPE_MAPPINGS: list[DataTypeMapping] = [
    DataTypeMapping(source_type="VARCHAR", target_type="VARCHAR"),
    DataTypeMapping(source_type="INTEGER", target_type="INTEGER"),
    DataTypeMapping(source_type="BIGINT", target_type="BIGINT"),
    DataTypeMapping(source_type="DECIMAL", target_type="DECIMAL"),
    DataTypeMapping(source_type="TIMESTAMP", target_type="TIMESTAMP"),
    DataTypeMapping(source_type="BOOLEAN", target_type="BOOLEAN"),
    DataTypeMapping(source_type="TEXT", target_type="TEXT"),
]

COLUMNS_QUERY = """
    SELECT
        c.column_name,
        c.data_type,
        c.is_nullable,
        c.column_default,
        c.character_maximum_length,
        c.numeric_precision,
        c.numeric_scale,
        COALESCE(c.column_default LIKE 'nextval%%', false)
            OR c.is_identity = 'YES' AS is_auto_increment,
        EXISTS (
            SELECT 1
            FROM information_schema.table_constraints tc
            JOIN information_schema.key_column_usage kcu
                ON tc.constraint_name = kcu.constraint_name
                AND tc.table_schema = kcu.table_schema
            WHERE tc.constraint_type = 'UNIQUE'
              AND tc.table_schema = c.table_schema
              AND tc.table_name = c.table_name
              AND kcu.column_name = c.column_name
        ) AS is_unique
    FROM information_schema.columns c
    WHERE c.table_name = %s AND c.table_schema = %s
    ORDER BY c.ordinal_position
"""

PRIMARY_KEYS_QUERY = """
    SELECT kcu.column_name
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
        ON tc.constraint_name = kcu.constraint_name
        AND tc.table_schema = kcu.table_schema
    WHERE tc.table_name = %s
      AND tc.table_schema = %s
      AND tc.constraint_type = 'PRIMARY KEY'
    ORDER BY kcu.ordinal_position
"""

FOREIGN_KEYS_QUERY = """
    SELECT
        tc.constraint_name,
        kcu.column_name,
        ccu.table_name AS referenced_table,
        ccu.column_name AS referenced_column,
        rc.delete_rule,
        rc.update_rule
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
        ON tc.constraint_name = kcu.constraint_name
        AND tc.table_schema = kcu.table_schema
    JOIN information_schema.constraint_column_usage ccu
        ON ccu.constraint_name = tc.constraint_name
        AND ccu.constraint_schema = tc.table_schema
    JOIN information_schema.referential_constraints rc
        ON tc.constraint_name = rc.constraint_name
        AND rc.constraint_schema = tc.table_schema
    WHERE tc.table_name = %s
      AND tc.table_schema = %s
      AND tc.constraint_type = 'FOREIGN KEY'
    ORDER BY tc.constraint_name, kcu.ordinal_position
"""

INDEXES_QUERY = """
    SELECT
        i.relname AS index_name,
        a.attname AS column_name,
        ix.indisunique AS is_unique,
        am.amname AS index_type
    FROM pg_class t
    JOIN pg_index ix ON t.oid = ix.indrelid
    JOIN pg_class i ON i.oid = ix.indexrelid
    JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY(ix.indkey)
    JOIN pg_namespace n ON n.oid = t.relnamespace
    JOIN pg_am am ON i.relam = am.oid
    WHERE t.relname = %s AND n.nspname = %s
    ORDER BY i.relname, a.attnum
"""

CONSTRAINTS_QUERY = """
    SELECT
        tc.constraint_name,
        tc.constraint_type,
        cc.check_clause
    FROM information_schema.table_constraints tc
    LEFT JOIN information_schema.check_constraints cc
        ON tc.constraint_name = cc.constraint_name
        AND tc.constraint_schema = cc.constraint_schema
    WHERE tc.table_name = %s AND tc.table_schema = %s
"""


class PostgreSQLAdapter(DatabaseAdapter):
    """PostgreSQL adapter on psycopg3.

    Runs in autocommit mode; the batch writer's BEGIN / SAVEPOINT / COMMIT
    statements delimit transactions explicitly.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        events: Optional[EventEmitter] = None,
        default_schema: str = "public",
    ) -> None:
        super().__init__(config, events, default_schema)
        self._pool: Optional[AsyncConnectionPool] = None
        self._conn: Optional[psycopg.AsyncConnection] = None
        self._order_cache: dict[tuple[str, str], list[str]] = {}

    @property
    def adapter_type(self) -> str:
        return "postgresql"

    def build_conninfo(self) -> str:
        """libpq connection string including connect and statement timeouts."""
        config = self.config
        params: dict[str, Any] = {
            "host": config.host,
            "port": config.port,
            "dbname": config.database,
            "user": config.username,
            "password": config.password,
            "sslmode": "require" if config.ssl else "prefer",
            "connect_timeout": max(1, int(config.connection_timeout)),
            "options": f"-c statement_timeout={int(config.query_timeout * 1000)}",
        }
        params.update(config.extra_params)
        return make_conninfo(**params)

    async def connect(self) -> None:
        """Open the pool and take the adapter's session connection from it.

        Raises:
            AdapterConnectionError: If the server cannot be reached
        """
        if self._connected:
            return

        try:
            self._pool = AsyncConnectionPool(
                conninfo=self.build_conninfo(),
                min_size=1,
                max_size=2,
                kwargs={"row_factory": dict_row, "autocommit": True},
                open=False,
            )
            await self._pool.open(wait=True, timeout=self.config.connection_timeout)
            self._conn = await self._pool.getconn()
            await self._conn.execute("SELECT 1")

        except Exception as e:
            logger.error(f"Failed to connect to PostgreSQL: {e}")
            self.events.error("connection_failed", adapter=self.adapter_type, error=str(e))
            await self._close_pool()
            raise AdapterConnectionError(f"PostgreSQL connection failed: {e}") from e

        self._connected = True
        self.events.info("connected", adapter=self.adapter_type, database=self.config.database)
        logger.info(
            "postgresql_connected",
            extra={
                "host": self.config.host,
                "database": self.config.database,
            },
        )

    async def disconnect(self) -> None:
        """Return the session connection and close the pool."""
        was_connected = self._connected
        self._connected = False
        await self._close_pool()
        self._order_cache.clear()

        if was_connected:
            self.events.info("disconnected", adapter=self.adapter_type)
            logger.info("postgresql_disconnected", extra={"database": self.config.database})

    async def _close_pool(self) -> None:
        if self._pool is None:
            return
        try:
            if self._conn is not None:
                await self._pool.putconn(self._conn)
            await self._pool.close()
        except Exception as e:
            logger.warning(f"Error closing PostgreSQL pool: {e}")
        finally:
            self._conn = None
            self._pool = None

    async def test_connection(self) -> bool:
        """Test if the session connection is healthy."""
        if not self._conn:
            return False

        try:
            await self._conn.execute("SELECT 1")
            return True
        except Exception as e:
            self.events.error("connection_test_failed", adapter=self.adapter_type, error=str(e))
            return False

    async def execute_query(
        self,
        query: str,
        params: Optional[list[Any] | tuple[Any, ...]] = None,
    ) -> QueryResult:
        if not self._conn:
            raise AdapterConnectionError("Not connected to PostgreSQL")

        async with self._conn.cursor() as cur:
            await cur.execute(query, params)
            if cur.description is None:
                return QueryResult(rows=[], row_count=max(cur.rowcount, 0), fields=[])
            rows = await cur.fetchall()
            return QueryResult(
                rows=[dict(row) for row in rows],
                row_count=len(rows),
                fields=[column.name for column in cur.description],
            )

    async def get_schemas(self) -> list[str]:
        result = await self.execute_query(
            """
            SELECT schema_name
            FROM information_schema.schemata
            ORDER BY schema_name
            """
        )
        return [
            row["schema_name"] for row in result.rows
            if row["schema_name"] not in SYSTEM_SCHEMAS
            and not row["schema_name"].startswith("pg_temp")
        ]

    async def get_tables(self, schema: Optional[str] = None) -> list[str]:
        result = await self.execute_query(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = %s AND table_type = 'BASE TABLE'
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
            foreign_keys=group_foreign_keys(foreign_keys.rows),
            indexes=group_indexes(indexes.rows),
            constraints=[
                ConstraintDefinition(
                    name=row["constraint_name"],
                    type=map_constraint_type(row["constraint_type"]),
                    definition=row.get("check_clause") or "",
                )
                for row in constraints.rows
            ],
        )

    async def _stable_order(self, table_name: str, schema: str) -> list[str]:
        """Primary key columns, else every column in ordinal order."""
        key = (schema, table_name)
        if key not in self._order_cache:
            params = [table_name, schema]
            result = await self.execute_query(PRIMARY_KEYS_QUERY, params)
            columns = [row["column_name"] for row in result.rows]
            if not columns:
                result = await self.execute_query(
                    """
                    SELECT column_name
                    FROM information_schema.columns
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

        result = await self.execute_query(query, [limit, offset])
        return result.rows

    async def get_row_count(self, table_name: str, schema: Optional[str] = None) -> int:
        result = await self.execute_query(
            f"SELECT COUNT(*) AS count FROM {self.qualified_name(table_name, schema)}"
        )
        if not result.rows:
            return 0
        return parse_count(first_value(result.rows[0]))

    def get_data_type_mapping(self) -> list[DataTypeMapping]:
        return PG_TYPE_MAPPINGS

    def transform_value(self, value: Any, source_type: str, target_type: str) -> Any:
        if value is None:
            return None

        target = normalize_type_name(target_type)
        if target in ("boolean", "bool"):
            if isinstance(value, str):
                return value.strip().lower() in ("true", "1")
            return bool(value)
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
        if isinstance(error, (psycopg.OperationalError, psycopg.InterfaceError)):
            return True
        return super().is_connection_error(error)

    def is_timeout_error(self, error: BaseException) -> bool:
        if isinstance(error, psycopg.errors.QueryCanceled):
            return True
        return super().is_timeout_error(error)
