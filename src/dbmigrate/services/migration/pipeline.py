"""Batch pipeline: read a source table page by page, transform, write.

One pipeline migrates one table between two connected adapters. Pages are
read, transformed and written strictly one after another; cancellation is
checked between pages so no batch is ever left without a commit or
rollback.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from .column_mapper import ColumnMapper, TypeMappingRegistry, DEFAULT_CODE_SENTINEL
from .database_adapter import DatabaseAdapter
from .errors import BatchFailedError, TransformationError
from .events import EventEmitter
from .hierarchy import OrderingStrategy, order_rows
from .introspection import SchemaIntrospector
from .models import (
    BatchResult,
    Row,
    RowError,
    TableMappingConfig,
    TableMigrationResult,
    TableSchema,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000


class BatchPipeline:
    """Moves one table from a source adapter to a target adapter."""

    def __init__(
        self,
        source: DatabaseAdapter,
        target: DatabaseAdapter,
        table_mappings: Optional[list[TableMappingConfig]] = None,
        type_registry: Optional[TypeMappingRegistry] = None,
        events: Optional[EventEmitter] = None,
        cancel_event: Optional[asyncio.Event] = None,
        fail_fast: bool = False,
        strict_batches: bool = False,
        null_code_sentinel: str = DEFAULT_CODE_SENTINEL,
        ordering_strategy: OrderingStrategy | str = OrderingStrategy.TOPOLOGICAL,
    ) -> None:
        """Initialize batch pipeline.

        Args:
            source: Connected source adapter
            target: Connected target adapter
            table_mappings: Configured table mappings (looked up by source table)
            type_registry: Data type rules; defaults to the source adapter's
            events: Observer for progress/error/info/diagnostic events
            cancel_event: Set to stop between batches
            fail_fast: Raise BatchFailedError after the first failed batch
            strict_batches: Roll back a whole batch on its first row error
            null_code_sentinel: Fallback literal for NOT NULL ``code`` columns
            ordering_strategy: How self-referencing rows are ordered
        """
        self.source = source
        self.target = target
        self.table_mappings = table_mappings or []
        self.type_registry = type_registry or TypeMappingRegistry(adapter=source)
        self.events = events or target.events
        self.cancel_event = cancel_event or asyncio.Event()
        self.fail_fast = fail_fast
        self.strict_batches = strict_batches
        self.null_code_sentinel = null_code_sentinel
        self.ordering_strategy = OrderingStrategy(ordering_strategy)

        self._reported_skips: set[tuple[str, str]] = set()

    def find_table_mapping(self, source_table: str, target_table: Optional[str] = None) -> TableMappingConfig:
        """Configured mapping for a source table, else a name-only mapping."""
        for mapping in self.table_mappings:
            if mapping.source_table.lower() == source_table.lower():
                return mapping
        return TableMappingConfig(
            source_table=source_table,
            target_table=target_table or source_table.lower(),
        )

    async def run(
        self,
        source_table: str,
        target_table: Optional[str] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        dry_run: bool = False,
        source_schema: Optional[str] = None,
        target_schema: Optional[str] = None,
        start_offset: int = 0,
    ) -> TableMigrationResult:
        """Migrate one table.

        Args:
            source_table: Table to read
            target_table: Table to write (mapping's target, else lower-cased source)
            batch_size: Rows per page and per write transaction
            dry_run: Only count rows and check schemas
            source_schema: Source namespace
            target_schema: Target namespace
            start_offset: Resume position; a multiple of ``batch_size``

        Returns:
            Totals for the table

        Raises:
            IntrospectionError: If either table cannot be described
            AdapterConnectionError: If a database is unreachable
            BatchFailedError: In fail-fast mode, after the first failed batch
        """
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if start_offset < 0 or start_offset % batch_size:
            raise ValueError(
                f"start_offset ({start_offset}) must be a non-negative multiple of batch_size ({batch_size})"
            )

        mapping = self.find_table_mapping(source_table, target_table)
        target_table = target_table or mapping.target_table
        source_schema = source_schema or mapping.source_schema
        target_schema = target_schema or mapping.target_schema

        result = TableMigrationResult(
            source_table=source_table,
            target_table=target_table,
            dry_run=dry_run,
        )

        self.events.info(
            "table_migration_started",
            source_table=source_table,
            target_table=target_table,
            dry_run=dry_run,
        )
        logger.info(
            "table_migration_started",
            extra={
                "source_table": source_table,
                "target_table": target_table,
                "batch_size": batch_size,
                "dry_run": dry_run,
            },
        )

        result.total_rows = await self.source.get_row_count(source_table, source_schema)

        target_definition = await SchemaIntrospector(self.target).get_table_schema(target_table, target_schema)
        source_definition = await SchemaIntrospector(self.source).get_table_schema(source_table, source_schema)

        mapper = ColumnMapper(
            mapping,
            target_definition,
            self.type_registry,
            null_code_sentinel=self.null_code_sentinel,
        )
        source_types = {column.name: column.data_type for column in source_definition.columns}

        for column in mapper.skipped_columns(source_definition.column_names()):
            self._report_skipped(result, column)

        if dry_run:
            return self._finish(result)

        order_by = mapping.order_by or source_definition.primary_keys or None

        if target_definition.self_referencing_keys():
            await self._run_hierarchical(
                result, mapper, source_types, target_definition,
                batch_size, source_schema, target_schema, start_offset, order_by,
            )
        else:
            await self._run_paged(
                result, mapper, source_types,
                batch_size, source_schema, target_schema, start_offset, order_by,
            )

        return self._finish(result)

    async def _run_paged(
        self,
        result: TableMigrationResult,
        mapper: ColumnMapper,
        source_types: dict[str, str],
        batch_size: int,
        source_schema: Optional[str],
        target_schema: Optional[str],
        offset: int,
        order_by: Optional[list[str]],
    ) -> None:
        while offset < result.total_rows:
            if self._cancelled(result, offset):
                return

            page = await self._read_page(result, batch_size, source_schema, offset, order_by)
            if page is None:
                offset += batch_size
                continue
            if not page:
                break

            rows, sources, transform_errors = self._transform_page(result, mapper, source_types, page, offset)
            written = await self.target.insert_batch(
                result.target_table,
                rows,
                target_schema,
                strict=self.strict_batches,
            )
            batch_result = self._resolve_batch(result, written, sources, transform_errors, offset)

            self.events.progress(
                "batch_completed",
                table=result.source_table,
                offset_start=offset,
                offset_end=offset + len(page),
                migrated_rows=result.migrated_rows,
                total_rows=result.total_rows,
            )

            self._check_fail_fast(result, batch_result, offset)
            offset += batch_size

    async def _run_hierarchical(
        self,
        result: TableMigrationResult,
        mapper: ColumnMapper,
        source_types: dict[str, str],
        target_definition: TableSchema,
        batch_size: int,
        source_schema: Optional[str],
        target_schema: Optional[str],
        offset: int,
        order_by: Optional[list[str]],
    ) -> None:
        """Read the whole table, order parents first, write as one unit."""
        start = offset
        rows: list[Row] = []
        sources: list[int] = []
        transform_errors: list[RowError] = []

        while offset < result.total_rows:
            if self._cancelled(result, offset):
                return

            page = await self._read_page(result, batch_size, source_schema, offset, order_by)
            if page is None:
                offset += batch_size
                continue
            if not page:
                break

            page_rows, page_sources, page_errors = self._transform_page(
                result, mapper, source_types, page, offset,
            )
            rows.extend(page_rows)
            sources.extend(index + offset - start for index in page_sources)
            transform_errors.extend(
                RowError(row_index=error.row_index + offset - start, message=error.message, column=error.column)
                for error in page_errors
            )
            offset += batch_size

        if self._cancelled(result, offset):
            return

        key = target_definition.self_referencing_keys()[0]
        ordered = order_rows(
            rows,
            parent_key_column=key.referenced_columns[0],
            foreign_key_column=key.columns[0],
            strategy=self.ordering_strategy,
        )
        position = {id(row): source for row, source in zip(rows, sources)}
        ordered_sources = [position[id(row)] for row in ordered]

        logger.info(
            "self_referencing_table_ordered",
            extra={
                "table": result.target_table,
                "rows": len(ordered),
                "foreign_key": key.name,
                "strategy": self.ordering_strategy.value,
            },
        )

        written = await self.target.insert_batch(
            result.target_table,
            ordered,
            target_schema,
            strict=self.strict_batches,
        )
        batch_result = self._resolve_batch(result, written, ordered_sources, transform_errors, start)

        self.events.progress(
            "batch_completed",
            table=result.source_table,
            offset_start=start,
            offset_end=offset,
            migrated_rows=result.migrated_rows,
            failed_rows=result.failed_rows,
            total_rows=result.total_rows,
        )

        self._check_fail_fast(result, batch_result, start)

    async def _read_page(
        self,
        result: TableMigrationResult,
        batch_size: int,
        source_schema: Optional[str],
        offset: int,
        order_by: Optional[list[str]],
    ) -> Optional[list[Row]]:
        """Fetch one page. Returns None when the read timed out."""
        try:
            return await self.source.get_batch_data(
                result.source_table,
                offset,
                batch_size,
                source_schema,
                order_by=order_by,
            )
        except Exception as e:
            if not self.source.is_timeout_error(e):
                raise

        lost = max(0, min(batch_size, result.total_rows - offset))
        message = f"Read timed out for rows {offset}-{offset + lost - 1}"
        result.failed_rows += lost
        result.errors.append(message)
        result.batches += 1

        self.events.error(
            "batch_read_timeout",
            table=result.source_table,
            offset=offset,
            rows=lost,
        )
        logger.error(
            "batch_read_timeout",
            extra={"table": result.source_table, "offset": offset, "rows": lost},
        )

        batch_result = BatchResult(
            success=False,
            errors=[RowError(row_index=index, message=message) for index in range(lost)],
        )
        self._check_fail_fast(result, batch_result, offset)
        return None

    def _transform_page(
        self,
        result: TableMigrationResult,
        mapper: ColumnMapper,
        source_types: dict[str, str],
        page: list[Row],
        offset: int,
    ) -> tuple[list[Row], list[int], list[RowError]]:
        """Transform a page, returning rows, their page indexes and failures."""
        rows: list[Row] = []
        sources: list[int] = []
        errors: list[RowError] = []

        for index, row in enumerate(page):
            try:
                mapped = mapper.transform_row(row, source_types)
                if not mapped.values:
                    raise TransformationError(
                        f"Row has no columns present in {result.target_table}"
                    )
            except TransformationError as e:
                errors.append(RowError(row_index=index, message=str(e), column=e.column))
                continue

            for column in mapped.skipped_columns:
                self._report_skipped(result, column)

            rows.append(mapped.values)
            sources.append(index)

        return rows, sources, errors

    def _resolve_batch(
        self,
        result: TableMigrationResult,
        written: BatchResult,
        sources: list[int],
        transform_errors: list[RowError],
        offset: int,
    ) -> BatchResult:
        """Fold transform and write failures into the table totals.

        Returns:
            The batch outcome with row indexes relative to the page
        """
        errors = list(transform_errors)
        errors.extend(
            RowError(row_index=sources[error.row_index], message=error.message, column=error.column)
            for error in written.errors
        )
        errors.sort(key=lambda error: error.row_index)

        result.batches += 1
        result.migrated_rows += written.processed_rows
        result.failed_rows += len(errors)
        result.errors.extend(f"Row {offset + error.row_index}: {error.message}" for error in errors)

        if errors:
            self.events.error(
                "batch_row_errors",
                table=result.source_table,
                offset=offset,
                failed_rows=len(errors),
            )

        return BatchResult(
            success=written.success and not transform_errors,
            processed_rows=written.processed_rows,
            errors=errors,
            duration=written.duration,
        )

    def _check_fail_fast(self, result: TableMigrationResult, batch_result: BatchResult, offset: int) -> None:
        if self.fail_fast and not batch_result.success:
            raise BatchFailedError(
                f"Batch at offset {offset} of {result.source_table} failed "
                f"with {len(batch_result.errors)} error(s)",
                batch_result,
                offset,
            )

    def _cancelled(self, result: TableMigrationResult, offset: int) -> bool:
        if not self.cancel_event.is_set():
            return False
        result.cancelled = True
        self.events.info(
            "table_migration_cancelled",
            table=result.source_table,
            offset=offset,
            migrated_rows=result.migrated_rows,
        )
        logger.info(
            "table_migration_cancelled",
            extra={"table": result.source_table, "offset": offset},
        )
        return True

    def _report_skipped(self, result: TableMigrationResult, column: str) -> None:
        """Diagnostic once per table and column for values with no target column."""
        key = (result.target_table.lower(), column.lower())
        if key in self._reported_skips:
            return
        self._reported_skips.add(key)
        result.skipped_columns.append(column)

        self.events.diagnostic(
            "column_skipped",
            source_table=result.source_table,
            target_table=result.target_table,
            column=column,
        )
        logger.warning(
            "column_skipped",
            extra={
                "source_table": result.source_table,
                "target_table": result.target_table,
                "column": column,
            },
        )

    def _finish(self, result: TableMigrationResult) -> TableMigrationResult:
        result.completed_at = datetime.now(timezone.utc)

        self.events.info(
            "table_migration_completed",
            source_table=result.source_table,
            target_table=result.target_table,
            total_rows=result.total_rows,
            migrated_rows=result.migrated_rows,
            failed_rows=result.failed_rows,
            cancelled=result.cancelled,
        )
        logger.info(
            "table_migration_completed",
            extra={
                "source_table": result.source_table,
                "target_table": result.target_table,
                "total_rows": result.total_rows,
                "migrated_rows": result.migrated_rows,
                "failed_rows": result.failed_rows,
                "duration_seconds": result.duration_seconds,
            },
        )
        return result
