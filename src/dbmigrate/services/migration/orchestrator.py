"""Migration orchestrator for Vertica to PostgreSQL table migrations.

Coordinates the migration process including:
- Opening a source and target adapter pair per table
- Running the batch pipeline for each configured table
- Bounded concurrency across tables
- Progress tracking and cancellation
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from pydantic import BaseModel, Field

from .adapters.factory import create_adapter
from .column_mapper import TypeMappingRegistry
from .database_adapter import DatabaseAdapter
from .errors import ConfigurationError, MigrationError
from .events import EventEmitter, EventKind, MigrationEvent
from .models import TableMigrationResult
from .pipeline import BatchPipeline

if TYPE_CHECKING:
    from ...config.settings import DatabaseSettings, MigrationSettings

logger = logging.getLogger(__name__)

AdapterFactory = Callable[["DatabaseSettings", EventEmitter], DatabaseAdapter]


class MigrationStatus(str, Enum):
    """Migration job status."""
    PENDING = "pending"
    CONNECTING = "connecting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TableProgress(BaseModel):
    """Progress tracking for a single table migration."""
    table_name: str
    target_table: Optional[str] = None
    total_rows: int = 0
    migrated_rows: int = 0
    failed_rows: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: MigrationStatus = MigrationStatus.PENDING
    errors: list[str] = Field(default_factory=list)


class MigrationProgress(BaseModel):
    """Overall migration progress."""
    job_id: str
    status: MigrationStatus = MigrationStatus.PENDING
    dry_run: bool = False
    tables: dict[str, TableProgress] = Field(default_factory=dict)
    total_rows: int = 0
    migrated_rows: int = 0
    failed_rows: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    errors: list[dict] = Field(default_factory=list)

    @property
    def progress_percent(self) -> float:
        """Get overall progress percentage."""
        if self.total_rows == 0:
            return 0.0
        return (self.migrated_rows / self.total_rows) * 100

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get migration duration in seconds."""
        if not self.started_at:
            return None
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    @property
    def failed_tables(self) -> list[str]:
        return [name for name, table in self.tables.items() if table.status == MigrationStatus.FAILED]


def default_adapter_factory(database: "DatabaseSettings", events: EventEmitter) -> DatabaseAdapter:
    """Build an adapter from database settings through the driver factory."""
    return create_adapter(
        database.type,
        database.to_connection_config(),
        events=events,
        default_schema=database.default_schema,
    )


class MigrationOrchestrator:
    """Orchestrates table migrations from the source to the target database.

    Each table runs in its own pipeline with its own adapter pair, so tables
    can migrate concurrently up to ``parallel_workers``.
    """

    def __init__(
        self,
        settings: "MigrationSettings",
        adapter_factory: Optional[AdapterFactory] = None,
        events: Optional[EventEmitter] = None,
        job_id: Optional[str] = None,
    ) -> None:
        """Initialize migration orchestrator.

        Args:
            settings: Validated migration settings
            adapter_factory: Builds an adapter from database settings
            events: Observer shared by adapters and pipelines
            job_id: Identifier for progress reporting
        """
        self.settings = settings
        self.adapter_factory = adapter_factory or default_adapter_factory
        self.events = events or EventEmitter()
        self.progress = MigrationProgress(job_id=job_id or str(uuid.uuid4()))
        self.results: dict[str, TableMigrationResult] = {}

        self._cancel_event = asyncio.Event()
        self._progress_callbacks: list[Callable[[MigrationProgress], Any]] = []

    def on_progress(self, callback: Callable[[MigrationProgress], Any]) -> None:
        """Register a callback for progress updates.

        Args:
            callback: Function to call with MigrationProgress
        """
        self._progress_callbacks.append(callback)

    def _emit_progress(self) -> None:
        """Emit progress update to all callbacks."""
        for callback in self._progress_callbacks:
            try:
                callback(self.progress)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _refresh_totals(self) -> None:
        """Job totals are the sum of the per-table counters."""
        tables = self.progress.tables.values()
        self.progress.total_rows = sum(table.total_rows for table in tables)
        self.progress.migrated_rows = sum(table.migrated_rows for table in tables)
        self.progress.failed_rows = sum(table.failed_rows for table in tables)

    def _adapters(self) -> tuple[DatabaseAdapter, DatabaseAdapter]:
        source = self.adapter_factory(self.settings.source, self.events)
        target = self.adapter_factory(self.settings.target, self.events)
        return source, target

    def _pipeline(self, source: DatabaseAdapter, target: DatabaseAdapter) -> BatchPipeline:
        run = self.settings.settings
        return BatchPipeline(
            source,
            target,
            table_mappings=self.settings.tables,
            type_registry=TypeMappingRegistry(self.settings.type_mappings, adapter=source),
            events=self.events,
            cancel_event=self._cancel_event,
            fail_fast=run.fail_fast,
            strict_batches=run.strict_batches,
            null_code_sentinel=run.null_code_sentinel,
            ordering_strategy=run.ordering_strategy,
        )

    async def test_connections(self) -> dict[str, bool]:
        """Connect to both databases and run a trivial query on each.

        Returns:
            Mapping of ``source`` / ``target`` to whether the database answered
        """
        results: dict[str, bool] = {}
        source, target = self._adapters()

        for side, adapter in (("source", source), ("target", target)):
            try:
                async with adapter:
                    results[side] = await adapter.test_connection()
            except MigrationError as e:
                logger.error(f"{side} connection test failed: {e}")
                results[side] = False

        return results

    async def list_source_tables(self, schema: Optional[str] = None) -> list[str]:
        source, _ = self._adapters()
        async with source:
            return await source.get_tables(schema)

    async def migrate_table(
        self,
        source_table: str,
        dry_run: bool = False,
        batch_size: Optional[int] = None,
        start_offset: int = 0,
    ) -> TableMigrationResult:
        """Migrate a single table with a fresh adapter pair.

        Args:
            source_table: Source table name (configured mapping or not)
            dry_run: Only count rows and check schemas
            batch_size: Overrides the configured batch size
            start_offset: Resume position, a multiple of the batch size

        Returns:
            Table totals

        Raises:
            MigrationError: Connection, introspection or fail-fast errors
        """
        mapping = self.settings.find_table_mapping(source_table)
        target_table = mapping.target_table if mapping else source_table.lower()
        batch_size = batch_size or self.settings.settings.batch_size

        table_progress = self.progress.tables.get(source_table)
        if not table_progress:
            table_progress = TableProgress(table_name=source_table)
            self.progress.tables[source_table] = table_progress

        table_progress.target_table = target_table
        table_progress.status = MigrationStatus.CONNECTING
        table_progress.started_at = datetime.now(timezone.utc)
        self._emit_progress()

        def on_batch(event: MigrationEvent) -> None:
            # Tables running in parallel share one emitter
            if event.message != "batch_completed" or str(event.data.get("table", "")).lower() != source_table.lower():
                return
            table_progress.total_rows = event.data.get("total_rows", table_progress.total_rows)
            table_progress.migrated_rows = event.data.get("migrated_rows", table_progress.migrated_rows)
            table_progress.failed_rows = event.data.get("failed_rows", table_progress.failed_rows)
            self._refresh_totals()
            self._emit_progress()

        self.events.on(EventKind.PROGRESS, on_batch)
        try:
            source, target = self._adapters()
            async with source, target:
                table_progress.status = MigrationStatus.RUNNING
                self._emit_progress()

                result = await self._pipeline(source, target).run(
                    source_table,
                    target_table,
                    batch_size=batch_size,
                    dry_run=dry_run,
                    source_schema=mapping.source_schema if mapping else None,
                    target_schema=mapping.target_schema if mapping else None,
                    start_offset=start_offset,
                )

        except Exception as e:
            table_progress.status = MigrationStatus.FAILED
            table_progress.completed_at = datetime.now(timezone.utc)
            table_progress.errors.append(str(e))
            self.progress.errors.append({
                "table": source_table,
                "error": str(e),
            })
            self.events.error("table_migration_failed", table=source_table, error=str(e))
            logger.error(
                "table_migration_failed",
                extra={"table": source_table, "error": str(e)},
            )
            self._emit_progress()
            raise
        finally:
            self.events.unsubscribe(on_batch)

        self.results[source_table] = result
        table_progress.total_rows = result.total_rows
        table_progress.migrated_rows = result.migrated_rows
        table_progress.failed_rows = result.failed_rows
        table_progress.errors = list(result.errors)
        table_progress.completed_at = result.completed_at
        table_progress.status = (
            MigrationStatus.CANCELLED if result.cancelled else MigrationStatus.COMPLETED
        )

        self._refresh_totals()
        self._emit_progress()

        return result

    async def migrate_all(self, dry_run: bool = False) -> MigrationProgress:
        """Migrate every enabled table mapping.

        Tables run sequentially unless ``parallel_workers`` is above one.

        Returns:
            Final migration progress
        """
        tables = self.settings.enabled_tables()
        if not tables:
            raise ConfigurationError("No enabled table mappings configured")

        run = self.settings.settings
        self.progress.status = MigrationStatus.RUNNING
        self.progress.dry_run = dry_run
        self.progress.started_at = datetime.now(timezone.utc)
        for table in tables:
            self.progress.tables.setdefault(
                table.source_table,
                TableProgress(table_name=table.source_table, target_table=table.target_table),
            )
        self._emit_progress()

        logger.info(
            "migration_started",
            extra={
                "job_id": self.progress.job_id,
                "tables": len(tables),
                "parallel_workers": run.parallel_workers,
                "dry_run": dry_run,
            },
        )

        semaphore = asyncio.Semaphore(run.parallel_workers)
        stop = asyncio.Event()

        async def worker(source_table: str) -> None:
            async with semaphore:
                if stop.is_set() or self._cancel_event.is_set():
                    self.progress.tables[source_table].status = MigrationStatus.CANCELLED
                    return
                try:
                    await self.migrate_table(source_table, dry_run=dry_run)
                except Exception:
                    # Already recorded on the table progress
                    if run.stop_on_table_failure:
                        stop.set()

        await asyncio.gather(*(worker(table.source_table) for table in tables))

        if self._cancel_event.is_set():
            self.progress.status = MigrationStatus.CANCELLED
        elif self.progress.failed_tables:
            self.progress.status = MigrationStatus.FAILED
        else:
            self.progress.status = MigrationStatus.COMPLETED

        self.progress.completed_at = datetime.now(timezone.utc)
        self._emit_progress()

        logger.info(
            "migration_completed",
            extra={
                "job_id": self.progress.job_id,
                "status": self.progress.status.value,
                "migrated_rows": self.progress.migrated_rows,
                "failed_rows": self.progress.failed_rows,
                "failed_tables": len(self.progress.failed_tables),
                "duration_seconds": self.progress.duration_seconds,
            },
        )

        return self.progress

    async def cancel(self) -> None:
        """Cancel the migration; running tables stop after their current batch."""
        self._cancel_event.set()
        logger.info("migration_cancel_requested", extra={"job_id": self.progress.job_id})
        self._emit_progress()
