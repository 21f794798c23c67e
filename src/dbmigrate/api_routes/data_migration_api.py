"""Data Migration API endpoints for Vertica to PostgreSQL migrations.

Provides REST endpoints for:
- Listing configured table mappings
- Testing connections to the source and target databases
- Starting single-table and all-table migration jobs
- Monitoring and cancelling jobs

The configuration file is read from ``DBMIGRATE_CONFIG``.
"""

import os
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from ..config.logfire_config import get_logger, logfire
from ..config.settings import MigrationSettings, load_settings
from ..services.migration.errors import ConfigurationError, MigrationError
from ..services.migration.orchestrator import (
    AdapterFactory,
    MigrationOrchestrator,
    MigrationStatus,
    default_adapter_factory,
)

logger = get_logger(__name__)

DEFAULT_CONFIG = "config/migrations/vertica-to-postgresql.yaml"

router = APIRouter(prefix="/api/migrations", tags=["migrations"])

# In-memory storage for migration jobs
_migration_jobs: dict[str, MigrationOrchestrator] = {}
_job_created: dict[str, datetime] = {}


@lru_cache(maxsize=1)
def _load_configured_settings(path: str) -> MigrationSettings:
    return load_settings(path)


def get_settings() -> MigrationSettings:
    """Settings dependency; overridden in tests."""
    path = os.getenv("DBMIGRATE_CONFIG", DEFAULT_CONFIG)
    try:
        return _load_configured_settings(path)
    except ConfigurationError as e:
        logger.error(f"Failed to load migration settings: {e}")
        raise HTTPException(status_code=500, detail=str(e))


def get_adapter_factory() -> AdapterFactory:
    """Adapter factory dependency; overridden in tests."""
    return default_adapter_factory


class TableMappingResponse(BaseModel):
    source_table: str
    target_table: str
    source_schema: Optional[str] = None
    target_schema: Optional[str] = None
    enabled: bool = True


class ConnectionTestResponse(BaseModel):
    """Response model for connection test."""
    success: bool
    source: bool
    target: bool
    message: str


class MigrateTableRequest(BaseModel):
    """Request model for a single-table migration."""
    dry_run: bool = False
    batch_size: Optional[int] = Field(default=None, gt=0)
    start_offset: int = Field(default=0, ge=0)


class MigrateAllRequest(BaseModel):
    """Request model for migrating every enabled table."""
    dry_run: bool = False


class MigrationJobResponse(BaseModel):
    """Response model for migration job."""
    job_id: str
    status: str
    created_at: datetime
    progress: Optional[dict] = None
    results: dict[str, dict] = Field(default_factory=dict)


def _job_response(job_id: str, orchestrator: MigrationOrchestrator) -> MigrationJobResponse:
    return MigrationJobResponse(
        job_id=job_id,
        status=orchestrator.progress.status.value,
        created_at=_job_created[job_id],
        progress=orchestrator.progress.model_dump(mode="json"),
        results={
            table: result.model_dump(mode="json")
            for table, result in orchestrator.results.items()
        },
    )


def _register_job(settings: MigrationSettings, adapter_factory: AdapterFactory) -> tuple[str, MigrationOrchestrator]:
    job_id = str(uuid.uuid4())
    orchestrator = MigrationOrchestrator(settings, adapter_factory=adapter_factory, job_id=job_id)
    _migration_jobs[job_id] = orchestrator
    _job_created[job_id] = datetime.now(timezone.utc)
    logger.info(f"Created migration job: {job_id}")
    return job_id, orchestrator


async def _run_table_job(orchestrator: MigrationOrchestrator, source_table: str, request: MigrateTableRequest) -> None:
    progress = orchestrator.progress
    progress.status = MigrationStatus.RUNNING
    progress.dry_run = request.dry_run
    progress.started_at = datetime.now(timezone.utc)

    try:
        result = await orchestrator.migrate_table(
            source_table,
            dry_run=request.dry_run,
            batch_size=request.batch_size,
            start_offset=request.start_offset,
        )
        progress.status = MigrationStatus.CANCELLED if result.cancelled else MigrationStatus.COMPLETED
    except Exception as e:
        # Recorded on the job's table progress by the orchestrator
        progress.status = MigrationStatus.FAILED
        logger.error(f"Migration job {progress.job_id} failed: {e}")
    finally:
        progress.completed_at = datetime.now(timezone.utc)


async def _run_all_job(orchestrator: MigrationOrchestrator, dry_run: bool) -> None:
    try:
        await orchestrator.migrate_all(dry_run=dry_run)
    except Exception as e:
        orchestrator.progress.status = MigrationStatus.FAILED
        orchestrator.progress.completed_at = datetime.now(timezone.utc)
        orchestrator.progress.errors.append({"phase": "run", "error": str(e)})
        logger.error(f"Migration job {orchestrator.progress.job_id} failed: {e}")


@router.get("/tables", response_model=list[TableMappingResponse])
async def list_tables(settings: MigrationSettings = Depends(get_settings)) -> list[TableMappingResponse]:
    """List configured table mappings."""
    return [
        TableMappingResponse(
            source_table=table.source_table,
            target_table=table.target_table,
            source_schema=table.source_schema,
            target_schema=table.target_schema,
            enabled=table.enabled,
        )
        for table in settings.tables
    ]


@router.post("/test-connections", response_model=ConnectionTestResponse)
async def test_connections(
    settings: MigrationSettings = Depends(get_settings),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> ConnectionTestResponse:
    """Test connections to both databases without starting a migration."""
    orchestrator = MigrationOrchestrator(settings, adapter_factory=adapter_factory)
    try:
        results = await orchestrator.test_connections()
    except MigrationError as e:
        logger.error(f"Connection test failed: {e}")
        return ConnectionTestResponse(success=False, source=False, target=False, message=str(e))

    success = all(results.values())
    return ConnectionTestResponse(
        success=success,
        source=results.get("source", False),
        target=results.get("target", False),
        message="Connections successful" if success else "Connection test failed",
    )


@router.post("/tables/{source_table}/migrate", response_model=MigrationJobResponse)
async def migrate_table(
    source_table: str,
    request: MigrateTableRequest,
    background_tasks: BackgroundTasks,
    settings: MigrationSettings = Depends(get_settings),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> MigrationJobResponse:
    """Start a single-table migration in the background."""
    if settings.find_table_mapping(source_table) is None:
        raise HTTPException(status_code=404, detail=f"No table mapping for {source_table}")

    job_id, orchestrator = _register_job(settings, adapter_factory)
    background_tasks.add_task(_run_table_job, orchestrator, source_table, request)

    logfire.info(f"Table migration queued | job_id={job_id} | table={source_table} | dry_run={request.dry_run}")
    return _job_response(job_id, orchestrator)


@router.post("/migrate-all", response_model=MigrationJobResponse)
async def migrate_all(
    request: MigrateAllRequest,
    background_tasks: BackgroundTasks,
    settings: MigrationSettings = Depends(get_settings),
    adapter_factory: AdapterFactory = Depends(get_adapter_factory),
) -> MigrationJobResponse:
    """Start migrating every enabled table in the background."""
    if not settings.enabled_tables():
        raise HTTPException(status_code=400, detail="No enabled table mappings configured")

    job_id, orchestrator = _register_job(settings, adapter_factory)
    background_tasks.add_task(_run_all_job, orchestrator, request.dry_run)

    logfire.info(f"Migration queued | job_id={job_id} | dry_run={request.dry_run}")
    return _job_response(job_id, orchestrator)


@router.get("/jobs", response_model=list[MigrationJobResponse])
async def list_jobs() -> list[MigrationJobResponse]:
    """List all migration jobs."""
    return [_job_response(job_id, orchestrator) for job_id, orchestrator in _migration_jobs.items()]


@router.get("/jobs/{job_id}", response_model=MigrationJobResponse)
async def get_job(job_id: str) -> MigrationJobResponse:
    """Get migration job details."""
    if job_id not in _migration_jobs:
        raise HTTPException(status_code=404, detail="Migration job not found")
    return _job_response(job_id, _migration_jobs[job_id])


@router.post("/jobs/{job_id}/cancel", response_model=MigrationJobResponse)
async def cancel_job(job_id: str) -> MigrationJobResponse:
    """Cancel a migration job; running tables stop after their current batch."""
    if job_id not in _migration_jobs:
        raise HTTPException(status_code=404, detail="Migration job not found")

    orchestrator = _migration_jobs[job_id]
    if orchestrator.progress.status in (
        MigrationStatus.COMPLETED,
        MigrationStatus.FAILED,
        MigrationStatus.CANCELLED,
    ):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot cancel migration in {orchestrator.progress.status.value} state",
        )

    await orchestrator.cancel()
    return _job_response(job_id, orchestrator)


def create_app() -> FastAPI:
    """FastAPI application serving the migration routes."""
    app = FastAPI(title="dbmigrate", version="0.1.0")
    app.include_router(router)
    return app
