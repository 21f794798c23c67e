"""Transactional batch writer with per-row failure isolation.

Each row is inserted under its own savepoint inside one transaction. A row
the database rejects (constraint violation, type mismatch) is rolled back to
its savepoint and recorded; its siblings still commit. A failure that is not
attributable to one row, typically a lost connection or timeout, rolls back
the whole batch and every row of it is reported as failed.
"""

import logging
import time
from typing import TYPE_CHECKING, Optional

from .models import BatchResult, Row, RowError

if TYPE_CHECKING:
    from .database_adapter import DatabaseAdapter

logger = logging.getLogger(__name__)


class _BatchAborted(Exception):
    """Internal signal: strict mode hit a row error."""

    def __init__(self, row_index: int, cause: Exception) -> None:
        super().__init__(str(cause))
        self.row_index = row_index
        self.cause = cause


class BatchWriter:
    """Writes one batch of rows to a target adapter as a transactional unit."""

    def __init__(self, adapter: "DatabaseAdapter", strict: bool = False) -> None:
        """Initialize batch writer.

        Args:
            adapter: Connected target adapter
            strict: Roll back the whole batch on the first row error
        """
        self.adapter = adapter
        self.strict = strict

    async def write(
        self,
        table_name: str,
        rows: list[Row],
        schema: Optional[str] = None,
    ) -> BatchResult:
        """Insert a batch of rows.

        Args:
            table_name: Target table
            rows: Transformed rows, each carrying only target columns
            schema: Target namespace

        Returns:
            BatchResult with zero-based row indexes for every failure
        """
        started = time.perf_counter()

        if not rows:
            return BatchResult(success=True, processed_rows=0, duration=0.0)

        errors: list[RowError] = []
        processed_rows = 0

        try:
            await self.adapter.begin()

            for index, row in enumerate(rows):
                savepoint = f"dbmigrate_row_{index}"
                await self.adapter.savepoint(savepoint)
                try:
                    await self.adapter.insert_row(table_name, row, schema)
                except Exception as e:
                    if self.adapter.is_connection_error(e):
                        raise
                    await self.adapter.rollback_to_savepoint(savepoint)
                    if self.strict:
                        raise _BatchAborted(index, e) from e
                    errors.append(RowError(row_index=index, message=str(e)))
                    logger.debug(
                        "row_insert_failed",
                        extra={"table": table_name, "row_index": index, "error": str(e)},
                    )
                    continue

                await self.adapter.release_savepoint(savepoint)
                processed_rows += 1

            await self.adapter.commit()

        except _BatchAborted as aborted:
            await self._rollback_quietly(table_name)
            errors = [
                RowError(
                    row_index=index,
                    message=(
                        str(aborted.cause)
                        if index == aborted.row_index
                        else f"Rolled back: row {aborted.row_index} failed in strict mode"
                    ),
                )
                for index in range(len(rows))
            ]
            return BatchResult(
                success=False,
                processed_rows=0,
                errors=errors,
                duration=time.perf_counter() - started,
            )

        except Exception as e:
            # Not attributable to one row: the whole batch is lost.
            await self._rollback_quietly(table_name)
            self.adapter.events.error(
                "batch_rolled_back",
                table=table_name,
                rows=len(rows),
                error=str(e),
            )
            logger.error(
                "batch_rolled_back",
                extra={"table": table_name, "rows": len(rows), "error": str(e)},
            )
            return BatchResult(
                success=False,
                processed_rows=0,
                errors=[
                    RowError(row_index=index, message=f"Batch rolled back: {e}")
                    for index in range(len(rows))
                ],
                duration=time.perf_counter() - started,
            )

        return BatchResult(
            success=not errors,
            processed_rows=processed_rows,
            errors=errors,
            duration=time.perf_counter() - started,
        )

    async def _rollback_quietly(self, table_name: str) -> None:
        """Roll back, logging instead of raising if the connection is gone."""
        try:
            await self.adapter.rollback()
        except Exception as e:
            logger.warning(
                "batch_rollback_failed",
                extra={"table": table_name, "error": str(e)},
            )
