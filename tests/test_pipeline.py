"""Tests for the per-table batch pipeline."""

import asyncio

import pytest

from conftest import FakeAdapter, column, item_rows

from dbmigrate.services.migration.errors import BatchFailedError, IntrospectionError
from dbmigrate.services.migration.events import EventKind
from dbmigrate.services.migration.models import TableMappingConfig, TableSchema
from dbmigrate.services.migration.pipeline import BatchPipeline


def migrated_ids(target: FakeAdapter, table: str = "items") -> list[int]:
    return [row["id"] for row in target.data.get(table, [])]


class TestPagedMigration:
    async def test_migrates_every_row_once(self, source, target, events):
        result = await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=10)

        assert result.total_rows == 25
        assert result.migrated_rows == 25
        assert result.failed_rows == 0
        assert result.batches == 3
        assert migrated_ids(target) == list(range(1, 26))
        assert source.read_calls == [(0, 10), (10, 10), (20, 10)]
        assert source.order_by_seen[0] == ["ID"]

    async def test_rows_are_transformed(self, source, target, events):
        await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=10)

        assert target.data["items"][0] == {"id": 1, "name": "item 1", "is_valid": True}
        assert target.data["items"][1] == {"id": 2, "name": "item 2", "is_valid": False}

    async def test_target_defaults_to_lowercased_source(self, source, target, events):
        result = await BatchPipeline(source, target, events=events).run("ITEMS")

        assert result.target_table == "items"

    async def test_configured_mapping_is_used(self, source, target, events):
        target.schemas["archive"] = TableSchema(
            name="archive",
            columns=[column("id", "integer", nullable=False), column("name", "varchar")],
        )
        mapping = TableMappingConfig(source_table="ITEMS", target_table="archive", exclude_columns=["IS_VALID"])

        result = await BatchPipeline(source, target, table_mappings=[mapping], events=events).run("ITEMS")

        assert result.target_table == "archive"
        assert len(target.data["archive"]) == 25
        assert result.skipped_columns == []

    async def test_progress_event_per_batch(self, source, target, events, recorder):
        await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=10)

        progress = [event for event in recorder.of_kind(EventKind.PROGRESS) if event.message == "batch_completed"]
        assert [(event.data["offset_start"], event.data["offset_end"]) for event in progress] == [
            (0, 10), (10, 20), (20, 25),
        ]
        assert progress[-1].data["migrated_rows"] == 25
        assert progress[-1].data["total_rows"] == 25

    async def test_empty_table(self, source, target, events):
        source.data["items"] = []

        result = await BatchPipeline(source, target, events=events).run("ITEMS")

        assert result.total_rows == 0
        assert result.migrated_rows == 0
        assert target.batch_calls == 0


class TestDryRun:
    async def test_dry_run_counts_without_writing(self, source, target, events):
        source.data["items"] = item_rows(10_000)

        result = await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=500, dry_run=True)

        assert result.total_rows == 10_000
        assert result.migrated_rows == 0
        assert result.dry_run is True
        assert target.batch_calls == 0
        assert target.insert_calls == 0
        assert source.read_calls == []


class TestRowFailures:
    async def test_rejected_rows_do_not_stop_the_table(self, source, target, events):
        target.unique_columns["items"] = "id"
        target.data["items"] = [{"id": 4, "name": "existing", "is_valid": False}]

        result = await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=10)

        assert result.migrated_rows == 24
        assert result.failed_rows == 1
        assert result.errors[0].startswith("Row 3:")
        assert len(target.data["items"]) == 25

    async def test_transformation_failure_is_a_row_error(self, source, target, events, recorder):
        source.data["items"][12]["ID"] = "not-a-number"

        result = await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=10)

        assert result.migrated_rows == 24
        assert result.failed_rows == 1
        assert result.errors[0].startswith("Row 12:")
        assert any(event.message == "batch_row_errors" for event in recorder.of_kind(EventKind.ERROR))

    async def test_connection_loss_fails_one_batch_and_continues(self, source, target, events):
        target.fail_connection_on_insert = 15

        result = await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=10)

        assert result.migrated_rows == 15
        assert result.failed_rows == 10
        assert migrated_ids(target) == list(range(1, 11)) + list(range(21, 26))

    async def test_read_timeout_fails_that_page_only(self, source, target, events, recorder):
        source.timeout_offsets = {10}

        result = await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=10)

        assert result.migrated_rows == 15
        assert result.failed_rows == 10
        assert "Read timed out for rows 10-19" in result.errors
        assert any(event.message == "batch_read_timeout" for event in recorder.of_kind(EventKind.ERROR))

    async def test_fail_fast_raises_on_first_failed_batch(self, source, target, events):
        target.unique_columns["items"] = "id"
        target.data["items"] = [{"id": 12, "name": "existing", "is_valid": False}]

        pipeline = BatchPipeline(source, target, events=events, fail_fast=True)
        with pytest.raises(BatchFailedError) as exc_info:
            await pipeline.run("ITEMS", batch_size=10)

        assert exc_info.value.offset == 10
        assert len(target.data["items"]) == 20

    async def test_strict_batches(self, source, target, events):
        target.unique_columns["items"] = "id"
        target.data["items"] = [{"id": 12, "name": "existing", "is_valid": False}]

        result = await BatchPipeline(source, target, events=events, strict_batches=True).run("ITEMS", batch_size=10)

        assert result.migrated_rows == 15
        assert result.failed_rows == 10


class TestSchemaChecks:
    async def test_missing_target_table_raises_before_writing(self, source, target, events):
        del target.schemas["items"]

        with pytest.raises(IntrospectionError):
            await BatchPipeline(source, target, events=events).run("ITEMS")

        assert target.batch_calls == 0

    async def test_skipped_column_diagnostic_once_per_table(self, source, target, events, recorder):
        for row in source.data["items"]:
            row["LEGACY"] = "x"
        source.schemas["items"] = TableSchema(
            name="ITEMS",
            columns=list(source.schemas["items"].columns) + [column("LEGACY", "VARCHAR(10)")],
            primary_keys=["ID"],
        )

        result = await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=10)

        diagnostics = recorder.of_kind(EventKind.DIAGNOSTIC)
        assert [event.message for event in diagnostics] == ["column_skipped"]
        assert diagnostics[0].data["column"] == "LEGACY"
        assert result.skipped_columns == ["LEGACY"]
        assert result.migrated_rows == 25
        assert "legacy" not in target.data["items"][0]


class TestCancellationAndResume:
    async def test_cancel_stops_between_batches(self, source, target, events):
        cancel_event = asyncio.Event()

        def cancel_after_first_batch(event):
            if event.message == "batch_completed":
                cancel_event.set()

        events.on(EventKind.PROGRESS, cancel_after_first_batch)
        pipeline = BatchPipeline(source, target, events=events, cancel_event=cancel_event)

        result = await pipeline.run("ITEMS", batch_size=10)

        assert result.cancelled is True
        assert result.migrated_rows == 10
        assert migrated_ids(target) == list(range(1, 11))

    async def test_start_offset_resumes_at_batch_boundary(self, source, target, events):
        result = await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=10, start_offset=20)

        assert result.migrated_rows == 5
        assert migrated_ids(target) == list(range(21, 26))

    @pytest.mark.parametrize("start_offset", [-10, 5])
    async def test_start_offset_must_be_a_batch_multiple(self, source, target, events, start_offset):
        with pytest.raises(ValueError):
            await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=10, start_offset=start_offset)

    async def test_batch_size_must_be_positive(self, source, target, events):
        with pytest.raises(ValueError):
            await BatchPipeline(source, target, events=events).run("ITEMS", batch_size=0)


class TestSelfReferencingTables:
    async def test_parents_are_written_before_children(self, source, target, events):
        source.data["category"] = [
            {"ID": 3, "PARENT_ID": 2, "NAME": "leaf"},
            {"ID": 1, "PARENT_ID": None, "NAME": "root"},
            {"ID": 2, "PARENT_ID": 1, "NAME": "branch"},
        ]
        result = await BatchPipeline(source, target, events=events).run("CATEGORY", batch_size=2)

        assert migrated_ids(target, "category") == [1, 2, 3]
        assert result.migrated_rows == 3
        assert target.batch_calls == 1
        assert source.read_calls == [(0, 2), (2, 2)]
