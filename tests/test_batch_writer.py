"""Tests for transactional batch writes with per-row failure isolation."""

import pytest

from conftest import FakeAdapter

from dbmigrate.services.migration.batch_writer import BatchWriter
from dbmigrate.services.migration.events import EventKind


def rows(count: int) -> list[dict]:
    return [{"id": i, "name": f"row {i}"} for i in range(count)]


@pytest.fixture
def writer_target(events):
    adapter = FakeAdapter("target", events=events)
    adapter.unique_columns["items"] = "id"
    adapter.data["items"] = [{"id": 99, "name": "existing"}]
    return adapter


class TestBatchWriter:
    async def test_all_rows_commit(self, writer_target):
        result = await BatchWriter(writer_target).write("items", rows(5))

        assert result.success is True
        assert result.processed_rows == 5
        assert result.errors == []
        assert [row["id"] for row in writer_target.data["items"]] == [99, 0, 1, 2, 3, 4]

    async def test_unique_violation_isolates_one_row(self, writer_target):
        batch = rows(6)
        batch[3]["id"] = 99

        result = await BatchWriter(writer_target).write("items", batch)

        assert result.success is False
        assert result.processed_rows == 5
        assert len(result.errors) == 1
        assert result.errors[0].row_index == 3
        assert "unique" in result.errors[0].message
        assert [row["id"] for row in writer_target.data["items"]] == [99, 0, 1, 2, 4, 5]

    async def test_duplicate_within_batch(self, writer_target):
        batch = [{"id": 1}, {"id": 2}, {"id": 1}]

        result = await BatchWriter(writer_target).write("items", batch)

        assert result.processed_rows == 2
        assert [error.row_index for error in result.errors] == [2]

    async def test_connection_loss_rolls_back_the_whole_batch(self, writer_target, recorder):
        writer_target.fail_connection_on_insert = 3

        result = await BatchWriter(writer_target).write("items", rows(5))

        assert result.success is False
        assert result.processed_rows == 0
        assert [error.row_index for error in result.errors] == [0, 1, 2, 3, 4]
        assert all(error.message.startswith("Batch rolled back") for error in result.errors)
        assert [row["id"] for row in writer_target.data["items"]] == [99]
        assert [event.message for event in recorder.of_kind(EventKind.ERROR)] == ["batch_rolled_back"]

    async def test_strict_mode_rolls_back_on_first_row_error(self, writer_target):
        batch = rows(4)
        batch[1]["id"] = 99

        result = await BatchWriter(writer_target, strict=True).write("items", batch)

        assert result.success is False
        assert result.processed_rows == 0
        assert len(result.errors) == 4
        assert "unique" in result.errors[1].message
        assert "strict mode" in result.errors[0].message
        assert [row["id"] for row in writer_target.data["items"]] == [99]

    async def test_empty_batch(self, writer_target):
        result = await BatchWriter(writer_target).write("items", [])

        assert result.success is True
        assert result.processed_rows == 0
        assert writer_target.insert_calls == 0

    async def test_adapter_insert_batch_delegates(self, writer_target):
        result = await writer_target.insert_batch("items", rows(2))

        assert result.processed_rows == 2
        assert writer_target.batch_calls == 1
