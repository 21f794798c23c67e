"""Tests for parent-before-child ordering of self-referencing rows."""

import itertools

import pytest

from dbmigrate.services.migration.hierarchy import OrderingStrategy, order_rows


def ids(rows):
    return [row["id"] for row in rows]


def assert_parents_first(rows):
    position = {row["id"]: index for index, row in enumerate(rows)}
    for index, row in enumerate(rows):
        parent = row["parent_id"]
        if parent is not None and parent in position and parent != row["id"]:
            assert position[parent] < index, f"row {row['id']} precedes its parent {parent}"


CATEGORY = [
    {"id": 1, "parent_id": None},
    {"id": 2, "parent_id": 1},
    {"id": 3, "parent_id": 2},
]


class TestTopologicalOrdering:
    def test_category_chain(self):
        rows = [CATEGORY[2], CATEGORY[0], CATEGORY[1]]

        assert ids(order_rows(rows, "id", "parent_id")) == [1, 2, 3]

    def test_every_permutation_puts_parents_first(self):
        tree = [
            {"id": 1, "parent_id": None},
            {"id": 2, "parent_id": 1},
            {"id": 3, "parent_id": 1},
            {"id": 4, "parent_id": 3},
            {"id": 5, "parent_id": None},
        ]
        for permutation in itertools.permutations(tree):
            ordered = order_rows(list(permutation), "id", "parent_id")
            assert sorted(ids(ordered)) == [1, 2, 3, 4, 5]
            assert_parents_first(ordered)

    def test_ids_that_do_not_follow_the_hierarchy(self):
        rows = [
            {"id": 10, "parent_id": 30},
            {"id": 20, "parent_id": None},
            {"id": 30, "parent_id": 20},
        ]

        assert ids(order_rows(rows, "id", "parent_id")) == [20, 30, 10]

    def test_orphans_and_self_references_are_roots(self):
        rows = [
            {"id": 2, "parent_id": 99},
            {"id": 3, "parent_id": 3},
            {"id": 4, "parent_id": 2},
        ]

        ordered = order_rows(rows, "id", "parent_id")

        assert ids(ordered) == [2, 3, 4]

    def test_cycle_rows_are_kept_at_the_end(self):
        rows = [
            {"id": 1, "parent_id": 2},
            {"id": 2, "parent_id": 1},
            {"id": 3, "parent_id": None},
        ]

        ordered = order_rows(rows, "id", "parent_id")

        assert ids(ordered) == [3, 1, 2]

    def test_input_is_not_modified(self):
        rows = [CATEGORY[2], CATEGORY[0], CATEGORY[1]]
        order_rows(rows, "id", "parent_id")

        assert ids(rows) == [3, 1, 2]

    def test_empty(self):
        assert order_rows([], "id", "parent_id") == []


class TestHeuristicOrdering:
    def test_roots_then_ascending_parent(self):
        rows = [
            {"id": 3, "parent_id": 2},
            {"id": 1, "parent_id": None},
            {"id": 2, "parent_id": 1},
        ]

        ordered = order_rows(rows, "id", "parent_id", strategy=OrderingStrategy.HEURISTIC)

        assert ids(ordered) == [1, 2, 3]

    def test_accepts_strategy_name(self):
        ordered = order_rows(list(CATEGORY), "id", "parent_id", strategy="heuristic")

        assert ids(ordered) == [1, 2, 3]

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            order_rows(list(CATEGORY), "id", "parent_id", strategy="random")
