"""Ordering of self-referencing rows so parents are inserted before children."""

import logging
from collections import deque
from enum import Enum
from typing import Any, Hashable

from .models import Row

logger = logging.getLogger(__name__)


class OrderingStrategy(str, Enum):
    """How rows of a self-referencing table are ordered."""
    TOPOLOGICAL = "topological"
    HEURISTIC = "heuristic"  # Ascending parent id; assumes ids follow the hierarchy


def _key(value: Any) -> Hashable:
    return value if isinstance(value, Hashable) else repr(value)


def order_rows(
    rows: list[Row],
    parent_key_column: str,
    foreign_key_column: str,
    strategy: OrderingStrategy | str = OrderingStrategy.TOPOLOGICAL,
) -> list[Row]:
    """Reorder rows so a referenced row precedes the rows referencing it.

    Rows with a null or absent reference are roots and keep their original
    relative order at the front.

    Args:
        rows: Whole table, already transformed to target columns
        parent_key_column: Referenced key column (e.g. ``id``)
        foreign_key_column: Referencing column (e.g. ``parent_id``)
        strategy: ``topological`` or ``heuristic``

    Returns:
        A new list with the same rows
    """
    strategy = OrderingStrategy(strategy)
    if strategy == OrderingStrategy.HEURISTIC:
        return _order_by_parent_id(rows, foreign_key_column)
    return _order_topologically(rows, parent_key_column, foreign_key_column)


def _order_by_parent_id(rows: list[Row], foreign_key_column: str) -> list[Row]:
    roots = [row for row in rows if row.get(foreign_key_column) is None]
    children = [row for row in rows if row.get(foreign_key_column) is not None]

    try:
        children.sort(key=lambda row: row[foreign_key_column])
    except TypeError:
        children.sort(key=lambda row: str(row[foreign_key_column]))

    return roots + children


def _order_topologically(
    rows: list[Row],
    parent_key_column: str,
    foreign_key_column: str,
) -> list[Row]:
    """Kahn's algorithm over the parent/child graph."""
    keys = {_key(row.get(parent_key_column)) for row in rows if row.get(parent_key_column) is not None}

    children_by_parent: dict[Hashable, list[int]] = {}
    null_roots: list[int] = []
    orphan_roots: list[int] = []

    for index, row in enumerate(rows):
        parent = row.get(foreign_key_column)
        if parent is None:
            null_roots.append(index)
            continue

        parent = _key(parent)
        own_key = row.get(parent_key_column)
        # Rows pointing at themselves or outside the set have nothing to wait for
        if parent not in keys or (own_key is not None and _key(own_key) == parent):
            orphan_roots.append(index)
            continue

        children_by_parent.setdefault(parent, []).append(index)

    queue = deque(null_roots + orphan_roots)
    emitted: set[int] = set()
    ordered: list[Row] = []

    while queue:
        index = queue.popleft()
        if index in emitted:
            continue
        emitted.add(index)
        ordered.append(rows[index])

        own_key = rows[index].get(parent_key_column)
        if own_key is not None:
            queue.extend(children_by_parent.pop(_key(own_key), []))

    if len(ordered) < len(rows):
        remaining = [index for index in range(len(rows)) if index not in emitted]
        logger.warning(
            "self_reference_cycle",
            extra={
                "rows": len(remaining),
                "parent_key_column": parent_key_column,
                "foreign_key_column": foreign_key_column,
            },
        )
        ordered.extend(rows[index] for index in remaining)

    return ordered
