"""bounds.py — Declared row/column extents of a matrix.

Bounds are independent of which cells are populated and only ever grow.
"""
from __future__ import annotations

from typing import NamedTuple, Sequence

__all__ = ["Bounds", "from_grid", "grow"]


class Bounds(NamedTuple):
    row_count: int
    column_count: int

    def contains(self, row: int, col: int) -> bool:
        return 0 <= row < self.row_count and 0 <= col < self.column_count


def from_grid(grid: Sequence[Sequence[str]]) -> Bounds:
    """Bounds of a decoded grid: its row count and its widest row."""
    return Bounds(len(grid), max((len(row) for row in grid), default=0))


def grow(bounds: Bounds, row: int, col: int) -> Bounds:
    # A write extends the bounds even when the value is empty.
    return Bounds(
        max(bounds.row_count, row + 1),
        max(bounds.column_count, col + 1),
    )
