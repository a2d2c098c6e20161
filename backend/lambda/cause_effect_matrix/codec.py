"""codec.py — Conversion between dense matrix grids and sparse cell maps.

In memory a sparse map is keyed by ``(row, col)`` integer tuples. The
persisted form keys cells by the ``"row_col"`` strings produced by
``encode_cell_key``; conversion happens only at the repository boundary.

Pure functions, no I/O.
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from bounds import Bounds
from errors import OutOfBoundsError

__all__ = [
    "CellKey",
    "Grid",
    "SparseCells",
    "decode_cell_key",
    "decode_sparse_cells",
    "encode_cell_key",
    "encode_sparse_cells",
    "encoded_size",
    "flatten",
    "normalize",
    "reconstruct",
]

logger = logging.getLogger(__name__)

CellKey = Tuple[int, int]
SparseCells = Dict[CellKey, str]
Grid = List[List[str]]


def encode_cell_key(row: int, col: int) -> str:
    return f"{row}_{col}"


def decode_cell_key(key: str) -> CellKey:
    """Parse a persisted ``"row_col"`` key. Raises ValueError if malformed."""
    parts = str(key).split("_")
    if len(parts) != 2 or not all(part.isdigit() for part in parts):
        raise ValueError(f"Malformed cell key: {key!r}")
    return int(parts[0]), int(parts[1])


def encode_sparse_cells(cells: Mapping[CellKey, str]) -> Dict[str, str]:
    return {encode_cell_key(r, c): value for (r, c), value in cells.items()}


def encoded_size(cells: Mapping[CellKey, str]) -> int:
    """Approximate bytes the persisted cell map adds to a DynamoDB item.

    Each map entry costs its UTF-8 key and value plus one byte of overhead.
    """
    return 3 + sum(
        len(encode_cell_key(r, c)) + len(value.encode("utf-8")) + 1
        for (r, c), value in cells.items()
    )


def decode_sparse_cells(raw: Mapping[str, object]) -> SparseCells:
    """Convert a persisted cell map back to tuple keys.

    Malformed keys and empty values cannot come from our own writes; they are
    dropped with a warning instead of failing the read.
    """
    cells: SparseCells = {}
    for key, value in (raw or {}).items():
        try:
            cell = decode_cell_key(key)
        except ValueError:
            logger.warning("dropping malformed sparse cell key %r", key)
            continue
        text = "" if value is None else str(value)
        if text == "":
            logger.warning("dropping empty sparse cell value at %r", key)
            continue
        cells[cell] = text
    return cells


def flatten(grid: Iterable[Sequence[str]]) -> SparseCells:
    """Map every non-empty cell of a (possibly ragged) grid to its value.

    Only the exact empty string counts as empty; whitespace is a value.
    """
    cells: SparseCells = {}
    for row_index, row in enumerate(grid):
        for col_index, value in enumerate(row):
            if value != "":
                cells[(row_index, col_index)] = value
    return cells


def normalize(grid: Sequence[Sequence[str]]) -> Grid:
    """Pad ragged rows with empty strings up to the widest row."""
    width = max((len(row) for row in grid), default=0)
    return [list(row) + [""] * (width - len(row)) for row in grid]


def reconstruct(
    cells: Mapping[CellKey, str],
    row_count: int,
    column_count: int,
    *,
    strict: bool = False,
) -> Grid:
    """Rebuild the ``row_count x column_count`` dense grid from a sparse map.

    A cell outside the bounds raises ``OutOfBoundsError`` when ``strict``;
    otherwise it is skipped with a warning so a corrupted document still reads.
    """
    bounds = Bounds(row_count, column_count)
    grid: Grid = [[""] * column_count for _ in range(row_count)]
    for (row, col), value in cells.items():
        if bounds.contains(row, col):
            grid[row][col] = value
            continue
        if strict:
            raise OutOfBoundsError(
                f"Cell ({row}, {col}) is outside bounds {row_count}x{column_count}.",
                row_index=row,
                column_index=col,
            )
        logger.warning(
            "skipping out-of-bounds cell (%d, %d) for bounds %dx%d",
            row, col, row_count, column_count,
        )
    return grid
