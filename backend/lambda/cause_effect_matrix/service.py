"""service.py — Cause-and-effect matrix operations.

Orchestrates upload ingest, cell edits, reads, deletes and source-file
downloads on top of ``MatrixRepository`` and ``SourceFileStore``. Validation
errors are raised before any persistence call.

State per building key::

    NoMatrix --upload--> Present --cell write*--> Present --delete--> NoMatrix
    Present --upload--> Present   (full replace, cell history discarded)
"""
from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional, Sequence, Tuple

from building_safety_shared.serialization import _emit_structured_observability, _now_z

import bounds as bounds_tracker
from authorization import actor_identity, is_authorized
from bounds import Bounds
from codec import SparseCells, encode_sparse_cells, encoded_size, flatten, reconstruct
from config import (
    ALLOWED_UPLOAD_EXTENSIONS,
    MAX_CELL_MAP_BYTES,
    MAX_CELL_VALUE_LENGTH,
    MAX_COLUMNS,
    MAX_GRID_CELLS,
    MAX_MATRIX_CELLS,
    MAX_ROWS,
    MAX_UPLOAD_BYTES,
)
from errors import InvalidInputError, NotFoundError, StorageFailureError, UnauthorizedError
from file_store import SourceFileStore
from repository import Matrix, MatrixRepository, SourceFile
from spreadsheet import decode_spreadsheet

__all__ = ["MatrixService", "matrix_view"]

logger = logging.getLogger(__name__)

COMPONENT = "cause_effect_matrix"


def matrix_view(matrix: Matrix) -> Dict[str, Any]:
    """Response payload: persisted fields plus the reconstructed dense grid."""
    return {
        "building_key": matrix.building_key,
        "source_file_name": matrix.source_file.file_name,
        "source_file_size": matrix.source_file.file_size,
        "source_file_url": matrix.source_file.file_url,
        "sheet_name": matrix.source_file.sheet_name,
        "uploaded_at": matrix.uploaded_at,
        "uploaded_by": matrix.uploaded_by,
        "last_updated": matrix.last_updated,
        "last_updated_by": matrix.last_updated_by,
        "row_count": matrix.row_count,
        "column_count": matrix.column_count,
        "sparse_cells": encode_sparse_cells(matrix.sparse_cells),
        "raw_data": reconstruct(matrix.sparse_cells, matrix.row_count, matrix.column_count),
    }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _validate_index(name: str, value: Any, limit: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"Field '{name}' must be a non-negative integer.")
    if value < 0:
        raise InvalidInputError(f"Field '{name}' must be a non-negative integer.", **{name: value})
    if value >= limit:
        raise InvalidInputError(f"Field '{name}' must be below {limit}.", **{name: value})
    return value


def _validate_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise InvalidInputError("Field 'value' must be a string.")
    text = value if isinstance(value, str) else str(value)
    if len(text) > MAX_CELL_VALUE_LENGTH:
        raise InvalidInputError(f"Cell value exceeds {MAX_CELL_VALUE_LENGTH} characters.")
    return text


def _check_limits(cells: SparseCells, bounds: Bounds) -> None:
    """Reject a matrix that could not be stored in one item or read back in one response."""
    if bounds.row_count > MAX_ROWS or bounds.column_count > MAX_COLUMNS:
        raise InvalidInputError(
            f"Matrix exceeds {MAX_ROWS} rows or {MAX_COLUMNS} columns.",
            row_count=bounds.row_count,
            column_count=bounds.column_count,
        )
    if bounds.row_count * bounds.column_count > MAX_GRID_CELLS:
        raise InvalidInputError(
            f"Matrix of {bounds.row_count}x{bounds.column_count} exceeds {MAX_GRID_CELLS} cells.",
            row_count=bounds.row_count,
            column_count=bounds.column_count,
        )
    if len(cells) > MAX_MATRIX_CELLS:
        raise InvalidInputError(
            f"Matrix has {len(cells)} populated cells; the limit is {MAX_MATRIX_CELLS}.",
        )
    size = encoded_size(cells)
    if size > MAX_CELL_MAP_BYTES:
        raise InvalidInputError(
            f"Matrix content is {size} bytes; the limit is {MAX_CELL_MAP_BYTES}.",
        )


def _validate_grid(grid: Any) -> Tuple[SparseCells, Bounds]:
    if not isinstance(grid, list) or not all(isinstance(row, list) for row in grid):
        raise InvalidInputError("Decoded matrix must be a list of rows.")
    for row in grid:
        for value in row:
            if not isinstance(value, str):
                raise InvalidInputError("Decoded matrix cells must be strings.")
            if len(value) > MAX_CELL_VALUE_LENGTH:
                raise InvalidInputError(f"Cell value exceeds {MAX_CELL_VALUE_LENGTH} characters.")
    cells = flatten(grid)
    bounds = bounds_tracker.from_grid(grid)
    _check_limits(cells, bounds)
    return cells, bounds


class MatrixService:
    def __init__(self, repository: MatrixRepository, file_store: SourceFileStore) -> None:
        self.repository = repository
        self.file_store = file_store

    # -- authorization ------------------------------------------------------

    def authorize(self, claims: Dict[str, Any], building_key: str, *, require_admin: bool = False) -> str:
        """Return the actor identity, or raise UnauthorizedError."""
        if not is_authorized(claims, building_key, require_admin=require_admin):
            detail = "Admin access required." if require_admin else (
                f"Not authorized for building '{building_key}'."
            )
            raise UnauthorizedError(detail)
        return actor_identity(claims)

    # -- upload -------------------------------------------------------------

    def ingest_upload(
        self,
        building_key: str,
        grid: Sequence[Sequence[str]],
        file_meta: SourceFile,
        actor: str,
    ) -> Dict[str, Any]:
        """Replace the building's matrix with ``grid`` and return its view."""
        cells, bounds = _validate_grid(grid)
        return self._store_matrix(building_key, cells, bounds, file_meta, actor)

    def _store_matrix(
        self,
        building_key: str,
        cells: SparseCells,
        bounds: Bounds,
        file_meta: SourceFile,
        actor: str,
    ) -> Dict[str, Any]:
        started = time.monotonic()
        now = _now_z()
        matrix = Matrix(
            building_key=building_key,
            sparse_cells=cells,
            row_count=bounds.row_count,
            column_count=bounds.column_count,
            source_file=file_meta,
            uploaded_at=now,
            uploaded_by=actor,
            last_updated=now,
            last_updated_by=actor,
        )
        stored = self.repository.replace(building_key, matrix)
        _emit_structured_observability(
            component=COMPONENT,
            event="matrix_uploaded",
            building_key=building_key,
            actor=actor,
            latency_ms=_elapsed_ms(started),
            extra={
                "row_count": stored.row_count,
                "column_count": stored.column_count,
                "populated_cells": len(stored.sparse_cells),
            },
        )
        return matrix_view(stored)

    def store_source_file(self, building_key: str, file_name: str, content: bytes) -> SourceFile:
        """Upload the original file; a storage failure leaves the URL empty."""
        meta = SourceFile(file_name=file_name, file_size=len(content))
        try:
            meta.file_key, meta.file_url = self.file_store.upload(building_key, file_name, content)
        except StorageFailureError as exc:
            logger.warning(
                "source file upload failed for %s (continuing without file): %s",
                building_key, exc.__cause__ or exc,
            )
        return meta

    def upload_file(self, building_key: str, file_name: str, content: bytes, actor: str) -> Dict[str, Any]:
        """Validate, decode, store and ingest an uploaded spreadsheet."""
        file_name = os.path.basename(str(file_name or "").strip())
        if not file_name:
            raise InvalidInputError("Field 'file_name' is required.")
        _, ext = os.path.splitext(file_name.lower())
        if ext not in ALLOWED_UPLOAD_EXTENSIONS:
            raise InvalidInputError(
                f"file_name must end with one of: {', '.join(sorted(ALLOWED_UPLOAD_EXTENSIONS))}",
            )
        if len(content) > MAX_UPLOAD_BYTES:
            raise InvalidInputError(f"Uploaded file exceeds {MAX_UPLOAD_BYTES} bytes.")

        decoded = decode_spreadsheet(file_name, content)
        cells, bounds = _validate_grid(decoded.grid)
        meta = self.store_source_file(building_key, file_name, content)
        meta.sheet_name = decoded.sheet_name
        try:
            return self._store_matrix(building_key, cells, bounds, meta, actor)
        except StorageFailureError:
            if meta.file_key:
                self._discard_file(building_key, meta.file_key)
            raise

    def _discard_file(self, building_key: str, file_key: str) -> bool:
        try:
            self.file_store.delete(file_key)
        except StorageFailureError as exc:
            logger.warning(
                "source file cleanup failed for %s key=%s: %s",
                building_key, file_key, exc.__cause__ or exc,
            )
            return False
        return True

    # -- reads --------------------------------------------------------------

    def _require(self, building_key: str) -> Matrix:
        matrix = self.repository.load(building_key)
        if matrix is None:
            raise NotFoundError(f"No cause-and-effect matrix for building '{building_key}'.")
        return matrix

    def read_matrix(self, building_key: str) -> Dict[str, Any]:
        return matrix_view(self._require(building_key))

    def download_url(self, building_key: str) -> Dict[str, Optional[str]]:
        matrix = self._require(building_key)
        if not matrix.source_file.file_url:
            raise NotFoundError("Source file not available for this matrix.")
        return {
            "download_url": matrix.source_file.file_url,
            "file_name": matrix.source_file.file_name,
        }

    # -- edits --------------------------------------------------------------

    def write_cell(self, building_key: str, row: Any, col: Any, value: Any, actor: str) -> Dict[str, Any]:
        row = _validate_index("row_index", row, MAX_ROWS)
        col = _validate_index("column_index", col, MAX_COLUMNS)
        text = _validate_value(value)
        started = time.monotonic()
        updated = self.repository.apply_cell_write(
            building_key, row, col, text, actor,
            check=lambda edited: _check_limits(edited.sparse_cells, edited.bounds),
        )
        _emit_structured_observability(
            component=COMPONENT,
            event="cell_cleared" if text == "" else "cell_written",
            building_key=building_key,
            actor=actor,
            latency_ms=_elapsed_ms(started),
            extra={"row_index": row, "column_index": col},
        )
        return matrix_view(updated)

    def delete_matrix(self, building_key: str, actor: str) -> Dict[str, bool]:
        """Delete the matrix, then best-effort delete its source file."""
        deleted = self.repository.delete(building_key)
        if deleted is None:
            logger.info("delete: no matrix for building=%s", building_key)
            return {"deleted": False, "file_deleted": False}

        file_deleted = False
        file_key = deleted.source_file.file_key or self.file_store.key_from_url(
            deleted.source_file.file_url or ""
        )
        if file_key:
            file_deleted = self._discard_file(building_key, file_key)
        _emit_structured_observability(
            component=COMPONENT,
            event="matrix_deleted",
            building_key=building_key,
            actor=actor,
            extra={"file_deleted": file_deleted},
        )
        return {"deleted": True, "file_deleted": file_deleted}
