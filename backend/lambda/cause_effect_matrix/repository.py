"""repository.py — DynamoDB persistence for cause-and-effect matrices.

One document per building, addressed as ``(collection, document_id)`` where
the collection is the building key (optionally remapped through
``COLLECTION_ALIASES``) and the document id is ``MATRIX_DOCUMENT_ID``.

Uploads replace the whole document. Cell edits touch only the edited map entry
plus bounds and provenance, conditional on the revision that was read; a lost
race re-runs the read-modify-write so concurrent edits never shrink the bounds
under another writer's cell.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field, replace as dc_replace
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from building_safety_shared.serialization import _deserialize, _now_z, _serialize, _serialize_item

import bounds as bounds_tracker
from bounds import Bounds
from codec import SparseCells, decode_sparse_cells, encode_cell_key, encode_sparse_cells
from config import (
    BUILDING_RECORDS_TABLE,
    CELL_WRITE_MAX_ATTEMPTS,
    COLLECTION_ALIASES,
    MATRIX_DOCUMENT_ID,
)
from errors import ConflictError, NotFoundError, StorageFailureError

__all__ = ["Matrix", "MatrixRepository", "SourceFile"]

logger = logging.getLogger(__name__)

_CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"


@dataclass
class SourceFile:
    """Provenance of the uploaded spreadsheet; passed through untouched."""

    file_name: str = ""
    file_size: int = 0
    file_url: Optional[str] = None
    file_key: Optional[str] = None
    sheet_name: str = ""


@dataclass
class Matrix:
    building_key: str
    sparse_cells: SparseCells
    row_count: int
    column_count: int
    source_file: SourceFile = field(default_factory=SourceFile)
    uploaded_at: str = ""
    uploaded_by: str = ""
    last_updated: str = ""
    last_updated_by: str = ""
    revision: str = ""

    @property
    def bounds(self) -> Bounds:
        return Bounds(self.row_count, self.column_count)

    def to_item(self) -> Dict[str, Any]:
        return {
            "building_key": self.building_key,
            "source_file_name": self.source_file.file_name,
            "source_file_size": self.source_file.file_size,
            "source_file_url": self.source_file.file_url,
            "source_file_key": self.source_file.file_key,
            "sheet_name": self.source_file.sheet_name,
            "uploaded_at": self.uploaded_at,
            "uploaded_by": self.uploaded_by,
            "last_updated": self.last_updated,
            "last_updated_by": self.last_updated_by,
            "sparse_cells": encode_sparse_cells(self.sparse_cells),
            "row_count": self.row_count,
            "column_count": self.column_count,
            "revision": self.revision,
        }

    @classmethod
    def from_item(cls, item: Mapping[str, Any]) -> "Matrix":
        return cls(
            building_key=str(item.get("building_key") or ""),
            sparse_cells=decode_sparse_cells(item.get("sparse_cells") or {}),
            row_count=int(item.get("row_count") or 0),
            column_count=int(item.get("column_count") or 0),
            source_file=SourceFile(
                file_name=str(item.get("source_file_name") or ""),
                file_size=int(item.get("source_file_size") or 0),
                file_url=item.get("source_file_url") or None,
                file_key=item.get("source_file_key") or None,
                sheet_name=str(item.get("sheet_name") or ""),
            ),
            uploaded_at=str(item.get("uploaded_at") or ""),
            uploaded_by=str(item.get("uploaded_by") or ""),
            last_updated=str(item.get("last_updated") or ""),
            last_updated_by=str(item.get("last_updated_by") or ""),
            revision=str(item.get("revision") or ""),
        )


def _new_revision() -> str:
    return uuid.uuid4().hex


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


class MatrixRepository:
    """Load/replace/edit/delete the matrix document of one building at a time."""

    def __init__(
        self,
        ddb: Any,
        table_name: str = BUILDING_RECORDS_TABLE,
        *,
        document_id: str = MATRIX_DOCUMENT_ID,
        collection_aliases: Optional[Mapping[str, str]] = None,
        max_attempts: int = CELL_WRITE_MAX_ATTEMPTS,
    ) -> None:
        self._ddb = ddb
        self.table_name = table_name
        self.document_id = document_id
        self.collection_aliases = dict(
            COLLECTION_ALIASES if collection_aliases is None else collection_aliases
        )
        self.max_attempts = max(1, max_attempts)

    # -- addressing ---------------------------------------------------------

    def collection_for(self, building_key: str) -> str:
        return self.collection_aliases.get(building_key, building_key)

    def _key(self, building_key: str) -> Dict[str, Any]:
        return {
            "collection": _serialize(self.collection_for(building_key)),
            "document_id": _serialize(self.document_id),
        }

    # -- reads --------------------------------------------------------------

    def _load_item(self, building_key: str) -> Optional[Dict[str, Any]]:
        try:
            resp = self._ddb.get_item(
                TableName=self.table_name,
                Key=self._key(building_key),
                ConsistentRead=True,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("matrix load failed for %s: %s", building_key, exc)
            raise StorageFailureError("Failed to load matrix.") from exc
        raw = resp.get("Item")
        if not raw:
            return None
        return _deserialize(raw)

    def load(self, building_key: str) -> Optional[Matrix]:
        item = self._load_item(building_key)
        if item is None:
            return None
        matrix = Matrix.from_item(item)
        matrix.building_key = matrix.building_key or building_key
        return matrix

    # -- writes -------------------------------------------------------------

    def replace(self, building_key: str, matrix: Matrix) -> Matrix:
        """Overwrite the whole document; fields absent from ``matrix`` are discarded."""
        stored = dc_replace(matrix, building_key=building_key, revision=_new_revision())
        item = {
            "collection": self.collection_for(building_key),
            "document_id": self.document_id,
            **stored.to_item(),
        }
        try:
            self._ddb.put_item(TableName=self.table_name, Item=_serialize_item(item))
        except (BotoCoreError, ClientError) as exc:
            logger.error("matrix replace failed for %s: %s", building_key, exc)
            raise StorageFailureError("Failed to save matrix.") from exc
        logger.info(
            "matrix replaced: building=%s rows=%d cols=%d cells=%d",
            building_key, stored.row_count, stored.column_count, len(stored.sparse_cells),
        )
        return stored

    def apply_cell_write(
        self,
        building_key: str,
        row: int,
        col: int,
        value: str,
        actor: str,
        *,
        check: Optional[Callable[[Matrix], None]] = None,
    ) -> Matrix:
        """Set (or clear, when ``value`` is empty) one cell and grow the bounds.

        ``check`` sees the edited matrix before it is written and may raise to
        reject the edit. Raises NotFoundError when no matrix exists,
        ConflictError when every attempt lost a race with another writer.
        """
        for attempt in range(1, self.max_attempts + 1):
            item = self._load_item(building_key)
            if item is None:
                raise NotFoundError(f"No cause-and-effect matrix for building '{building_key}'.")
            current = Matrix.from_item(item)
            current.building_key = current.building_key or building_key
            updated = self._edited(current, row, col, value, actor)
            if check is not None:
                check(updated)
            try:
                self._conditional_cell_update(
                    building_key,
                    current,
                    updated,
                    cell=(row, col),
                    has_cell_map="sparse_cells" in item,
                )
            except ClientError as exc:
                if _error_code(exc) != _CONDITIONAL_CHECK_FAILED:
                    logger.error("cell write failed for %s: %s", building_key, exc)
                    raise StorageFailureError("Failed to update matrix cell.") from exc
                logger.warning(
                    "cell write lost revision race: building=%s cell=%d_%d attempt=%d/%d",
                    building_key, row, col, attempt, self.max_attempts,
                )
                continue
            except BotoCoreError as exc:
                logger.error("cell write failed for %s: %s", building_key, exc)
                raise StorageFailureError("Failed to update matrix cell.") from exc
            return updated
        raise ConflictError(
            "Matrix was modified concurrently; retry the edit.",
            attempts=self.max_attempts,
        )

    @staticmethod
    def _edited(current: Matrix, row: int, col: int, value: str, actor: str) -> Matrix:
        cells = dict(current.sparse_cells)
        if value != "":
            cells[(row, col)] = value
        else:
            cells.pop((row, col), None)
        grown = bounds_tracker.grow(current.bounds, row, col)
        return dc_replace(
            current,
            sparse_cells=cells,
            row_count=grown.row_count,
            column_count=grown.column_count,
            last_updated=_now_z(),
            last_updated_by=actor,
            revision=_new_revision(),
        )

    def _conditional_cell_update(
        self,
        building_key: str,
        current: Matrix,
        updated: Matrix,
        *,
        cell: Tuple[int, int],
        has_cell_map: bool,
    ) -> None:
        row, col = cell
        value = updated.sparse_cells.get(cell, "")
        names = {
            "#cells": "sparse_cells",
            "#rows": "row_count",
            "#cols": "column_count",
            "#updated": "last_updated",
            "#updated_by": "last_updated_by",
            "#revision": "revision",
        }
        values = {
            ":rows": _serialize(updated.row_count),
            ":cols": _serialize(updated.column_count),
            ":now": _serialize(updated.last_updated),
            ":actor": _serialize(updated.last_updated_by),
            ":next": _serialize(updated.revision),
        }
        set_clauses = [
            "#rows = :rows",
            "#cols = :cols",
            "#updated = :now",
            "#updated_by = :actor",
            "#revision = :next",
        ]
        remove_clause = ""
        if not has_cell_map:
            # Documents written without a cell map get the whole map at once.
            set_clauses.insert(0, "#cells = :cells")
            values[":cells"] = _serialize(encode_sparse_cells(updated.sparse_cells))
        elif value != "":
            names["#cell"] = encode_cell_key(row, col)
            set_clauses.insert(0, "#cells.#cell = :value")
            values[":value"] = _serialize(value)
        else:
            names["#cell"] = encode_cell_key(row, col)
            remove_clause = " REMOVE #cells.#cell"

        if current.revision:
            condition = "#revision = :expected"
            values[":expected"] = _serialize(current.revision)
        else:
            names["#doc"] = "document_id"
            condition = "attribute_exists(#doc) AND attribute_not_exists(#revision)"

        self._ddb.update_item(
            TableName=self.table_name,
            Key=self._key(building_key),
            UpdateExpression="SET " + ", ".join(set_clauses) + remove_clause,
            ConditionExpression=condition,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )

    def delete(self, building_key: str) -> Optional[Matrix]:
        """Remove the document. Returns the deleted matrix, or None if there was none."""
        try:
            resp = self._ddb.delete_item(
                TableName=self.table_name,
                Key=self._key(building_key),
                ReturnValues="ALL_OLD",
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("matrix delete failed for %s: %s", building_key, exc)
            raise StorageFailureError("Failed to delete matrix.") from exc
        old = resp.get("Attributes")
        if not old:
            return None
        matrix = Matrix.from_item(_deserialize(old))
        matrix.building_key = matrix.building_key or building_key
        return matrix
