"""spreadsheet.py — Decode an uploaded spreadsheet into a dense grid of strings.

Only the first worksheet is read. Empty cells become ``""``; trailing rows
that are entirely empty (formatted but unused ranges) are dropped.
"""
from __future__ import annotations

import csv
import datetime as dt
import io
import zipfile
from dataclasses import dataclass
from typing import Any, Iterable, List, Sequence

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from codec import Grid
from errors import InvalidInputError

__all__ = ["DecodedSheet", "cell_text", "decode_spreadsheet"]


@dataclass(frozen=True)
class DecodedSheet:
    sheet_name: str
    grid: Grid


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    return str(value)


def _trim_trailing_empty_rows(rows: List[List[str]]) -> Grid:
    end = len(rows)
    while end and all(value == "" for value in rows[end - 1]):
        end -= 1
    return rows[:end]


def _grid_from_rows(rows: Iterable[Sequence[Any]]) -> Grid:
    return _trim_trailing_empty_rows([[cell_text(value) for value in row] for row in rows])


def _decode_csv(content: bytes) -> DecodedSheet:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise InvalidInputError("CSV upload must be UTF-8 encoded.") from exc
    try:
        rows = list(csv.reader(io.StringIO(text)))
    except csv.Error as exc:
        raise InvalidInputError(f"Unable to parse CSV upload: {exc}") from exc
    return DecodedSheet(sheet_name="Sheet1", grid=_grid_from_rows(rows))


def _decode_workbook(content: bytes) -> DecodedSheet:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as exc:
        raise InvalidInputError(f"Unable to read spreadsheet: {exc}") from exc
    try:
        if not workbook.worksheets:
            raise InvalidInputError("Spreadsheet contains no worksheets.")
        worksheet = workbook.worksheets[0]
        grid = _grid_from_rows(worksheet.iter_rows(values_only=True))
        return DecodedSheet(sheet_name=worksheet.title, grid=grid)
    finally:
        workbook.close()


def decode_spreadsheet(file_name: str, content: bytes) -> DecodedSheet:
    """Decode ``content`` by file extension (.csv, otherwise an Excel workbook)."""
    if not content:
        raise InvalidInputError("Uploaded file is empty.")
    if file_name.lower().endswith(".csv"):
        return _decode_csv(content)
    return _decode_workbook(content)
