"""config.py — Central configuration — environment variables, limits, logging.

Part of the cause_effect_matrix Lambda.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Dict

__all__ = [
    "BUILDING_RECORDS_TABLE",
    "CELL_WRITE_MAX_ATTEMPTS",
    "COLLECTION_ALIASES",
    "DYNAMODB_REGION",
    "MATRIX_DOCUMENT_ID",
    "MAX_CELL_MAP_BYTES",
    "MAX_CELL_VALUE_LENGTH",
    "MAX_COLUMNS",
    "MAX_GRID_CELLS",
    "MAX_MATRIX_CELLS",
    "MAX_ROWS",
    "MAX_UPLOAD_BYTES",
    "S3_BUCKET",
    "S3_PREFIX",
    "S3_PUBLIC_BASE_URL",
    "S3_REGION",
    "ALLOWED_UPLOAD_EXTENSIONS",
    "logger",
]

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _parse_collection_aliases(raw: str) -> Dict[str, str]:
    """Parse the building key -> collection name override map (JSON object)."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Invalid COLLECTION_ALIASES JSON; ignoring collection alias map")
        return {}
    if not isinstance(parsed, dict):
        return {}
    out: Dict[str, str] = {}
    for key, value in parsed.items():
        building_key = str(key or "").strip()
        collection = str(value or "").strip()
        if building_key and collection:
            out[building_key] = collection
    return out


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

BUILDING_RECORDS_TABLE = os.environ.get("BUILDING_RECORDS_TABLE", "building-records")
MATRIX_DOCUMENT_ID = os.environ.get("MATRIX_DOCUMENT_ID", "cause-effect-matrix")
COLLECTION_ALIASES = _parse_collection_aliases(os.environ.get("COLLECTION_ALIASES", "").strip())
DYNAMODB_REGION = os.environ.get("DYNAMODB_REGION", "us-west-2")

S3_BUCKET = os.environ.get("S3_BUCKET", "building-safety-files")
S3_PREFIX = os.environ.get("S3_PREFIX", "cause-effect-matrices")
S3_REGION = os.environ.get("S3_REGION", DYNAMODB_REGION)
S3_PUBLIC_BASE_URL = os.environ.get(
    "S3_PUBLIC_BASE_URL",
    f"https://{S3_BUCKET}.s3.{S3_REGION}.amazonaws.com",
)

MAX_UPLOAD_BYTES = int(os.environ.get("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)))
MAX_MATRIX_CELLS = int(os.environ.get("MAX_MATRIX_CELLS", "20000"))
# DynamoDB items are capped at 400 KB; the remainder is left for metadata.
MAX_CELL_MAP_BYTES = int(os.environ.get("MAX_CELL_MAP_BYTES", str(350 * 1024)))
# rows x columns of the dense grid every read rebuilds; keeps responses under
# the 6 MB Lambda payload limit.
MAX_GRID_CELLS = int(os.environ.get("MAX_GRID_CELLS", "250000"))
MAX_CELL_VALUE_LENGTH = int(os.environ.get("MAX_CELL_VALUE_LENGTH", "2000"))
MAX_ROWS = int(os.environ.get("MAX_ROWS", "10000"))
MAX_COLUMNS = int(os.environ.get("MAX_COLUMNS", "1000"))
CELL_WRITE_MAX_ATTEMPTS = max(1, int(os.environ.get("CELL_WRITE_MAX_ATTEMPTS", "3")))
ALLOWED_UPLOAD_EXTENSIONS = {".xlsx", ".xlsm", ".csv"}
