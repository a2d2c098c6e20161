"""cause_effect_matrix/lambda_function.py

Lambda API for building cause-and-effect (C&E) matrices.
Handles upload (POST), retrieve (GET), single-cell edit (PATCH/PUT), delete
(DELETE) and source-file download lookups. Matrices are stored in DynamoDB as
sparse cell maps; the original spreadsheet is kept on S3.

Routes (via API Gateway proxy):
    GET     /api/v1/buildings/{buildingKey}/cause-effect-matrix : matrix + dense grid
    POST    /api/v1/buildings/{buildingKey}/cause-effect-matrix : upload spreadsheet
    PATCH   /api/v1/buildings/{buildingKey}/cause-effect-matrix/cell : edit one cell
    DELETE  /api/v1/buildings/{buildingKey}/cause-effect-matrix : delete (admin)
    GET     /api/v1/buildings/{buildingKey}/cause-effect-matrix/download : source file URL
    OPTIONS /api/v1/buildings/{buildingKey}/cause-effect-matrix[/*] : CORS preflight

Upload bodies are either JSON ``{"file_name", "file_content_base64"}`` or
multipart/form-data with the file in the ``excelFile`` field.

Auth:
    Cognito ID token (cookie or bearer header) or internal API key, via the
    building_safety_shared layer. Uploads, edits and downloads need an admin
    role or the building in ``custom:buildings``; deletes need admin.

Environment variables:
    BUILDING_RECORDS_TABLE  default: building-records
    MATRIX_DOCUMENT_ID      default: cause-effect-matrix
    COLLECTION_ALIASES      JSON object, building key -> collection name
    S3_BUCKET               default: building-safety-files
    S3_PREFIX               default: cause-effect-matrices
    DYNAMODB_REGION         default: us-west-2
"""

from __future__ import annotations

import base64
import binascii
import re
from email.parser import BytesParser
from email.policy import default as default_policy
from typing import Any, Dict, Optional, Tuple
from urllib.parse import unquote

from building_safety_shared.auth import _authenticate
from building_safety_shared.aws_clients import _get_ddb, _get_s3
from building_safety_shared.http_utils import (
    _cors_headers,
    _error,
    _header,
    _json_body,
    _path_method,
    _raw_body,
    _response,
)

from config import logger
from errors import InvalidInputError, MatrixError
from file_store import SourceFileStore
from repository import MatrixRepository
from service import MatrixService

UPLOAD_FIELD_NAME = "excelFile"
_BUILDING_KEY_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")
_ROUTE_RE = re.compile(
    r"/buildings/(?P<building>[^/]+)/cause-effect-matrix(?P<action>/cell|/download|/upload)?/?$"
)

# ---------------------------------------------------------------------------
# Service wiring (lazy, one per container)
# ---------------------------------------------------------------------------

_service: Optional[MatrixService] = None


def _get_service() -> MatrixService:
    global _service
    if _service is None:
        _service = MatrixService(
            MatrixRepository(_get_ddb()),
            SourceFileStore(_get_s3()),
        )
    return _service


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------


def _parse_route(event: Dict[str, Any], path: str) -> Optional[Tuple[str, str]]:
    """Return (building_key, action) for a matrix route, or None."""
    path_params = event.get("pathParameters") or {}
    building_key = path_params.get("buildingKey") or path_params.get("building_key")
    match = _ROUTE_RE.search(path)
    if not match:
        return None
    building_key = unquote(building_key or match.group("building"))
    action = (match.group("action") or "").strip("/")
    if action == "upload":
        action = ""
    return building_key, action


def _multipart_file(event: Dict[str, Any], content_type: str) -> Tuple[str, bytes]:
    raw = _raw_body(event)
    message = BytesParser(policy=default_policy).parsebytes(
        b"Content-Type: " + content_type.encode("utf-8") + b"\r\n\r\n" + raw
    )
    if not message.is_multipart():
        raise InvalidInputError("Malformed multipart body.")
    for part in message.iter_parts():
        if part.get_param("name", header="content-disposition") != UPLOAD_FIELD_NAME:
            continue
        return part.get_filename() or "", part.get_payload(decode=True) or b""
    raise InvalidInputError(f"Multipart field '{UPLOAD_FIELD_NAME}' is required.")


def _upload_payload(event: Dict[str, Any]) -> Tuple[str, bytes]:
    """Extract (file_name, content) from a JSON or multipart upload."""
    content_type = _header(event, "content-type")
    if content_type.lower().startswith("multipart/form-data"):
        return _multipart_file(event, content_type)

    body = _request_json(event)
    encoded = body.get("file_content_base64")
    if not isinstance(encoded, str) or not encoded:
        raise InvalidInputError("Field 'file_content_base64' is required.")
    try:
        content = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInputError("Field 'file_content_base64' is not valid base64.") from exc
    return str(body.get("file_name") or ""), content


def _request_json(event: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return _json_body(event)
    except ValueError as exc:
        raise InvalidInputError(str(exc)) from exc


def _first_present(body: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in body:
            return body[name]
    return None


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------


def _handle_get(building_key: str) -> Dict[str, Any]:
    matrix = _get_service().read_matrix(building_key)
    return _response(200, {"success": True, "building_key": building_key, "matrix": matrix})


def _handle_download(building_key: str, claims: Dict[str, Any]) -> Dict[str, Any]:
    service = _get_service()
    service.authorize(claims, building_key)
    return _response(200, {"success": True, **service.download_url(building_key)})


def _handle_upload(event: Dict[str, Any], building_key: str, claims: Dict[str, Any]) -> Dict[str, Any]:
    service = _get_service()
    actor = service.authorize(claims, building_key)
    file_name, content = _upload_payload(event)
    matrix = service.upload_file(building_key, file_name, content, actor)
    return _response(200, {
        "success": True,
        "message": f"Matrix uploaded successfully for {building_key}",
        "matrix": matrix,
    })


def _handle_cell(event: Dict[str, Any], building_key: str, claims: Dict[str, Any]) -> Dict[str, Any]:
    service = _get_service()
    actor = service.authorize(claims, building_key)
    body = _request_json(event)
    row = _first_present(body, "row_index", "rowIndex")
    col = _first_present(body, "column_index", "columnIndex")
    if row is None or col is None:
        raise InvalidInputError("Fields 'row_index' and 'column_index' are required.")
    matrix = service.write_cell(building_key, row, col, _first_present(body, "value"), actor)
    return _response(200, {"success": True, "message": "Cell updated successfully", "matrix": matrix})


def _handle_delete(building_key: str, claims: Dict[str, Any]) -> Dict[str, Any]:
    service = _get_service()
    actor = service.authorize(claims, building_key, require_admin=True)
    result = service.delete_matrix(building_key, actor)
    message = "Matrix deleted successfully" if result["deleted"] else "Matrix not found; nothing to delete"
    return _response(200, {"success": True, "message": message, **result})


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)

    # CORS preflight
    if method == "OPTIONS":
        return {"statusCode": 204, "headers": _cors_headers(), "body": ""}

    route = _parse_route(event, path)
    if route is None:
        return _error(404, f"No route for {method} {path}.")
    building_key, action = route
    if not _BUILDING_KEY_RE.match(building_key):
        return _error(400, "Invalid building key.")

    claims, auth_err = _authenticate(event, error_fn=_error)
    if auth_err:
        return auth_err

    logger.info("request: method=%s building=%s action=%s", method, building_key, action or "matrix")
    try:
        if action == "download" and method == "GET":
            return _handle_download(building_key, claims)
        if action == "cell" and method in ("PATCH", "PUT"):
            return _handle_cell(event, building_key, claims)
        if action == "":
            if method == "GET":
                return _handle_get(building_key)
            if method == "POST":
                return _handle_upload(event, building_key, claims)
            if method == "DELETE":
                return _handle_delete(building_key, claims)
        return _error(405, f"Method {method} not allowed.")
    except MatrixError as exc:
        if exc.status_code >= 500:
            logger.error("matrix %s failed for %s: %s (cause: %r)", method, building_key, exc, exc.__cause__)
        return _error(
            exc.status_code,
            exc.message,
            code=exc.code,
            retryable=exc.retryable,
            **exc.details,
        )
    except Exception:
        logger.exception("unhandled error: method=%s building=%s", method, building_key)
        return _error(500, "Internal Server Error")
