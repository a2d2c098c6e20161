"""errors.py — Error taxonomy for the cause-and-effect matrix engine.

Every failure a matrix operation can produce is a ``MatrixError`` carrying the
HTTP status and envelope code the handler reports.
"""
from __future__ import annotations

from typing import Any, Dict

__all__ = [
    "ConflictError",
    "InvalidInputError",
    "MatrixError",
    "NotFoundError",
    "OutOfBoundsError",
    "StorageFailureError",
    "UnauthorizedError",
]


class MatrixError(Exception):
    """Base class for matrix operation failures."""

    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details


class NotFoundError(MatrixError):
    """No matrix (or no source file) exists for the building key."""

    status_code = 404
    code = "NOT_FOUND"


class InvalidInputError(MatrixError):
    status_code = 400
    code = "INVALID_INPUT"


class OutOfBoundsError(InvalidInputError):
    """A sparse cell key lies outside the declared bounds."""


class UnauthorizedError(MatrixError):
    status_code = 403
    code = "FORBIDDEN"


class ConflictError(MatrixError):
    """A conditional cell write kept losing to concurrent writers."""

    status_code = 409
    code = "CONFLICT"
    retryable = True


class StorageFailureError(MatrixError):
    """DynamoDB or S3 failed; the underlying cause is chained."""

    status_code = 502
    code = "UPSTREAM_ERROR"
    retryable = True
