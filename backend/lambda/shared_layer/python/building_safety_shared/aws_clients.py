"""building_safety_shared.aws_clients — Lazy-singleton AWS service clients.

Provides factory functions that create boto3 clients on first call and
cache them for subsequent invocations. This avoids paying the boto3 client
construction cost on cold starts until the client is actually needed.
"""

from __future__ import annotations

import os
from typing import Optional

import boto3
from botocore.config import Config

# ---------------------------------------------------------------------------
# Default region and timeouts (overridable via env)
# ---------------------------------------------------------------------------

DYNAMODB_REGION: str = os.environ.get("DYNAMODB_REGION", "us-west-2")
S3_REGION: str = os.environ.get("S3_REGION", os.environ.get("DYNAMODB_REGION", "us-west-2"))
CONNECT_TIMEOUT_SECONDS: float = float(os.environ.get("AWS_CONNECT_TIMEOUT_SECONDS", "5"))
READ_TIMEOUT_SECONDS: float = float(os.environ.get("AWS_READ_TIMEOUT_SECONDS", "10"))

# ---------------------------------------------------------------------------
# Client singletons
# ---------------------------------------------------------------------------

_ddb = None
_s3 = None


def _client_config(max_attempts: int) -> Config:
    return Config(
        retries={"max_attempts": max_attempts, "mode": "standard"},
        connect_timeout=CONNECT_TIMEOUT_SECONDS,
        read_timeout=READ_TIMEOUT_SECONDS,
    )


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or DYNAMODB_REGION,
            config=_client_config(5),
        )
    return _ddb


def _get_s3(region: Optional[str] = None):
    """Get (or create) the S3 client singleton."""
    global _s3
    if _s3 is None:
        _s3 = boto3.client(
            "s3",
            region_name=region or S3_REGION,
            config=_client_config(3),
        )
    return _s3
