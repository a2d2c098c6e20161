"""file_store.py — S3 storage for the original uploaded spreadsheets."""
from __future__ import annotations

import logging
import re
import time
from typing import Any, Optional, Tuple
from urllib.parse import quote, unquote

from botocore.exceptions import BotoCoreError, ClientError

from config import S3_BUCKET, S3_PREFIX, S3_PUBLIC_BASE_URL
from errors import StorageFailureError

__all__ = ["SourceFileStore", "safe_file_name"]

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")

_CONTENT_TYPES = {
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xlsm": "application/vnd.ms-excel.sheet.macroEnabled.12",
    ".csv": "text/csv",
}


def safe_file_name(file_name: str) -> str:
    return _UNSAFE_CHARS.sub("_", file_name) or "upload"


def _content_type(file_name: str) -> str:
    lower_name = file_name.lower()
    for ext, content_type in _CONTENT_TYPES.items():
        if lower_name.endswith(ext):
            return content_type
    return "application/octet-stream"


class SourceFileStore:
    def __init__(
        self,
        s3: Any,
        bucket: str = S3_BUCKET,
        prefix: str = S3_PREFIX,
        public_base_url: str = S3_PUBLIC_BASE_URL,
    ) -> None:
        self._s3 = s3
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.public_base_url = public_base_url.rstrip("/")

    def object_key(self, building_key: str, file_name: str, timestamp_ms: Optional[int] = None) -> str:
        stamp = int(time.time() * 1000) if timestamp_ms is None else timestamp_ms
        return f"{self.prefix}/{building_key}/{stamp}-{safe_file_name(file_name)}"

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{quote(key)}"

    def key_from_url(self, url: str) -> Optional[str]:
        """Recover the object key from a stored URL (documents written before keys were kept)."""
        marker = f"{self.public_base_url}/"
        if url and url.startswith(marker):
            return unquote(url[len(marker):]) or None
        return None

    def upload(self, building_key: str, file_name: str, content: bytes) -> Tuple[str, str]:
        """Store the file. Returns (object_key, url)."""
        key = self.object_key(building_key, file_name)
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content,
                ContentType=_content_type(file_name),
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailureError("Failed to store source file.") from exc
        logger.info("source file stored: s3://%s/%s size=%d", self.bucket, key, len(content))
        return key, self.url_for(key)

    def delete(self, key: str) -> None:
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailureError("Failed to delete source file.") from exc
        logger.info("source file deleted: s3://%s/%s", self.bucket, key)
