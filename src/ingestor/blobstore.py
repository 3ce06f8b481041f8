"""Blob Store: S3-compatible object storage for original upload bytes.

Keys follow ``<record_id>/original.<ext>``.  The record id is always the
first path segment, which is how the orphaned-object pass maps a key
back to its row.  File metadata is written as S3 object metadata at put
time so that a stuck upload can be promoted to ``stored`` from the blob
alone.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import aclosing
from typing import Any, Protocol, TypeVar
from urllib.parse import quote, unquote

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ingestor.models import BlobInfo, FileType, StoredMetadata
from ingestor.upload.exceptions import TransientBackendError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_NOT_FOUND_CODES = frozenset({"404", "NoSuchKey", "NotFound"})

# Object metadata keys (S3 lower-cases user metadata keys).
META_FILE_TYPE = "file-type"
META_WIDTH = "width"
META_HEIGHT = "height"
META_ORIGINAL_FILENAME = "original-filename"


class BlobStore(Protocol):
    """Operations the ingestor needs from object storage."""

    async def put(
        self,
        bucket: str,
        key: str,
        body: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None: ...

    async def exists(self, bucket: str, key: str) -> bool: ...

    async def stat(self, bucket: str, key: str) -> BlobInfo | None: ...

    async def delete(self, bucket: str, key: str) -> None: ...

    def list_keys(self, bucket: str, prefix: str | None = None) -> AsyncGenerator[str, None]: ...

    async def check_health(self, bucket: str) -> bool: ...


# ---------------------------------------------------------------------------
# Key and metadata helpers
# ---------------------------------------------------------------------------


def original_key(record_id: str, extension: str) -> str:
    return f"{record_id}/original.{extension.lstrip('.').lower()}"


def original_prefix(record_id: str) -> str:
    return f"{record_id}/original"


def record_id_from_key(key: str) -> str:
    return key.split("/", 1)[0]


def metadata_to_blob(
    file_type: FileType, width: int, height: int, original_filename: str
) -> dict[str, str]:
    """Encode file metadata as S3 user metadata (ASCII only)."""
    return {
        META_FILE_TYPE: FileType(file_type).value,
        META_WIDTH: str(width),
        META_HEIGHT: str(height),
        META_ORIGINAL_FILENAME: quote(original_filename, safe=""),
    }


def metadata_from_blob(info: BlobInfo, bucket: str) -> StoredMetadata | None:
    """Rebuild :class:`StoredMetadata` from a stat result.

    Returns ``None`` when any required field is absent or malformed.
    """
    if not info.content_type:
        return None
    meta = info.metadata
    try:
        width = int(meta[META_WIDTH])
        height = int(meta[META_HEIGHT])
        if width <= 0 or height <= 0:
            return None
        return StoredMetadata(
            file_type=FileType(meta[META_FILE_TYPE]),
            mime_type=info.content_type,
            file_size_bytes=info.size,
            width=width,
            height=height,
            storage_key=info.key,
            storage_bucket=bucket,
            original_filename=unquote(meta[META_ORIGINAL_FILENAME]),
        )
    except (KeyError, ValueError):
        return None


async def find_original(blobs: BlobStore, bucket: str, record_id: str) -> str | None:
    """Return the key of the record's original blob, whatever its extension."""
    async with aclosing(blobs.list_keys(bucket, prefix=original_prefix(record_id))) as keys:
        async for key in keys:
            return key
    return None


# ---------------------------------------------------------------------------
# S3 implementation
# ---------------------------------------------------------------------------


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, ClientError) and _error_code(exc) in _NOT_FOUND_CODES


def _is_transient(exc: BaseException) -> bool:
    """Network errors, throttling and 5xx responses are worth another try."""
    if isinstance(exc, BotoCoreError):
        return True
    if isinstance(exc, ClientError):
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return status >= 500 or _error_code(exc) in {"SlowDown", "Throttling", "RequestTimeout"}
    return False


class S3BlobStore:
    """aioboto3-backed :class:`BlobStore` for S3 or MinIO.

    The client context is held open between ``connect()`` and ``close()``
    (or for the life of an ``async with`` block).
    """

    def __init__(
        self,
        endpoint_url: str | None = None,
        region_name: str = "us-east-1",
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        max_attempts: int = 3,
    ) -> None:
        self._session = aioboto3.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region_name,
        )
        self._endpoint_url = endpoint_url
        self._region_name = region_name
        self._max_attempts = max_attempts
        self._client_cm: Any = None
        self._client: Any = None

    async def connect(self) -> None:
        self._client_cm = self._session.client(
            "s3", region_name=self._region_name, endpoint_url=self._endpoint_url
        )
        self._client = await self._client_cm.__aenter__()

    async def close(self) -> None:
        if self._client_cm is not None:
            await self._client_cm.__aexit__(None, None, None)
            self._client_cm = None
            self._client = None

    async def __aenter__(self) -> S3BlobStore:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        await self.close()

    def _ensure_connected(self) -> Any:
        if self._client is None:
            raise RuntimeError("Not connected -- use 'async with' or call connect()")
        return self._client

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run *fn* with bounded retries on transient S3 errors."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    return await fn()
        except (BotoCoreError, ClientError) as exc:
            logger.error("S3 %s failed: %s", operation, exc)
            raise TransientBackendError(f"S3 {operation} failed: {exc}") from exc
        raise AssertionError("unreachable")  # pragma: no cover

    async def put(
        self,
        bucket: str,
        key: str,
        body: bytes,
        content_type: str,
        metadata: dict[str, str] | None = None,
    ) -> None:
        client = self._ensure_connected()
        await self._call(
            "put_object",
            lambda: client.put_object(
                Bucket=bucket,
                Key=key,
                Body=body,
                ContentType=content_type,
                Metadata=metadata or {},
            ),
        )
        logger.debug("Stored s3://%s/%s (%d bytes)", bucket, key, len(body))

    async def stat(self, bucket: str, key: str) -> BlobInfo | None:
        client = self._ensure_connected()

        async def _head() -> dict[str, Any] | None:
            try:
                return await client.head_object(Bucket=bucket, Key=key)
            except ClientError as exc:
                if _is_not_found(exc):
                    return None
                raise

        head = await self._call("head_object", _head)
        if head is None:
            return None
        return BlobInfo(
            key=key,
            size=int(head.get("ContentLength", 0)),
            content_type=head.get("ContentType"),
            last_modified=head.get("LastModified"),
            metadata=dict(head.get("Metadata") or {}),
        )

    async def exists(self, bucket: str, key: str) -> bool:
        return await self.stat(bucket, key) is not None

    async def delete(self, bucket: str, key: str) -> None:
        """Delete *key*.  Deleting an absent key succeeds."""
        client = self._ensure_connected()

        async def _delete() -> None:
            try:
                await client.delete_object(Bucket=bucket, Key=key)
            except ClientError as exc:
                if not _is_not_found(exc):
                    raise

        await self._call("delete_object", _delete)
        logger.debug("Deleted s3://%s/%s", bucket, key)

    async def list_keys(self, bucket: str, prefix: str | None = None) -> AsyncGenerator[str, None]:
        """Yield every key in *bucket* (optionally under *prefix*), page by page."""
        client = self._ensure_connected()
        kwargs: dict[str, str] = {"Bucket": bucket}
        if prefix:
            kwargs["Prefix"] = prefix
        paginator = client.get_paginator("list_objects_v2")
        try:
            async for page in paginator.paginate(**kwargs):
                for obj in page.get("Contents", []):
                    yield obj["Key"]
        except (BotoCoreError, ClientError) as exc:
            logger.error("S3 list_objects_v2 failed: %s", exc)
            raise TransientBackendError(f"S3 list_objects_v2 failed: {exc}") from exc

    async def check_health(self, bucket: str) -> bool:
        try:
            client = self._ensure_connected()
            await client.head_bucket(Bucket=bucket)
        except (RuntimeError, BotoCoreError, ClientError) as exc:
            logger.warning("Blob store health check failed: %s", exc)
            return False
        return True
