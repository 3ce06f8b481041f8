"""Intake path: the happy-path upload flow that reconciliation backs up.

Steps, each persisted before the next begins:

1. Hash the bytes and dedup against the user's stored uploads.
2. Record the intent (``initiated``), then ``uploading``.
3. Write the blob with its file metadata as object metadata.
4. ``stored`` with full metadata.
5. Publish ``wallpaper.uploaded`` and move to ``processing``.

A crash between any two steps leaves a row the reconciliation engine
knows how to finish or clean up.
"""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import sqlite3
from dataclasses import dataclass
from pathlib import PurePath

from ingestor.blobstore import BlobStore, metadata_to_blob, original_key
from ingestor.events import EventChannel, build_uploaded_event
from ingestor.models import FileType, StoredMetadata, UploadRecord
from ingestor.upload.exceptions import TransientBackendError
from ingestor.upload.state import UploadRecordStore

logger = logging.getLogger(__name__)

STATUS_PROCESSING = "processing"
STATUS_STORED = "stored"
STATUS_ALREADY_UPLOADED = "already_uploaded"


@dataclass(slots=True)
class IntakeResult:
    id: str
    status: str
    is_duplicate: bool = False


def sanitize_filename(filename: str) -> str:
    """Strip any directory part and control characters from a client filename."""
    name = PurePath(filename.replace("\\", "/")).name
    name = "".join(ch for ch in name if ch.isprintable()).strip()
    return name or "upload"


_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
}


def extension_for(mime_type: str, filename: str) -> str:
    if mime_type in _EXTENSIONS:
        return _EXTENSIONS[mime_type]
    guessed = mimetypes.guess_extension(mime_type, strict=False)
    if guessed:
        return guessed.lstrip(".")
    suffix = PurePath(filename).suffix.lstrip(".")
    return suffix.lower() or "bin"


def file_type_for(mime_type: str) -> FileType:
    if mime_type.startswith("image/"):
        return FileType.IMAGE
    if mime_type.startswith("video/"):
        return FileType.VIDEO
    raise ValueError(f"Unsupported media type: {mime_type}")


class IntakeService:
    """Orchestrates one upload from bytes to a published completion event.

    Decoding media to find its dimensions is the caller's job; the
    service receives them alongside the bytes.
    """

    def __init__(
        self,
        store: UploadRecordStore,
        blobs: BlobStore,
        events: EventChannel,
        bucket: str,
        subject: str,
    ) -> None:
        self._store = store
        self._blobs = blobs
        self._events = events
        self._bucket = bucket
        self._subject = subject

    async def ingest(
        self,
        data: bytes,
        *,
        user_id: str,
        filename: str,
        mime_type: str,
        width: int,
        height: int,
    ) -> IntakeResult:
        """Run the intake path for one file.

        Returns:
            :class:`IntakeResult` whose status is ``processing`` when the
            event was published, ``stored`` when publishing failed and was
            left to reconciliation, or ``already_uploaded`` for duplicates.

        Raises:
            ValueError: If the input is not an acceptable upload.
            TransientBackendError: If the blob write fails.  The row is
                marked ``failed`` first.
        """
        if not data:
            raise ValueError("Upload is empty")
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid dimensions {width}x{height}")
        file_type = file_type_for(mime_type)
        safe_name = sanitize_filename(filename)

        content_hash = hashlib.sha256(data).hexdigest()
        record_id, duplicate = await self._store.create_intent(user_id, content_hash)
        if duplicate:
            logger.info("Upload by %s already stored as %s", user_id, record_id)
            return IntakeResult(record_id, STATUS_ALREADY_UPLOADED, is_duplicate=True)

        try:
            record = await self._store.mark_uploading(record_id)
            key = original_key(record_id, extension_for(mime_type, safe_name))
            await self._blobs.put(
                self._bucket,
                key,
                data,
                mime_type,
                metadata=metadata_to_blob(file_type, width, height, safe_name),
            )
            metadata = StoredMetadata(
                file_type=file_type,
                mime_type=mime_type,
                file_size_bytes=len(data),
                width=width,
                height=height,
                storage_key=key,
                storage_bucket=self._bucket,
                original_filename=safe_name,
            )
            try:
                record = await self._store.mark_stored(record, metadata)
            except sqlite3.IntegrityError:
                return await self._resolve_race(record, user_id, content_hash)
        except Exception as exc:
            await self._fail(record_id, exc)
            raise

        logger.info("Stored %s at s3://%s/%s", record_id, self._bucket, key)
        return await self._publish(record)

    async def _publish(self, record: UploadRecord) -> IntakeResult:
        event = build_uploaded_event(record, self._store.now())
        try:
            await self._events.publish(
                self._subject, event.to_payload(), dedup_key=event.event_id
            )
        except TransientBackendError as exc:
            logger.warning(
                "Publish for %s failed, leaving it for reconciliation: %s", record.id, exc
            )
            return IntakeResult(record.id, STATUS_STORED)
        await self._store.mark_processing(record)
        return IntakeResult(record.id, STATUS_PROCESSING)

    async def _resolve_race(
        self, record: UploadRecord, user_id: str, content_hash: str
    ) -> IntakeResult:
        """Another upload of the same content was stored first; defer to it."""
        winner = await self._store.find_duplicate(user_id, content_hash)
        if winner is None:
            raise RuntimeError(f"Dedup conflict for {record.id} but no stored duplicate")
        await self._store.mark_failed(record, f"Duplicate of {winner.id}")
        logger.info("Upload %s lost dedup race to %s", record.id, winner.id)
        return IntakeResult(winner.id, STATUS_ALREADY_UPLOADED, is_duplicate=True)

    async def _fail(self, record_id: str, error: BaseException) -> None:
        try:
            await self._store.mark_failed(record_id, str(error) or type(error).__name__)
        except Exception:
            logger.exception("Could not mark %s failed after intake error", record_id)
