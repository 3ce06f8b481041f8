"""Stuck uploads: rows left in ``uploading`` past the stuck window.

If the blob made it to storage, the row is promoted to ``stored`` using
the file metadata the intake path wrote onto the object.  Otherwise the
attempt is counted and the row retried, or failed once the attempts are
used up.
"""

from __future__ import annotations

import logging
import sqlite3

from ingestor.blobstore import BlobStore, find_original, metadata_from_blob
from ingestor.models import ReconciliationConfig, UploadRecord, UploadState
from ingestor.reconciliation.base import PassResult, RowReconciliation
from ingestor.upload.exceptions import IncompleteRecordError
from ingestor.upload.state import UploadRecordStore

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_ERROR = "Max upload attempts exceeded"


class StuckUploadsReconciliation(RowReconciliation):
    name = "stuck_uploads"
    state = UploadState.UPLOADING

    def __init__(
        self,
        store: UploadRecordStore,
        blobs: BlobStore,
        bucket: str,
        config: ReconciliationConfig,
        instance_id: str,
    ) -> None:
        super().__init__(store, config, instance_id)
        self._blobs = blobs
        self._bucket = bucket

    def window(self) -> float:
        return self._config.stuck_upload_window

    async def process(self, record: UploadRecord, result: PassResult) -> None:
        key = await self.external(find_original(self._blobs, self._bucket, record.id))
        info = None
        if key is not None:
            info = await self.external(self._blobs.stat(self._bucket, key))

        if info is None:
            await self._no_blob(record, result)
            return

        metadata = metadata_from_blob(info, self._bucket)
        if metadata is None:
            raise IncompleteRecordError(record.id, ["blob object metadata"])

        try:
            await self._store.mark_stored(record, metadata)
        except sqlite3.IntegrityError:
            await self._store.mark_failed(record, "Duplicate content already stored")
            result.failed += 1
            logger.info("stuck_uploads: %s duplicates a stored upload, failed", record.id)
            return
        result.advanced += 1
        logger.info("stuck_uploads: %s found at %s, marked stored", record.id, key)

    async def _no_blob(self, record: UploadRecord, result: PassResult) -> None:
        if record.upload_attempts < self._config.max_upload_attempts:
            await self._store.record_retry(record)
            result.retried += 1
            logger.info(
                "stuck_uploads: %s has no blob, attempt %d of %d",
                record.id,
                record.upload_attempts + 1,
                self._config.max_upload_attempts,
            )
        else:
            await self._store.mark_failed(record, MAX_ATTEMPTS_ERROR)
            result.failed += 1
            logger.info("stuck_uploads: %s exceeded max attempts, failed", record.id)
