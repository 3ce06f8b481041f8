"""Orphaned objects: blobs in the bucket with no live record behind them.

A blob is an orphan when its record id (the first key segment) has no
row, or the row is ``failed`` or ``initiated``.  Rows in every other
state own their blob, including ``uploading`` rows whose blob the
stuck-uploads pass may still promote.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import aclosing

from ingestor.blobstore import BlobStore
from ingestor.models import ReconciliationConfig, UploadRecord, UploadState
from ingestor.reconciliation.base import BaseReconciliation, PassResult
from ingestor.upload.state import UploadRecordStore

logger = logging.getLogger(__name__)

_ORPHAN_STATES = frozenset({UploadState.FAILED, UploadState.INITIATED})


def is_orphan(record: UploadRecord | None) -> bool:
    return record is None or record.upload_state in _ORPHAN_STATES


class OrphanedObjectsReconciliation(BaseReconciliation):
    """Delete orphaned blobs, a batch of keys at a time.

    Each deletion is guarded by a lease on the key in ``object_claims``
    and by re-reading the row and the blob after the lease is taken, so
    concurrent instances delete any given blob at most once.
    """

    name = "orphaned_objects"

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

    async def run(self) -> PassResult:
        result = PassResult(self.name)
        started = time.monotonic()
        batch: list[str] = []

        async with aclosing(self._blobs.list_keys(self._bucket)) as keys:
            while True:
                key = await self.external(anext(keys, None))
                if key is None:
                    break
                batch.append(key)
                if len(batch) >= self._config.orphan_cleanup_batch_size:
                    await self._process_batch(batch, result)
                    batch = []
        if batch:
            await self._process_batch(batch, result)

        result.duration_seconds = time.monotonic() - started
        self._log_summary(result)
        return result

    async def _process_batch(self, keys: list[str], result: PassResult) -> None:
        for key in keys:
            result.examined += 1
            try:
                await self._handle_key(key, result)
            except Exception as exc:
                result.errors.append(f"{key}: {exc}")
                result.error_types.append(type(exc).__name__)
                logger.error("%s: failed to clean up %s: %s", self.name, key, exc)

    async def _handle_key(self, key: str, result: PassResult) -> None:
        if not is_orphan(await self._store.find_by_storage_prefix(key)):
            return
        if not await self._store.claim_object(key, self._instance_id, self._config.claim_ttl):
            result.skipped += 1
            logger.debug("%s: %s claimed elsewhere, skipping", self.name, key)
            return

        try:
            await self._delete_if_orphaned(key, result)
        except asyncio.CancelledError:
            await asyncio.shield(self._store.release_object(key, self._instance_id))
            raise
        except Exception:
            await self._store.release_object(key, self._instance_id)
            raise
        await self._store.release_object(key, self._instance_id)

    async def _delete_if_orphaned(self, key: str, result: PassResult) -> None:
        record = await self._store.find_by_storage_prefix(key)
        if not is_orphan(record):
            result.skipped += 1
            return
        if not await self.external(self._blobs.exists(self._bucket, key)):
            result.skipped += 1
            logger.debug("%s: %s already gone", self.name, key)
            return
        await self.external(self._blobs.delete(self._bucket, key))
        result.deleted += 1
        state = record.upload_state.value if record is not None else "no record"
        logger.info("%s: deleted %s (%s)", self.name, key, state)
