"""Reconciliation engine: the four repair passes behind one facade."""

from __future__ import annotations

import logging

from ingestor.blobstore import BlobStore
from ingestor.events import EventChannel
from ingestor.models import ReconciliationConfig
from ingestor.reconciliation.base import BaseReconciliation, PassResult
from ingestor.reconciliation.missing_events import MissingEventsReconciliation
from ingestor.reconciliation.orphaned_intents import OrphanedIntentsReconciliation
from ingestor.reconciliation.orphaned_objects import OrphanedObjectsReconciliation
from ingestor.reconciliation.stuck_uploads import StuckUploadsReconciliation
from ingestor.telemetry import RECORDS_PROCESSED, Telemetry
from ingestor.upload.state import UploadRecordStore

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Runs the reconciliation passes against one store, bucket and channel.

    Every pass is safe to run concurrently from several instances as
    long as each instance uses a distinct *instance_id*.

    Args:
        store: Connected upload record store.
        blobs: Blob store holding original uploads.
        events: Channel completion events are published to.
        config: Windows, batch sizes and timeouts.
        instance_id: Identifies this instance in row and object leases.
        bucket: Default bucket for the blob passes.
        subject: Subject completion events are published on.
        telemetry: Span and metric sink; defaults to the global OTel providers.
    """

    def __init__(
        self,
        store: UploadRecordStore,
        blobs: BlobStore,
        events: EventChannel,
        config: ReconciliationConfig,
        instance_id: str,
        bucket: str,
        subject: str,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.events = events
        self.config = config
        self.instance_id = instance_id
        self.bucket = bucket
        self.subject = subject
        self.telemetry = telemetry or Telemetry.default()

    async def reconcile_stuck_uploads(self, bucket: str | None = None) -> PassResult:
        """Promote, retry or fail rows stuck in ``uploading``."""
        return await self._run(
            StuckUploadsReconciliation(
                self.store, self.blobs, bucket or self.bucket, self.config, self.instance_id
            )
        )

    async def reconcile_missing_events(self) -> PassResult:
        """Republish events for rows stuck in ``stored``."""
        return await self._run(
            MissingEventsReconciliation(
                self.store, self.events, self.subject, self.config, self.instance_id
            )
        )

    async def reconcile_orphaned_intents(self) -> PassResult:
        """Delete ``initiated`` rows that never started uploading."""
        return await self._run(
            OrphanedIntentsReconciliation(self.store, self.config, self.instance_id)
        )

    async def reconcile_orphaned_objects(self, bucket: str | None = None) -> PassResult:
        """Delete blobs with no live record."""
        return await self._run(
            OrphanedObjectsReconciliation(
                self.store, self.blobs, bucket or self.bucket, self.config, self.instance_id
            )
        )

    async def _run(self, reconciliation: BaseReconciliation) -> PassResult:
        name = reconciliation.name
        with self.telemetry.pass_span(name) as span:
            try:
                result = await reconciliation.run()
            except Exception as exc:
                self.telemetry.record_crash(name, exc)
                raise
            span.set_attribute(RECORDS_PROCESSED, result.examined)
            self.telemetry.record_pass(result)
        return result
