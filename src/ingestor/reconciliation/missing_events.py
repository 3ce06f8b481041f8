"""Missing events: rows left in ``stored`` without a published event."""

from __future__ import annotations

import logging

from ingestor.events import EventChannel, build_uploaded_event
from ingestor.models import ReconciliationConfig, UploadRecord, UploadState
from ingestor.reconciliation.base import PassResult, RowReconciliation
from ingestor.upload.state import UploadRecordStore

logger = logging.getLogger(__name__)


class MissingEventsReconciliation(RowReconciliation):
    """Republish ``wallpaper.uploaded`` and move the row to ``processing``.

    The transition is committed only after the channel acknowledges the
    publish.  A crash between the two republishes with the same event id
    on the next cycle, which the channel and consumers deduplicate.
    """

    name = "missing_events"
    state = UploadState.STORED

    def __init__(
        self,
        store: UploadRecordStore,
        events: EventChannel,
        subject: str,
        config: ReconciliationConfig,
        instance_id: str,
    ) -> None:
        super().__init__(store, config, instance_id)
        self._events = events
        self._subject = subject

    def window(self) -> float:
        return self._config.missing_event_window

    async def process(self, record: UploadRecord, result: PassResult) -> None:
        event = build_uploaded_event(record, self._store.now())
        ack = await self.external(
            self._events.publish(self._subject, event.to_payload(), dedup_key=event.event_id)
        )
        await self._store.mark_processing(record)
        result.advanced += 1
        logger.info(
            "missing_events: republished %s as %s, marked processing", record.id, ack.entry_id
        )
