"""Orphaned intents: ``initiated`` rows whose upload never started."""

from __future__ import annotations

import logging

from ingestor.models import UploadRecord, UploadState
from ingestor.reconciliation.base import PassResult, RowReconciliation

logger = logging.getLogger(__name__)


class OrphanedIntentsReconciliation(RowReconciliation):
    """Delete ``initiated`` rows older than the intent window.

    No external system is involved, so there is nothing to lease: the
    delete itself is guarded on state, version and age.
    """

    name = "orphaned_intents"
    state = UploadState.INITIATED

    def window(self) -> float:
        return self._config.orphaned_intent_window

    async def handle(self, record: UploadRecord, result: PassResult) -> None:
        try:
            await self.process(record, result)
        except Exception as exc:
            result.errors.append(f"{record.id}: {exc}")
            result.error_types.append(type(exc).__name__)
            logger.error("%s: failed to delete %s: %s", self.name, record.id, exc)

    async def process(self, record: UploadRecord, result: PassResult) -> None:
        if await self._store.delete_orphaned_intent(record, self.window()):
            result.deleted += 1
            logger.info("orphaned_intents: deleted %s", record.id)
        else:
            result.skipped += 1
            logger.debug("orphaned_intents: %s changed or claimed, skipping", record.id)
