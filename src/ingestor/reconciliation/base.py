"""Shared plumbing for reconciliation passes.

Row-based passes page through candidate rows with keyset pagination,
take a lease on each row before touching any external system, and commit
the resulting transition with the lease as part of the CAS guard.  One
row's failure never aborts the pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TypeVar

from ingestor.models import ReconciliationConfig, UploadRecord, UploadState
from ingestor.upload.exceptions import OCCConflictError
from ingestor.upload.state import UploadRecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PassResult:
    """Summary of one reconciliation pass.

    Attributes:
        name: Pass name, e.g. ``stuck_uploads``.
        examined: Candidates looked at.
        advanced: Rows moved forward (``stored`` or ``processing``).
        retried: Stuck uploads given another attempt.
        failed: Rows moved to ``failed``.
        deleted: Rows or blobs removed.
        skipped: Candidates another instance claimed or changed first.
        errors: One ``"<id>: <message>"`` entry per candidate that errored.
        error_types: Exception class name behind each entry in :attr:`errors`.
        duration_seconds: Wall time of the pass.
    """

    name: str
    examined: int = 0
    advanced: int = 0
    retried: int = 0
    failed: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)
    error_types: list[str] = field(default_factory=list, repr=False)
    duration_seconds: float = 0.0

    @property
    def changed(self) -> int:
        return self.advanced + self.retried + self.failed + self.deleted


class BaseReconciliation(ABC):
    """Base class for all reconciliation passes."""

    name: str

    def __init__(
        self,
        store: UploadRecordStore,
        config: ReconciliationConfig,
        instance_id: str,
    ) -> None:
        self._store = store
        self._config = config
        self._instance_id = instance_id

    @abstractmethod
    async def run(self) -> PassResult:
        """Run the pass once and return its summary."""

    async def external(self, call: Awaitable[T]) -> T:
        """Await a blob store or event channel call under the configured timeout."""
        return await asyncio.wait_for(call, self._config.external_call_timeout)

    def _log_summary(self, result: PassResult) -> None:
        if result.examined == 0:
            logger.debug("%s: no candidates", self.name)
            return
        logger.info(
            "%s: examined %d, advanced %d, retried %d, failed %d, "
            "deleted %d, skipped %d, errors %d (%.2fs)",
            self.name,
            result.examined,
            result.advanced,
            result.retried,
            result.failed,
            result.deleted,
            result.skipped,
            len(result.errors),
            result.duration_seconds,
        )


class RowReconciliation(BaseReconciliation):
    """A pass that repairs rows stuck in one upload state.

    Subclasses set :attr:`state`, return their time window from
    :meth:`window`, and implement :meth:`process` for a claimed row.
    ``process`` must either commit a transition (which releases the
    lease) or raise.
    """

    state: UploadState

    @abstractmethod
    def window(self) -> float:
        """Seconds a row must sit unchanged in :attr:`state` to be a candidate."""

    @abstractmethod
    async def process(self, record: UploadRecord, result: PassResult) -> None:
        """Repair one claimed row and update *result*."""

    async def run(self) -> PassResult:
        """Run the pass over a snapshot of current candidates."""
        result = PassResult(self.name)
        started = time.monotonic()
        after: tuple[str, str] | None = None
        batch_size = self._config.batch_size

        while True:
            batch = await self._store.select_candidates(
                self.state, self.window(), batch_size, after=after
            )
            for record in batch:
                result.examined += 1
                await self.handle(record, result)
            if len(batch) < batch_size:
                break
            after = (batch[-1].state_changed_at, batch[-1].id)

        result.duration_seconds = time.monotonic() - started
        self._log_summary(result)
        return result

    async def handle(self, record: UploadRecord, result: PassResult) -> None:
        """Claim *record*, process it, and isolate any failure to this row."""
        claimed = await self._store.claim(record, self._instance_id, self._config.claim_ttl)
        if claimed is None:
            result.skipped += 1
            logger.debug("%s: %s claimed elsewhere, skipping", self.name, record.id)
            return

        try:
            await self.process(claimed, result)
        except asyncio.CancelledError:
            await asyncio.shield(self._store.release(claimed))
            raise
        except OCCConflictError:
            result.skipped += 1
            logger.debug("%s: %s changed under us, skipping", self.name, record.id)
            await self._store.release(claimed)
        except Exception as exc:
            result.errors.append(f"{record.id}: {exc}")
            result.error_types.append(type(exc).__name__)
            logger.error("%s: failed to reconcile %s: %s", self.name, record.id, exc)
            await self._store.release(claimed)
