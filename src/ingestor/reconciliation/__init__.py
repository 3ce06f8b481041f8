"""Reconciliation: background repair of upload records and blobs.

Public API
----------
.. autoclass:: ReconciliationEngine
.. autoclass:: ReconciliationScheduler
.. autoclass:: PassResult
.. autoclass:: CycleReport
"""

from ingestor.reconciliation.base import BaseReconciliation, PassResult, RowReconciliation
from ingestor.reconciliation.engine import ReconciliationEngine
from ingestor.reconciliation.scheduler import (
    CycleReport,
    ReconciliationScheduler,
    SchedulerState,
)

__all__ = [
    "BaseReconciliation",
    "CycleReport",
    "PassResult",
    "ReconciliationEngine",
    "ReconciliationScheduler",
    "RowReconciliation",
    "SchedulerState",
]
