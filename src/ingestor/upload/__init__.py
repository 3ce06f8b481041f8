"""Upload lifecycle: state machine, record store and intake path.

Public API
----------
.. autoclass:: UploadLifecycleSM
.. autoclass:: UploadRecordStore
.. autoclass:: OCCConflictError
.. autoclass:: InvalidTransitionError

The intake path lives in :mod:`ingestor.upload.intake`; it depends on the
blob store and event channel and is imported from there directly.
"""

from ingestor.upload.exceptions import (
    IncompleteRecordError,
    InvalidTransitionError,
    OCCConflictError,
    TransientBackendError,
)
from ingestor.upload.fsm import UploadLifecycleSM, can_transition, check_transition
from ingestor.upload.state import UploadRecordStore

__all__ = [
    "IncompleteRecordError",
    "InvalidTransitionError",
    "OCCConflictError",
    "TransientBackendError",
    "UploadLifecycleSM",
    "UploadRecordStore",
    "can_transition",
    "check_transition",
]
