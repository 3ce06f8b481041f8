"""Exceptions raised by the upload state machine and its backends."""

from __future__ import annotations


class OCCConflictError(Exception):
    """Raised when a version-guarded update matches no row.

    Another writer changed the row (or took its claim) between our read
    and our write.
    """


class InvalidTransitionError(Exception):
    """Raised when the lifecycle FSM rejects an event from the current state."""


class IncompleteRecordError(Exception):
    """Raised when a row in a stored state lacks required metadata."""

    def __init__(self, record_id: str, missing: list[str]) -> None:
        self.record_id = record_id
        self.missing = missing
        super().__init__(
            f"Record {record_id} is missing metadata: {', '.join(missing)}"
        )


class TransientBackendError(Exception):
    """Raised when a blob store or event channel call fails after retries."""
