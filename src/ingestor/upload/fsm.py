"""Upload lifecycle finite state machine.

Each check builds a throwaway FSM positioned at the row's current
``upload_state``.  The FSM is purely a validation tool -- it does NOT
perform DB writes.  :class:`~ingestor.upload.state.UploadRecordStore`
persists the change with a version-guarded UPDATE after the FSM has
accepted the event.
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from ingestor.models import UploadState
from ingestor.upload.exceptions import InvalidTransitionError


class UploadLifecycleSM(StateMachine):
    """Six-state lifecycle for a wallpaper upload.

    States:
        initiated  -- Intent recorded, no bytes sent yet.
        uploading  -- Blob write in flight.
        stored     -- Blob durable and metadata recorded, event not yet published.
        processing -- Completion event published, downstream work running.
        completed  -- Downstream consumers acknowledged.
        failed     -- Terminal failure.

    Deleting an orphaned ``initiated`` row is not an FSM event; it is a
    guarded store operation.
    """

    initiated = State("initiated", initial=True, value="initiated")
    uploading = State("uploading", value="uploading")
    stored = State("stored", value="stored")
    processing = State("processing", value="processing")
    completed = State("completed", final=True, value="completed")
    failed = State("failed", final=True, value="failed")

    start_upload = initiated.to(uploading)
    confirm_stored = uploading.to(stored)
    retry_upload = uploading.to.itself()
    publish = stored.to(processing)
    complete = processing.to(completed)
    fail = (
        initiated.to(failed)
        | uploading.to(failed)
        | stored.to(failed)
        | processing.to(failed)
    )


EVENTS: tuple[str, ...] = (
    "start_upload",
    "confirm_stored",
    "retry_upload",
    "publish",
    "complete",
    "fail",
)


def create_fsm(current_state: UploadState | str) -> UploadLifecycleSM:
    """Create an FSM instance at the given state."""
    return UploadLifecycleSM(start_value=UploadState(current_state).value)


def check_transition(current_state: UploadState | str, event: str) -> UploadState:
    """Validate *event* from *current_state* and return the target state.

    Raises:
        InvalidTransitionError: If the event is unknown or not allowed
            from *current_state*.
    """
    if event not in EVENTS:
        raise InvalidTransitionError(f"Unknown lifecycle event {event!r}")
    fsm = create_fsm(current_state)
    try:
        fsm.send(event)
    except TransitionNotAllowed as exc:
        raise InvalidTransitionError(
            f"Cannot {event} from {UploadState(current_state).value!r}"
        ) from exc
    return UploadState(fsm.current_state.value)


def can_transition(current_state: UploadState | str, event: str) -> bool:
    try:
        check_transition(current_state, event)
    except InvalidTransitionError:
        return False
    return True
