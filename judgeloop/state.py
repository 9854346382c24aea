"""Request state machine and request validation."""

from typing import Optional

from .errors import InvalidTransitionError, ValidationError
from .schemas import (
    TERMINAL_STATUSES,
    CompletionReason,
    GenerationRequest,
    RequestStatus,
)

# Non-terminal moves. Any non-terminal state may additionally move to a
# terminal state (completed on max iterations or timeout, cancelled, failed).
# A continued request re-enters through optimizing.
_TRANSITIONS = {
    RequestStatus.PENDING: {RequestStatus.GENERATING, RequestStatus.OPTIMIZING},
    RequestStatus.GENERATING: {RequestStatus.EVALUATING},
    RequestStatus.EVALUATING: {RequestStatus.OPTIMIZING},
    RequestStatus.OPTIMIZING: {RequestStatus.GENERATING},
}

_STATUS_FOR_REASON = {
    CompletionReason.SUCCESS: RequestStatus.COMPLETED,
    CompletionReason.MAX_RETRIES_REACHED: RequestStatus.COMPLETED,
    CompletionReason.DIMINISHING_RETURNS: RequestStatus.COMPLETED,
    CompletionReason.CANCELLED: RequestStatus.CANCELLED,
    CompletionReason.ERROR: RequestStatus.FAILED,
}


def validate_request(request: GenerationRequest) -> None:
    """Reject malformed requests before they enter ``pending``."""
    if not request.brief or not request.brief.strip():
        raise ValidationError("brief must not be empty")
    if not request.judge_ids:
        raise ValidationError("judge_ids must contain at least one agent")
    if len(set(request.judge_ids)) != len(request.judge_ids):
        raise ValidationError("judge_ids must not contain duplicates")
    if not 0 <= request.threshold <= 100:
        raise ValidationError(f"threshold must be within [0, 100], got {request.threshold}")
    if request.max_iterations < 1:
        raise ValidationError(f"max_iterations must be >= 1, got {request.max_iterations}")
    if request.current_iteration != len(request.iterations):
        raise ValidationError("current_iteration does not match recorded iterations")


def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
    """Whether a request in ``current`` may move to ``target``.

    Args:
        current: The request's present status.
        target: The status it would move to.

    Returns:
        False for any move out of a terminal status.
    """
    if current in TERMINAL_STATUSES:
        return False
    if target in TERMINAL_STATUSES:
        return True
    return target in _TRANSITIONS.get(current, set())


def check_transition(current: RequestStatus, target: RequestStatus) -> None:
    """Raise InvalidTransitionError unless ``current`` may move to ``target``."""
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Illegal transition {current.value} -> {target.value}")


def status_for_reason(reason: CompletionReason) -> RequestStatus:
    """Terminal status a request ends in for ``reason``."""
    return _STATUS_FOR_REASON[reason]


def terminal_changes(
    reason: CompletionReason,
    final_image_id: Optional[str] = None,
    error_message: Optional[str] = None,
) -> dict:
    """Field changes that move a request into the terminal state for ``reason``.

    Args:
        reason: Why the run ended.
        final_image_id: Image to report. Kept only for completed requests.
        error_message: Failure detail. Kept only for failed requests.

    Returns:
        A partial update for ``MemoryStore.update_request``.

    Raises:
        InvalidTransitionError: a completing reason was given no final image.
    """
    status = status_for_reason(reason)
    if status == RequestStatus.COMPLETED and not final_image_id:
        raise InvalidTransitionError(f"{reason.value} requires a final image")
    if status == RequestStatus.FAILED and not error_message:
        error_message = "Unknown error"
    return {
        "status": status,
        "completion_reason": reason,
        "final_image_id": final_image_id if status == RequestStatus.COMPLETED else None,
        "error_message": error_message if status == RequestStatus.FAILED else None,
    }
