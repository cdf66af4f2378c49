"""State machine validation for request step status transitions.

Enforces the step lifecycle:
- queued -> in_progress -> done_pending_approval -> approved/returned/rejected
- queued/in_progress may be suspended (on_hold, info_required) and resumed
- approved, returned, rejected and canceled are terminal
"""
from opscore.core.exceptions import InvalidStateError
from opscore.core.logging import get_logger
from opscore.db.models import StepStatus

logger = get_logger(__name__)


# Maps current status -> statuses it may move to
TRANSITION_MATRIX: dict[StepStatus, list[StepStatus]] = {
    StepStatus.QUEUED: [
        StepStatus.IN_PROGRESS,
        StepStatus.DONE_PENDING_APPROVAL,  # complete without an explicit start
        StepStatus.ON_HOLD,
        StepStatus.INFO_REQUIRED,
        StepStatus.RETURNED,
        StepStatus.CANCELED,
    ],
    StepStatus.IN_PROGRESS: [
        StepStatus.DONE_PENDING_APPROVAL,
        StepStatus.ON_HOLD,
        StepStatus.INFO_REQUIRED,
        StepStatus.RETURNED,
        StepStatus.CANCELED,
    ],
    StepStatus.DONE_PENDING_APPROVAL: [
        StepStatus.APPROVED,
        StepStatus.RETURNED,
        StepStatus.REJECTED,
    ],
    # Resume targets come from resume_status
    StepStatus.ON_HOLD: [
        StepStatus.QUEUED,
        StepStatus.IN_PROGRESS,
        StepStatus.CANCELED,
    ],
    StepStatus.INFO_REQUIRED: [
        StepStatus.QUEUED,
        StepStatus.IN_PROGRESS,
        StepStatus.CANCELED,
    ],
    StepStatus.APPROVED: [],
    StepStatus.RETURNED: [],
    StepStatus.REJECTED: [],
    StepStatus.CANCELED: [],
}

# A step in one of these statuses can be the request's current step
ACTIVE_STATUSES: frozenset[StepStatus] = frozenset({
    StepStatus.QUEUED,
    StepStatus.IN_PROGRESS,
    StepStatus.DONE_PENDING_APPROVAL,
    StepStatus.ON_HOLD,
    StepStatus.INFO_REQUIRED,
})

SUSPENDED_STATUSES: frozenset[StepStatus] = frozenset({
    StepStatus.ON_HOLD,
    StepStatus.INFO_REQUIRED,
})

TERMINAL_STATUSES: frozenset[StepStatus] = frozenset(
    s for s, targets in TRANSITION_MATRIX.items() if not targets
)


def active_values() -> list[str]:
    return [s.value for s in ACTIVE_STATUSES]


def is_transition_valid(current_status: StepStatus, new_status: StepStatus) -> bool:
    return new_status in TRANSITION_MATRIX.get(current_status, [])


def get_allowed_transitions(current_status: StepStatus) -> list[StepStatus]:
    return list(TRANSITION_MATRIX.get(current_status, []))


def validate_transition(current_status: StepStatus, new_status: StepStatus) -> None:
    """
    Validate a step status transition.

    Raises:
        InvalidStateError: If the transition is not allowed
    """
    current_status = StepStatus(current_status)
    new_status = StepStatus(new_status)
    if is_transition_valid(current_status, new_status):
        return

    allowed = [s.value for s in get_allowed_transitions(current_status)]
    if allowed:
        error_msg = (
            f"Invalid step transition: {current_status.value} -> {new_status.value}. "
            f"From {current_status.value} the step can only move to: {', '.join(allowed)}."
        )
    else:
        error_msg = (
            f"Invalid step transition: {current_status.value} -> {new_status.value}. "
            f"{current_status.value} is terminal."
        )

    logger.warning(f"Blocked transition: {error_msg}")
    raise InvalidStateError(
        error_msg,
        details={
            "current_status": current_status.value,
            "requested_status": new_status.value,
            "allowed_transitions": allowed,
        },
    )


def inherit_request_deadline(request) -> None:
    """Copy the request deadline onto its active steps."""
    for step in request.steps:
        if StepStatus(step.status) in ACTIVE_STATUSES:
            step.due_at = request.due_at
