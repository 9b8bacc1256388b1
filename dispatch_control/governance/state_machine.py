# dispatch_control/governance/state_machine.py
"""
Approval request state machine.

States:
PENDING -> APPROVED
PENDING -> REJECTED
PENDING -> CANCELLED

APPROVED, REJECTED and CANCELLED are terminal. A REJECTED request may
still have its fields edited (status unchanged) and may be resubmitted
as a new request.
"""

from typing import Dict, FrozenSet, Set

from ..errors import ConflictError
from .models import ApprovalStatus


# Valid state transitions
TRANSITIONS: Dict[ApprovalStatus, Set[ApprovalStatus]] = {
    ApprovalStatus.PENDING: {
        ApprovalStatus.APPROVED,
        ApprovalStatus.REJECTED,
        ApprovalStatus.CANCELLED,
    },
    ApprovalStatus.APPROVED: set(),  # Terminal
    ApprovalStatus.REJECTED: set(),  # Terminal
    ApprovalStatus.CANCELLED: set(),  # Terminal
}

# Statuses whose fields may still be edited
EDITABLE_STATUSES: FrozenSet[ApprovalStatus] = frozenset(
    {ApprovalStatus.PENDING, ApprovalStatus.REJECTED}
)


def get_valid_transitions(current: ApprovalStatus) -> Set[ApprovalStatus]:
    """Get valid transitions from current state."""
    return TRANSITIONS.get(current, set())


def is_terminal(status: ApprovalStatus) -> bool:
    return not get_valid_transitions(status)


def is_editable(status: ApprovalStatus) -> bool:
    return status in EDITABLE_STATUSES


def require_transition(
    request_id: str,
    current: ApprovalStatus,
    target: ApprovalStatus,
) -> None:
    """
    Raise unless `current -> target` is a valid transition.

    Raises:
        ConflictError: INVALID_STATUS_TRANSITION
    """
    valid = get_valid_transitions(current)
    if target not in valid:
        raise ConflictError(
            f"Invalid transition: {current.value} -> {target.value}. "
            f"Valid transitions: {sorted(s.value for s in valid)}",
            code="INVALID_STATUS_TRANSITION",
            details={
                "request_id": request_id,
                "current_status": current.value,
                "target_status": target.value,
            },
        )
