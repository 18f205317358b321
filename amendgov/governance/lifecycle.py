"""Amendment lifecycle — enforces forward-only evaluation transitions."""

from __future__ import annotations

from amendgov.exceptions import InvalidTransitionError
from amendgov.types import Amendment, ApprovalStatus, EvaluationStatus

# Valid evaluation transitions. Reverted is terminal.
VALID_TRANSITIONS: dict[EvaluationStatus, set[EvaluationStatus]] = {
    EvaluationStatus.PENDING: {EvaluationStatus.EVALUATING},
    EvaluationStatus.EVALUATING: {
        EvaluationStatus.PROVEN,
        EvaluationStatus.FAILED,
        EvaluationStatus.REVERTED,
    },
    EvaluationStatus.PROVEN: {EvaluationStatus.REVERTED},
    EvaluationStatus.FAILED: {EvaluationStatus.REVERTED},
    EvaluationStatus.REVERTED: set(),
}

# An amendment may only be active with one of these approval statuses
ACTIVE_APPROVAL_STATUSES = frozenset({ApprovalStatus.APPROVED, ApprovalStatus.AUTO_APPROVED})


def can_transition(current: EvaluationStatus, target: EvaluationStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def transition(amendment: Amendment, target: EvaluationStatus) -> EvaluationStatus:
    """Move an amendment to a new evaluation status. Returns the old one."""
    current = amendment.evaluation_status
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot transition amendment {amendment.id} "
            f"from {current.value} to {target.value}",
            {"amendment_id": amendment.id, "from": current.value, "to": target.value},
        )
    amendment.evaluation_status = target
    return current


def check_activation(amendment: Amendment) -> None:
    """An amendment can only be active while approved or auto-approved."""
    if amendment.is_active and amendment.approval_status not in ACTIVE_APPROVAL_STATUSES:
        raise InvalidTransitionError(
            f"Amendment {amendment.id} cannot be active with approval status "
            f"{amendment.approval_status.value}",
            {"amendment_id": amendment.id},
        )
