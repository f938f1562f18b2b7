"""Status Configuration and Transition Rules

Defines the work order lifecycle and the transitions each status allows.
Every status change made by the work order engine is validated here so the
rules live in one table instead of scattered conditionals.

    planned -> scheduled -> in_progress -> completed
    scheduled / in_progress -> on_hold -> (back to where it was held from)
    any non-terminal -> cancelled
"""
from enum import Enum
from typing import Dict, List, Set

from shopfloor.exceptions import IllegalTransitionError


# =============================================================================
# Work Order Status
# =============================================================================

class WorkOrderStatus(str, Enum):
    """Valid status values for Work Orders"""
    PLANNED = "planned"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Allowed transitions: current_status -> set of allowed next statuses
WORK_ORDER_TRANSITIONS: Dict[WorkOrderStatus, Set[WorkOrderStatus]] = {
    WorkOrderStatus.PLANNED: {
        WorkOrderStatus.SCHEDULED,
        WorkOrderStatus.CANCELLED,
    },
    WorkOrderStatus.SCHEDULED: {
        WorkOrderStatus.IN_PROGRESS,
        WorkOrderStatus.ON_HOLD,
        WorkOrderStatus.CANCELLED,
    },
    WorkOrderStatus.IN_PROGRESS: {
        WorkOrderStatus.ON_HOLD,
        WorkOrderStatus.COMPLETED,
        WorkOrderStatus.CANCELLED,
    },
    WorkOrderStatus.ON_HOLD: {
        WorkOrderStatus.SCHEDULED,
        WorkOrderStatus.IN_PROGRESS,
        WorkOrderStatus.CANCELLED,
    },
    WorkOrderStatus.COMPLETED: set(),  # Terminal
    WorkOrderStatus.CANCELLED: set(),  # Terminal
}

TERMINAL_STATUSES: Set[WorkOrderStatus] = {
    status for status, allowed in WORK_ORDER_TRANSITIONS.items() if not allowed
}

# Statuses that hold a machine allocation
SCHEDULED_STATUSES: Set[WorkOrderStatus] = {
    WorkOrderStatus.SCHEDULED,
    WorkOrderStatus.IN_PROGRESS,
    WorkOrderStatus.ON_HOLD,
}


def get_allowed_work_order_transitions(current_status: str) -> List[str]:
    """Get sorted list of allowed next statuses for a work order"""
    allowed = WORK_ORDER_TRANSITIONS.get(WorkOrderStatus(current_status), set())
    return sorted(s.value for s in allowed)


def is_valid_work_order_transition(current_status: str, new_status: str) -> bool:
    """Check if a work order status transition is valid"""
    allowed = WORK_ORDER_TRANSITIONS.get(WorkOrderStatus(current_status), set())
    return WorkOrderStatus(new_status) in allowed


def is_terminal(status: str) -> bool:
    return WorkOrderStatus(status) in TERMINAL_STATUSES


def validate_work_order_transition(
    current_status: str, new_status: str, operation: str = "transition"
) -> None:
    """Raise IllegalTransitionError unless current -> new is in the transition table."""
    if not is_valid_work_order_transition(current_status, new_status):
        raise IllegalTransitionError(
            f"Cannot {operation} work order in status '{current_status}'",
            current_state=str(WorkOrderStatus(current_status).value),
            target_state=str(WorkOrderStatus(new_status).value),
            allowed_states=get_allowed_work_order_transitions(current_status),
        )


def require_status(current_status: str, required: WorkOrderStatus, operation: str) -> None:
    """Raise IllegalTransitionError unless the work order is exactly in ``required``."""
    if WorkOrderStatus(current_status) != required:
        raise IllegalTransitionError(
            f"Cannot {operation} work order in status '{current_status}'; "
            f"requires '{required.value}'",
            current_state=str(WorkOrderStatus(current_status).value),
            allowed_states=[required.value],
        )
