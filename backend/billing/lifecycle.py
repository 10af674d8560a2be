"""
Lifecycle rules for recurring obligations.

    ACTIVE  -> PAUSED | CANCELLED | COMPLETED
    PAUSED  -> ACTIVE | CANCELLED
    CANCELLED, COMPLETED: terminal

Only ACTIVE obligations generate payment instances.
"""

from common.errors import InvalidStateTransition

from .models import ObligationStatus


ALLOWED_TRANSITIONS = {
    ObligationStatus.ACTIVE: {
        ObligationStatus.PAUSED,
        ObligationStatus.CANCELLED,
        ObligationStatus.COMPLETED,
    },
    ObligationStatus.PAUSED: {
        ObligationStatus.ACTIVE,
        ObligationStatus.CANCELLED,
    },
    ObligationStatus.CANCELLED: set(),
    ObligationStatus.COMPLETED: set(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Verb used in error messages for each target state.
_ACTIONS = {
    ObligationStatus.ACTIVE: 'resume',
    ObligationStatus.PAUSED: 'pause',
    ObligationStatus.CANCELLED: 'cancel',
    ObligationStatus.COMPLETED: 'complete',
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def ensure_transition(current: str, target: str) -> None:
    """
    Raise InvalidStateTransition unless ``current -> target`` is allowed.

    Called before any write, local or remote.
    """
    if not can_transition(current, target):
        raise InvalidStateTransition(
            f"Cannot {_ACTIONS.get(target, 'move')} a recurring payment that is "
            f"{ObligationStatus(current).label.lower()}",
            details={'current_status': current, 'requested_status': target}
        )
