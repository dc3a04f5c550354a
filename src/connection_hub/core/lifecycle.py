from __future__ import annotations

from typing import Dict, FrozenSet

from .errors import InvalidTransition
from .models import ConnectionStatus

PENDING = ConnectionStatus.PENDING
ACTIVE = ConnectionStatus.ACTIVE
EXPIRED = ConnectionStatus.EXPIRED
ERROR = ConnectionStatus.ERROR
REVOKED = ConnectionStatus.REVOKED

# Same-status writes are always allowed and not listed here.
ALLOWED_TRANSITIONS: Dict[ConnectionStatus, FrozenSet[ConnectionStatus]] = {
    PENDING: frozenset({ACTIVE, REVOKED}),
    ACTIVE: frozenset({EXPIRED, ERROR, REVOKED}),
    EXPIRED: frozenset({ACTIVE, ERROR, REVOKED}),
    ERROR: frozenset({ACTIVE, REVOKED}),
    REVOKED: frozenset(),
}


# PUBLIC_INTERFACE
def can_transition(current: ConnectionStatus, target: ConnectionStatus) -> bool:
    """Return True if a connection may move from current to target."""
    if current == REVOKED:
        return False
    if current == target:
        return True
    return target in ALLOWED_TRANSITIONS[current]


# PUBLIC_INTERFACE
def ensure_transition(current: ConnectionStatus, target: ConnectionStatus) -> None:
    """Raise InvalidTransition unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot move connection from {current.value} to {target.value}")
