"""Execution request status ordering"""
from opportunity_engine.core.errors import InvalidStatusTransition
from opportunity_engine.db.models.automation import ExecutionRequest, ExecutionStatus

TERMINAL_STATUSES = frozenset({ExecutionStatus.EXECUTED, ExecutionStatus.REJECTED, ExecutionStatus.FAILED})

# Outcomes share the last rank: none of them can follow another
STATUS_RANK = {
    ExecutionStatus.CREATED: 0,
    ExecutionStatus.SENT: 1,
    ExecutionStatus.ACKED: 2,
    ExecutionStatus.EXECUTED: 3,
    ExecutionStatus.REJECTED: 3,
    ExecutionStatus.FAILED: 3,
}


def can_transition(current: ExecutionStatus, requested: ExecutionStatus) -> bool:
    """Strictly forward, never out of a terminal status"""
    if current in TERMINAL_STATUSES:
        return False
    return STATUS_RANK[requested] > STATUS_RANK[current]


def transition(request: ExecutionRequest, requested: ExecutionStatus) -> ExecutionRequest:
    """
    Move a request forward.

    Raises:
        InvalidStatusTransition: the move is backwards, sideways or out of a terminal status
    """
    current = request.status
    if not can_transition(current, requested):
        raise InvalidStatusTransition(current.value, requested.value)
    request.status = requested
    return request
