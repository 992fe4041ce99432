"""Canonical status lattice enforced by the Ledger Writer.

PENDING -> PROCESSING -> {COMPLETED, FAILED}, and PENDING/PROCESSING -> CANCELLED.
Repeats and moves to an earlier rank are no-ops. Terminal states are
absorbing: any move out of one is an anomaly.
"""

from enum import Enum

from settlepay.common.errors import InvalidStateTransition


class CanonicalStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class SubjectType(str, Enum):
    PAYMENT = "payment"
    PAYOUT = "payout"
    REFUND = "refund"


TERMINAL_STATUSES = frozenset(
    {CanonicalStatus.COMPLETED, CanonicalStatus.FAILED, CanonicalStatus.CANCELLED}
)

_RANK: dict[CanonicalStatus, int] = {
    CanonicalStatus.PENDING: 0,
    CanonicalStatus.PROCESSING: 1,
    CanonicalStatus.COMPLETED: 2,
    CanonicalStatus.FAILED: 2,
    CanonicalStatus.CANCELLED: 2,
}


def is_terminal(status: str) -> bool:
    return CanonicalStatus(status) in TERMINAL_STATUSES


def plan_transition(current: str, target: str) -> bool:
    """Return True when `current -> target` must be applied, False for a no-op.

    Repeated updates and stale non-terminal updates (lower rank) are no-ops.
    Any change to a terminal subject raises `InvalidStateTransition`, a late
    PROCESSING after COMPLETED included.
    """

    current_status = CanonicalStatus(current)
    target_status = CanonicalStatus(target)
    if current_status == target_status:
        return False
    if current_status in TERMINAL_STATUSES:
        raise InvalidStateTransition(current_status.value, target_status.value)
    if _RANK[target_status] < _RANK[current_status]:
        return False
    return True
