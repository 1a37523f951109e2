"""
states.py - Block and payout lifecycles.

Statuses are closed enums with explicit transition tables; every status
write in the storage layer goes through ``check_transition``.

    Block:  pending -> confirmed | orphaned
    Payout: pending -> sent -> confirmed
            pending -> failed
"""

from enum import Enum
from typing import Dict, FrozenSet, Union


class BlockStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ORPHANED = "orphaned"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"


BLOCK_TRANSITIONS: Dict[BlockStatus, FrozenSet[BlockStatus]] = {
    BlockStatus.PENDING: frozenset({BlockStatus.CONFIRMED, BlockStatus.ORPHANED}),
    BlockStatus.CONFIRMED: frozenset(),
    BlockStatus.ORPHANED: frozenset(),
}

PAYOUT_TRANSITIONS: Dict[PayoutStatus, FrozenSet[PayoutStatus]] = {
    PayoutStatus.PENDING: frozenset({PayoutStatus.SENT, PayoutStatus.FAILED}),
    PayoutStatus.SENT: frozenset({PayoutStatus.CONFIRMED}),
    PayoutStatus.CONFIRMED: frozenset(),
    PayoutStatus.FAILED: frozenset(),
}


class InvalidTransition(Exception):
    pass


Status = Union[BlockStatus, PayoutStatus]


def check_transition(current: Status, new: Status) -> None:
    """Raise InvalidTransition unless ``current -> new`` is allowed."""
    if type(current) is not type(new):
        raise InvalidTransition(f"Cannot mix {type(current).__name__} and {type(new).__name__}")
    table = BLOCK_TRANSITIONS if isinstance(current, BlockStatus) else PAYOUT_TRANSITIONS
    if new not in table[current]:
        raise InvalidTransition(f"Cannot transition from {current.value} to {new.value}")


def is_terminal(status: Status) -> bool:
    table = BLOCK_TRANSITIONS if isinstance(status, BlockStatus) else PAYOUT_TRANSITIONS
    return not table[status]
