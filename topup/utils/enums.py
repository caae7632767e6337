from enum import StrEnum


class TransactionStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TransactionStatus.SUCCESS, TransactionStatus.FAILED})

ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.PROCESSING, TransactionStatus.SUCCESS, TransactionStatus.FAILED}
    ),
    TransactionStatus.PROCESSING: frozenset({TransactionStatus.SUCCESS, TransactionStatus.FAILED}),
    TransactionStatus.SUCCESS: frozenset(),
    TransactionStatus.FAILED: frozenset(),
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def sources_for(target: TransactionStatus) -> frozenset[TransactionStatus]:
    """States from which ``target`` is reachable in a single step."""
    return frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets)
