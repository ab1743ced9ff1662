
# app/payments/state_machine.py
from __future__ import annotations

from app.payments.errors import InvalidTransition
from app.payments.model import AttemptStatus, TERMINAL_STATUSES

S = AttemptStatus

ALLOWED: dict[AttemptStatus, frozenset[AttemptStatus]] = {
    # PENDING -> FAILED covers a processor failure event that lands before
    # the intent id is attached; PENDING -> CANCELED covers rollback/supersede.
    S.PENDING: frozenset({S.PROCESSING, S.PENDING_APPROVAL, S.FAILED, S.CANCELED}),
    S.PROCESSING: frozenset({S.SUCCEEDED, S.FAILED, S.CANCELED}),
    # reject -> PENDING (retryable), approve -> SUCCEEDED
    S.PENDING_APPROVAL: frozenset({S.SUCCEEDED, S.PENDING, S.FAILED}),
    S.SUCCEEDED: frozenset(),
    S.FAILED: frozenset(),
    S.CANCELED: frozenset(),
}


def is_replay(old: AttemptStatus, new: AttemptStatus) -> bool:
    """Same-status writes are no-ops (at-least-once delivery)."""
    return S(old) == S(new)


def assert_transition(old: AttemptStatus | str, new: AttemptStatus | str) -> None:
    old_s, new_s = S(old), S(new)
    if is_replay(old_s, new_s):
        return
    if new_s not in ALLOWED.get(old_s, frozenset()):
        raise InvalidTransition(
            f"Illegal payment attempt transition: {old_s.value} -> {new_s.value}",
            old=old_s.value,
            new=new_s.value,
        )


def is_terminal(status: AttemptStatus | str) -> bool:
    return S(status) in TERMINAL_STATUSES
