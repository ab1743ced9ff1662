
# app/payments/memory.py
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import RLock
from typing import Optional, Sequence

from app.payments.errors import AttemptNotFound, DuplicateInFlightAttempt
from app.payments.model import (
    AttemptQuery,
    AttemptStatus,
    NewAttempt,
    PaymentAttempt,
    SUPERSEDED,
)
from app.payments.repository import new_attempt_id
from app.payments.state_machine import assert_transition, is_replay, is_terminal


class InMemoryAttemptStore:
    """
    Dev/test attempt store with the same contract as PostgresAttemptStore.

    One re-entrant lock stands in for the database transaction: every public
    method holds it for its whole read-check-write sequence.
    """

    def __init__(self):
        self._lock = RLock()
        self._rows: dict[str, PaymentAttempt] = {}
        self._order: list[str] = []
        self._clock_base = datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # helpers (lock held)
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        # strictly increasing so created_at ordering is deterministic
        return self._clock_base + timedelta(microseconds=len(self._order))

    def _in_flight(self, bill_participant_id: str) -> Optional[PaymentAttempt]:
        for attempt_id in reversed(self._order):
            row = self._rows[attempt_id]
            if row.bill_participant_id == bill_participant_id and row.is_in_flight:
                return row
        return None

    def _load(self, attempt_id: str) -> PaymentAttempt:
        row = self._rows.get(attempt_id)
        if row is None:
            raise AttemptNotFound(attempt_id=attempt_id)
        return row

    def _set_status(
        self,
        current: PaymentAttempt,
        new_status: AttemptStatus,
        *,
        failure_code: Optional[str] = None,
        failure_message: Optional[str] = None,
        clear_failure: bool = False,
    ) -> PaymentAttempt:
        new_status = AttemptStatus(new_status)
        assert_transition(current.status, new_status)
        if is_replay(current.status, new_status):
            return current

        updated = current.evolve(
            status=new_status,
            failure_code=None if clear_failure else (failure_code or current.failure_code),
            failure_message=None if clear_failure else (failure_message or current.failure_message),
            processed_at=datetime.now(timezone.utc) if is_terminal(new_status) else current.processed_at,
        )
        self._rows[current.id] = updated
        return updated

    def _clear_slot(self, new: NewAttempt) -> None:
        existing = self._in_flight(new.bill_participant_id)
        if existing is None:
            return
        if not existing.is_rejected_claim:
            raise DuplicateInFlightAttempt(
                bill_participant_id=new.bill_participant_id,
                attempt_id=existing.id,
            )
        self._set_status(
            existing,
            AttemptStatus.CANCELED,
            failure_code=SUPERSEDED,
            failure_message="Superseded by a new payment attempt",
        )

    def _insert(self, new: NewAttempt, *, group_key=None, group_position=None) -> PaymentAttempt:
        attempt = PaymentAttempt(
            id=new_attempt_id(),
            bill_id=new.bill_id,
            bill_participant_id=new.bill_participant_id,
            payer_user_id=new.payer_user_id,
            provider=new.provider,
            amount_cents=int(new.amount_cents),
            fee_cents=int(new.fee_cents),
            total_cents=new.total_cents,
            currency=new.currency,
            status=AttemptStatus.PENDING,
            created_at=self._now(),
            group_key=group_key,
            group_position=group_position,
        )
        self._rows[attempt.id] = attempt
        self._order.append(attempt.id)
        return attempt

    # ------------------------------------------------------------------
    # AttemptStore
    # ------------------------------------------------------------------

    def create_attempt(self, new: NewAttempt) -> PaymentAttempt:
        with self._lock:
            self._clear_slot(new)
            return self._insert(new)

    def create_group(self, rows: Sequence[NewAttempt], *, group_key: str) -> list[PaymentAttempt]:
        with self._lock:
            # validate every slot before touching anything: all-or-nothing
            for new in rows:
                existing = self._in_flight(new.bill_participant_id)
                if existing is not None and not existing.is_rejected_claim:
                    raise DuplicateInFlightAttempt(
                        bill_participant_id=new.bill_participant_id,
                        attempt_id=existing.id,
                    )
            for new in rows:
                self._clear_slot(new)
            return [
                self._insert(new, group_key=group_key, group_position=position)
                for position, new in enumerate(rows)
            ]

    def claim_manual(self, new: NewAttempt) -> tuple[PaymentAttempt, bool]:
        with self._lock:
            existing = self._in_flight(new.bill_participant_id)
            if existing is not None and existing.provider == new.provider:
                if existing.status == AttemptStatus.PENDING_APPROVAL:
                    return existing, True
                if existing.is_rejected_claim:
                    return self._set_status(existing, AttemptStatus.PENDING_APPROVAL, clear_failure=True), True

            self._clear_slot(new)
            created = self._insert(new)
            return self._set_status(created, AttemptStatus.PENDING_APPROVAL), False

    def get(self, attempt_id: str) -> Optional[PaymentAttempt]:
        with self._lock:
            return self._rows.get(attempt_id)

    def list_group(self, group_key: str) -> list[PaymentAttempt]:
        with self._lock:
            rows = [self._rows[i] for i in self._order if self._rows[i].group_key == group_key]
        return sorted(rows, key=lambda a: (a.group_position or 0, a.created_at))

    def find_in_flight(self, bill_participant_id: str) -> Optional[PaymentAttempt]:
        with self._lock:
            return self._in_flight(bill_participant_id)

    def transition(
        self,
        attempt_id: str,
        new_status: AttemptStatus,
        *,
        failure_code: Optional[str] = None,
        failure_message: Optional[str] = None,
        clear_failure: bool = False,
    ) -> PaymentAttempt:
        with self._lock:
            return self._set_status(
                self._load(attempt_id),
                new_status,
                failure_code=failure_code,
                failure_message=failure_message,
                clear_failure=clear_failure,
            )

    def attach_charge(self, attempt_ids: Sequence[str], charge_id: str) -> list[PaymentAttempt]:
        out: list[PaymentAttempt] = []
        with self._lock:
            for attempt_id in attempt_ids:
                current = self._load(attempt_id).evolve(provider_charge_id=charge_id)
                self._rows[attempt_id] = current
                if current.status == AttemptStatus.PENDING:
                    current = self._set_status(current, AttemptStatus.PROCESSING)
                out.append(current)
        return out

    def record_transfer(self, attempt_id: str, transfer_id: str) -> bool:
        with self._lock:
            current = self._load(attempt_id)
            if current.provider_transfer_id is not None:
                return False
            self._rows[attempt_id] = current.evolve(provider_transfer_id=transfer_id)
            return True

    def cancel_attempts(self, attempt_ids: Sequence[str], *, failure_code: str, failure_message: str) -> None:
        with self._lock:
            for attempt_id in attempt_ids:
                current = self._load(attempt_id)
                if current.is_terminal:
                    continue
                self._set_status(
                    current,
                    AttemptStatus.CANCELED,
                    failure_code=failure_code,
                    failure_message=failure_message,
                )

    def list_attempts(self, query: AttemptQuery) -> tuple[list[PaymentAttempt], Optional[str]]:
        with self._lock:
            rows = [self._rows[i] for i in self._order]

        rows.sort(key=lambda a: (a.created_at, a.id), reverse=True)

        if query.cursor:
            anchor = next((a for a in rows if a.id == query.cursor), None)
            if anchor is not None:
                key = (anchor.created_at, anchor.id)
                rows = [a for a in rows if (a.created_at, a.id) < key]

        def keep(a: PaymentAttempt) -> bool:
            if query.bill_ids is not None and a.bill_id not in query.bill_ids:
                return False
            if query.payer_user_id and a.payer_user_id != query.payer_user_id:
                return False
            if query.status and a.status != query.status:
                return False
            if query.provider and a.provider != query.provider:
                return False
            if query.created_from and a.created_at < query.created_from:
                return False
            if query.created_to and a.created_at > query.created_to:
                return False
            return True

        items = [a for a in rows if keep(a)][: int(query.limit)]
        next_cursor = items[-1].id if len(items) == query.limit else None
        return items, next_cursor
