
# app/payments/repository.py
from __future__ import annotations

import uuid
from contextlib import AbstractContextManager
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

from psycopg2 import errors as pg_errors
from psycopg2.extensions import connection as PGConn
from psycopg2.extras import RealDictCursor

from app.payments.errors import AttemptNotFound, DuplicateInFlightAttempt
from app.payments.model import (
    AttemptQuery,
    AttemptStatus,
    IN_FLIGHT_STATUSES,
    NewAttempt,
    PaymentAttempt,
    PaymentProvider,
    SUPERSEDED,
    TERMINAL_STATUSES,
)
from app.payments.state_machine import assert_transition, is_replay

ConnFactory = Callable[[], AbstractContextManager[PGConn]]

_IN_FLIGHT = tuple(s.value for s in IN_FLIGHT_STATUSES)

_COLUMNS = """
  id, bill_id, bill_participant_id, payer_user_id, provider,
  amount_cents, fee_cents, total_cents, currency, status,
  group_key, group_position, provider_charge_id, provider_transfer_id,
  failure_code, failure_message, created_at, processed_at
"""


def new_attempt_id() -> str:
    return str(uuid.uuid4())


def is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True


class AttemptStore(Protocol):
    """
    The only code path that writes attempt status / transfer ids.

    Every method runs as one transaction; checks that inform a write happen
    inside the same transaction as the write.
    """

    def create_attempt(self, new: NewAttempt) -> PaymentAttempt: ...

    def create_group(self, rows: Sequence[NewAttempt], *, group_key: str) -> list[PaymentAttempt]: ...

    def claim_manual(self, new: NewAttempt) -> tuple[PaymentAttempt, bool]: ...

    def get(self, attempt_id: str) -> Optional[PaymentAttempt]: ...

    def list_group(self, group_key: str) -> list[PaymentAttempt]: ...

    def find_in_flight(self, bill_participant_id: str) -> Optional[PaymentAttempt]: ...

    def transition(
        self,
        attempt_id: str,
        new_status: AttemptStatus,
        *,
        failure_code: Optional[str] = None,
        failure_message: Optional[str] = None,
        clear_failure: bool = False,
    ) -> PaymentAttempt: ...

    def attach_charge(self, attempt_ids: Sequence[str], charge_id: str) -> list[PaymentAttempt]: ...

    def record_transfer(self, attempt_id: str, transfer_id: str) -> bool: ...

    def cancel_attempts(self, attempt_ids: Sequence[str], *, failure_code: str, failure_message: str) -> None: ...

    def list_attempts(self, query: AttemptQuery) -> tuple[list[PaymentAttempt], Optional[str]]: ...


def _row_to_attempt(row: dict[str, Any]) -> PaymentAttempt:
    return PaymentAttempt(
        id=str(row["id"]),
        bill_id=str(row["bill_id"]),
        bill_participant_id=str(row["bill_participant_id"]),
        payer_user_id=str(row["payer_user_id"]),
        provider=PaymentProvider(row["provider"]),
        amount_cents=int(row["amount_cents"]),
        fee_cents=int(row["fee_cents"]),
        total_cents=int(row["total_cents"]),
        currency=row["currency"],
        status=AttemptStatus(row["status"]),
        created_at=row["created_at"],
        group_key=row.get("group_key"),
        group_position=row.get("group_position"),
        provider_charge_id=row.get("provider_charge_id"),
        provider_transfer_id=row.get("provider_transfer_id"),
        failure_code=row.get("failure_code"),
        failure_message=row.get("failure_message"),
        processed_at=row.get("processed_at"),
    )


class PostgresAttemptStore:
    """
    app.payment_attempts, raw SQL.

    The partial unique index ux_payment_attempts_in_flight backs the
    at-most-one-in-flight rule; the FOR UPDATE read below only decides
    whether a rejected claim can be superseded first.
    """

    def __init__(self, connect: ConnFactory):
        self._connect = connect

    # ------------------------------------------------------------------
    # helpers (caller owns the transaction)
    # ------------------------------------------------------------------

    @staticmethod
    def _lock_in_flight(cur, bill_participant_id: str) -> Optional[PaymentAttempt]:
        cur.execute(
            f"""
            SELECT {_COLUMNS}
            FROM app.payment_attempts
            WHERE bill_participant_id = %s
              AND status = ANY(%s)
            ORDER BY created_at DESC
            LIMIT 1
            FOR UPDATE
            """,
            (bill_participant_id, list(_IN_FLIGHT)),
        )
        row = cur.fetchone()
        return _row_to_attempt(row) if row else None

    @staticmethod
    def _lock_one(cur, attempt_id: str) -> PaymentAttempt:
        cur.execute(
            f"SELECT {_COLUMNS} FROM app.payment_attempts WHERE id = %s FOR UPDATE",
            (attempt_id,),
        )
        row = cur.fetchone()
        if not row:
            raise AttemptNotFound(attempt_id=attempt_id)
        return _row_to_attempt(row)

    @staticmethod
    def _set_status(
        cur,
        current: PaymentAttempt,
        new_status: AttemptStatus,
        *,
        failure_code: Optional[str],
        failure_message: Optional[str],
        clear_failure: bool,
    ) -> PaymentAttempt:
        assert_transition(current.status, new_status)
        if is_replay(current.status, new_status):
            return current

        processed = new_status in TERMINAL_STATUSES
        cur.execute(
            f"""
            UPDATE app.payment_attempts
            SET
              status = %s,
              failure_code = CASE WHEN %s THEN NULL ELSE COALESCE(%s, failure_code) END,
              failure_message = CASE WHEN %s THEN NULL ELSE COALESCE(%s, failure_message) END,
              processed_at = CASE WHEN %s THEN now() ELSE processed_at END,
              updated_at = now()
            WHERE id = %s
              AND status = %s
            RETURNING {_COLUMNS}
            """,
            (
                new_status.value,
                clear_failure,
                failure_code,
                clear_failure,
                failure_message,
                processed,
                current.id,
                current.status.value,
            ),
        )
        return _row_to_attempt(cur.fetchone())

    @staticmethod
    def _insert(cur, new: NewAttempt, *, status: AttemptStatus, group_key=None, group_position=None) -> PaymentAttempt:
        try:
            cur.execute(
                f"""
                INSERT INTO app.payment_attempts (
                  id, bill_id, bill_participant_id, payer_user_id, provider,
                  amount_cents, fee_cents, total_cents, currency, status,
                  group_key, group_position
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_COLUMNS}
                """,
                (
                    new_attempt_id(),
                    new.bill_id,
                    new.bill_participant_id,
                    new.payer_user_id,
                    new.provider.value,
                    int(new.amount_cents),
                    int(new.fee_cents),
                    new.total_cents,
                    new.currency,
                    status.value,
                    group_key,
                    group_position,
                ),
            )
            row = cur.fetchone()
        except pg_errors.UniqueViolation:
            # a concurrent request won the in-flight slot
            raise DuplicateInFlightAttempt(bill_participant_id=new.bill_participant_id)
        return _row_to_attempt(row)

    def _clear_slot(self, cur, new: NewAttempt) -> None:
        existing = self._lock_in_flight(cur, new.bill_participant_id)
        if existing is None:
            return
        if not existing.is_rejected_claim:
            raise DuplicateInFlightAttempt(
                bill_participant_id=new.bill_participant_id,
                attempt_id=existing.id,
            )
        self._set_status(
            cur,
            existing,
            AttemptStatus.CANCELED,
            failure_code=SUPERSEDED,
            failure_message="Superseded by a new payment attempt",
            clear_failure=False,
        )

    # ------------------------------------------------------------------
    # AttemptStore
    # ------------------------------------------------------------------

    def create_attempt(self, new: NewAttempt) -> PaymentAttempt:
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                self._clear_slot(cur, new)
                return self._insert(cur, new, status=AttemptStatus.PENDING)

    def create_group(self, rows: Sequence[NewAttempt], *, group_key: str) -> list[PaymentAttempt]:
        created: list[PaymentAttempt] = []
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                # Lock in a stable order so two overlapping batches cannot deadlock.
                for new in sorted(rows, key=lambda r: r.bill_participant_id):
                    self._clear_slot(cur, new)
                for position, new in enumerate(rows):
                    created.append(
                        self._insert(
                            cur,
                            new,
                            status=AttemptStatus.PENDING,
                            group_key=group_key,
                            group_position=position,
                        )
                    )
        return created

    def claim_manual(self, new: NewAttempt) -> tuple[PaymentAttempt, bool]:
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                existing = self._lock_in_flight(cur, new.bill_participant_id)
                if existing is not None and existing.provider == new.provider:
                    if existing.status == AttemptStatus.PENDING_APPROVAL:
                        return existing, True
                    if existing.is_rejected_claim:
                        reused = self._set_status(
                            cur,
                            existing,
                            AttemptStatus.PENDING_APPROVAL,
                            failure_code=None,
                            failure_message=None,
                            clear_failure=True,
                        )
                        return reused, True

                self._clear_slot(cur, new)
                created = self._insert(cur, new, status=AttemptStatus.PENDING)
                claimed = self._set_status(
                    cur,
                    created,
                    AttemptStatus.PENDING_APPROVAL,
                    failure_code=None,
                    failure_message=None,
                    clear_failure=False,
                )
                return claimed, False

    def get(self, attempt_id: str) -> Optional[PaymentAttempt]:
        if not is_uuid(attempt_id):
            return None
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"SELECT {_COLUMNS} FROM app.payment_attempts WHERE id = %s", (attempt_id,))
                row = cur.fetchone()
        return _row_to_attempt(row) if row else None

    def list_group(self, group_key: str) -> list[PaymentAttempt]:
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {_COLUMNS}
                    FROM app.payment_attempts
                    WHERE group_key = %s
                    ORDER BY group_position ASC, created_at ASC
                    """,
                    (group_key,),
                )
                rows = cur.fetchall()
        return [_row_to_attempt(r) for r in rows]

    def find_in_flight(self, bill_participant_id: str) -> Optional[PaymentAttempt]:
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                return self._lock_in_flight(cur, bill_participant_id)

    def transition(
        self,
        attempt_id: str,
        new_status: AttemptStatus,
        *,
        failure_code: Optional[str] = None,
        failure_message: Optional[str] = None,
        clear_failure: bool = False,
    ) -> PaymentAttempt:
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                current = self._lock_one(cur, attempt_id)
                return self._set_status(
                    cur,
                    current,
                    AttemptStatus(new_status),
                    failure_code=failure_code,
                    failure_message=failure_message,
                    clear_failure=clear_failure,
                )

    def attach_charge(self, attempt_ids: Sequence[str], charge_id: str) -> list[PaymentAttempt]:
        out: list[PaymentAttempt] = []
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                for attempt_id in attempt_ids:
                    current = self._lock_one(cur, attempt_id)
                    cur.execute(
                        "UPDATE app.payment_attempts SET provider_charge_id = %s, updated_at = now() WHERE id = %s",
                        (charge_id, attempt_id),
                    )
                    current = current.evolve(provider_charge_id=charge_id)
                    # The webhook may already have moved it on; only advance PENDING.
                    if current.status == AttemptStatus.PENDING:
                        current = self._set_status(
                            cur,
                            current,
                            AttemptStatus.PROCESSING,
                            failure_code=None,
                            failure_message=None,
                            clear_failure=False,
                        )
                    out.append(current)
        return out

    def record_transfer(self, attempt_id: str, transfer_id: str) -> bool:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE app.payment_attempts
                    SET provider_transfer_id = %s, updated_at = now()
                    WHERE id = %s
                      AND provider_transfer_id IS NULL
                    """,
                    (transfer_id, attempt_id),
                )
                return cur.rowcount == 1

    def cancel_attempts(self, attempt_ids: Sequence[str], *, failure_code: str, failure_message: str) -> None:
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                for attempt_id in attempt_ids:
                    current = self._lock_one(cur, attempt_id)
                    if current.is_terminal:
                        continue
                    self._set_status(
                        cur,
                        current,
                        AttemptStatus.CANCELED,
                        failure_code=failure_code,
                        failure_message=failure_message,
                        clear_failure=False,
                    )

    def list_attempts(self, query: AttemptQuery) -> tuple[list[PaymentAttempt], Optional[str]]:
        where: list[str] = []
        params: list[Any] = []

        if query.bill_ids is not None:
            where.append("bill_id = ANY(%s::uuid[])")
            params.append(list(query.bill_ids))
        if query.payer_user_id:
            where.append("payer_user_id = %s")
            params.append(query.payer_user_id)
        if query.status:
            where.append("status = %s")
            params.append(query.status.value)
        if query.provider:
            where.append("provider = %s")
            params.append(query.provider.value)
        if query.created_from:
            where.append("created_at >= %s")
            params.append(query.created_from)
        if query.created_to:
            where.append("created_at <= %s")
            params.append(query.created_to)
        if query.cursor and is_uuid(query.cursor):
            where.append(
                "(created_at, id) < (SELECT created_at, id FROM app.payment_attempts WHERE id = %s)"
            )
            params.append(query.cursor)

        sql = f"SELECT {_COLUMNS} FROM app.payment_attempts"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC, id DESC LIMIT %s"
        params.append(int(query.limit))

        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()

        items = [_row_to_attempt(r) for r in rows]
        next_cursor = items[-1].id if len(items) == query.limit else None
        return items, next_cursor


def ids_of(attempts: Iterable[PaymentAttempt]) -> list[str]:
    return [a.id for a in attempts]
