
# app/billing/directory.py
from __future__ import annotations

import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol, Sequence

from psycopg2.extensions import connection as PGConn
from psycopg2.extras import RealDictCursor

from app.payments.fees import dollars_to_cents
from app.payments.repository import is_uuid
from app.providers.base import AccountCapabilities

ConnFactory = Callable[[], AbstractContextManager[PGConn]]


@dataclass(frozen=True)
class BillParticipantRef:
    """Read-only view of one member's share of a bill."""
    id: str
    bill_id: str
    household_id: str
    owner_user_id: str
    payer_user_id: str
    share_cents: int
    biller: Optional[str] = None


@dataclass(frozen=True)
class PayeeAccount:
    user_id: str
    destination_id: Optional[str]
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    onboarding_completed_at: Optional[datetime] = None

    @property
    def ready_to_receive(self) -> bool:
        return bool(self.destination_id and self.charges_enabled and self.payouts_enabled)


class BillDirectory(Protocol):
    """
    Households, bills and payee accounts are owned by the CRUD layer. The
    payment core reads them and only writes the cached capability flags and
    the household activity feed.
    """

    def get_bill_participant(self, bill_participant_id: str) -> Optional[BillParticipantRef]: ...

    def get_bill_participants(self, ids: Sequence[str]) -> list[BillParticipantRef]: ...

    def get_payee_account(self, user_id: str) -> Optional[PayeeAccount]: ...

    def get_payee_destination(self, user_id: str) -> Optional[str]: ...

    def update_payee_capabilities(self, caps: AccountCapabilities) -> Optional[PayeeAccount]: ...

    def get_household_id(self, user_id: str) -> Optional[str]: ...

    def list_bill_ids(self, household_id: str, *, owner_user_id: Optional[str] = None) -> list[str]: ...

    def record_activity(
        self,
        *,
        household_id: str,
        user_id: str,
        activity_type: str,
        description: str,
        detail: Optional[str] = None,
    ) -> None: ...


_PARTICIPANT_SQL = """
SELECT
  bp.id,
  bp.bill_id,
  b.household_id,
  b.owner_user_id,
  bp.user_id AS payer_user_id,
  bp.share_amount,
  b.biller
FROM app.bill_participants bp
JOIN app.bills b ON b.id = bp.bill_id
"""

_PAYEE_COLUMNS = """
  id,
  stripe_connected_account_id,
  stripe_connect_charges_enabled,
  stripe_connect_payouts_enabled,
  stripe_connect_details_submitted,
  stripe_connect_onboarding_completed_at
"""


def _row_to_participant(row: dict) -> BillParticipantRef:
    return BillParticipantRef(
        id=str(row["id"]),
        bill_id=str(row["bill_id"]),
        household_id=str(row["household_id"]),
        owner_user_id=str(row["owner_user_id"]),
        payer_user_id=str(row["payer_user_id"]),
        share_cents=dollars_to_cents(row["share_amount"]),
        biller=row.get("biller"),
    )


def _row_to_payee(row: dict) -> PayeeAccount:
    return PayeeAccount(
        user_id=str(row["id"]),
        destination_id=row.get("stripe_connected_account_id"),
        charges_enabled=row.get("stripe_connect_charges_enabled") is True,
        payouts_enabled=row.get("stripe_connect_payouts_enabled") is True,
        details_submitted=row.get("stripe_connect_details_submitted") is True,
        onboarding_completed_at=row.get("stripe_connect_onboarding_completed_at"),
    )


class PostgresBillDirectory:
    def __init__(self, connect: ConnFactory):
        self._connect = connect

    def get_bill_participant(self, bill_participant_id: str) -> Optional[BillParticipantRef]:
        if not is_uuid(bill_participant_id):
            return None
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(_PARTICIPANT_SQL + " WHERE bp.id = %s", (bill_participant_id,))
                row = cur.fetchone()
        return _row_to_participant(row) if row else None

    def get_bill_participants(self, ids: Sequence[str]) -> list[BillParticipantRef]:
        ids = [i for i in ids if is_uuid(i)]
        if not ids:
            return []
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(_PARTICIPANT_SQL + " WHERE bp.id = ANY(%s::uuid[])", (list(ids),))
                rows = cur.fetchall()
        by_id = {str(r["id"]): _row_to_participant(r) for r in rows}
        return [by_id[i] for i in ids if i in by_id]

    def get_payee_account(self, user_id: str) -> Optional[PayeeAccount]:
        if not is_uuid(user_id):
            return None
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"SELECT {_PAYEE_COLUMNS} FROM app.users WHERE id = %s", (user_id,))
                row = cur.fetchone()
        return _row_to_payee(row) if row else None

    def get_payee_destination(self, user_id: str) -> Optional[str]:
        account = self.get_payee_account(user_id)
        return account.destination_id if account else None

    def update_payee_capabilities(self, caps: AccountCapabilities) -> Optional[PayeeAccount]:
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    UPDATE app.users
                    SET
                      stripe_connect_charges_enabled = %s,
                      stripe_connect_payouts_enabled = %s,
                      stripe_connect_details_submitted = %s,
                      stripe_connect_onboarding_completed_at = CASE
                        WHEN %s AND stripe_connect_onboarding_completed_at IS NULL THEN now()
                        ELSE stripe_connect_onboarding_completed_at
                      END
                    WHERE stripe_connected_account_id = %s
                    RETURNING {_PAYEE_COLUMNS}
                    """,
                    (
                        caps.charges_enabled,
                        caps.payouts_enabled,
                        caps.details_submitted,
                        caps.ready_to_receive,
                        caps.account_id,
                    ),
                )
                row = cur.fetchone()
        return _row_to_payee(row) if row else None

    def get_household_id(self, user_id: str) -> Optional[str]:
        if not is_uuid(user_id):
            return None
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT household_id FROM app.users WHERE id = %s", (user_id,))
                row = cur.fetchone()
        return str(row[0]) if row and row[0] else None

    def list_bill_ids(self, household_id: str, *, owner_user_id: Optional[str] = None) -> list[str]:
        sql = "SELECT id FROM app.bills WHERE household_id = %s"
        params: list = [household_id]
        if owner_user_id:
            sql += " AND owner_user_id = %s"
            params.append(owner_user_id)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        return [str(r[0]) for r in rows]

    def record_activity(
        self,
        *,
        household_id: str,
        user_id: str,
        activity_type: str,
        description: str,
        detail: Optional[str] = None,
    ) -> None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO app.activities (id, household_id, user_id, type, description, detail, source)
                    VALUES (%s, %s, %s, %s, %s, %s, 'PAYMENTS')
                    """,
                    (str(uuid.uuid4()), household_id, user_id, activity_type, description, detail),
                )
