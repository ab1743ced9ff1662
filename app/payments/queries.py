
# app/payments/queries.py
from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from app.billing.directory import BillDirectory
from app.payments.errors import AttemptNotFound, Forbidden
from app.payments.model import AttemptQuery, AttemptStatus, PaymentAttempt, PaymentProvider
from app.payments.repository import AttemptStore

Scope = Literal["household", "me", "owed"]

MAX_LIMIT = 250
DEFAULT_LIMIT = 100


def clamp_limit(value: Optional[int]) -> int:
    if value is None:
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, int(value)))


class AttemptReader:
    """Household-scoped read access to payment attempts."""

    def __init__(self, store: AttemptStore, directory: BillDirectory):
        self.store = store
        self.directory = directory

    def get_for_viewer(self, attempt_id: str, viewer_user_id: str) -> PaymentAttempt:
        attempt = self.store.get(attempt_id)
        if attempt is None:
            raise AttemptNotFound(attempt_id=attempt_id)
        if attempt.payer_user_id == viewer_user_id:
            return attempt

        ref = self.directory.get_bill_participant(attempt.bill_participant_id)
        if ref is None or ref.owner_user_id != viewer_user_id:
            raise Forbidden(attempt_id=attempt_id)
        return attempt

    def list_for_viewer(
        self,
        viewer_user_id: str,
        *,
        scope: Scope = "household",
        status: Optional[AttemptStatus] = None,
        provider: Optional[PaymentProvider] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> tuple[list[PaymentAttempt], Optional[str]]:
        household_id = self.directory.get_household_id(viewer_user_id)
        if not household_id:
            raise Forbidden("User not in a household")

        if scope == "owed":
            bill_ids = self.directory.list_bill_ids(household_id, owner_user_id=viewer_user_id)
        else:
            bill_ids = self.directory.list_bill_ids(household_id)

        query = AttemptQuery(
            bill_ids=tuple(bill_ids),
            payer_user_id=viewer_user_id if scope == "me" else None,
            status=status,
            provider=provider,
            created_from=created_from,
            created_to=created_to,
            limit=clamp_limit(limit),
            cursor=cursor or None,
        )
        return self.store.list_attempts(query)
