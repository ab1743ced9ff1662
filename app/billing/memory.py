
# app/billing/memory.py
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock
from typing import Optional, Sequence

from app.billing.directory import BillParticipantRef, PayeeAccount
from app.providers.base import AccountCapabilities


class InMemoryBillDirectory:
    """Dev/test stand-in for the household/bill tables."""

    def __init__(self):
        self._lock = Lock()
        self.households: dict[str, str] = {}  # user_id -> household_id
        self.bills: dict[str, dict] = {}
        self.participants: dict[str, BillParticipantRef] = {}
        self.payees: dict[str, PayeeAccount] = {}
        self.activities: list[dict] = []

    # -- seeding -------------------------------------------------------------

    def add_member(self, user_id: str, household_id: str) -> None:
        self.households[user_id] = household_id

    def add_bill(self, bill_id: str, *, household_id: str, owner_user_id: str, biller: str | None = None) -> None:
        self.bills[bill_id] = {
            "id": bill_id,
            "household_id": household_id,
            "owner_user_id": owner_user_id,
            "biller": biller,
        }

    def add_participant(self, participant_id: str, *, bill_id: str, payer_user_id: str, share_cents: int) -> BillParticipantRef:
        bill = self.bills[bill_id]
        ref = BillParticipantRef(
            id=participant_id,
            bill_id=bill_id,
            household_id=bill["household_id"],
            owner_user_id=bill["owner_user_id"],
            payer_user_id=payer_user_id,
            share_cents=int(share_cents),
            biller=bill.get("biller"),
        )
        self.participants[participant_id] = ref
        return ref

    def set_payee(
        self,
        user_id: str,
        destination_id: str | None,
        *,
        charges_enabled: bool = True,
        payouts_enabled: bool = True,
        details_submitted: bool = True,
    ) -> PayeeAccount:
        account = PayeeAccount(
            user_id=user_id,
            destination_id=destination_id,
            charges_enabled=charges_enabled,
            payouts_enabled=payouts_enabled,
            details_submitted=details_submitted,
        )
        self.payees[user_id] = account
        return account

    # -- BillDirectory -------------------------------------------------------

    def get_bill_participant(self, bill_participant_id: str) -> Optional[BillParticipantRef]:
        return self.participants.get(bill_participant_id)

    def get_bill_participants(self, ids: Sequence[str]) -> list[BillParticipantRef]:
        return [self.participants[i] for i in ids if i in self.participants]

    def get_payee_account(self, user_id: str) -> Optional[PayeeAccount]:
        return self.payees.get(user_id)

    def get_payee_destination(self, user_id: str) -> Optional[str]:
        account = self.payees.get(user_id)
        return account.destination_id if account else None

    def update_payee_capabilities(self, caps: AccountCapabilities) -> Optional[PayeeAccount]:
        with self._lock:
            for user_id, account in self.payees.items():
                if account.destination_id != caps.account_id:
                    continue
                completed = account.onboarding_completed_at
                if caps.ready_to_receive and completed is None:
                    completed = datetime.now(timezone.utc)
                updated = replace(
                    account,
                    charges_enabled=caps.charges_enabled,
                    payouts_enabled=caps.payouts_enabled,
                    details_submitted=caps.details_submitted,
                    onboarding_completed_at=completed,
                )
                self.payees[user_id] = updated
                return updated
        return None

    def get_household_id(self, user_id: str) -> Optional[str]:
        return self.households.get(user_id)

    def list_bill_ids(self, household_id: str, *, owner_user_id: Optional[str] = None) -> list[str]:
        return [
            b["id"]
            for b in self.bills.values()
            if b["household_id"] == household_id and (owner_user_id is None or b["owner_user_id"] == owner_user_id)
        ]

    def record_activity(
        self,
        *,
        household_id: str,
        user_id: str,
        activity_type: str,
        description: str,
        detail: Optional[str] = None,
    ) -> None:
        with self._lock:
            self.activities.append(
                {
                    "household_id": household_id,
                    "user_id": user_id,
                    "type": activity_type,
                    "description": description,
                    "detail": detail,
                }
            )
