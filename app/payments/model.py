
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class AttemptStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


class PaymentProvider(str, Enum):
    STRIPE = "stripe"
    VENMO = "venmo"
    ZELLE = "zelle"

    @property
    def is_programmatic(self) -> bool:
        return self is PaymentProvider.STRIPE


TERMINAL_STATUSES = frozenset({AttemptStatus.SUCCEEDED, AttemptStatus.FAILED, AttemptStatus.CANCELED})
IN_FLIGHT_STATUSES = frozenset({AttemptStatus.PENDING, AttemptStatus.PROCESSING, AttemptStatus.PENDING_APPROVAL})

OWNER_REJECTED = "owner_rejected"
SUPERSEDED = "superseded"
INTENT_CREATE_FAILED = "intent_create_failed"


@dataclass(frozen=True)
class PaymentAttempt:
    id: str
    bill_id: str
    bill_participant_id: str
    payer_user_id: str
    provider: PaymentProvider
    amount_cents: int
    fee_cents: int
    total_cents: int
    currency: str
    status: AttemptStatus
    created_at: datetime
    group_key: Optional[str] = None
    group_position: Optional[int] = None
    provider_charge_id: Optional[str] = None
    provider_transfer_id: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    processed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_in_flight(self) -> bool:
        return self.status in IN_FLIGHT_STATUSES

    @property
    def is_rejected_claim(self) -> bool:
        """A manual claim the payee sent back; it no longer blocks new attempts."""
        return (
            self.status == AttemptStatus.PENDING
            and self.failure_code == OWNER_REJECTED
            and self.provider_charge_id is None
        )

    def evolve(self, **changes: Any) -> "PaymentAttempt":
        return replace(self, **changes)


@dataclass(frozen=True)
class NewAttempt:
    """Values for one row of an attempt insert."""
    bill_id: str
    bill_participant_id: str
    payer_user_id: str
    provider: PaymentProvider
    amount_cents: int
    fee_cents: int = 0
    currency: str = "usd"

    @property
    def total_cents(self) -> int:
        return int(self.amount_cents) + int(self.fee_cents)


@dataclass(frozen=True)
class AttemptQuery:
    bill_ids: Optional[tuple[str, ...]] = None
    payer_user_id: Optional[str] = None
    status: Optional[AttemptStatus] = None
    provider: Optional[PaymentProvider] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    limit: int = 100
    cursor: Optional[str] = None
