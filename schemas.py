
# schemas.py
from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.payments.model import PaymentAttempt


class CamelModel(BaseModel):
    """Wire format is camelCase; Python code uses snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -------- PAY NOW (programmatic rail) --------
class PayNowRequest(CamelModel):
    bill_participant_id: str = Field(min_length=1, max_length=64)


class PayNowResponse(CamelModel):
    client_secret: str
    payment_attempt_id: str
    amount_cents: int
    fee_cents: int
    total_cents: int
    currency: str


class PayNowGroupRequest(CamelModel):
    bill_participant_ids: List[str] = Field(min_length=1, max_length=100)


class PayNowGroupResponse(CamelModel):
    client_secret: str
    group_key: str
    payment_attempt_id: str  # leader
    payment_attempt_ids: List[str]
    sum_share_cents: int
    fee_cents: int
    total_charge_cents: int
    currency: str


# -------- MANUAL RAILS --------
class ManualAttemptRequest(CamelModel):
    bill_participant_id: str = Field(min_length=1, max_length=64)
    provider: str = Field(min_length=1, max_length=20)


class ManualAttemptResponse(CamelModel):
    attempt_id: str
    status: str
    provider: str
    amount_cents: int
    reused: bool


class ReviewRequest(CamelModel):
    action: Literal["approve", "reject"]


# -------- ATTEMPTS --------
class AttemptOut(CamelModel):
    id: str
    bill_id: str
    bill_participant_id: str
    payer_user_id: str
    provider: str
    status: str
    amount_cents: int
    fee_cents: int
    total_cents: int
    currency: str
    group_key: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    @classmethod
    def from_attempt(cls, a: PaymentAttempt) -> "AttemptOut":
        return cls(
            id=a.id,
            bill_id=a.bill_id,
            bill_participant_id=a.bill_participant_id,
            payer_user_id=a.payer_user_id,
            provider=a.provider.value,
            status=a.status.value,
            amount_cents=a.amount_cents,
            fee_cents=a.fee_cents,
            total_cents=a.total_cents,
            currency=a.currency,
            group_key=a.group_key,
            failure_code=a.failure_code,
            failure_message=a.failure_message,
            created_at=a.created_at,
            processed_at=a.processed_at,
        )


class ReviewResponse(CamelModel):
    success: bool = True
    attempt: AttemptOut


class AttemptListResponse(CamelModel):
    attempts: List[AttemptOut]
    next_cursor: Optional[str] = None


# -------- CONNECT --------
class ConnectStatusResponse(CamelModel):
    has_account: bool
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool
    is_ready_to_receive: bool


# -------- WEBHOOKS --------
class WebhookAck(CamelModel):
    received: bool = True
    applied: bool
    reason: Optional[str] = None
