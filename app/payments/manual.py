
# app/payments/manual.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Literal

from app.billing.directory import BillDirectory, BillParticipantRef
from app.payments.errors import (
    AttemptNotFound,
    BillParticipantNotFound,
    Forbidden,
    InvalidAmount,
    InvalidTransition,
    SelfPayNotAllowed,
    UnsupportedProvider,
)
from app.payments.model import (
    AttemptStatus,
    NewAttempt,
    OWNER_REJECTED,
    PaymentAttempt,
    PaymentProvider,
)
from app.payments.repository import AttemptStore
from services.metrics import increment_manual_review, increment_payment_attempt

logger = logging.getLogger("bilvo.manual")

ReviewAction = Literal["approve", "reject"]


@dataclass(frozen=True)
class ManualClaim:
    attempt: PaymentAttempt
    reused: bool


@dataclass(frozen=True)
class ReviewResult:
    attempt: PaymentAttempt
    replayed: bool = False


class ManualApprovalService:
    """
    Two-party attestation for rails the system cannot observe.

    The payer says "I sent it" (PENDING_APPROVAL); the bill's payee approves
    (SUCCEEDED) or rejects (back to PENDING, failure_code=owner_rejected).
    No money moves through this system and nothing here is reconciled
    against a processor.
    """

    def __init__(
        self,
        store: AttemptStore,
        directory: BillDirectory,
        *,
        providers: Iterable[str] = ("venmo", "zelle"),
        currency: str = "usd",
    ):
        self.store = store
        self.directory = directory
        self.providers = {p.strip().lower() for p in providers if p and p.strip()}
        self.currency = (currency or "usd").lower()

    def _provider(self, raw: str) -> PaymentProvider:
        try:
            provider = PaymentProvider((raw or "").strip().lower())
        except ValueError:
            raise UnsupportedProvider(provider=raw)
        if provider.is_programmatic or provider.value not in self.providers:
            raise UnsupportedProvider(provider=raw)
        return provider

    def record_manual_attempt(self, bill_participant_id: str, payer_user_id: str, provider: str) -> ManualClaim:
        rail = self._provider(provider)

        ref = self.directory.get_bill_participant(bill_participant_id)
        if ref is None or ref.payer_user_id != payer_user_id:
            raise BillParticipantNotFound(bill_participant_id=bill_participant_id)
        if ref.payer_user_id == ref.owner_user_id:
            raise SelfPayNotAllowed(bill_participant_id=ref.id)
        if ref.share_cents <= 0:
            raise InvalidAmount(bill_participant_id=ref.id, share_cents=ref.share_cents)

        attempt, reused = self.store.claim_manual(
            NewAttempt(
                bill_id=ref.bill_id,
                bill_participant_id=ref.id,
                payer_user_id=ref.payer_user_id,
                provider=rail,
                amount_cents=ref.share_cents,
                fee_cents=0,
                currency=self.currency,
            )
        )
        increment_payment_attempt(rail.value, "reused" if reused else "claimed")
        logger.info(
            "manual_payment_claimed attempt_id=%s bill_participant_id=%s provider=%s amount_cents=%s reused=%s",
            attempt.id,
            ref.id,
            rail.value,
            attempt.amount_cents,
            reused,
        )
        return ManualClaim(attempt=attempt, reused=reused)

    def review_attempt(self, attempt_id: str, reviewer_user_id: str, action: ReviewAction) -> ReviewResult:
        if action not in ("approve", "reject"):
            raise InvalidTransition('Invalid action. Use "approve" or "reject".', action=action)

        attempt = self.store.get(attempt_id)
        if attempt is None:
            raise AttemptNotFound(attempt_id=attempt_id)

        ref = self.directory.get_bill_participant(attempt.bill_participant_id)
        if ref is None:
            raise AttemptNotFound(attempt_id=attempt_id)
        if ref.owner_user_id != reviewer_user_id:
            logger.warning(
                "manual_review_forbidden attempt_id=%s reviewer_user_id=%s action=%s",
                attempt_id,
                reviewer_user_id,
                action,
            )
            raise Forbidden("Only the bill owner can approve payments", attempt_id=attempt_id)

        if attempt.provider.is_programmatic:
            raise UnsupportedProvider("Only manual attempts can be approved here", provider=attempt.provider.value)

        if action == "approve" and attempt.status == AttemptStatus.SUCCEEDED:
            return ReviewResult(attempt=attempt, replayed=True)
        if action == "reject" and attempt.is_rejected_claim:
            return ReviewResult(attempt=attempt, replayed=True)
        if attempt.status != AttemptStatus.PENDING_APPROVAL:
            raise InvalidTransition(
                "Only PENDING_APPROVAL attempts can be approved/rejected",
                attempt_id=attempt_id,
                status=attempt.status.value,
            )

        if action == "approve":
            updated = self.store.transition(attempt.id, AttemptStatus.SUCCEEDED, clear_failure=True)
        else:
            updated = self.store.transition(
                attempt.id,
                AttemptStatus.PENDING,
                failure_code=OWNER_REJECTED,
                failure_message="Rejected by bill owner",
            )

        self._record_activity(ref, reviewer_user_id, updated, action)
        increment_manual_review(action)
        logger.info(
            "manual_payment_reviewed attempt_id=%s action=%s status=%s provider=%s",
            updated.id,
            action,
            updated.status.value,
            updated.provider.value,
        )
        return ReviewResult(attempt=updated)

    def _record_activity(self, ref: BillParticipantRef, reviewer_user_id: str, attempt: PaymentAttempt, action: ReviewAction) -> None:
        verb = "approved" if action == "approve" else "rejected"
        self.directory.record_activity(
            household_id=ref.household_id,
            user_id=reviewer_user_id,
            activity_type=f"manual_payment_{verb}",
            description=f"{attempt.provider.value.capitalize()} payment {verb}",
            detail=f"Attempt {attempt.id}",
        )
