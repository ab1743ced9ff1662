
# app/payments/orchestrator.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Sequence

from app.billing.directory import BillDirectory, BillParticipantRef, PayeeAccount
from app.payments.errors import (
    BillParticipantNotFound,
    InvalidAmount,
    MixedPayeeGroup,
    PayeeNotOnboarded,
    ProcessorUnavailable,
    SelfPayNotAllowed,
)
from app.payments.fees import DEFAULT_FEE_RATE, DEFAULT_FIXED_CENTS, calc_processing_fee_cents
from app.payments.model import INTENT_CREATE_FAILED, NewAttempt, PaymentAttempt, PaymentProvider
from app.payments.repository import AttemptStore, ids_of
from app.providers.base import PaymentProcessor, ProcessorError
from services.metrics import increment_payment_attempt

logger = logging.getLogger("bilvo.payments")


def solo_transfer_group(attempt_id: str) -> str:
    return f"attempt_{attempt_id}"


def group_transfer_group(group_key: str) -> str:
    return f"group_{group_key}"


@dataclass(frozen=True)
class PaymentStart:
    attempt_id: str
    client_secret: str
    charge_id: str
    amount_cents: int
    fee_cents: int
    total_cents: int
    currency: str


@dataclass(frozen=True)
class GroupPaymentStart:
    group_key: str
    leader_attempt_id: str
    attempt_ids: list[str]
    client_secret: str
    charge_id: str
    amount_cents: int
    fee_cents: int
    total_cents: int
    currency: str


def _unique(ids: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for raw in ids:
        value = (raw or "").strip()
        if value and value not in seen:
            seen.add(value)
            out.append(value)
    return out


class PaymentOrchestrator:
    """
    Starts programmatic (card/bank) payments.

    Creates the attempt rows and the charge intent; never marks anything
    SUCCEEDED. The webhook reconciliation is the only path to a terminal
    success for this rail.
    """

    def __init__(
        self,
        store: AttemptStore,
        directory: BillDirectory,
        processor: PaymentProcessor,
        *,
        currency: str = "usd",
        fee_rate: Decimal | float = DEFAULT_FEE_RATE,
        fixed_cents: int = DEFAULT_FIXED_CENTS,
    ):
        self.store = store
        self.directory = directory
        self.processor = processor
        self.currency = (currency or "usd").lower()
        self.fee_rate = Decimal(str(fee_rate))
        self.fixed_cents = int(fixed_cents)

    def fee_for(self, share_cents: int) -> int:
        return calc_processing_fee_cents(share_cents, rate=self.fee_rate, fixed_cents=self.fixed_cents)

    # ------------------------------------------------------------------
    # payee readiness
    # ------------------------------------------------------------------

    def refresh_payee(self, user_id: str) -> Optional[PayeeAccount]:
        """Pull capability flags from the processor into the cached record."""
        account = self.directory.get_payee_account(user_id)
        if account is None or not account.destination_id:
            return account
        try:
            caps = self.processor.retrieve_account_capabilities(account.destination_id)
        except ProcessorError as exc:
            raise ProcessorUnavailable(exc.message, code=exc.code) from exc
        return self.directory.update_payee_capabilities(caps) or account

    def _payee_destination(self, owner_user_id: str) -> str:
        account = self.directory.get_payee_account(owner_user_id)
        if account is None or not account.destination_id:
            raise PayeeNotOnboarded("Bill owner is not ready to receive payments yet", owner_user_id=owner_user_id)

        if not account.ready_to_receive:
            # cached flags can lag behind onboarding; check once before refusing
            account = self.refresh_payee(owner_user_id)
            if account is None or not account.ready_to_receive:
                raise PayeeNotOnboarded(owner_user_id=owner_user_id)

        return account.destination_id

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------

    def _load_own_share(self, bill_participant_id: str, payer_user_id: str) -> BillParticipantRef:
        ref = self.directory.get_bill_participant(bill_participant_id)
        if ref is None or ref.payer_user_id != payer_user_id:
            raise BillParticipantNotFound(bill_participant_id=bill_participant_id)
        return ref

    @staticmethod
    def _check_share(ref: BillParticipantRef) -> None:
        if ref.payer_user_id == ref.owner_user_id:
            raise SelfPayNotAllowed(bill_participant_id=ref.id)
        if ref.share_cents <= 0:
            raise InvalidAmount(bill_participant_id=ref.id, share_cents=ref.share_cents)

    def _new_attempt(self, ref: BillParticipantRef) -> NewAttempt:
        return NewAttempt(
            bill_id=ref.bill_id,
            bill_participant_id=ref.id,
            payer_user_id=ref.payer_user_id,
            provider=PaymentProvider.STRIPE,
            amount_cents=ref.share_cents,
            fee_cents=self.fee_for(ref.share_cents),
            currency=self.currency,
        )

    # ------------------------------------------------------------------
    # single
    # ------------------------------------------------------------------

    def start_payment(self, bill_participant_id: str, payer_user_id: str) -> PaymentStart:
        ref = self._load_own_share(bill_participant_id, payer_user_id)
        self._check_share(ref)
        self._payee_destination(ref.owner_user_id)

        attempt = self.store.create_attempt(self._new_attempt(ref))

        metadata = {
            "paymentAttemptId": attempt.id,
            "billId": ref.bill_id,
            "billParticipantId": ref.id,
            "payerUserId": ref.payer_user_id,
            "ownerUserId": ref.owner_user_id,
        }
        try:
            intent = self.processor.create_charge_intent(
                amount=attempt.total_cents,
                currency=attempt.currency,
                metadata=metadata,
                transfer_group=solo_transfer_group(attempt.id),
                idempotency_key=f"intent_{attempt.id}",
            )
            self.store.attach_charge([attempt.id], intent.id)
        except ProcessorError as exc:
            self._roll_back([attempt], exc)
            raise ProcessorUnavailable(exc.message, code=exc.code) from exc
        except Exception as exc:
            self._roll_back([attempt], exc)
            raise

        increment_payment_attempt(PaymentProvider.STRIPE.value, "created")
        logger.info(
            "payment_started attempt_id=%s bill_participant_id=%s amount_cents=%s fee_cents=%s total_cents=%s charge_id=%s",
            attempt.id,
            ref.id,
            attempt.amount_cents,
            attempt.fee_cents,
            attempt.total_cents,
            intent.id,
        )
        return PaymentStart(
            attempt_id=attempt.id,
            client_secret=intent.client_secret,
            charge_id=intent.id,
            amount_cents=attempt.amount_cents,
            fee_cents=attempt.fee_cents,
            total_cents=attempt.total_cents,
            currency=attempt.currency,
        )

    # ------------------------------------------------------------------
    # group
    # ------------------------------------------------------------------

    def start_group_payment(self, bill_participant_ids: Sequence[str], payer_user_id: str) -> GroupPaymentStart:
        ids = _unique(bill_participant_ids)
        if not ids:
            raise InvalidAmount("billParticipantIds is required")

        refs = self.directory.get_bill_participants(ids)
        found = {r.id for r in refs if r.payer_user_id == payer_user_id}
        missing = [i for i in ids if i not in found]
        if missing:
            raise BillParticipantNotFound(
                "One or more bill participants not found",
                bill_participant_ids=missing,
            )

        owners = {r.owner_user_id for r in refs}
        if len(owners) != 1:
            raise MixedPayeeGroup(owner_user_ids=sorted(owners))
        for ref in refs:
            self._check_share(ref)

        owner_user_id = refs[0].owner_user_id
        destination = self._payee_destination(owner_user_id)

        group_key = str(uuid.uuid4())
        attempts = self.store.create_group([self._new_attempt(r) for r in refs], group_key=group_key)
        leader = attempts[0]

        sum_share = sum(a.amount_cents for a in attempts)
        sum_fee = sum(a.fee_cents for a in attempts)
        sum_total = sum(a.total_cents for a in attempts)

        metadata = {
            "groupKey": group_key,
            "leaderPaymentAttemptId": leader.id,
            "attemptIds": ",".join(ids_of(attempts)),
            "payerUserId": payer_user_id,
            "ownerUserId": owner_user_id,
            "destinationAccountId": destination,
            "sumShareCents": str(sum_share),
            "feeCents": str(sum_fee),
        }
        try:
            intent = self.processor.create_charge_intent(
                amount=sum_total,
                currency=self.currency,
                metadata=metadata,
                transfer_group=group_transfer_group(group_key),
                idempotency_key=f"intent_group_{group_key}",
            )
            self.store.attach_charge(ids_of(attempts), intent.id)
        except ProcessorError as exc:
            self._roll_back(attempts, exc)
            raise ProcessorUnavailable(exc.message, code=exc.code) from exc
        except Exception as exc:
            self._roll_back(attempts, exc)
            raise

        increment_payment_attempt(PaymentProvider.STRIPE.value, "group_created")
        logger.info(
            "group_payment_started group_key=%s leader_attempt_id=%s size=%s sum_share_cents=%s fee_cents=%s total_cents=%s charge_id=%s",
            group_key,
            leader.id,
            len(attempts),
            sum_share,
            sum_fee,
            sum_total,
            intent.id,
        )
        return GroupPaymentStart(
            group_key=group_key,
            leader_attempt_id=leader.id,
            attempt_ids=ids_of(attempts),
            client_secret=intent.client_secret,
            charge_id=intent.id,
            amount_cents=sum_share,
            fee_cents=sum_fee,
            total_cents=sum_total,
            currency=self.currency,
        )

    def _roll_back(self, attempts: Sequence[PaymentAttempt], exc: Exception) -> None:
        # nothing may stay in flight without a charge id
        if isinstance(exc, ProcessorError):
            message = exc.message or "Failed to create charge intent"
            code, http_status, retryable = exc.code, exc.http_status, exc.retryable
        else:
            message = "Failed to create charge intent"
            code, http_status, retryable = type(exc).__name__, None, None

        self.store.cancel_attempts(
            ids_of(attempts),
            failure_code=INTENT_CREATE_FAILED,
            failure_message=message,
        )
        increment_payment_attempt(PaymentProvider.STRIPE.value, "intent_failed")
        logger.warning(
            "charge_intent_failed attempt_ids=%s code=%s http_status=%s retryable=%s",
            ",".join(ids_of(attempts)),
            code,
            http_status,
            retryable,
        )
