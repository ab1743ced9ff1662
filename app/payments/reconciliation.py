
# app/payments/reconciliation.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import stripe
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from app.billing.directory import BillDirectory
from app.payments.errors import (
    AmountMismatch,
    IntegrityFault,
    InvalidEvent,
    InvalidSignature,
    PayeeNotOnboarded,
    PaymentError,
    ProcessorUnavailable,
)
from app.payments.model import AttemptStatus, PaymentAttempt
from app.payments.orchestrator import group_transfer_group, solo_transfer_group
from app.payments.repository import AttemptStore, ids_of
from app.providers.base import AccountCapabilities, PaymentProcessor, ProcessorError
from app.webhooks.repository import WebhookDelivery, WebhookEventLog
from services.metrics import increment_integrity_alert, increment_payout_transfer, increment_webhook_event
from services.redaction import redact_dict

logger = logging.getLogger("bilvo.webhooks")

PROVIDER = "stripe"

INTENT_SUCCEEDED = "payment_intent.succeeded"
INTENT_FAILED = "payment_intent.payment_failed"
INTENT_CANCELED = "payment_intent.canceled"
ACCOUNT_UPDATED = "account.updated"


# ---------------------------------------------------------------------------
# Event shapes (validated before any business logic sees them)
# ---------------------------------------------------------------------------

class PaymentErrorObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    code: Optional[str] = None
    decline_code: Optional[str] = None
    message: Optional[str] = None


class IntentObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    amount: int
    currency: Optional[str] = None
    status: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    transfer_group: Optional[str] = None
    last_payment_error: Optional[PaymentErrorObject] = None
    cancellation_reason: Optional[str] = None

    @property
    def group_key(self) -> Optional[str]:
        return (self.metadata.get("groupKey") or "").strip() or None

    @property
    def attempt_id(self) -> Optional[str]:
        return (self.metadata.get("paymentAttemptId") or "").strip() or None


class AccountObject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict[str, Any]


class StripeEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    data: EventData


@dataclass(frozen=True)
class EventOutcome:
    event_id: str
    event_type: str
    applied: bool
    reason: Optional[str] = None
    attempt_ids: tuple[str, ...] = ()
    transfer_id: Optional[str] = None

    @property
    def ignored(self) -> bool:
        return not self.applied


@dataclass
class _Delivery:
    """Mutable notes collected while a delivery is processed."""
    request_id: Optional[str]
    signature_valid: bool = False
    signature_error: Optional[str] = None
    event: Optional[StripeEvent] = None
    summary: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Admission
# ---------------------------------------------------------------------------

def verify_signature(payload: bytes, sig_header: Optional[str], *, secret: str, tolerance_s: int = 300) -> None:
    """
    Checks the Stripe-Signature header against the raw body. Must run before
    the body is interpreted as JSON.
    """
    if not (secret or "").strip():
        # deployment misconfiguration, not the sender's fault: let it redeliver
        raise RuntimeError("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header or not sig_header.strip():
        raise InvalidSignature("Missing Stripe-Signature header", reason="MISSING_SIGNATURE")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidSignature("Webhook body is not valid UTF-8", reason="INVALID_BODY") from exc

    try:
        stripe.WebhookSignature.verify_header(body, sig_header, secret, tolerance_s)
    except stripe.SignatureVerificationError as exc:
        raise InvalidSignature(reason="INVALID_SIGNATURE") from exc


def parse_event(payload: bytes) -> StripeEvent:
    try:
        raw = json.loads(payload)
    except ValueError as exc:
        raise InvalidEvent("Webhook body is not JSON") from exc
    if not isinstance(raw, dict):
        raise InvalidEvent("Webhook body is not a JSON object")
    try:
        return StripeEvent.model_validate(raw)
    except ValidationError as exc:
        raise InvalidEvent(f"Malformed event: {exc.error_count()} validation error(s)") from exc


def _intent(event: StripeEvent) -> IntentObject:
    try:
        return IntentObject.model_validate(event.data.object)
    except ValidationError as exc:
        raise InvalidEvent(f"Malformed {event.type} object") from exc


def _summary(event: StripeEvent) -> dict[str, Any]:
    obj = event.data.object
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    summary = {
        "event_id": event.id,
        "event_type": event.type,
        "object_id": obj.get("id"),
        "amount": obj.get("amount"),
        "currency": obj.get("currency"),
        "status": obj.get("status"),
        "client_secret": obj.get("client_secret"),
        "paymentAttemptId": metadata.get("paymentAttemptId"),
        "groupKey": metadata.get("groupKey"),
    }
    return redact_dict({k: v for k, v in summary.items() if v is not None})


def pick_leader(attempts: Sequence[PaymentAttempt], leader_id: Optional[str]) -> PaymentAttempt:
    """Metadata leader when it belongs to the group, else the first-created member."""
    if leader_id:
        for attempt in attempts:
            if attempt.id == leader_id:
                return attempt
    return attempts[0]


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------

class ReconciliationHandler:
    """
    The authoritative state-transition engine for programmatic payments.

    Every branch is safe to replay: transfers carry a deterministic
    idempotency key, the transfer id is first-writer-wins, and same-status
    transitions are no-ops.
    """

    def __init__(
        self,
        store: AttemptStore,
        directory: BillDirectory,
        processor: PaymentProcessor,
        *,
        webhook_secret: str,
        tolerance_s: int = 300,
        event_log: Optional[WebhookEventLog] = None,
    ):
        self.store = store
        self.directory = directory
        self.processor = processor
        self.webhook_secret = webhook_secret
        self.tolerance_s = int(tolerance_s)
        self.event_log = event_log

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def receive(
        self,
        payload: bytes,
        sig_header: Optional[str],
        *,
        request_id: Optional[str] = None,
        path: str = "/v1/webhooks/stripe",
    ) -> EventOutcome:
        """
        Verify, parse, apply, and audit one delivery. Errors propagate after
        the audit row is written.
        """
        note = _Delivery(request_id=request_id)
        outcome: Optional[EventOutcome] = None
        error: Optional[BaseException] = None
        try:
            verify_signature(payload, sig_header, secret=self.webhook_secret, tolerance_s=self.tolerance_s)
            note.signature_valid = True
            note.event = parse_event(payload)
            note.summary = _summary(note.event)
            outcome = self.dispatch(note.event)
            return outcome
        except InvalidSignature as exc:
            note.signature_error = str(exc.context.get("reason") or exc.code)
            error = exc
            raise
        except Exception as exc:
            error = exc
            raise
        finally:
            self._audit(note, path=path, outcome=outcome, error=error)

    def _audit(
        self,
        note: _Delivery,
        *,
        path: str,
        outcome: Optional[EventOutcome],
        error: Optional[BaseException],
    ) -> None:
        event_type = note.event.type if note.event else None
        applied = bool(outcome and outcome.applied)
        if outcome is not None:
            reason = outcome.reason
        elif isinstance(error, PaymentError):
            reason = error.code
        elif error is not None:
            reason = type(error).__name__
        else:
            reason = None

        increment_webhook_event(event_type or "unknown", note.signature_valid, applied)
        logger.info(
            "webhook_received request_id=%s event_id=%s event_type=%s signature_valid=%s applied=%s reason=%s",
            note.request_id,
            note.event.id if note.event else None,
            event_type,
            note.signature_valid,
            applied,
            reason,
        )

        if self.event_log is None:
            return
        try:
            self.event_log.record(
                WebhookDelivery(
                    provider=PROVIDER,
                    path=path,
                    request_id=note.request_id,
                    event_id=note.event.id if note.event else None,
                    event_type=event_type,
                    signature_valid=note.signature_valid,
                    signature_error=note.signature_error,
                    applied=applied,
                    ignored=outcome is not None and not outcome.applied,
                    reason=reason,
                    payload_summary=note.summary,
                )
            )
        except Exception:
            # the audit row must not change the answer given to the processor
            logger.exception("webhook_audit_failed request_id=%s", note.request_id)

    def dispatch(self, event: StripeEvent) -> EventOutcome:
        if event.type == INTENT_SUCCEEDED:
            intent = _intent(event)
            if intent.group_key:
                return self._group_succeeded(event, intent)
            if intent.attempt_id:
                return self._solo_succeeded(event, intent)
            return self._ignored(event, "NO_CORRELATION_METADATA")

        if event.type == INTENT_FAILED:
            intent = _intent(event)
            err = intent.last_payment_error
            return self._close(
                event,
                intent,
                AttemptStatus.FAILED,
                failure_code=(err.code or err.decline_code) if err else "payment_failed",
                failure_message=(err.message if err else None) or "Payment failed",
            )

        if event.type == INTENT_CANCELED:
            intent = _intent(event)
            return self._close(
                event,
                intent,
                AttemptStatus.CANCELED,
                failure_code=intent.cancellation_reason or "canceled",
                failure_message="Payment canceled",
            )

        if event.type == ACCOUNT_UPDATED:
            return self._account_updated(event)

        return self._ignored(event, "UNHANDLED_EVENT_TYPE")

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _ignored(event: StripeEvent, reason: str, attempt_ids: Sequence[str] = ()) -> EventOutcome:
        return EventOutcome(
            event_id=event.id,
            event_type=event.type,
            applied=False,
            reason=reason,
            attempt_ids=tuple(attempt_ids),
        )

    @staticmethod
    def _check_charge(attempt: PaymentAttempt, intent: IntentObject) -> None:
        if attempt.provider_charge_id and attempt.provider_charge_id != intent.id:
            raise IntegrityFault(
                "Event charge does not match the attempt's charge",
                attempt_id=attempt.id,
                attempt_charge_id=attempt.provider_charge_id,
                event_charge_id=intent.id,
            )

    def _check_can_succeed(self, attempt: PaymentAttempt, intent: IntentObject) -> None:
        self._check_charge(attempt, intent)
        if attempt.status in (AttemptStatus.FAILED, AttemptStatus.CANCELED):
            # payer was charged but nothing will be transferred
            increment_integrity_alert("succeeded_after_close")
            logger.error(
                "payment_integrity_alert kind=succeeded_after_close attempt_id=%s status=%s charge_id=%s amount=%s",
                attempt.id,
                attempt.status.value,
                intent.id,
                intent.amount,
            )
            raise IntegrityFault(
                "Succeeded event for an attempt that already failed or was canceled",
                attempt_id=attempt.id,
                status=attempt.status.value,
            )
        if attempt.status == AttemptStatus.PENDING_APPROVAL or not attempt.provider.is_programmatic:
            raise IntegrityFault("Succeeded event for a manual attempt", attempt_id=attempt.id)

    def _destination(self, owner_user_id: str) -> str:
        destination = self.directory.get_payee_destination(owner_user_id)
        if not destination:
            raise PayeeNotOnboarded("Payee has no payout destination", owner_user_id=owner_user_id)
        return destination

    def _ensure_processing(self, attempts: Sequence[PaymentAttempt], intent: IntentObject) -> None:
        # the event can beat attach_charge when the client confirms quickly
        pending = [a.id for a in attempts if a.status == AttemptStatus.PENDING]
        if pending:
            self.store.attach_charge(pending, intent.id)

    def _transfer(self, *, scope: str, amount: int, currency: str, destination: str, idempotency_key: str, transfer_group: str, metadata: dict[str, str]):
        try:
            transfer = self.processor.create_transfer(
                amount=amount,
                currency=currency,
                destination=destination,
                idempotency_key=idempotency_key,
                transfer_group=transfer_group,
                metadata=metadata,
            )
        except ProcessorError as exc:
            increment_payout_transfer(scope, "failed")
            logger.error(
                "payout_transfer_failed scope=%s idempotency_key=%s amount=%s code=%s http_status=%s",
                scope,
                idempotency_key,
                amount,
                exc.code,
                exc.http_status,
            )
            raise ProcessorUnavailable(exc.message, code=exc.code) from exc
        return transfer

    # ------------------------------------------------------------------
    # succeeded
    # ------------------------------------------------------------------

    def _solo_succeeded(self, event: StripeEvent, intent: IntentObject) -> EventOutcome:
        attempt = self.store.get(intent.attempt_id)
        if attempt is None:
            logger.warning("webhook_attempt_not_found event_id=%s attempt_id=%s", event.id, intent.attempt_id)
            return self._ignored(event, "ATTEMPT_NOT_FOUND")

        self._check_can_succeed(attempt, intent)
        if intent.amount != attempt.total_cents:
            logger.error(
                "webhook_amount_mismatch event_id=%s attempt_id=%s event_amount=%s total_cents=%s",
                event.id,
                attempt.id,
                intent.amount,
                attempt.total_cents,
            )
            raise AmountMismatch(attempt_id=attempt.id, event_amount=intent.amount, total_cents=attempt.total_cents)

        self._ensure_processing([attempt], intent)

        transfer_id = attempt.provider_transfer_id
        if transfer_id is None:
            ref = self.directory.get_bill_participant(attempt.bill_participant_id)
            if ref is None:
                raise IntegrityFault("Bill participant for attempt is gone", attempt_id=attempt.id)
            transfer = self._transfer(
                scope="solo",
                amount=attempt.amount_cents,
                currency=attempt.currency,
                destination=self._destination(ref.owner_user_id),
                idempotency_key=f"transfer_{attempt.id}",
                transfer_group=solo_transfer_group(attempt.id),
                metadata={"paymentAttemptId": attempt.id, "billParticipantId": attempt.bill_participant_id},
            )
            won = self.store.record_transfer(attempt.id, transfer.id)
            increment_payout_transfer("solo", "created" if won else "duplicate")
            transfer_id = transfer.id if won else (self.store.get(attempt.id) or attempt).provider_transfer_id

        self.store.transition(attempt.id, AttemptStatus.SUCCEEDED, clear_failure=True)
        logger.info(
            "payment_succeeded attempt_id=%s amount_cents=%s transfer_id=%s event_id=%s",
            attempt.id,
            attempt.amount_cents,
            transfer_id,
            event.id,
        )
        return EventOutcome(
            event_id=event.id,
            event_type=event.type,
            applied=True,
            attempt_ids=(attempt.id,),
            transfer_id=transfer_id,
        )

    def _group_succeeded(self, event: StripeEvent, intent: IntentObject) -> EventOutcome:
        group_key = intent.group_key
        attempts = self.store.list_group(group_key)
        if not attempts:
            logger.warning("webhook_group_not_found event_id=%s group_key=%s", event.id, group_key)
            return self._ignored(event, "GROUP_NOT_FOUND")

        for attempt in attempts:
            self._check_can_succeed(attempt, intent)

        sum_total = sum(a.total_cents for a in attempts)
        if intent.amount != sum_total:
            logger.error(
                "webhook_amount_mismatch event_id=%s group_key=%s event_amount=%s total_cents=%s",
                event.id,
                group_key,
                intent.amount,
                sum_total,
            )
            raise AmountMismatch(group_key=group_key, event_amount=intent.amount, total_cents=sum_total)

        refs = self.directory.get_bill_participants([a.bill_participant_id for a in attempts])
        owners = {r.owner_user_id for r in refs}
        if len(refs) != len(attempts) or len(owners) != 1:
            raise IntegrityFault("Group does not resolve to a single payee", group_key=group_key)
        destination = self._destination(owners.pop())
        expected = intent.metadata.get("destinationAccountId")
        if expected and expected != destination:
            raise IntegrityFault(
                "Payee destination changed since the charge was created",
                group_key=group_key,
            )

        leader = pick_leader(attempts, intent.metadata.get("leaderPaymentAttemptId"))
        self._ensure_processing(attempts, intent)

        holder = next((a for a in attempts if a.provider_transfer_id), None)
        if holder is not None:
            transfer_id = holder.provider_transfer_id
        else:
            sum_share = sum(a.amount_cents for a in attempts)
            transfer = self._transfer(
                scope="group",
                amount=sum_share,
                currency=leader.currency,
                destination=destination,
                idempotency_key=f"transfer_group_{group_key}",
                transfer_group=group_transfer_group(group_key),
                metadata={
                    "groupKey": group_key,
                    "leaderPaymentAttemptId": leader.id,
                    "attemptIds": ",".join(ids_of(attempts)),
                },
            )
            won = self.store.record_transfer(leader.id, transfer.id)
            increment_payout_transfer("group", "created" if won else "duplicate")
            transfer_id = transfer.id if won else (self.store.get(leader.id) or leader).provider_transfer_id

        for attempt in attempts:
            self.store.transition(attempt.id, AttemptStatus.SUCCEEDED, clear_failure=True)

        logger.info(
            "group_payment_succeeded group_key=%s leader_attempt_id=%s size=%s transfer_id=%s event_id=%s",
            group_key,
            leader.id,
            len(attempts),
            transfer_id,
            event.id,
        )
        return EventOutcome(
            event_id=event.id,
            event_type=event.type,
            applied=True,
            attempt_ids=tuple(ids_of(attempts)),
            transfer_id=transfer_id,
        )

    # ------------------------------------------------------------------
    # failed / canceled
    # ------------------------------------------------------------------

    def _targets(self, intent: IntentObject) -> list[PaymentAttempt]:
        if intent.group_key:
            return self.store.list_group(intent.group_key)
        if intent.attempt_id:
            attempt = self.store.get(intent.attempt_id)
            return [attempt] if attempt else []
        return []

    def _close(
        self,
        event: StripeEvent,
        intent: IntentObject,
        status: AttemptStatus,
        *,
        failure_code: Optional[str],
        failure_message: Optional[str],
    ) -> EventOutcome:
        targets = self._targets(intent)
        if not targets:
            return self._ignored(event, "ATTEMPT_NOT_FOUND")

        changed: list[str] = []
        for attempt in targets:
            self._check_charge(attempt, intent)
            if attempt.is_terminal:
                if attempt.status != status:
                    logger.warning(
                        "webhook_late_event_ignored event_id=%s event_type=%s attempt_id=%s status=%s",
                        event.id,
                        event.type,
                        attempt.id,
                        attempt.status.value,
                    )
                continue
            self.store.transition(
                attempt.id,
                status,
                failure_code=failure_code,
                failure_message=failure_message,
            )
            changed.append(attempt.id)

        if not changed:
            return self._ignored(event, "ALREADY_TERMINAL", ids_of(targets))

        logger.info(
            "payment_closed status=%s attempt_ids=%s failure_code=%s event_id=%s",
            status.value,
            ",".join(changed),
            failure_code,
            event.id,
        )
        return EventOutcome(
            event_id=event.id,
            event_type=event.type,
            applied=True,
            attempt_ids=tuple(changed),
        )

    # ------------------------------------------------------------------
    # account.updated
    # ------------------------------------------------------------------

    def _account_updated(self, event: StripeEvent) -> EventOutcome:
        try:
            account = AccountObject.model_validate(event.data.object)
        except ValidationError as exc:
            raise InvalidEvent("Malformed account.updated object") from exc

        updated = self.directory.update_payee_capabilities(
            AccountCapabilities(
                account_id=account.id,
                charges_enabled=account.charges_enabled,
                payouts_enabled=account.payouts_enabled,
                details_submitted=account.details_submitted,
            )
        )
        if updated is None:
            return self._ignored(event, "ACCOUNT_NOT_FOUND")

        logger.info(
            "payee_capabilities_updated user_id=%s charges_enabled=%s payouts_enabled=%s",
            updated.user_id,
            updated.charges_enabled,
            updated.payouts_enabled,
        )
        return EventOutcome(event_id=event.id, event_type=event.type, applied=True)
