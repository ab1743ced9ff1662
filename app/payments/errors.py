
# app/payments/errors.py
from __future__ import annotations

from typing import Any


class PaymentError(Exception):
    """
    Base for every failure the payment core reports to its callers.

    `code` is stable and ends up in API responses; `retryable` tells the
    caller whether the same request can succeed later without changes.
    """

    code = "PAYMENT_ERROR"
    retryable = False
    default_message = "Payment error"

    def __init__(self, message: str | None = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)


# --- validation -------------------------------------------------------------

class InvalidAmount(PaymentError):
    code = "INVALID_AMOUNT"
    default_message = "Invalid amount to charge"


class SelfPayNotAllowed(PaymentError):
    code = "SELF_PAY_NOT_ALLOWED"
    default_message = "Owners cannot pay their own bills"


class MixedPayeeGroup(PaymentError):
    code = "MIXED_PAYEE_GROUP"
    default_message = "Group pay must target a single recipient"


class UnsupportedProvider(PaymentError):
    code = "UNSUPPORTED_PROVIDER"
    default_message = "Unsupported payment provider"


class BillParticipantNotFound(PaymentError):
    code = "BILL_PARTICIPANT_NOT_FOUND"
    default_message = "Bill participant not found"


class AttemptNotFound(PaymentError):
    code = "ATTEMPT_NOT_FOUND"
    default_message = "Payment attempt not found"


# --- authorization ----------------------------------------------------------

class Forbidden(PaymentError):
    code = "FORBIDDEN"
    default_message = "Forbidden"


# --- external dependencies --------------------------------------------------

class PayeeNotOnboarded(PaymentError):
    code = "PAYEE_NOT_ONBOARDED"
    retryable = True
    default_message = "Bill owner has not finished payout onboarding yet"


class ProcessorUnavailable(PaymentError):
    code = "PROCESSOR_UNAVAILABLE"
    retryable = True
    default_message = "Payment processor request failed"


# --- concurrency / state ----------------------------------------------------

class DuplicateInFlightAttempt(PaymentError):
    code = "DUPLICATE_IN_FLIGHT_ATTEMPT"
    default_message = "A payment is already in progress for this bill"


class InvalidTransition(PaymentError):
    code = "INVALID_TRANSITION"
    default_message = "Illegal payment attempt transition"


# --- webhook admission / integrity -----------------------------------------

class InvalidSignature(PaymentError):
    code = "INVALID_SIGNATURE"
    default_message = "Webhook signature verification failed"


class InvalidEvent(PaymentError):
    code = "INVALID_EVENT"
    default_message = "Webhook payload is not a valid event"


class IntegrityFault(PaymentError):
    """Local state and processor state disagree. Never auto-corrected."""
    code = "INTEGRITY_FAULT"
    default_message = "Payment integrity fault"


class AmountMismatch(IntegrityFault):
    code = "AMOUNT_MISMATCH"
    default_message = "Event amount does not match the recorded attempt total"
