
# services/http_errors.py
from __future__ import annotations

import logging

from fastapi import HTTPException

from app.payments.errors import PaymentError

logger = logging.getLogger("bilvo.http")

PAYMENT_ERROR_HTTP_MAP: dict[str, tuple[int, str]] = {
    "INVALID_AMOUNT": (400, "Invalid amount to charge"),
    "SELF_PAY_NOT_ALLOWED": (400, "Owners cannot pay their own bills"),
    "MIXED_PAYEE_GROUP": (400, "Group pay must target a single recipient"),
    "UNSUPPORTED_PROVIDER": (400, "Unsupported payment provider"),
    "BILL_PARTICIPANT_NOT_FOUND": (404, "Bill participant not found"),
    "ATTEMPT_NOT_FOUND": (404, "Payment attempt not found"),
    "FORBIDDEN": (403, "Forbidden"),
    "PAYEE_NOT_ONBOARDED": (409, "Bill owner has not finished payout onboarding yet"),
    "DUPLICATE_IN_FLIGHT_ATTEMPT": (409, "A payment is already in progress for this bill"),
    "INVALID_TRANSITION": (409, "Illegal payment attempt transition"),
    "PROCESSOR_UNAVAILABLE": (502, "Payment processor request failed"),
    "INVALID_SIGNATURE": (400, "Webhook signature verification failed"),
    "INVALID_EVENT": (400, "Webhook payload is not a valid event"),
    "INTEGRITY_FAULT": (500, "Payment integrity fault"),
    "AMOUNT_MISMATCH": (500, "Payment integrity fault"),
}


def http_error_for(exc: PaymentError) -> HTTPException:
    """
    Map a payment error to an HTTP response. Unknown codes fail closed.
    """
    status, default_message = PAYMENT_ERROR_HTTP_MAP.get(exc.code, (500, "Internal server error"))
    message = exc.message or default_message
    if status >= 500:
        # do not leak integrity/internal details to clients
        message = default_message
        logger.error("payment_error code=%s message=%s context=%s", exc.code, exc.message, exc.context)

    return HTTPException(
        status_code=status,
        detail={"error": exc.code, "message": message, "retryable": bool(exc.retryable)},
    )


def raise_http_from_payment_error(exc: PaymentError) -> None:
    raise http_error_for(exc) from exc
