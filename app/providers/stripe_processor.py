
# app/providers/stripe_processor.py
from __future__ import annotations

import logging
from typing import Any, Optional

import stripe

from app.providers.base import AccountCapabilities, ChargeIntent, ProcessorError, Transfer

logger = logging.getLogger("bilvo.processor")

_RETRYABLE_HTTP = {408, 409, 425, 429, 500, 502, 503, 504}


def _to_processor_error(exc: stripe.StripeError) -> ProcessorError:
    http_status = getattr(exc, "http_status", None)
    code = getattr(exc, "code", None)
    message = getattr(exc, "user_message", None) or str(exc) or type(exc).__name__

    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        retryable: Optional[bool] = True
    elif http_status is not None:
        retryable = int(http_status) in _RETRYABLE_HTTP
    else:
        retryable = None

    return ProcessorError(
        message,
        code=code or type(exc).__name__,
        http_status=http_status,
        retryable=retryable,
    )


class StripeProcessor:
    """
    Stripe Connect "separate charges and transfers":
      - the payer is charged on the platform account (PaymentIntent)
      - the payee's share is moved with a Transfer to their connected account

    The API key is passed per call so nothing relies on stripe.api_key.
    """

    def __init__(self, *, api_key: str):
        if not (api_key or "").strip():
            raise RuntimeError("STRIPE_SECRET_KEY is not set.")
        self._api_key = api_key

    def _opts(self, idempotency_key: Optional[str] = None) -> dict[str, Any]:
        opts: dict[str, Any] = {"api_key": self._api_key}
        if idempotency_key:
            opts["idempotency_key"] = idempotency_key
        return opts

    def create_charge_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        transfer_group: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeIntent:
        params: dict[str, Any] = {
            "amount": int(amount),
            "currency": currency,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata,
        }
        if transfer_group:
            params["transfer_group"] = transfer_group

        try:
            pi = stripe.PaymentIntent.create(**params, **self._opts(idempotency_key))
        except stripe.StripeError as exc:
            err = _to_processor_error(exc)
            logger.warning(
                "stripe_payment_intent_create_failed amount=%s currency=%s code=%s http_status=%s",
                amount,
                currency,
                err.code,
                err.http_status,
            )
            raise err from exc

        return ChargeIntent(
            id=pi["id"],
            client_secret=pi["client_secret"],
            amount=int(pi["amount"]),
            currency=pi["currency"],
            metadata=dict(metadata),
        )

    def create_transfer(
        self,
        *,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        transfer_group: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> Transfer:
        params: dict[str, Any] = {
            "amount": int(amount),
            "currency": currency,
            "destination": destination,
            "metadata": metadata or {},
        }
        if transfer_group:
            params["transfer_group"] = transfer_group

        try:
            tr = stripe.Transfer.create(**params, **self._opts(idempotency_key))
        except stripe.StripeError as exc:
            err = _to_processor_error(exc)
            logger.error(
                "stripe_transfer_create_failed amount=%s destination=%s idempotency_key=%s code=%s http_status=%s",
                amount,
                destination,
                idempotency_key,
                err.code,
                err.http_status,
            )
            raise err from exc

        return Transfer(
            id=tr["id"],
            amount=int(tr["amount"]),
            currency=tr["currency"],
            destination=destination,
        )

    def retrieve_account_capabilities(self, account_id: str) -> AccountCapabilities:
        try:
            acct = stripe.Account.retrieve(account_id, api_key=self._api_key)
        except stripe.StripeError as exc:
            raise _to_processor_error(exc) from exc

        return AccountCapabilities(
            account_id=account_id,
            charges_enabled=bool(acct.get("charges_enabled")),
            payouts_enabled=bool(acct.get("payouts_enabled")),
            details_submitted=bool(acct.get("details_submitted")),
        )
