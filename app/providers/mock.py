
# app/providers/mock.py
from __future__ import annotations

import uuid
from threading import Lock
from typing import Optional

from app.providers.base import AccountCapabilities, ChargeIntent, ProcessorError, Transfer


class MockProcessor:
    """
    Test/dev processor.

    Mirrors the parts of the real processor the core relies on:
    - transfers are deduplicated by idempotency key (same key -> same transfer)
    - unknown connected accounts report no capabilities

    Every call is recorded so tests can count side effects.
    """

    def __init__(
        self,
        *,
        fail_charge_intents: bool = False,
        fail_transfers: bool = False,
        failure_http_status: int = 503,
    ):
        self.fail_charge_intents = fail_charge_intents
        self.fail_transfers = fail_transfers
        self.failure_http_status = failure_http_status

        self._lock = Lock()
        self.charge_intents: dict[str, ChargeIntent] = {}
        self.transfer_calls: list[dict] = []
        self.transfers_by_key: dict[str, Transfer] = {}
        self.capability_calls: list[str] = []
        self.accounts: dict[str, AccountCapabilities] = {}

    def set_account(
        self,
        account_id: str,
        *,
        charges_enabled: bool = True,
        payouts_enabled: bool = True,
        details_submitted: bool = True,
    ) -> None:
        self.accounts[account_id] = AccountCapabilities(
            account_id=account_id,
            charges_enabled=charges_enabled,
            payouts_enabled=payouts_enabled,
            details_submitted=details_submitted,
        )

    def create_charge_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        transfer_group: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeIntent:
        if self.fail_charge_intents:
            raise ProcessorError(
                "Mock charge intent failure",
                code="api_error",
                http_status=self.failure_http_status,
                retryable=True,
            )

        intent_id = f"pi_mock_{uuid.uuid4().hex[:16]}"
        intent = ChargeIntent(
            id=intent_id,
            client_secret=f"{intent_id}_secret_{uuid.uuid4().hex[:12]}",
            amount=int(amount),
            currency=currency,
            metadata={**metadata, **({"transfer_group": transfer_group} if transfer_group else {})},
        )
        with self._lock:
            self.charge_intents[intent.id] = intent
        return intent

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
        with self._lock:
            self.transfer_calls.append(
                {
                    "amount": int(amount),
                    "currency": currency,
                    "destination": destination,
                    "idempotency_key": idempotency_key,
                    "transfer_group": transfer_group,
                    "metadata": dict(metadata or {}),
                }
            )
            if self.fail_transfers:
                raise ProcessorError(
                    "Mock transfer failure",
                    code="api_error",
                    http_status=self.failure_http_status,
                    retryable=True,
                )

            existing = self.transfers_by_key.get(idempotency_key)
            if existing is not None:
                return existing

            transfer = Transfer(
                id=f"tr_mock_{uuid.uuid4().hex[:16]}",
                amount=int(amount),
                currency=currency,
                destination=destination,
            )
            self.transfers_by_key[idempotency_key] = transfer
            return transfer

    def retrieve_account_capabilities(self, account_id: str) -> AccountCapabilities:
        self.capability_calls.append(account_id)
        caps = self.accounts.get(account_id)
        if caps is None:
            return AccountCapabilities(
                account_id=account_id,
                charges_enabled=False,
                payouts_enabled=False,
                details_submitted=False,
            )
        return caps

    @property
    def transfers(self) -> list[Transfer]:
        return list(self.transfers_by_key.values())
