
# app/providers/base.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol


@dataclass(frozen=True)
class ChargeIntent:
    id: str
    client_secret: str
    amount: int
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Transfer:
    id: str
    amount: int
    currency: str
    destination: str


@dataclass(frozen=True)
class AccountCapabilities:
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool

    @property
    def ready_to_receive(self) -> bool:
        return bool(self.charges_enabled and self.payouts_enabled)


class ProcessorError(Exception):
    """
    Normalized processor failure. `retryable` is None when the processor did
    not say either way.
    """

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        retryable: Optional[bool] = None,
        response: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.retryable = retryable
        self.response = response


class PaymentProcessor(Protocol):
    def create_charge_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: dict[str, str],
        transfer_group: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ChargeIntent: ...

    def create_transfer(
        self,
        *,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        transfer_group: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> Transfer: ...

    def retrieve_account_capabilities(self, account_id: str) -> AccountCapabilities: ...
