# tests/conftest.py

import hashlib
import hmac
import json
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

os.environ.setdefault("ENV", "test")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("PROCESSOR_MODE", "mock")

import pytest
from fastapi.testclient import TestClient

from app.billing.memory import InMemoryBillDirectory
from app.payments.memory import InMemoryAttemptStore
from app.payments.services import PaymentServices, wire_services
from app.providers.mock import MockProcessor
from app.webhooks.repository import InMemoryWebhookEventLog
from main import create_app
from security import create_access_token
from services.metrics import reset_counters
from settings import Settings


WEBHOOK_SECRET = "whsec_test_secret"


def new_id() -> str:
    return str(uuid.uuid4())


def auth_headers(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


def sign_payload(payload: str, *, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header for a raw body."""
    ts = int(time.time()) if timestamp is None else int(timestamp)
    signed = f"{ts}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def intent_event(
    event_type: str,
    *,
    intent_id: str,
    amount: int,
    metadata: Dict[str, str],
    event_id: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    obj: Dict[str, Any] = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": "usd",
        "metadata": metadata,
    }
    obj.update(extra)
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


@dataclass
class Household:
    household_id: str
    owner_id: str
    payer_id: str
    other_payer_id: str
    outsider_id: str
    bill_id: str
    second_bill_id: str
    share_id: str  # payer's share of bill, 4217 cents
    second_share_id: str  # payer's share of second_bill, 1500 cents
    other_share_id: str  # other payer's share of bill, 2500 cents
    owner_share_id: str  # owner's own share of bill
    destination_id: str


@dataclass
class Harness:
    client: TestClient
    services: PaymentServices
    store: InMemoryAttemptStore
    directory: InMemoryBillDirectory
    processor: MockProcessor
    event_log: InMemoryWebhookEventLog

    def send_webhook(self, event: Dict[str, Any], *, signature: Optional[str] = None, secret: str = WEBHOOK_SECRET):
        payload = json.dumps(event)
        headers = {"Content-Type": "application/json"}
        headers["Stripe-Signature"] = signature if signature is not None else sign_payload(payload, secret=secret)
        return self.client.post("/v1/webhooks/stripe", content=payload, headers=headers)


@pytest.fixture(autouse=True)
def _reset_metrics():
    reset_counters()
    yield
    reset_counters()


@pytest.fixture()
def test_settings() -> Settings:
    return Settings(
        ENV="test",
        STORE_BACKEND="memory",
        PROCESSOR_MODE="mock",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        PAYMENTS_CURRENCY="usd",
        PROCESSOR_FEE_RATE=0.029,
        PROCESSOR_FEE_FIXED_CENTS=30,
        MANUAL_PROVIDERS="venmo,zelle",
    )


@pytest.fixture()
def processor() -> MockProcessor:
    return MockProcessor()


@pytest.fixture()
def harness(test_settings: Settings, processor: MockProcessor) -> Harness:
    store = InMemoryAttemptStore()
    directory = InMemoryBillDirectory()
    event_log = InMemoryWebhookEventLog()
    services = wire_services(
        test_settings,
        store=store,
        directory=directory,
        processor=processor,
        event_log=event_log,
    )
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    client = TestClient(create_app(services), raise_server_exceptions=False)
    return Harness(
        client=client,
        services=services,
        store=store,
        directory=directory,
        processor=processor,
        event_log=event_log,
    )


@pytest.fixture()
def household(harness: Harness) -> Household:
    directory = harness.directory
    h = Household(
        household_id=new_id(),
        owner_id=new_id(),
        payer_id=new_id(),
        other_payer_id=new_id(),
        outsider_id=new_id(),
        bill_id=new_id(),
        second_bill_id=new_id(),
        share_id=new_id(),
        second_share_id=new_id(),
        other_share_id=new_id(),
        owner_share_id=new_id(),
        destination_id="acct_owner_1",
    )

    for user_id in (h.owner_id, h.payer_id, h.other_payer_id):
        directory.add_member(user_id, h.household_id)
    directory.add_member(h.outsider_id, new_id())

    directory.add_bill(h.bill_id, household_id=h.household_id, owner_user_id=h.owner_id, biller="City Power")
    directory.add_bill(h.second_bill_id, household_id=h.household_id, owner_user_id=h.owner_id, biller="Water Co")

    directory.add_participant(h.share_id, bill_id=h.bill_id, payer_user_id=h.payer_id, share_cents=4217)
    directory.add_participant(h.second_share_id, bill_id=h.second_bill_id, payer_user_id=h.payer_id, share_cents=1500)
    directory.add_participant(h.other_share_id, bill_id=h.bill_id, payer_user_id=h.other_payer_id, share_cents=2500)
    directory.add_participant(h.owner_share_id, bill_id=h.bill_id, payer_user_id=h.owner_id, share_cents=3000)

    directory.set_payee(h.owner_id, h.destination_id)
    harness.processor.set_account(h.destination_id)
    return h
