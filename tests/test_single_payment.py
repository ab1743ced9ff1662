from __future__ import annotations

from app.payments.model import AttemptQuery, AttemptStatus, INTENT_CREATE_FAILED
from services.metrics import counter_value
from tests.conftest import auth_headers, new_id


def _pay(harness, user_id, bill_participant_id):
    return harness.client.post(
        "/v1/payments/pay-now",
        json={"billParticipantId": bill_participant_id},
        headers=auth_headers(user_id),
    )


def test_pay_now_creates_processing_attempt_with_fee(harness, household):
    r = _pay(harness, household.payer_id, household.share_id)
    assert r.status_code == 200, r.text
    body = r.json()

    assert body["amountCents"] == 4217
    assert body["feeCents"] == 157
    assert body["totalCents"] == 4374
    assert body["currency"] == "usd"
    assert body["clientSecret"].startswith("pi_mock_")

    attempt = harness.store.get(body["paymentAttemptId"])
    assert attempt.status == AttemptStatus.PROCESSING
    assert attempt.provider_charge_id is not None
    assert attempt.provider_transfer_id is None

    intent = harness.processor.charge_intents[attempt.provider_charge_id]
    assert intent.amount == 4374
    assert intent.metadata["paymentAttemptId"] == attempt.id
    assert intent.metadata["billParticipantId"] == household.share_id
    assert intent.metadata["ownerUserId"] == household.owner_id
    assert intent.metadata["transfer_group"] == f"attempt_{attempt.id}"

    # no money moves until the processor confirms
    assert harness.processor.transfer_calls == []
    assert counter_value("payment_attempts_total", {"provider": "stripe", "result": "created"}) == 1


def test_pay_now_requires_auth(harness, household):
    r = harness.client.post("/v1/payments/pay-now", json={"billParticipantId": household.share_id})
    assert r.status_code == 401


def test_pay_now_unknown_share_is_404(harness, household):
    r = _pay(harness, household.payer_id, new_id())
    assert r.status_code == 404, r.text
    assert r.json()["detail"]["error"] == "BILL_PARTICIPANT_NOT_FOUND"


def test_pay_now_someone_elses_share_is_404(harness, household):
    r = _pay(harness, household.other_payer_id, household.share_id)
    assert r.status_code == 404, r.text
    assert r.json()["detail"]["error"] == "BILL_PARTICIPANT_NOT_FOUND"


def test_owner_cannot_pay_own_bill(harness, household):
    r = _pay(harness, household.owner_id, household.owner_share_id)
    assert r.status_code == 400, r.text
    assert r.json()["detail"]["error"] == "SELF_PAY_NOT_ALLOWED"


def test_zero_share_is_invalid_amount(harness, household):
    zero_id = new_id()
    harness.directory.add_participant(zero_id, bill_id=household.bill_id, payer_user_id=household.payer_id, share_cents=0)
    r = _pay(harness, household.payer_id, zero_id)
    assert r.status_code == 400, r.text
    assert r.json()["detail"]["error"] == "INVALID_AMOUNT"


def test_payee_without_destination_is_409(harness, household):
    harness.directory.set_payee(household.owner_id, None)
    r = _pay(harness, household.payer_id, household.share_id)
    assert r.status_code == 409, r.text
    detail = r.json()["detail"]
    assert detail["error"] == "PAYEE_NOT_ONBOARDED"
    assert detail["retryable"] is True
    assert harness.processor.charge_intents == {}


def test_stale_capabilities_are_refreshed_once(harness, household):
    harness.directory.set_payee(household.owner_id, household.destination_id, charges_enabled=False, payouts_enabled=False)
    r = _pay(harness, household.payer_id, household.share_id)
    assert r.status_code == 200, r.text
    assert harness.processor.capability_calls == [household.destination_id]
    account = harness.directory.get_payee_account(household.owner_id)
    assert account.ready_to_receive
    assert account.onboarding_completed_at is not None


def test_payee_still_not_ready_after_refresh_is_409(harness, household):
    harness.directory.set_payee(household.owner_id, household.destination_id, payouts_enabled=False)
    harness.processor.set_account(household.destination_id, payouts_enabled=False)
    r = _pay(harness, household.payer_id, household.share_id)
    assert r.status_code == 409, r.text
    assert r.json()["detail"]["error"] == "PAYEE_NOT_ONBOARDED"
    assert harness.store.find_in_flight(household.share_id) is None


def test_second_pay_now_while_in_flight_is_409(harness, household):
    assert _pay(harness, household.payer_id, household.share_id).status_code == 200
    r = _pay(harness, household.payer_id, household.share_id)
    assert r.status_code == 409, r.text
    assert r.json()["detail"]["error"] == "DUPLICATE_IN_FLIGHT_ATTEMPT"
    assert len(harness.processor.charge_intents) == 1


def test_processor_failure_cancels_attempt_and_frees_slot(harness, household):
    harness.processor.fail_charge_intents = True
    r = _pay(harness, household.payer_id, household.share_id)
    assert r.status_code == 502, r.text
    detail = r.json()["detail"]
    assert detail["error"] == "PROCESSOR_UNAVAILABLE"
    assert detail["retryable"] is True

    assert harness.store.find_in_flight(household.share_id) is None
    items, _ = harness.store.list_attempts(AttemptQuery())
    assert [a.status for a in items] == [AttemptStatus.CANCELED]
    assert items[0].failure_code == INTENT_CREATE_FAILED

    harness.processor.fail_charge_intents = False
    assert _pay(harness, household.payer_id, household.share_id).status_code == 200


def test_unexpected_intent_error_cancels_attempt_and_frees_slot(harness, household, monkeypatch):
    def broken(**kwargs):
        raise RuntimeError("sdk exploded")

    monkeypatch.setattr(harness.processor, "create_charge_intent", broken)
    r = _pay(harness, household.payer_id, household.share_id)
    assert r.status_code == 500

    assert harness.store.find_in_flight(household.share_id) is None
    items, _ = harness.store.list_attempts(AttemptQuery())
    assert [a.status for a in items] == [AttemptStatus.CANCELED]
    assert items[0].failure_code == INTENT_CREATE_FAILED

    monkeypatch.undo()
    assert _pay(harness, household.payer_id, household.share_id).status_code == 200


def test_attach_charge_failure_cancels_attempt(harness, household, monkeypatch):
    def broken(attempt_ids, charge_id):
        raise RuntimeError("connection reset")

    monkeypatch.setattr(harness.store, "attach_charge", broken)
    r = _pay(harness, household.payer_id, household.share_id)
    assert r.status_code == 500
    assert harness.store.find_in_flight(household.share_id) is None


def test_request_body_accepts_snake_case_names(harness, household):
    r = harness.client.post(
        "/v1/payments/pay-now",
        json={"bill_participant_id": household.share_id},
        headers=auth_headers(household.payer_id),
    )
    assert r.status_code == 200, r.text


def test_concurrent_pay_now_yields_one_attempt(harness, household):
    from concurrent.futures import ThreadPoolExecutor

    from app.payments.errors import DuplicateInFlightAttempt

    def start(_):
        try:
            return harness.services.orchestrator.start_payment(household.share_id, household.payer_id)
        except DuplicateInFlightAttempt:
            return None

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(start, range(6)))

    assert len([r for r in results if r is not None]) == 1
    assert len(harness.processor.charge_intents) == 1
