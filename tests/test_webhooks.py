from __future__ import annotations

import json
import logging
import time

from app.payments.model import AttemptStatus
from services.metrics import counter_value
from tests.conftest import auth_headers, intent_event, new_id, sign_payload


def _start(harness, household, bp_id=None):
    r = harness.client.post(
        "/v1/payments/pay-now",
        json={"billParticipantId": bp_id or household.share_id},
        headers=auth_headers(household.payer_id),
    )
    assert r.status_code == 200, r.text
    return harness.store.get(r.json()["paymentAttemptId"])


def _start_group(harness, household):
    r = harness.client.post(
        "/v1/payments/pay-now-group",
        json={"billParticipantIds": [household.share_id, household.second_share_id]},
        headers=auth_headers(household.payer_id),
    )
    assert r.status_code == 200, r.text
    return r.json()


def _succeeded(attempt, **overrides):
    kwargs = {
        "intent_id": attempt.provider_charge_id,
        "amount": attempt.total_cents,
        "metadata": {"paymentAttemptId": attempt.id},
    }
    kwargs.update(overrides)
    return intent_event("payment_intent.succeeded", **kwargs)


# ---------------------------
# Admission
# ---------------------------

def test_bad_signature_is_rejected_and_audited(harness, household):
    attempt = _start(harness, household)
    r = harness.send_webhook(_succeeded(attempt), secret="whsec_wrong")
    assert r.status_code == 400, r.text
    assert r.json()["detail"]["error"] == "INVALID_SIGNATURE"

    assert harness.store.get(attempt.id).status == AttemptStatus.PROCESSING
    assert harness.processor.transfer_calls == []

    [row] = harness.event_log.rows
    assert row["signature_valid"] is False
    assert row["signature_error"] == "INVALID_SIGNATURE"
    assert counter_value(
        "webhook_events_total",
        {"event_type": "unknown", "signature_valid": "false", "applied": "false"},
    ) == 1


def test_missing_signature_header_is_rejected(harness, household):
    attempt = _start(harness, household)
    r = harness.client.post("/v1/webhooks/stripe", content=json.dumps(_succeeded(attempt)))
    assert r.status_code == 400, r.text
    assert harness.event_log.rows[0]["signature_error"] == "MISSING_SIGNATURE"


def test_stale_signature_timestamp_is_rejected(harness, household):
    attempt = _start(harness, household)
    payload = json.dumps(_succeeded(attempt))
    old = sign_payload(payload, timestamp=int(time.time()) - 3600)
    r = harness.client.post("/v1/webhooks/stripe", content=payload, headers={"Stripe-Signature": old})
    assert r.status_code == 400, r.text
    assert harness.store.get(attempt.id).status == AttemptStatus.PROCESSING


def test_signed_but_malformed_body_is_invalid_event(harness, household):
    payload = json.dumps({"hello": "world"})
    r = harness.client.post(
        "/v1/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": sign_payload(payload)},
    )
    assert r.status_code == 400, r.text
    assert r.json()["detail"]["error"] == "INVALID_EVENT"
    assert harness.event_log.rows[0]["signature_valid"] is True


def test_missing_webhook_secret_is_server_error(harness, household):
    harness.services.reconciliation.webhook_secret = ""
    attempt = _start(harness, household)
    r = harness.send_webhook(_succeeded(attempt))
    assert r.status_code == 500
    assert r.json()["detail"]["error"] == "WEBHOOK_PROCESSING_FAILED"


def test_unhandled_event_type_is_acknowledged(harness, household):
    event = {"id": "evt_1", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}
    r = harness.send_webhook(event)
    assert r.status_code == 200, r.text
    assert r.json() == {"received": True, "applied": False, "reason": "UNHANDLED_EVENT_TYPE"}
    assert harness.event_log.rows[0]["ignore_reason"] == "UNHANDLED_EVENT_TYPE"


# ---------------------------
# Solo success
# ---------------------------

def test_succeeded_transfers_share_and_marks_attempt(harness, household):
    attempt = _start(harness, household)
    r = harness.send_webhook(_succeeded(attempt))
    assert r.status_code == 200, r.text
    assert r.json()["applied"] is True

    [call] = harness.processor.transfer_calls
    assert call["amount"] == 4217  # share only, never the fee
    assert call["destination"] == household.destination_id
    assert call["idempotency_key"] == f"transfer_{attempt.id}"
    assert call["transfer_group"] == f"attempt_{attempt.id}"
    assert call["metadata"] == {"paymentAttemptId": attempt.id, "billParticipantId": household.share_id}

    done = harness.store.get(attempt.id)
    assert done.status == AttemptStatus.SUCCEEDED
    assert done.provider_transfer_id == harness.processor.transfers[0].id
    assert done.processed_at is not None
    assert counter_value("payout_transfers_total", {"scope": "solo", "result": "created"}) == 1

    [row] = harness.event_log.rows
    assert row["signature_valid"] is True
    assert row["update_applied"] is True
    assert row["event_type"] == "payment_intent.succeeded"


def test_succeeded_replay_does_not_transfer_twice(harness, household):
    attempt = _start(harness, household)
    event = _succeeded(attempt)
    for _ in range(3):
        r = harness.send_webhook(event)
        assert r.status_code == 200, r.text

    assert len(harness.processor.transfer_calls) == 1
    assert harness.store.get(attempt.id).status == AttemptStatus.SUCCEEDED
    assert len(harness.event_log.rows) == 3


def test_succeeded_before_charge_attached_still_settles(harness, household):
    attempt = _start(harness, household)
    # simulate the event winning the race with attach_charge
    harness.store._rows[attempt.id] = attempt.evolve(status=AttemptStatus.PENDING, provider_charge_id=None)

    r = harness.send_webhook(_succeeded(attempt))
    assert r.status_code == 200, r.text
    done = harness.store.get(attempt.id)
    assert done.status == AttemptStatus.SUCCEEDED
    assert done.provider_charge_id == attempt.provider_charge_id


def test_amount_mismatch_is_integrity_error(harness, household):
    attempt = _start(harness, household)
    r = harness.send_webhook(_succeeded(attempt, amount=attempt.total_cents - 1))
    assert r.status_code == 500
    assert r.json()["detail"]["error"] == "AMOUNT_MISMATCH"
    assert harness.processor.transfer_calls == []
    assert harness.store.get(attempt.id).status == AttemptStatus.PROCESSING


def test_charge_id_mismatch_is_integrity_fault(harness, household):
    attempt = _start(harness, household)
    r = harness.send_webhook(_succeeded(attempt, intent_id="pi_someone_else"))
    assert r.status_code == 500
    assert r.json()["detail"]["error"] == "INTEGRITY_FAULT"
    assert harness.processor.transfer_calls == []


def test_succeeded_after_failure_is_integrity_fault(harness, household):
    attempt = _start(harness, household)
    failed = intent_event(
        "payment_intent.payment_failed",
        intent_id=attempt.provider_charge_id,
        amount=attempt.total_cents,
        metadata={"paymentAttemptId": attempt.id},
    )
    assert harness.send_webhook(failed).status_code == 200

    r = harness.send_webhook(_succeeded(attempt))
    assert r.status_code == 500
    assert r.json()["detail"]["error"] == "INTEGRITY_FAULT"
    assert harness.store.get(attempt.id).status == AttemptStatus.FAILED
    assert harness.processor.transfer_calls == []


def test_succeeded_after_failure_raises_integrity_alert(harness, household, caplog):
    attempt = _start(harness, household)
    failed = intent_event(
        "payment_intent.payment_failed",
        intent_id=attempt.provider_charge_id,
        amount=attempt.total_cents,
        metadata={"paymentAttemptId": attempt.id},
    )
    assert harness.send_webhook(failed).status_code == 200

    caplog.set_level(logging.ERROR, logger="bilvo.webhooks")
    assert harness.send_webhook(_succeeded(attempt)).status_code == 500

    assert counter_value("payment_integrity_alerts_total", {"kind": "succeeded_after_close"}) == 1
    alerts = [r for r in caplog.records if r.getMessage().startswith("payment_integrity_alert")]
    assert len(alerts) == 1
    assert attempt.id in alerts[0].getMessage()


def test_transfer_failure_leaves_attempt_retryable(harness, household):
    attempt = _start(harness, household)
    harness.processor.fail_transfers = True
    r = harness.send_webhook(_succeeded(attempt))
    assert r.status_code == 500
    assert harness.store.get(attempt.id).status == AttemptStatus.PROCESSING
    assert counter_value("payout_transfers_total", {"scope": "solo", "result": "failed"}) == 1

    # processor redelivers; same idempotency key on the retry
    harness.processor.fail_transfers = False
    r = harness.send_webhook(_succeeded(attempt))
    assert r.status_code == 200, r.text
    keys = {c["idempotency_key"] for c in harness.processor.transfer_calls}
    assert keys == {f"transfer_{attempt.id}"}
    assert harness.store.get(attempt.id).status == AttemptStatus.SUCCEEDED


def test_unknown_attempt_is_ignored(harness, household):
    event = intent_event(
        "payment_intent.succeeded",
        intent_id="pi_x",
        amount=100,
        metadata={"paymentAttemptId": "00000000-0000-0000-0000-00000000beef"},
    )
    r = harness.send_webhook(event)
    assert r.status_code == 200, r.text
    assert r.json()["reason"] == "ATTEMPT_NOT_FOUND"


def test_no_correlation_metadata_is_ignored(harness, household):
    event = intent_event("payment_intent.succeeded", intent_id="pi_x", amount=100, metadata={})
    r = harness.send_webhook(event)
    assert r.status_code == 200, r.text
    assert r.json()["reason"] == "NO_CORRELATION_METADATA"


# ---------------------------
# Failed / canceled
# ---------------------------

def test_payment_failed_records_processor_code(harness, household):
    attempt = _start(harness, household)
    event = intent_event(
        "payment_intent.payment_failed",
        intent_id=attempt.provider_charge_id,
        amount=attempt.total_cents,
        metadata={"paymentAttemptId": attempt.id},
        last_payment_error={"code": "card_declined", "message": "Your card was declined."},
    )
    r = harness.send_webhook(event)
    assert r.status_code == 200, r.text
    failed = harness.store.get(attempt.id)
    assert failed.status == AttemptStatus.FAILED
    assert failed.failure_code == "card_declined"
    assert failed.failure_message == "Your card was declined."

    # the share can be paid again
    assert harness.store.find_in_flight(household.share_id) is None
    _start(harness, household)


def test_canceled_then_late_failed_is_ignored(harness, household):
    attempt = _start(harness, household)
    canceled = intent_event(
        "payment_intent.canceled",
        intent_id=attempt.provider_charge_id,
        amount=attempt.total_cents,
        metadata={"paymentAttemptId": attempt.id},
        cancellation_reason="abandoned",
    )
    assert harness.send_webhook(canceled).json()["applied"] is True
    assert harness.store.get(attempt.id).failure_code == "abandoned"

    failed = intent_event(
        "payment_intent.payment_failed",
        intent_id=attempt.provider_charge_id,
        amount=attempt.total_cents,
        metadata={"paymentAttemptId": attempt.id},
    )
    r = harness.send_webhook(failed)
    assert r.status_code == 200, r.text
    assert r.json() == {"received": True, "applied": False, "reason": "ALREADY_TERMINAL"}
    assert harness.store.get(attempt.id).status == AttemptStatus.CANCELED


def test_failed_after_success_never_downgrades(harness, household):
    attempt = _start(harness, household)
    assert harness.send_webhook(_succeeded(attempt)).status_code == 200
    failed = intent_event(
        "payment_intent.payment_failed",
        intent_id=attempt.provider_charge_id,
        amount=attempt.total_cents,
        metadata={"paymentAttemptId": attempt.id},
    )
    r = harness.send_webhook(failed)
    assert r.status_code == 200, r.text
    assert r.json()["reason"] == "ALREADY_TERMINAL"
    assert harness.store.get(attempt.id).status == AttemptStatus.SUCCEEDED


# ---------------------------
# Group success
# ---------------------------

def _group_event(harness, started, event_type="payment_intent.succeeded", **overrides):
    attempts = harness.store.list_group(started["groupKey"])
    intent = harness.processor.charge_intents[attempts[0].provider_charge_id]
    kwargs = {
        "intent_id": intent.id,
        "amount": started["totalChargeCents"],
        "metadata": {k: v for k, v in intent.metadata.items() if k != "transfer_group"},
    }
    kwargs.update(overrides)
    return intent_event(event_type, **kwargs)


def test_group_succeeded_makes_one_transfer_for_all_shares(harness, household):
    started = _start_group(harness, household)
    r = harness.send_webhook(_group_event(harness, started))
    assert r.status_code == 200, r.text

    [call] = harness.processor.transfer_calls
    assert call["amount"] == 4217 + 1500
    assert call["idempotency_key"] == f"transfer_group_{started['groupKey']}"
    assert call["transfer_group"] == f"group_{started['groupKey']}"

    attempts = harness.store.list_group(started["groupKey"])
    assert {a.status for a in attempts} == {AttemptStatus.SUCCEEDED}
    holders = [a for a in attempts if a.provider_transfer_id]
    assert [a.id for a in holders] == [started["paymentAttemptId"]]
    assert counter_value("payout_transfers_total", {"scope": "group", "result": "created"}) == 1


def test_group_succeeded_replay_is_idempotent(harness, household):
    started = _start_group(harness, household)
    event = _group_event(harness, started)
    assert harness.send_webhook(event).status_code == 200
    assert harness.send_webhook(event).status_code == 200
    assert len(harness.processor.transfer_calls) == 1


def test_group_amount_mismatch_fails_closed(harness, household):
    started = _start_group(harness, household)
    r = harness.send_webhook(_group_event(harness, started, amount=started["totalChargeCents"] + 1))
    assert r.status_code == 500
    assert r.json()["detail"]["error"] == "AMOUNT_MISMATCH"
    assert harness.processor.transfer_calls == []


def test_group_destination_change_is_integrity_fault(harness, household):
    started = _start_group(harness, household)
    harness.directory.set_payee(household.owner_id, "acct_changed")
    r = harness.send_webhook(_group_event(harness, started))
    assert r.status_code == 500
    assert r.json()["detail"]["error"] == "INTEGRITY_FAULT"
    assert harness.processor.transfer_calls == []


def test_group_failed_closes_every_member(harness, household):
    started = _start_group(harness, household)
    r = harness.send_webhook(_group_event(harness, started, event_type="payment_intent.payment_failed"))
    assert r.status_code == 200, r.text
    attempts = harness.store.list_group(started["groupKey"])
    assert {a.status for a in attempts} == {AttemptStatus.FAILED}
    assert {a.failure_code for a in attempts} == {"payment_failed"}


def test_unknown_group_is_ignored(harness, household):
    event = intent_event(
        "payment_intent.succeeded",
        intent_id="pi_x",
        amount=100,
        metadata={"groupKey": "00000000-0000-0000-0000-000000000000"},
    )
    r = harness.send_webhook(event)
    assert r.status_code == 200, r.text
    assert r.json()["reason"] == "GROUP_NOT_FOUND"


# ---------------------------
# account.updated
# ---------------------------

def test_account_updated_refreshes_capabilities(harness, household):
    harness.directory.set_payee(household.owner_id, household.destination_id, charges_enabled=False, payouts_enabled=False)
    event = {
        "id": "evt_acct",
        "type": "account.updated",
        "data": {
            "object": {
                "id": household.destination_id,
                "charges_enabled": True,
                "payouts_enabled": True,
                "details_submitted": True,
            }
        },
    }
    r = harness.send_webhook(event)
    assert r.status_code == 200, r.text
    assert r.json()["applied"] is True
    account = harness.directory.get_payee_account(household.owner_id)
    assert account.ready_to_receive
    assert account.onboarding_completed_at is not None


def test_account_updated_for_unknown_account_is_ignored(harness):
    event = {"id": "evt_acct", "type": "account.updated", "data": {"object": {"id": "acct_nobody"}}}
    r = harness.send_webhook(event)
    assert r.status_code == 200, r.text
    assert r.json()["reason"] == "ACCOUNT_NOT_FOUND"


def test_audit_summary_masks_client_secret(harness, household):
    attempt = _start(harness, household)
    event = _succeeded(attempt, client_secret=f"{attempt.provider_charge_id}_secret_abc123")
    assert harness.send_webhook(event).status_code == 200
    summary = harness.event_log.rows[0]["payload_summary"]
    assert "abc123" not in json.dumps(summary)


def test_group_of_three_settles_with_one_transfer_on_leader(harness, household):
    ids = []
    for share in (1000, 1500, 2000):
        bp_id = new_id()
        harness.directory.add_participant(bp_id, bill_id=household.bill_id, payer_user_id=household.payer_id, share_cents=share)
        ids.append(bp_id)

    r = harness.client.post(
        "/v1/payments/pay-now-group",
        json={"billParticipantIds": ids},
        headers=auth_headers(household.payer_id),
    )
    assert r.status_code == 200, r.text
    started = r.json()
    attempts = harness.store.list_group(started["groupKey"])
    assert started["totalChargeCents"] == sum(a.total_cents for a in attempts)

    assert harness.send_webhook(_group_event(harness, started)).status_code == 200

    [call] = harness.processor.transfer_calls
    assert call["amount"] == 4500
    attempts = harness.store.list_group(started["groupKey"])
    assert [bool(a.provider_transfer_id) for a in attempts] == [True, False, False]
    assert {a.status for a in attempts} == {AttemptStatus.SUCCEEDED}
