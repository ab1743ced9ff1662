from __future__ import annotations

from services.metrics import (
    counter_value,
    increment_payment_attempt,
    increment_webhook_event,
    render_prometheus,
)
from tests.conftest import auth_headers


def test_counters_render_in_prometheus_format():
    increment_payment_attempt("stripe", "created")
    increment_payment_attempt("stripe", "created")
    increment_webhook_event("payment_intent.succeeded", True, True)

    body = render_prometheus()
    assert "# TYPE payment_attempts_total counter" in body
    assert 'payment_attempts_total{provider="stripe",result="created"} 2' in body
    assert (
        'webhook_events_total{applied="true",event_type="payment_intent.succeeded",signature_valid="true"} 1'
        in body
    )


def test_metrics_endpoint_exposes_payment_counters(harness, household):
    r = harness.client.post(
        "/v1/payments/pay-now",
        json={"billParticipantId": household.share_id},
        headers=auth_headers(household.payer_id),
    )
    assert r.status_code == 200, r.text

    r = harness.client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert 'payment_attempts_total{provider="stripe",result="created"} 1' in r.text
    assert counter_value("payment_attempts_total", {"provider": "stripe", "result": "created"}) == 1


def test_metrics_endpoint_can_be_disabled(harness, monkeypatch):
    from settings import settings

    monkeypatch.setattr(settings, "METRICS_ENABLED", False, raising=False)
    assert harness.client.get("/metrics").status_code == 404
