
# routes/payments.py
from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query

from app.payments.errors import PaymentError
from app.payments.model import AttemptStatus, PaymentProvider
from app.payments.services import PaymentServices
from deps.auth import CurrentUser, get_current_user
from deps.payments import get_services
from schemas import (
    AttemptListResponse,
    AttemptOut,
    ConnectStatusResponse,
    ManualAttemptRequest,
    ManualAttemptResponse,
    PayNowGroupRequest,
    PayNowGroupResponse,
    PayNowRequest,
    PayNowResponse,
    ReviewRequest,
    ReviewResponse,
)
from services.http_errors import raise_http_from_payment_error

router = APIRouter(prefix="/v1/payments", tags=["payments"])


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_status(value: Optional[str]) -> Optional[AttemptStatus]:
    # unknown filters are ignored rather than rejected
    try:
        return AttemptStatus((value or "").strip().upper()) if value else None
    except ValueError:
        return None


def _parse_provider(value: Optional[str]) -> Optional[PaymentProvider]:
    try:
        return PaymentProvider((value or "").strip().lower()) if value else None
    except ValueError:
        return None


@router.post("/pay-now", response_model=PayNowResponse)
def pay_now(
    body: PayNowRequest,
    user: CurrentUser = Depends(get_current_user),
    services: PaymentServices = Depends(get_services),
):
    try:
        started = services.orchestrator.start_payment(body.bill_participant_id, user.user_id)
    except PaymentError as e:
        raise_http_from_payment_error(e)

    return PayNowResponse(
        client_secret=started.client_secret,
        payment_attempt_id=started.attempt_id,
        amount_cents=started.amount_cents,
        fee_cents=started.fee_cents,
        total_cents=started.total_cents,
        currency=started.currency,
    )


@router.post("/pay-now-group", response_model=PayNowGroupResponse)
def pay_now_group(
    body: PayNowGroupRequest,
    user: CurrentUser = Depends(get_current_user),
    services: PaymentServices = Depends(get_services),
):
    try:
        started = services.orchestrator.start_group_payment(body.bill_participant_ids, user.user_id)
    except PaymentError as e:
        raise_http_from_payment_error(e)

    return PayNowGroupResponse(
        client_secret=started.client_secret,
        group_key=started.group_key,
        payment_attempt_id=started.leader_attempt_id,
        payment_attempt_ids=started.attempt_ids,
        sum_share_cents=started.amount_cents,
        fee_cents=started.fee_cents,
        total_charge_cents=started.total_cents,
        currency=started.currency,
    )


@router.post("/payment-attempts", response_model=ManualAttemptResponse)
def record_manual_attempt(
    body: ManualAttemptRequest,
    user: CurrentUser = Depends(get_current_user),
    services: PaymentServices = Depends(get_services),
):
    try:
        claim = services.manual.record_manual_attempt(body.bill_participant_id, user.user_id, body.provider)
    except PaymentError as e:
        raise_http_from_payment_error(e)

    return ManualAttemptResponse(
        attempt_id=claim.attempt.id,
        status=claim.attempt.status.value,
        provider=claim.attempt.provider.value,
        amount_cents=claim.attempt.amount_cents,
        reused=claim.reused,
    )


@router.get("/payment-attempts", response_model=AttemptListResponse)
def list_payment_attempts(
    status: Optional[str] = Query(default=None),
    provider: Optional[str] = Query(default=None, max_length=20),
    date_from: Optional[str] = Query(default=None, alias="from"),
    date_to: Optional[str] = Query(default=None, alias="to"),
    limit: Optional[int] = Query(default=None),
    cursor: Optional[str] = Query(default=None, max_length=64),
    scope: Literal["household", "me", "owed"] = Query(default="household"),
    user: CurrentUser = Depends(get_current_user),
    services: PaymentServices = Depends(get_services),
):
    try:
        items, next_cursor = services.reader.list_for_viewer(
            user.user_id,
            scope=scope,
            status=_parse_status(status),
            provider=_parse_provider(provider),
            created_from=_parse_date(date_from),
            created_to=_parse_date(date_to),
            limit=limit,
            cursor=cursor,
        )
    except PaymentError as e:
        raise_http_from_payment_error(e)

    return AttemptListResponse(
        attempts=[AttemptOut.from_attempt(a) for a in items],
        next_cursor=next_cursor,
    )


@router.get("/payment-attempts/{attempt_id}", response_model=AttemptOut)
def get_payment_attempt(
    attempt_id: str,
    user: CurrentUser = Depends(get_current_user),
    services: PaymentServices = Depends(get_services),
):
    try:
        attempt = services.reader.get_for_viewer(attempt_id, user.user_id)
    except PaymentError as e:
        raise_http_from_payment_error(e)

    return AttemptOut.from_attempt(attempt)


@router.patch("/payment-attempts/{attempt_id}", response_model=ReviewResponse)
def review_payment_attempt(
    attempt_id: str,
    body: ReviewRequest,
    user: CurrentUser = Depends(get_current_user),
    services: PaymentServices = Depends(get_services),
):
    try:
        result = services.manual.review_attempt(attempt_id, user.user_id, body.action)
    except PaymentError as e:
        raise_http_from_payment_error(e)

    return ReviewResponse(success=True, attempt=AttemptOut.from_attempt(result.attempt))


@router.get("/connect/status", response_model=ConnectStatusResponse)
def connect_status(
    user: CurrentUser = Depends(get_current_user),
    services: PaymentServices = Depends(get_services),
):
    try:
        account = services.orchestrator.refresh_payee(user.user_id)
    except PaymentError as e:
        raise_http_from_payment_error(e)

    if account is None or not account.destination_id:
        return ConnectStatusResponse(
            has_account=False,
            charges_enabled=False,
            payouts_enabled=False,
            details_submitted=False,
            is_ready_to_receive=False,
        )

    return ConnectStatusResponse(
        has_account=True,
        charges_enabled=account.charges_enabled,
        payouts_enabled=account.payouts_enabled,
        details_submitted=account.details_submitted,
        is_ready_to_receive=account.ready_to_receive,
    )
