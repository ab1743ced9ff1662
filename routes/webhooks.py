
# routes/webhooks.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app.payments.errors import IntegrityFault, InvalidEvent, InvalidSignature
from app.payments.services import PaymentServices
from deps.payments import get_services
from schemas import WebhookAck

router = APIRouter(prefix="/v1/webhooks", tags=["webhooks"])
logger = logging.getLogger("bilvo.webhooks")


def _resolve_request_id(req: Request) -> str | None:
    for name in ("X-Request-ID", "X-Correlation-ID"):
        value = req.headers.get(name)
        if value and value.strip():
            return value.strip()
    return getattr(req.state, "request_id", None)


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(req: Request, services: PaymentServices = Depends(get_services)):
    # raw body: the signature covers the exact bytes
    raw = await req.body()
    sig_header = req.headers.get("Stripe-Signature")
    request_id = _resolve_request_id(req)

    try:
        outcome = await run_in_threadpool(
            services.reconciliation.receive,
            raw,
            sig_header,
            request_id=request_id,
            path=str(req.url.path),
        )
    except (InvalidSignature, InvalidEvent) as e:
        # permanent: redelivering the same bytes cannot succeed
        raise HTTPException(status_code=400, detail={"error": e.code, "message": e.message})
    except IntegrityFault as e:
        logger.error(
            "webhook_integrity_fault request_id=%s code=%s message=%s context=%s",
            request_id,
            e.code,
            e.message,
            e.context,
        )
        raise HTTPException(status_code=500, detail={"error": e.code})
    except Exception as e:
        logger.exception("webhook_processing_failed request_id=%s error=%s", request_id, type(e).__name__)
        raise HTTPException(status_code=500, detail={"error": "WEBHOOK_PROCESSING_FAILED"})

    return WebhookAck(received=True, applied=outcome.applied, reason=outcome.reason)
