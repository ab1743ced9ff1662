from fastapi import APIRouter, HTTPException
from fastapi.responses import Response

from services.metrics import render_prometheus
from settings import settings

router = APIRouter(tags=["metrics"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"


@router.get("/metrics")
def metrics():
    if not settings.METRICS_ENABLED:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return Response(
        content=render_prometheus(),
        media_type=PROMETHEUS_CONTENT_TYPE,
        headers={"Cache-Control": "no-store"},
    )
