#main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.payments.services import PaymentServices, build_services
from middleware import RequestContextMiddleware
from routes.health import router as health_router
from routes.metrics import router as metrics_router
from routes.payments import router as payments_router
from routes.webhooks import router as webhooks_router
from services.observability import configure_logging
from settings import settings, validate_env_settings

logger = logging.getLogger("bilvo.http")


def create_app(services: Optional[PaymentServices] = None) -> FastAPI:
    """
    Build the API. Tests pass `services`; otherwise they are built from
    settings when the app starts and released when it stops.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        validate_env_settings()
        owned = False
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
            owned = True
        try:
            yield
        finally:
            if owned and app.state.services.close is not None:
                app.state.services.close()

    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(title="Bilvo Payments API", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(RequestContextMiddleware)

    # -----------------------------
    # ROUTERS
    # -----------------------------
    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(payments_router)
    app.include_router(webhooks_router)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled_error request_id=%s path=%s",
            getattr(request.state, "request_id", None),
            request.url.path,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


app = create_app()
