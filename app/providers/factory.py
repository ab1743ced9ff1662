
# app/providers/factory.py
from __future__ import annotations

from settings import settings


def get_processor(mode: str | None = None):
    key = (mode or settings.PROCESSOR_MODE or "").strip().lower()

    if key == "stripe":
        from app.providers.stripe_processor import StripeProcessor
        return StripeProcessor(api_key=settings.STRIPE_SECRET_KEY)

    if key == "mock":
        from app.providers.mock import MockProcessor
        return MockProcessor()

    raise RuntimeError(f"Unsupported PROCESSOR_MODE: {key!r}")
