
# settings.py
from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEV_JWT_SECRET = "dev-secret-change-me"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    ENV: str = "dev"

    # -----------------------
    # DB
    # -----------------------
    DATABASE_URL: str = Field(default="")
    STORE_BACKEND: Literal["postgres", "memory"] = "postgres"

    # -----------------------
    # JWT
    # -----------------------
    JWT_SECRET: str = Field(default=DEV_JWT_SECRET, min_length=16)
    JWT_ALG: str = Field(default="HS256")
    JWT_ACCESS_MINUTES: int = Field(default=60)

    # -----------------------
    # Processor (Stripe)
    # -----------------------
    PROCESSOR_MODE: Literal["stripe", "mock"] = "stripe"
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_WEBHOOK_TOLERANCE_S: int = 300

    # -----------------------
    # Payments
    # -----------------------
    PAYMENTS_CURRENCY: str = "usd"
    PROCESSOR_FEE_RATE: float = 0.029
    PROCESSOR_FEE_FIXED_CENTS: int = 30
    MANUAL_PROVIDERS: str = "venmo,zelle"

    # -----------------------
    # Observability
    # -----------------------
    LOG_LEVEL: str = "INFO"
    METRICS_ENABLED: bool = True


settings = Settings()


def _env_name() -> str:
    return (settings.ENV or "dev").strip().lower()


def manual_providers(raw: str | None = None) -> set[str]:
    raw = settings.MANUAL_PROVIDERS if raw is None else raw
    raw = raw or ""
    return {p.strip().lower() for p in raw.split(",") if p.strip()}


def validate_env_settings() -> None:
    """
    Fail fast on staging/prod misconfiguration. Dev is allowed to run with
    the mock processor and the in-memory store.
    """
    env = _env_name()
    if env not in ("staging", "prod", "production"):
        return

    missing: list[str] = []

    if not (settings.DATABASE_URL or "").strip():
        missing.append("DATABASE_URL")

    jwt_secret = settings.JWT_SECRET or ""
    if jwt_secret == DEV_JWT_SECRET or len(jwt_secret) < 32:
        missing.append("JWT_SECRET")

    if not (settings.STRIPE_SECRET_KEY or "").strip():
        missing.append("STRIPE_SECRET_KEY")

    if not (settings.STRIPE_WEBHOOK_SECRET or "").strip():
        missing.append("STRIPE_WEBHOOK_SECRET")

    if settings.PROCESSOR_MODE != "stripe":
        missing.append("PROCESSOR_MODE")

    if settings.STORE_BACKEND != "postgres":
        missing.append("STORE_BACKEND")

    if missing:
        raise RuntimeError(f"Invalid {env} configuration: " + ", ".join(missing))
