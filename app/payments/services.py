
# app/payments/services.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from app.billing.directory import BillDirectory
from app.payments.manual import ManualApprovalService
from app.payments.orchestrator import PaymentOrchestrator
from app.payments.queries import AttemptReader
from app.payments.reconciliation import ReconciliationHandler
from app.payments.repository import AttemptStore
from app.providers.base import PaymentProcessor
from app.webhooks.repository import WebhookEventLog
from settings import Settings, manual_providers

logger = logging.getLogger("bilvo.payments")


@dataclass
class PaymentServices:
    """Everything the HTTP layer needs, wired once per process."""
    store: AttemptStore
    directory: BillDirectory
    processor: PaymentProcessor
    event_log: WebhookEventLog
    orchestrator: PaymentOrchestrator
    manual: ManualApprovalService
    reader: AttemptReader
    reconciliation: ReconciliationHandler
    db_ping: Optional[Callable[[], tuple[bool, Optional[str]]]] = None
    migrations_ok: Optional[Callable[[], bool]] = None
    close: Optional[Callable[[], None]] = None


def wire_services(
    cfg: Settings,
    *,
    store: AttemptStore,
    directory: BillDirectory,
    processor: PaymentProcessor,
    event_log: WebhookEventLog,
    db_ping: Optional[Callable[[], tuple[bool, Optional[str]]]] = None,
    migrations_ok: Optional[Callable[[], bool]] = None,
    close: Optional[Callable[[], None]] = None,
) -> PaymentServices:
    currency = (cfg.PAYMENTS_CURRENCY or "usd").lower()
    return PaymentServices(
        store=store,
        directory=directory,
        processor=processor,
        event_log=event_log,
        orchestrator=PaymentOrchestrator(
            store,
            directory,
            processor,
            currency=currency,
            fee_rate=cfg.PROCESSOR_FEE_RATE,
            fixed_cents=cfg.PROCESSOR_FEE_FIXED_CENTS,
        ),
        manual=ManualApprovalService(store, directory, providers=manual_providers(cfg.MANUAL_PROVIDERS), currency=currency),
        reader=AttemptReader(store, directory),
        reconciliation=ReconciliationHandler(
            store,
            directory,
            processor,
            webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
            tolerance_s=cfg.STRIPE_WEBHOOK_TOLERANCE_S,
            event_log=event_log,
        ),
        db_ping=db_ping,
        migrations_ok=migrations_ok,
        close=close,
    )


def build_services(cfg: Settings) -> PaymentServices:
    """Builds the configured backends. Called from the app lifespan."""
    from app.providers.factory import get_processor

    processor = get_processor(cfg.PROCESSOR_MODE)

    if cfg.STORE_BACKEND == "memory":
        from app.billing.memory import InMemoryBillDirectory
        from app.payments.memory import InMemoryAttemptStore
        from app.webhooks.repository import InMemoryWebhookEventLog

        logger.warning("store_backend=memory env=%s (data is lost on restart)", cfg.ENV)
        return wire_services(
            cfg,
            store=InMemoryAttemptStore(),
            directory=InMemoryBillDirectory(),
            processor=processor,
            event_log=InMemoryWebhookEventLog(),
        )

    import db
    from app.billing.directory import PostgresBillDirectory
    from app.payments.repository import PostgresAttemptStore
    from app.webhooks.repository import PostgresWebhookEventLog

    db.init_pool()
    return wire_services(
        cfg,
        store=PostgresAttemptStore(db.get_conn),
        directory=PostgresBillDirectory(db.get_conn),
        processor=processor,
        event_log=PostgresWebhookEventLog(db.get_conn),
        db_ping=db.db_ping,
        migrations_ok=db.migrations_applied,
        close=db.close_pool,
    )
