
# app/webhooks/repository.py
from __future__ import annotations

import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Optional, Protocol

from psycopg2.extensions import connection as PGConn
from psycopg2.extras import Json, RealDictCursor

ConnFactory = Callable[[], AbstractContextManager[PGConn]]


@dataclass(frozen=True)
class WebhookDelivery:
    """One inbound delivery, as recorded for operations."""
    provider: str
    path: str
    signature_valid: bool
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    request_id: Optional[str] = None
    signature_error: Optional[str] = None
    applied: bool = False
    ignored: bool = False
    reason: Optional[str] = None
    payload_summary: dict[str, Any] = field(default_factory=dict)


class WebhookEventLog(Protocol):
    def record(self, delivery: WebhookDelivery) -> str: ...

    def list_recent(self, *, event_type: Optional[str] = None, limit: int = 50) -> list[dict[str, Any]]: ...


class PostgresWebhookEventLog:
    """
    app.webhook_events. Written in its own transaction so the audit row
    survives a rollback of the reconciliation work.
    """

    def __init__(self, connect: ConnFactory):
        self._connect = connect

    def record(self, delivery: WebhookDelivery) -> str:
        row_id = str(uuid.uuid4())
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO app.webhook_events (
                      id, provider, path, request_id,
                      event_id, event_type,
                      signature_valid, signature_error,
                      update_applied, ignored, ignore_reason,
                      payload_summary
                    )
                    VALUES (
                      %(id)s, %(provider)s, %(path)s, %(request_id)s,
                      %(event_id)s, %(event_type)s,
                      %(signature_valid)s, %(signature_error)s,
                      %(applied)s, %(ignored)s, %(reason)s,
                      %(payload_summary)s
                    )
                    """,
                    {
                        "id": row_id,
                        "provider": delivery.provider,
                        "path": delivery.path,
                        "request_id": delivery.request_id,
                        "event_id": delivery.event_id,
                        "event_type": delivery.event_type,
                        "signature_valid": bool(delivery.signature_valid),
                        "signature_error": delivery.signature_error,
                        "applied": bool(delivery.applied),
                        "ignored": bool(delivery.ignored),
                        "reason": delivery.reason,
                        "payload_summary": Json(delivery.payload_summary or {}),
                    },
                )
        return row_id

    def list_recent(self, *, event_type: Optional[str] = None, limit: int = 50) -> list[dict[str, Any]]:
        limit = max(1, min(int(limit or 50), 200))
        where_sql = "WHERE event_type = %(event_type)s" if event_type else ""
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT
                      id, provider, path, request_id, received_at,
                      event_id, event_type,
                      signature_valid, signature_error,
                      update_applied, ignored, ignore_reason,
                      payload_summary
                    FROM app.webhook_events
                    {where_sql}
                    ORDER BY received_at DESC
                    LIMIT %(limit)s
                    """,
                    {"event_type": event_type, "limit": limit},
                )
                return [dict(r) for r in cur.fetchall()]


class InMemoryWebhookEventLog:
    def __init__(self):
        self._lock = Lock()
        self.rows: list[dict[str, Any]] = []

    def record(self, delivery: WebhookDelivery) -> str:
        row_id = str(uuid.uuid4())
        row = {
            "id": row_id,
            "provider": delivery.provider,
            "path": delivery.path,
            "request_id": delivery.request_id,
            "received_at": datetime.now(timezone.utc),
            "event_id": delivery.event_id,
            "event_type": delivery.event_type,
            "signature_valid": delivery.signature_valid,
            "signature_error": delivery.signature_error,
            "update_applied": delivery.applied,
            "ignored": delivery.ignored,
            "ignore_reason": delivery.reason,
            "payload_summary": dict(delivery.payload_summary or {}),
        }
        with self._lock:
            self.rows.append(row)
        return row_id

    def list_recent(self, *, event_type: Optional[str] = None, limit: int = 50) -> list[dict[str, Any]]:
        limit = max(1, min(int(limit or 50), 200))
        with self._lock:
            rows = [r for r in reversed(self.rows) if not event_type or r["event_type"] == event_type]
        return rows[:limit]
