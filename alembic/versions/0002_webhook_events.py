"""webhook delivery audit trail

Revision ID: 0002_webhook_events
Revises: 0001_payments_schema
Create Date: 2026-10-01 00:10:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0002_webhook_events"
down_revision = "0001_payments_schema"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.webhook_events (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            provider text NOT NULL,
            path text NOT NULL,
            request_id text,
            received_at timestamptz NOT NULL DEFAULT now(),
            event_id text,
            event_type text,
            signature_valid boolean NOT NULL DEFAULT false,
            signature_error text,
            update_applied boolean NOT NULL DEFAULT false,
            ignored boolean NOT NULL DEFAULT false,
            ignore_reason text,
            payload_summary jsonb NOT NULL DEFAULT '{}'::jsonb
        );

        CREATE INDEX IF NOT EXISTS ix_webhook_events_received
            ON app.webhook_events (received_at DESC);

        CREATE INDEX IF NOT EXISTS ix_webhook_events_event_id
            ON app.webhook_events (event_id)
            WHERE event_id IS NOT NULL;
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.webhook_events;")
