"""payments schema

Revision ID: 0001_payments_schema
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "0001_payments_schema"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute("CREATE SCHEMA IF NOT EXISTS app;")

    # Household/bill tables are owned by the CRUD layer; these are the
    # columns the payment core reads.
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.households (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            name text NOT NULL,
            admin_id uuid,
            created_at timestamptz NOT NULL DEFAULT now()
        );

        CREATE TABLE IF NOT EXISTS app.users (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            email text UNIQUE,
            name text,
            household_id uuid REFERENCES app.households(id) ON DELETE SET NULL,
            stripe_connected_account_id text UNIQUE,
            stripe_connect_charges_enabled boolean NOT NULL DEFAULT false,
            stripe_connect_payouts_enabled boolean NOT NULL DEFAULT false,
            stripe_connect_details_submitted boolean NOT NULL DEFAULT false,
            stripe_connect_onboarding_completed_at timestamptz,
            created_at timestamptz NOT NULL DEFAULT now()
        );

        CREATE TABLE IF NOT EXISTS app.bills (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            household_id uuid NOT NULL REFERENCES app.households(id) ON DELETE CASCADE,
            owner_user_id uuid NOT NULL REFERENCES app.users(id),
            biller text,
            amount numeric(12,2),
            due_date date,
            created_at timestamptz NOT NULL DEFAULT now()
        );

        CREATE TABLE IF NOT EXISTS app.bill_participants (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            bill_id uuid NOT NULL REFERENCES app.bills(id) ON DELETE CASCADE,
            user_id uuid NOT NULL REFERENCES app.users(id),
            share_amount numeric(12,2) NOT NULL DEFAULT 0,
            UNIQUE (bill_id, user_id)
        );

        CREATE TABLE IF NOT EXISTS app.activities (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            household_id uuid NOT NULL REFERENCES app.households(id) ON DELETE CASCADE,
            user_id uuid REFERENCES app.users(id),
            type text NOT NULL,
            description text NOT NULL,
            detail text,
            source text,
            created_at timestamptz NOT NULL DEFAULT now()
        );
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS app.payment_attempts (
            id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
            bill_id uuid NOT NULL REFERENCES app.bills(id) ON DELETE CASCADE,
            bill_participant_id uuid NOT NULL REFERENCES app.bill_participants(id) ON DELETE CASCADE,
            payer_user_id uuid NOT NULL REFERENCES app.users(id),
            provider text NOT NULL,
            amount_cents bigint NOT NULL,
            fee_cents bigint NOT NULL DEFAULT 0,
            total_cents bigint NOT NULL,
            currency text NOT NULL DEFAULT 'usd',
            status text NOT NULL,
            group_key text,
            group_position integer,
            provider_charge_id text,
            provider_transfer_id text UNIQUE,
            failure_code text,
            failure_message text,
            created_at timestamptz NOT NULL DEFAULT now(),
            updated_at timestamptz NOT NULL DEFAULT now(),
            processed_at timestamptz,

            CONSTRAINT ck_payment_attempts_status CHECK (
                status IN ('PENDING', 'PROCESSING', 'PENDING_APPROVAL', 'SUCCEEDED', 'FAILED', 'CANCELED')
            ),
            CONSTRAINT ck_payment_attempts_provider CHECK (provider IN ('stripe', 'venmo', 'zelle')),
            CONSTRAINT ck_payment_attempts_amounts CHECK (
                amount_cents >= 0 AND fee_cents >= 0 AND total_cents = amount_cents + fee_cents
            ),
            CONSTRAINT ck_payment_attempts_manual_fee CHECK (provider = 'stripe' OR fee_cents = 0)
        );

        -- at most one in-flight attempt per bill share
        CREATE UNIQUE INDEX IF NOT EXISTS ux_payment_attempts_in_flight
            ON app.payment_attempts (bill_participant_id)
            WHERE status IN ('PENDING', 'PROCESSING', 'PENDING_APPROVAL');

        -- at most one transfer per group (leader only)
        CREATE UNIQUE INDEX IF NOT EXISTS ux_payment_attempts_group_transfer
            ON app.payment_attempts (group_key)
            WHERE group_key IS NOT NULL AND provider_transfer_id IS NOT NULL;

        CREATE INDEX IF NOT EXISTS ix_payment_attempts_group_key
            ON app.payment_attempts (group_key)
            WHERE group_key IS NOT NULL;

        CREATE INDEX IF NOT EXISTS ix_payment_attempts_bill_created
            ON app.payment_attempts (bill_id, created_at DESC, id DESC);

        CREATE INDEX IF NOT EXISTS ix_payment_attempts_payer_created
            ON app.payment_attempts (payer_user_id, created_at DESC, id DESC);
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS app.payment_attempts;")
